"""Start/stop state machine owning the listener, channel, watcher and proxy."""

import asyncio
import enum
import logging
import os
import ssl
from dataclasses import dataclass
from functools import partial
from urllib.parse import quote

from aiohttp import web

from .binder import bind_with_retry
from .channel import ReloadChannel
from .content import HTML_EXTENSIONS, create_app
from .errors import CertificateError, RootNotFound
from .proxy import ReverseProxyRouter
from .watcher import ChangeWatcher

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 2.0


class LifecycleState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class RunningServerState:
    port: int
    root_dir: str
    https: bool
    runner: web.AppRunner
    watcher: ChangeWatcher
    channel: ReloadChannel
    proxy: ReverseProxyRouter

    @property
    def url(self):
        scheme = "https" if self.https else "http"
        return f"{scheme}://localhost:{self.port}"

    def url_for(self, path):
        """URL of ``path`` on this server, or None if it lies outside the root."""
        rel = os.path.relpath(os.path.abspath(path), self.root_dir)
        if rel == os.curdir:
            return self.url + "/"
        if rel == os.pardir or rel.startswith(os.pardir + os.sep):
            return None
        return f"{self.url}/{quote(rel.replace(os.sep, '/'))}"


@dataclass(frozen=True)
class StartResult:
    url: str
    port: int
    already_running: bool = False


def load_ssl_context(config):
    if not config.https:
        return None
    if not (config.cert_file and config.key_file):
        raise CertificateError("HTTPS requires both a certificate and a key file")
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(config.cert_file, config.key_file)
    except (OSError, ssl.SSLError) as exc:
        raise CertificateError(f"Cannot load certificate pair: {exc}") from exc
    return context


def _log_broadcast_failure(future):
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Reload broadcast failed: %s", exc, exc_info=exc)


async def _stop_listening(runner):
    # Closes the listening sockets only; connections already open keep going.
    for site in list(runner.sites):
        await site.stop()


class ServerLifecycle:
    """Owns at most one running server.

    Transitions are serialised with an ``asyncio.Lock`` so a start in
    progress is never torn down by a concurrent stop, and every handle of a
    running server is created and released together.
    """

    def __init__(self, config):
        self.config = config
        self._state = LifecycleState.STOPPED
        self._running = None
        self._lock = asyncio.Lock()
        self._state_listeners = []
        self._error_listeners = []

    # -------- Observers --------
    def on_state_change(self, callback):
        self._state_listeners.append(callback)

    def on_error(self, callback):
        self._error_listeners.append(callback)

    def _set_state(self, state):
        if state is self._state:
            return
        logger.debug("Lifecycle %s -> %s", self._state.value, state.value)
        self._state = state
        for callback in list(self._state_listeners):
            callback(state)

    def _report_error(self, exc):
        for callback in list(self._error_listeners):
            callback(exc)

    # -------- Status --------
    @property
    def state(self):
        return self._state

    @property
    def is_running(self):
        return self._state is LifecycleState.RUNNING

    @property
    def running(self):
        return self._running

    @property
    def url(self):
        return self._running.url if self._running else None

    @property
    def port(self):
        return self._running.port if self._running else None

    # -------- Transitions --------
    async def start(self, resource=None):
        """Start serving, or report where ``resource`` lives on the running server."""
        async with self._lock:
            if self._running is not None:
                return self._already_running(self._running, resource)

            self._set_state(LifecycleState.STARTING)
            try:
                running = await self._start()
            except BaseException as exc:
                self._set_state(LifecycleState.STOPPED)
                if not isinstance(exc, asyncio.CancelledError):
                    logger.error("Live server failed to start: %s", exc)
                    self._report_error(exc)
                raise
            self._running = running
            self._set_state(LifecycleState.RUNNING)

        url = running.url
        if resource and resource.lower().endswith(HTML_EXTENSIONS):
            url = running.url_for(resource) or url
        logger.info("Live server running at %s", running.url)
        return StartResult(url=url, port=running.port)

    def _already_running(self, running, resource):
        if resource:
            target = running.url_for(resource)
            if target is not None:
                return StartResult(url=target, port=running.port, already_running=True)
            logger.info("%s is outside the served root %s", resource, running.root_dir)
        logger.info("Live server is already running at %s", running.url)
        return StartResult(url=running.url, port=running.port, already_running=True)

    async def _start(self):
        config = self.config
        if not os.path.isdir(config.root_dir):
            raise RootNotFound(config.root_dir)
        ssl_context = load_ssl_context(config)

        loop = asyncio.get_running_loop()
        channel = ReloadChannel()
        proxy = ReverseProxyRouter(config.proxy)
        runner = web.AppRunner(
            create_app(config, channel=channel, proxy=proxy),
            shutdown_timeout=SHUTDOWN_TIMEOUT,
        )

        def on_change(event):
            # Runs on the watchdog thread.
            if not loop.is_closed():
                future = asyncio.run_coroutine_threadsafe(channel.broadcast(), loop)
                future.add_done_callback(_log_broadcast_failure)

        watcher = ChangeWatcher(config.root_dir, config.ignore_files, on_change)

        try:
            await runner.setup()
            port = await bind_with_retry(
                runner,
                config.port,
                config.max_port_attempts,
                host=config.host,
                ssl_context=ssl_context,
            )
            watcher.start()
        except BaseException:
            # Unwind whatever was created, in reverse order.
            watcher.stop()
            await channel.close_all()
            await proxy.close()
            await runner.cleanup()
            raise

        return RunningServerState(
            port=port,
            root_dir=config.root_dir,
            https=config.https,
            runner=runner,
            watcher=watcher,
            channel=channel,
            proxy=proxy,
        )

    async def stop(self):
        """Stop the running server. Stopping a stopped server does nothing."""
        async with self._lock:
            running = self._running
            if running is None:
                return

            self._set_state(LifecycleState.STOPPING)
            teardown = asyncio.ensure_future(self._teardown(running))
            try:
                errors = await asyncio.shield(teardown)
            except asyncio.CancelledError:
                # Finish releasing sockets and handles before giving up.
                await teardown
                raise
            finally:
                self._running = None
                self._set_state(LifecycleState.STOPPED)
                logger.info("Live server stopped")

        if errors:
            self._report_error(errors[0])
            raise errors[0]

    @staticmethod
    async def _stop_watcher(watcher):
        await asyncio.get_running_loop().run_in_executor(None, watcher.stop)

    async def _teardown(self, running):
        """Stop every component, returning the errors raised along the way."""
        errors = []
        steps = (
            ("listening sockets", partial(_stop_listening, running.runner)),
            ("watcher", partial(self._stop_watcher, running.watcher)),
            ("reload channel", running.channel.close_all),
            ("proxy", running.proxy.close),
            ("listener", running.runner.cleanup),
        )
        for name, step in steps:
            try:
                await step()
            except Exception as exc:
                logger.exception("Failed to stop %s", name)
                errors.append(exc)
        return errors
