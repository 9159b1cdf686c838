import errno
import logging

from aiohttp import web

from .errors import BindError, BindPermissionDenied, PortExhausted

logger = logging.getLogger(__name__)

PERMISSION_ERRNOS = (errno.EACCES, errno.EPERM)


async def bind_with_retry(runner, preferred_port, max_attempts=10, host=None, ssl_context=None):
    """Start a TCP site for ``runner`` on the first free port.

    Tries ``preferred_port`` and up to ``max_attempts - 1`` following ports,
    moving on only when the address is already in use. Returns the bound
    port. ``runner`` must already be set up.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        port = preferred_port + attempt
        site = web.TCPSite(runner, host, port, ssl_context=ssl_context)
        try:
            await site.start()
        except OSError as exc:
            # Unregister the half-started site so nothing lingers on the runner.
            await site.stop()
            if exc.errno == errno.EADDRINUSE:
                logger.info("Port %d is in use, trying %d", port, port + 1)
                continue
            if exc.errno in PERMISSION_ERRNOS:
                raise BindPermissionDenied(port, exc) from exc
            raise BindError(port, exc) from exc

        bound = runner.addresses[0][1] if runner.addresses else port
        logger.debug("Listening on port %d after %d attempt(s)", bound, attempt + 1)
        return bound

    raise PortExhausted(preferred_port, max_attempts)
