import argparse
import asyncio
import logging
import os
import signal
import sys
import webbrowser

from .config import ServerConfig, load_settings
from .errors import LiveServerError
from .lifecycle import ServerLifecycle

logger = logging.getLogger(__name__)


def parse_mapping(values):
    proxy = {}
    for item in values or ():
        prefix, sep, target = item.partition("=")
        if not sep or not prefix or not target:
            raise argparse.ArgumentTypeError(f"expected PREFIX=URL, got {item!r}")
        proxy[prefix] = target
    return proxy


def build_parser():
    parser = argparse.ArgumentParser(prog="liveserver", description="Serve a directory and reload browsers on change")
    parser.add_argument("workspace", nargs="?", default=os.getcwd(), help="Workspace directory (default: current directory)")
    parser.add_argument("--config", help="JSON settings file, e.g. .vscode/settings.json")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address; empty for all interfaces")
    parser.add_argument("--port", type=int, help="Preferred port (default: 5500)")
    parser.add_argument("--root", help="Directory to serve, relative to the workspace (default: /)")
    parser.add_argument("--browser", help="Browser to open pages with")
    parser.add_argument("--https", action="store_true", default=None, help="Serve over HTTPS")
    parser.add_argument("--cert", help="Certificate file for HTTPS")
    parser.add_argument("--key", help="Private key file for HTTPS")
    parser.add_argument("--no-cors", dest="cors", action="store_false", default=None, help="Disable CORS headers")
    parser.add_argument("--proxy", action="append", metavar="PREFIX=URL", help="Forward PREFIX to URL (repeatable)")
    parser.add_argument("--ignore", action="append", metavar="GLOB", help="Ignore pattern for the watcher (repeatable)")
    parser.add_argument("--open", dest="open_browser", action="store_true", help="Open the served page in a browser")
    parser.add_argument("--path", dest="resource", help="File to open once the server is running")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def config_from_args(args):
    settings = load_settings(args.config) if args.config else {}
    flags = {
        "port": args.port,
        "root": args.root,
        "browser": args.browser,
        "https": args.https,
        "cors": args.cors,
        "ignoreFiles": args.ignore,
    }
    settings.update({k: v for k, v in flags.items() if v is not None})
    if args.proxy:
        settings["proxy"] = parse_mapping(args.proxy)

    return ServerConfig.from_settings(
        args.workspace,
        settings,
        host=args.host or None,
        cert_file=args.cert,
        key_file=args.key,
    )


def open_url(url, browser=""):
    """Open ``url`` with the named browser, or the system default."""
    try:
        if browser:
            # A bare executable path becomes a command line for webbrowser.
            command = browser if "%s" in browser else f'"{browser}" %s'
            webbrowser.get(command).open(url)
        else:
            webbrowser.open(url)
    except webbrowser.Error as exc:
        logger.warning("Could not open browser: %s", exc)


async def serve(config, resource=None, open_browser=False):
    lifecycle = ServerLifecycle(config)
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt cancels the wait below instead.
            continue
        installed.append(sig)

    try:
        result = await lifecycle.start(resource)
        try:
            print(f"Live server running at {result.url}")
            if open_browser:
                open_url(result.url, config.browser)
            await stop_requested.wait()
        finally:
            await lifecycle.stop()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = config_from_args(args)
        resource = os.path.abspath(args.resource) if args.resource else None
        asyncio.run(serve(config, resource=resource, open_browser=args.open_browser))
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    except LiveServerError as exc:
        print(f"Live server failed to start: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0
