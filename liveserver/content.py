import logging
import os
import re

from aiohttp import hdrs, web

from .errors import InjectionReadFailure

logger = logging.getLogger(__name__)

# -------- Reload client --------
RELOAD_SNIPPET = """
<script>
(function(){
  if (window.__LIVE_SERVER__) return;
  window.__LIVE_SERVER__ = true;
  const protocol = location.protocol === 'https:' ? 'wss' : 'ws';
  const socket = new WebSocket(protocol + '://' + location.host);
  socket.addEventListener('message', function(e){ if (e.data === 'reload') location.reload(); });
})();
</script>
"""

HEAD_CLOSE_RE = re.compile(r"</head>", re.IGNORECASE)
HTML_EXTENSIONS = (".html", ".htm")
STATIC_CACHE_CONTROL = "public, max-age=0"

CORS_ALLOW_METHODS = "GET,HEAD,PUT,PATCH,POST,DELETE"


def inject_reload_snippet(html):
    """Insert the reload client before the first ``</head>``, else append it."""
    match = HEAD_CLOSE_RE.search(html)
    if match is None:
        return html + RELOAD_SNIPPET
    return html[:match.start()] + RELOAD_SNIPPET + html[match.start():]


def is_websocket_upgrade(request):
    return (
        request.method == hdrs.METH_GET
        and request.headers.get(hdrs.UPGRADE, "").lower() == "websocket"
    )


class ContentServer:
    """Serves ``root_dir``, injecting the reload client into HTML pages.

    Routing order for a request: push-channel upgrade, HTML injection,
    static file, proxy rules, 404. HTML is read from disk on every request
    so pages always reflect the latest saved content.
    """

    def __init__(self, root_dir, channel=None, proxy=None):
        self.root_dir = os.path.abspath(root_dir)
        self.channel = channel
        self.proxy = proxy

    def resolve(self, url_path):
        """Map a URL path to a filesystem path inside the root, or None."""
        candidate = os.path.normpath(os.path.join(self.root_dir, url_path.lstrip("/")))
        if candidate != self.root_dir and not candidate.startswith(self.root_dir + os.sep):
            return None
        return candidate

    def read_html(self, path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise InjectionReadFailure(path, exc) from exc

    async def handle(self, request):
        if self.channel is not None and is_websocket_upgrade(request):
            return await self.channel.handle(request)

        if "text/html" in request.headers.get(hdrs.ACCEPT, ""):
            try:
                response = self.serve_injected(request)
            except InjectionReadFailure as exc:
                logger.warning("%s; serving without live reload", exc)
                response = None
            if response is not None:
                return response

        response = self.serve_static(request)
        if response is not None:
            return response

        if self.proxy is not None:
            response = await self.proxy.handle(request)
            if response is not None:
                return response

        raise web.HTTPNotFound()

    def serve_injected(self, request):
        requested = "/index.html" if request.path == "/" else request.path
        path = self.resolve(requested)
        if path is None:
            return None
        if os.path.isdir(path):
            # Let the static responder redirect to the slash form first.
            if not requested.endswith("/"):
                return None
            path = os.path.join(path, "index.html")
        if not (os.path.isfile(path) and path.lower().endswith(HTML_EXTENSIONS)):
            return None

        html = inject_reload_snippet(self.read_html(path))
        return web.Response(
            text=html,
            content_type="text/html",
            headers={hdrs.CACHE_CONTROL: "no-cache"},
        )

    def serve_static(self, request):
        if request.method not in (hdrs.METH_GET, hdrs.METH_HEAD):
            return None
        path = self.resolve(request.path)
        if path is None:
            return None

        if os.path.isdir(path):
            if not request.path.endswith("/"):
                location = request.rel_url.with_path(request.path + "/").with_query(request.rel_url.query)
                raise web.HTTPMovedPermanently(location=str(location))
            path = os.path.join(path, "index.html")

        if not os.path.isfile(path):
            return None
        return web.FileResponse(path, headers={hdrs.CACHE_CONTROL: STATIC_CACHE_CONTROL})


# -------- CORS --------
@web.middleware
async def cors_preflight_middleware(request, handler):
    if request.method != hdrs.METH_OPTIONS or hdrs.ACCESS_CONTROL_REQUEST_METHOD not in request.headers:
        return await handler(request)

    headers = {hdrs.ACCESS_CONTROL_ALLOW_METHODS: CORS_ALLOW_METHODS}
    requested = request.headers.get(hdrs.ACCESS_CONTROL_REQUEST_HEADERS)
    if requested:
        headers[hdrs.ACCESS_CONTROL_ALLOW_HEADERS] = requested
    return web.Response(status=204, headers=headers)


async def add_cors_headers(request, response):
    response.headers.setdefault(hdrs.ACCESS_CONTROL_ALLOW_ORIGIN, "*")


def create_app(config, channel=None, proxy=None):
    """Build the aiohttp application serving ``config.root_dir``."""
    app = web.Application(middlewares=[cors_preflight_middleware] if config.cors else [])
    if config.cors:
        app.on_response_prepare.append(add_cors_headers)

    content = ContentServer(config.root_dir, channel=channel, proxy=proxy)
    app.router.add_route("*", "/{path:.*}", content.handle)
    return app
