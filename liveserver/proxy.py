import asyncio
import logging

import aiohttp
from aiohttp import hdrs, web
from yarl import URL

from .errors import ProxyUpstreamUnreachable

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    h.lower()
    for h in (
        hdrs.CONNECTION,
        hdrs.KEEP_ALIVE,
        hdrs.PROXY_AUTHENTICATE,
        hdrs.PROXY_AUTHORIZATION,
        hdrs.TE,
        hdrs.TRAILER,
        hdrs.TRANSFER_ENCODING,
        hdrs.UPGRADE,
        hdrs.HOST,
    )
)

CHUNK_SIZE = 64 * 1024


def _forwardable(headers):
    return [(k, v) for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS]


class ProxyRule:
    def __init__(self, prefix, target):
        self.prefix = prefix.rstrip("/") or "/"
        self.target = URL(target)

    def __repr__(self):
        return f"ProxyRule({self.prefix!r} -> {self.target})"

    def remainder(self, path):
        """Return the path below this rule's prefix, or None if it does not match.

        Prefixes match whole path segments, so ``/api`` covers ``/api`` and
        ``/api/users`` but not ``/apis``.
        """
        if self.prefix == "/":
            return path
        if path == self.prefix:
            return "/"
        if path.startswith(self.prefix + "/"):
            return path[len(self.prefix):]
        return None

    def upstream_url(self, remainder, query=None):
        base = self.target.path.rstrip("/")
        url = self.target.with_path(base + remainder, encoded=False)
        if query:
            url = url.with_query(query)
        return url


class ReverseProxyRouter:
    """Forwards requests under configured prefixes to upstream servers.

    Rules are checked in registration order and the first match wins.
    """

    def __init__(self, rules=()):
        self.rules = [ProxyRule(prefix, target) for prefix, target in rules]
        self._session = None
        self._closed = False

    @property
    def closed(self):
        return self._closed

    def match(self, path):
        for rule in self.rules:
            remainder = rule.remainder(path)
            if remainder is not None:
                return rule, remainder
        return None, None

    @property
    def session(self):
        if self._closed:
            raise RuntimeError("proxy router is closed")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                auto_decompress=False,
                cookie_jar=aiohttp.DummyCookieJar(),
            )
        return self._session

    async def close(self):
        """Close the upstream session, aborting in-flight proxied requests.

        A closed router answers every matching request with 502.
        """
        self._closed = True
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    async def handle(self, request):
        rule, remainder = self.match(request.path)
        if rule is None:
            return None

        url = rule.upstream_url(remainder, request.rel_url.query)
        try:
            return await self.forward(request, url)
        except ProxyUpstreamUnreachable as exc:
            logger.warning("Proxy %s %s failed: %s", request.method, request.path, exc)
            return web.Response(status=502, text=f"Bad Gateway: {exc}")

    async def forward(self, request, url):
        logger.debug("Proxy %s %s -> %s", request.method, request.path_qs, url)
        if self._closed:
            raise ProxyUpstreamUnreachable(str(url), "proxy is shut down")
        body = request.content if request.body_exists else None
        try:
            upstream = await self.session.request(
                request.method,
                url,
                headers=_forwardable(request.headers),
                data=body,
                allow_redirects=False,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProxyUpstreamUnreachable(str(url), exc) from exc

        async with upstream:
            response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
            for name, value in _forwardable(upstream.headers):
                response.headers.add(name, value)
            await response.prepare(request)
            try:
                async for chunk in upstream.content.iter_chunked(CHUNK_SIZE):
                    await response.write(chunk)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                # Headers are already sent; all we can do is cut the response short.
                logger.warning("Proxy stream from %s interrupted: %s", url, exc)
                if request.transport is not None:
                    request.transport.close()
                return response
            await response.write_eof()
        return response
