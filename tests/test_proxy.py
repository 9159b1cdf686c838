import pytest
from aiohttp import web

from liveserver.content import create_app
from liveserver.proxy import ProxyRule, ReverseProxyRouter


@pytest.mark.parametrize(
    "prefix, path, remainder",
    [
        ("/api", "/api", "/"),
        ("/api", "/api/users", "/users"),
        ("/api/", "/api/users", "/users"),
        ("/api", "/apis", None),
        ("/api", "/other/api", None),
        ("/", "/anything", "/anything"),
    ],
)
def test_rule_matches_whole_segments(prefix, path, remainder):
    assert ProxyRule(prefix, "http://localhost:9000").remainder(path) == remainder


def test_upstream_url_joins_target_path_and_query():
    rule = ProxyRule("/api", "http://localhost:9000/v1/")
    url = rule.upstream_url("/users", {"page": "2"})
    assert str(url) == "http://localhost:9000/v1/users?page=2"


def test_first_registered_prefix_wins_for_overlapping_rules():
    router = ReverseProxyRouter({"/api": "http://localhost:9000", "/api/v2": "http://localhost:9001"}.items())

    rule, remainder = router.match("/api/v2/foo")

    assert str(rule.target) == "http://localhost:9000"
    assert remainder == "/v2/foo"


def test_more_specific_rule_wins_when_registered_first():
    router = ReverseProxyRouter([("/api/v2", "http://localhost:9001"), ("/api", "http://localhost:9000")])
    rule, remainder = router.match("/api/v2/foo")
    assert str(rule.target) == "http://localhost:9001"
    assert remainder == "/foo"


def test_no_match():
    router = ReverseProxyRouter([("/api", "http://localhost:9000")])
    assert router.match("/static/app.js") == (None, None)


def _echo(name):
    async def handler(request):
        body = await request.read()
        return web.json_response(
            {
                "server": name,
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "body": body.decode(),
                "header": request.headers.get("X-Test"),
            },
            status=201,
            headers={"X-Upstream": "yes"},
        )

    return handler


@pytest.fixture
async def upstreams(aiohttp_server):
    servers = []
    for name in ("first", "second"):
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", _echo(name))
        servers.append(await aiohttp_server(app))
    return servers


@pytest.fixture
async def proxied(aiohttp_client, make_config, upstreams):
    first, second = upstreams
    routers = []

    async def make(rules):
        router = ReverseProxyRouter(rules)
        routers.append(router)
        return await aiohttp_client(create_app(make_config(), proxy=router))

    yield make, str(first.make_url("/")), str(second.make_url("/"))
    for router in routers:
        await router.close()


async def test_request_is_forwarded_with_method_headers_and_body(proxied):
    make, first, _ = proxied
    client = await make([("/api", first)])

    resp = await client.post("/api/items?x=1", data=b"payload", headers={"X-Test": "abc"})

    assert resp.status == 201
    assert resp.headers["X-Upstream"] == "yes"
    assert await resp.json() == {
        "server": "first",
        "method": "POST",
        "path": "/items",
        "query": {"x": "1"},
        "body": "payload",
        "header": "abc",
    }


async def test_overlapping_prefixes_route_by_registration_order(proxied):
    make, first, second = proxied
    client = await make([("/api", first), ("/api/v2", second)])

    resp = await client.get("/api/v2/foo")

    assert resp.status == 201
    body = await resp.json()
    assert body["server"] == "first"
    assert body["path"] == "/v2/foo"


async def test_static_files_take_precedence_over_proxy(proxied, site_root):
    make, first, _ = proxied
    (site_root / "api").mkdir()
    (site_root / "api" / "data.json").write_text('{"local": true}', encoding="utf-8")
    client = await make([("/api", first)])

    resp = await client.get("/api/data.json")

    assert resp.status == 200
    assert await resp.json() == {"local": True}


async def test_unmatched_path_is_404(proxied):
    make, first, _ = proxied
    client = await make([("/api", first)])
    resp = await client.get("/elsewhere")
    assert resp.status == 404


async def test_unreachable_upstream_is_502(aiohttp_client, make_config, closed_port):
    router = ReverseProxyRouter([("/api", f"http://127.0.0.1:{closed_port}")])
    client = await aiohttp_client(create_app(make_config(), proxy=router))
    try:
        resp = await client.get("/api/anything")
        assert resp.status == 502

        # The server keeps serving after an upstream failure.
        assert (await client.get("/style.css")).status == 200
    finally:
        await router.close()


async def test_closed_router_answers_502_without_reopening_a_session(aiohttp_client, make_config, upstreams):
    router = ReverseProxyRouter([("/api", str(upstreams[0].make_url("/")))])
    client = await aiohttp_client(create_app(make_config(), proxy=router))
    assert (await client.get("/api/x")).status == 201

    await router.close()
    resp = await client.get("/api/x")

    assert resp.status == 502
    assert router.closed
    assert router._session is None
    with pytest.raises(RuntimeError):
        router.session
