import asyncio
import socket

import pytest

from liveserver.config import ServerConfig

INDEX_HTML = "<html><head><title>t</title></head><body></body></html>"


@pytest.fixture
def site_root(tmp_path):
    root = tmp_path / "site"
    root.mkdir()
    (root / "index.html").write_text(INDEX_HTML, encoding="utf-8")
    (root / "style.css").write_text("body { color: red; }", encoding="utf-8")
    (root / "sub").mkdir()
    (root / "sub" / "index.html").write_text("<html><HEAD></HEAD><body>sub</body></html>", encoding="utf-8")
    (root / "sub" / "page.htm").write_text("<p>no head</p>", encoding="utf-8")
    (root / "node_modules").mkdir()
    return root


@pytest.fixture
def make_config(site_root):
    def make(**kwargs):
        kwargs.setdefault("root_dir", str(site_root))
        kwargs.setdefault("port", 0)
        kwargs.setdefault("host", "127.0.0.1")
        return ServerConfig(**kwargs)

    return make


@pytest.fixture
def wait_until():
    async def wait(predicate, timeout=5.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return wait


def _listening_socket(port):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("127.0.0.1", port))
        sock.listen()
    except OSError:
        sock.close()
        raise
    return sock


@pytest.fixture
def occupy_ports():
    """Find ``count`` consecutive free ports and hold the first ``held`` of them."""
    held_sockets = []

    def occupy(count, held):
        for _ in range(50):
            scratch = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            scratch.bind(("127.0.0.1", 0))
            base = scratch.getsockname()[1]
            scratch.close()
            if base + count > 65535:
                continue
            taken = []
            try:
                for port in range(base, base + count):
                    taken.append(_listening_socket(port))
            except OSError:
                for sock in taken:
                    sock.close()
                continue
            for sock in taken[held:]:
                sock.close()
            held_sockets.extend(taken[:held])
            return base
        pytest.skip("no run of consecutive free ports available")

    yield occupy
    for sock in held_sockets:
        sock.close()


@pytest.fixture
def closed_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port
