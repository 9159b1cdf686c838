import logging

from aiohttp import WSCloseCode, WSMsgType, web

logger = logging.getLogger(__name__)

RELOAD_MESSAGE = "reload"


class ReloadChannel:
    """Pushes reload notifications to every connected browser.

    Delivery is at-most-once: a client that connects after a broadcast never
    sees it, and nothing is queued for clients that are not ready.
    """

    def __init__(self):
        self.clients = set()

    def __len__(self):
        return len(self.clients)

    def add_client(self, ws):
        self.clients.add(ws)
        logger.debug("Client connected (%d open)", len(self.clients))

    def remove_client(self, ws):
        self.clients.discard(ws)
        logger.debug("Client disconnected (%d open)", len(self.clients))

    async def handle(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.add_client(ws)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    logger.debug("Client connection error: %s", ws.exception())
                    break
                # Clients have nothing to tell us.
                logger.debug("Ignoring %s message from client", msg.type.name)
        finally:
            self.remove_client(ws)
        return ws

    async def broadcast(self, message=RELOAD_MESSAGE):
        """Send ``message`` to every open client; return how many got it."""
        sent = 0
        for ws in list(self.clients):
            if ws.closed or not ws.prepared:
                continue
            try:
                await ws.send_str(message)
            except ConnectionError as exc:
                logger.debug("Dropping client after failed send: %s", exc)
                self.clients.discard(ws)
                continue
            sent += 1
        logger.info("Sent %s to %d client(s)", message, sent)
        return sent

    async def close_all(self):
        clients = list(self.clients)
        self.clients.clear()
        for ws in clients:
            if not ws.closed:
                await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
