from __future__ import annotations

import asyncio
import logging
import random
from functools import partial
from typing import Callable, Dict, List, Optional, Set

import aiohttp
from aiohttp import web

import config
from Messages import Message, MessageDecodeError, decode_message, encode_message
from Scheduler import Scheduler

logger = logging.getLogger(__name__)

Handler = Callable[[Message], None]


class Subscription:
    def __init__(self, bus: "SyncBus", handler: Handler):
        self.bus = bus
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self.bus.unsubscribe(self.handler)


class SyncBus:
    """
    Pub/sub channel between the two participants.

    publish() never blocks and never delivers back to the publishing endpoint.
    Delivery is FIFO per sender only; anything published before a handler
    subscribes is gone.
    """

    def __init__(self):
        self._handlers: List[Handler] = []

    def publish(self, message: Message) -> None:
        raise NotImplementedError

    def subscribe(self, handler: Handler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(self, handler)

    def unsubscribe(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def _dispatch(self, message: Message) -> None:
        for handler in list(self._handlers):
            handler(message)


# -------------------------
# in-process channel
# -------------------------
class BroadcastHub:
    """
    Named in-process channel handing out LocalSyncBus endpoints.

    drop_rate / duplicate_rate inject transport faults per delivery; the rng is
    seeded so faulty runs are reproducible.
    """

    def __init__(self, scheduler: Scheduler, name: str = config.BROADCAST_CHANNEL,
                 drop_rate: float = 0.0, duplicate_rate: float = 0.0,
                 seed: Optional[int] = None):
        self.scheduler = scheduler
        self.name = name
        self.drop_rate = drop_rate
        self.duplicate_rate = duplicate_rate
        self._rng = random.Random(seed)
        self._endpoints: List["LocalSyncBus"] = []
        self.published = 0
        self.delivered = 0
        self.dropped = 0

    def endpoint(self, label: str = "") -> "LocalSyncBus":
        ep = LocalSyncBus(self, label)
        self._endpoints.append(ep)
        return ep

    def detach(self, ep: "LocalSyncBus") -> None:
        if ep in self._endpoints:
            self._endpoints.remove(ep)

    def broadcast(self, sender: "LocalSyncBus", message: Message) -> None:
        self.published += 1
        for ep in list(self._endpoints):
            if ep is sender or not ep._handlers:
                continue
            if self._rng.random() < self.drop_rate:
                self.dropped += 1
                logger.debug("%s: dropped %s for %s", self.name, message.type.value, ep.label)
                continue
            copies = 2 if self._rng.random() < self.duplicate_rate else 1
            # snapshot handlers now: late subscribers must not see this message
            for handler in list(ep._handlers):
                for _ in range(copies):
                    self.scheduler.after(0.0, partial(ep._deliver, handler, message))


class LocalSyncBus(SyncBus):
    def __init__(self, hub: BroadcastHub, label: str = ""):
        super().__init__()
        self.hub = hub
        self.label = label

    def publish(self, message: Message) -> None:
        self.hub.broadcast(self, message)

    def _deliver(self, handler: Handler, message: Message) -> None:
        if handler not in self._handlers:
            return
        self.hub.delivered += 1
        handler(message)

    def close(self) -> None:
        self._handlers.clear()
        self.hub.detach(self)


# -------------------------
# websocket relay (server side)
# -------------------------
async def relay_handler(request: web.Request) -> web.WebSocketResponse:
    channel = request.match_info["channel"]
    channels: Dict[str, Set[web.WebSocketResponse]] = request.app["channels"]

    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)
    peers = channels.setdefault(channel, set())
    peers.add(ws)
    logger.info("relay: peer joined %s (%d connected)", channel, len(peers))

    try:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                # frames are opaque here; decoding is the endpoints' job
                for peer in list(peers):
                    if peer is ws or peer.closed:
                        continue
                    try:
                        await peer.send_str(msg.data)
                    except ConnectionResetError:
                        peers.discard(peer)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("relay: connection closed with %s", ws.exception())
    finally:
        peers.discard(ws)
        if not peers:
            channels.pop(channel, None)
        logger.info("relay: peer left %s", channel)
    return ws


def create_relay_app() -> web.Application:
    app = web.Application()
    app["channels"] = {}
    app.router.add_get("/ws/{channel}", relay_handler)
    return app


def run_relay(host: str = config.RELAY_HOST, port: int = config.RELAY_PORT) -> None:
    web.run_app(create_relay_app(), host=host, port=port)


# -------------------------
# websocket endpoint (client side)
# -------------------------
class WsSyncBus(SyncBus):
    """SyncBus endpoint talking to the relay over one websocket."""

    def __init__(self, url: str, queue_size: int = 256):
        super().__init__()
        self.url = url
        self.queue_size = queue_size
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._out: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def for_channel(cls, host: str = config.RELAY_HOST, port: int = config.RELAY_PORT,
                    channel: str = config.BROADCAST_CHANNEL) -> "WsSyncBus":
        return cls(f"ws://{host}:{port}/ws/{channel}")

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=30.0)
        except aiohttp.ClientError:
            await self._session.close()
            self._session = None
            raise
        self._out = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            asyncio.create_task(self._reader()),
            asyncio.create_task(self._writer()),
        ]
        logger.info("bus connected to %s", self.url)

    def publish(self, message: Message) -> None:
        if self._out is None:
            raise RuntimeError("bus is not connected")
        q = self._out
        # keep only the newest frames if the socket falls behind
        if q.full():
            try:
                q.get_nowait()
                q.task_done()
            except asyncio.QueueEmpty:
                pass
        q.put_nowait(encode_message(message))

    async def flush(self) -> None:
        if self._out is not None:
            await self._out.join()

    async def _writer(self) -> None:
        while True:
            raw = await self._out.get()
            try:
                await self._ws.send_str(raw)
            except ConnectionResetError:
                logger.warning("bus: send failed, frame lost")
            finally:
                self._out.task_done()

    async def _reader(self) -> None:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = decode_message(msg.data)
                except MessageDecodeError as e:
                    logger.warning("bus: dropping frame: %s", e)
                    continue
                try:
                    self._dispatch(message)
                except Exception:
                    # one failing handler costs one message, not the channel
                    logger.exception("bus: handler failed on %s", message.type.value)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("bus: websocket error %s", self._ws.exception())
                break

    async def close(self) -> None:
        try:
            for task in self._tasks:
                task.cancel()
            for task in self._tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("bus: background task had failed")
        finally:
            self._tasks = []
            if self._ws is not None:
                await self._ws.close()
            if self._session is not None:
                await self._session.close()
            self._ws = None
            self._session = None
            self._out = None
