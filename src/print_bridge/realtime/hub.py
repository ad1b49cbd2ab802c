"""
In-process pub/sub hub.

The dispatcher hosts one Hub. Local components talk to it through
LocalChannel; remote bridges reach it through the Bayeux endpoint added by
add_routes() (POST /cometd), which CometDChannel speaks.
"""
import asyncio
import logging
import time
import uuid
from typing import Dict, List, Optional, Set

from aiohttp import web

from print_bridge.realtime.channel import Channel, ChannelError

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = '/print_bridge/'
LONG_POLL_TIMEOUT = 25
CLIENT_TIMEOUT = 60


class _Client:
    def __init__(self, client_id: str):
        self.client_id = client_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.subscriptions: Set[str] = set()
        self.last_seen = time.monotonic()
        self.closed = False


class Hub:
    """Fan-out of topic messages to subscribed clients, excluding the sender."""

    def __init__(self, client_timeout: float = CLIENT_TIMEOUT):
        self.client_timeout = client_timeout
        self.clients: Dict[str, _Client] = {}

    def register(self) -> str:
        client_id = uuid.uuid4().hex
        self.clients[client_id] = _Client(client_id)
        logger.debug(f"Hub: client {client_id} registered")
        return client_id

    def unregister(self, client_id: str):
        client = self.clients.pop(client_id, None)
        if client:
            client.closed = True
            client.queue.put_nowait(None)
            logger.debug(f"Hub: client {client_id} unregistered")

    def drop(self, client_id: str):
        """Terminate a client's session as if the connection was lost."""
        logger.info(f"Hub: dropping client {client_id}")
        self.unregister(client_id)

    def subscribe(self, client_id: str, topic: str):
        client = self._client(client_id)
        client.subscriptions.add(topic)

    def unsubscribe(self, client_id: str, topic: str):
        client = self._client(client_id)
        client.subscriptions.discard(topic)

    def publish(self, topic: str, message: dict, sender: Optional[str] = None) -> int:
        """Queue a message for every subscriber except the sender. Returns the fan-out count."""
        delivered = 0
        for client in list(self.clients.values()):
            if client.client_id == sender or topic not in client.subscriptions:
                continue
            client.queue.put_nowait((topic, message))
            delivered += 1
        logger.debug(f"Hub: {topic}/{message.get('event')} → {delivered} client(s)")
        return delivered

    async def receive(self, client_id: str, timeout: float = LONG_POLL_TIMEOUT) -> List[tuple]:
        """Wait up to `timeout` for messages, then return everything queued."""
        client = self._client(client_id)
        client.last_seen = time.monotonic()
        batch = []
        try:
            item = await asyncio.wait_for(client.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return batch
        finally:
            client.last_seen = time.monotonic()
        while item is not None:
            batch.append(item)
            if client.queue.empty():
                break
            item = client.queue.get_nowait()
        if item is None and not batch:
            raise ChannelError(f"client {client_id} closed")
        return batch

    def sweep(self) -> int:
        """Forget clients that stopped polling."""
        now = time.monotonic()
        expired = [cid for cid, c in self.clients.items() if now - c.last_seen > self.client_timeout]
        for cid in expired:
            self.unregister(cid)
        if expired:
            logger.info(f"Hub: expired {len(expired)} idle client(s)")
        return len(expired)

    def _client(self, client_id: str) -> _Client:
        client = self.clients.get(client_id)
        if client is None or client.closed:
            raise ChannelError(f"unknown client {client_id}")
        return client


class LocalChannel(Channel):
    """Channel session on an in-process Hub."""

    def __init__(self, hub: Hub, topic: str, poll_timeout: float = LONG_POLL_TIMEOUT):
        super().__init__(topic)
        self.hub = hub
        self.poll_timeout = poll_timeout
        self.client_id: Optional[str] = None
        self.closing = False

    async def connect(self):
        self.closing = False
        self.client_id = self.hub.register()
        self.hub.subscribe(self.client_id, self.topic)
        self.connected = True

    async def publish(self, event: str, payload: dict):
        if not self.connected:
            raise ChannelError(f"{self.topic}: not connected")
        self.hub.publish(self.topic, {'event': event, 'payload': payload, 'sender': self.client_id},
                         sender=self.client_id)

    async def listen(self):
        try:
            while not self.closing:
                for _topic, message in await self.hub.receive(self.client_id, self.poll_timeout):
                    await self.handle_message(message)
        except ChannelError:
            if not self.closing:
                raise
        finally:
            self.connected = False

    async def close(self):
        self.closing = True
        self.connected = False
        if self.client_id:
            self.hub.unregister(self.client_id)


# ---------------------------------------------------------------------------
# Bayeux endpoint
# ---------------------------------------------------------------------------

def _reply(msg: dict, successful: bool = True, **extra) -> dict:
    reply = {'channel': msg.get('channel'), 'successful': successful}
    if msg.get('id') is not None:
        reply['id'] = msg['id']
    if msg.get('clientId'):
        reply['clientId'] = msg['clientId']
    reply.update(extra)
    return reply


def _unknown_client(msg: dict) -> dict:
    return _reply(msg, False, error='402::Unknown client', advice={'reconnect': 'handshake'})


async def handle_bayeux(hub: Hub, messages: List[dict], poll_timeout: float = LONG_POLL_TIMEOUT) -> List[dict]:
    """Process one POST worth of Bayeux messages and build the response list."""
    replies = []
    for msg in messages:
        channel = msg.get('channel', '')
        client_id = msg.get('clientId')

        if channel == '/meta/handshake':
            new_id = hub.register()
            replies.append(_reply(msg, version='1.0', clientId=new_id,
                                  supportedConnectionTypes=['long-polling']))
            continue

        if client_id not in hub.clients:
            replies.append(_unknown_client(msg))
            continue

        if channel == '/meta/subscribe':
            sub = msg.get('subscription', '')
            if not sub.startswith(CHANNEL_PREFIX):
                replies.append(_reply(msg, False, subscription=sub, error='403::Unknown channel'))
                continue
            hub.subscribe(client_id, sub[len(CHANNEL_PREFIX):])
            replies.append(_reply(msg, subscription=sub))

        elif channel == '/meta/unsubscribe':
            sub = msg.get('subscription', '')
            hub.unsubscribe(client_id, sub[len(CHANNEL_PREFIX):])
            replies.append(_reply(msg, subscription=sub))

        elif channel == '/meta/connect':
            try:
                batch = await hub.receive(client_id, poll_timeout)
            except ChannelError:
                replies.append(_unknown_client(msg))
                continue
            replies.append(_reply(msg, advice={'reconnect': 'retry', 'interval': 0}))
            for topic, data in batch:
                replies.append({'channel': CHANNEL_PREFIX + topic, 'data': data})

        elif channel == '/meta/disconnect':
            hub.unregister(client_id)
            replies.append(_reply(msg))

        elif channel.startswith(CHANNEL_PREFIX) and 'data' in msg:
            data = dict(msg['data'])
            data['sender'] = client_id
            hub.publish(channel[len(CHANNEL_PREFIX):], data, sender=client_id)
            replies.append(_reply(msg))

        else:
            replies.append(_reply(msg, False, error='400::Unsupported message'))
    return replies


def add_routes(app: web.Application, hub: Hub, path: str = '/cometd', poll_timeout: float = LONG_POLL_TIMEOUT):
    async def cometd(request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({'error': 'Invalid JSON'}, status=400)
        messages = body if isinstance(body, list) else [body]
        return web.json_response(await handle_bayeux(hub, messages, poll_timeout))

    async def sweeper(app):
        async def _loop():
            while True:
                await asyncio.sleep(hub.client_timeout / 2)
                hub.sweep()
        task = asyncio.create_task(_loop())
        yield
        task.cancel()

    app.router.add_post(path, cometd)
    app.cleanup_ctx.append(sweeper)
