import asyncio
import logging
from typing import Optional

import aiohttp

from print_bridge.realtime.channel import Channel, ChannelError
from print_bridge.realtime.hub import CHANNEL_PREFIX

logger = logging.getLogger(__name__)

LONG_POLL_TIMEOUT = 40


class CometDChannel(Channel):
    """Channel session on the dispatcher's Bayeux endpoint (long-polling)."""

    def __init__(self, endpoint: str, topic: str, api_key: Optional[str] = None,
                 poll_timeout: float = LONG_POLL_TIMEOUT):
        super().__init__(topic)
        self.endpoint = endpoint
        self.api_key = api_key
        self.poll_timeout = poll_timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self.client_id: Optional[str] = None
        self.message_counter = 0
        self.running = False

    @property
    def subscription(self) -> str:
        return CHANNEL_PREFIX + self.topic

    def _next_id(self):
        """Get next message ID."""
        self.message_counter += 1
        return str(self.message_counter)

    async def _post(self, messages: list, timeout: Optional[float] = None) -> list:
        # Headers must be sent with each request
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        try:
            async with self.session.post(
                self.endpoint, json=messages, headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout or 30),
            ) as resp:
                if resp.status != 200:
                    raise ChannelError(f"{self.endpoint} returned HTTP {resp.status}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChannelError(f"{self.endpoint}: {e.__class__.__name__}: {e}")

    async def connect(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()

        handshake = await self._post([{
            'channel': '/meta/handshake',
            'version': '1.0',
            'minimumVersion': '1.0',
            'supportedConnectionTypes': ['long-polling'],
            'id': self._next_id(),
        }])
        if not handshake or not handshake[0].get('successful'):
            raise ChannelError(f"Handshake failed: {handshake[0].get('error', 'Unknown error') if handshake else 'empty'}")
        self.client_id = handshake[0]['clientId']
        logger.debug(f"Handshake successful, clientId: {self.client_id}")

        subscribed = await self._post([{
            'channel': '/meta/subscribe',
            'clientId': self.client_id,
            'subscription': self.subscription,
            'id': self._next_id(),
        }])
        if not subscribed or not subscribed[0].get('successful'):
            raise ChannelError(f"Subscribe failed: {subscribed[0] if subscribed else 'empty'}")

        self.running = True
        self.connected = True
        logger.info(f"✓ Subscribed to channel: {self.subscription}")

    async def publish(self, event: str, payload: dict):
        if not self.connected:
            raise ChannelError(f"{self.topic}: not connected")
        replies = await self._post([{
            'channel': self.subscription,
            'clientId': self.client_id,
            'data': {'event': event, 'payload': payload},
            'id': self._next_id(),
        }])
        if not replies or not replies[0].get('successful'):
            raise ChannelError(f"Publish failed: {replies[0] if replies else 'empty'}")

    async def listen(self):
        try:
            while self.running:
                messages = await self._post([{
                    'channel': '/meta/connect',
                    'clientId': self.client_id,
                    'connectionType': 'long-polling',
                    'id': self._next_id(),
                }], timeout=self.poll_timeout)

                for message in messages:
                    msg_channel = message.get('channel')
                    if msg_channel == '/meta/connect':
                        if not message.get('successful'):
                            raise ChannelError(f"Connect rejected: {message.get('error')}")
                    elif msg_channel == self.subscription and 'data' in message:
                        await self.handle_message(message['data'])
                    elif msg_channel and msg_channel.startswith('/meta/'):
                        logger.debug(f"Meta message: {message}")
        except ChannelError:
            if self.running:
                raise
        finally:
            self.connected = False

    async def close(self):
        was_connected = self.connected
        self.running = False
        self.connected = False
        if self.session and not self.session.closed:
            if was_connected and self.client_id:
                try:
                    await self._post([{
                        'channel': '/meta/disconnect',
                        'clientId': self.client_id,
                        'id': self._next_id(),
                    }], timeout=5)
                except ChannelError as e:
                    logger.debug(f"Disconnect failed: {e}")
            await self.session.close()
        logger.info(f"Disconnected from CometD endpoint: {self.endpoint}")
