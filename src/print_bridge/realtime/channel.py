"""
Realtime publish/subscribe channel.

A Channel is one session on one topic. Messages on the wire are
{"event": <name>, "payload": {...}, "sender": <client id>} and a session never
receives its own messages.

Topics and events:
  print_bridge_presence  heartbeat | leave | sync_request
  print_bridge_jobs      print_job | print_job_response

Implementations: LocalChannel (in-process hub, realtime/hub.py) and
CometDChannel (Bayeux long-polling over HTTP, realtime/cometd.py).
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

PRESENCE_TOPIC = 'print_bridge_presence'
JOBS_TOPIC = 'print_bridge_jobs'

EVENT_HEARTBEAT = 'heartbeat'
EVENT_LEAVE = 'leave'
EVENT_SYNC_REQUEST = 'sync_request'
EVENT_PRINT_JOB = 'print_job'
EVENT_PRINT_JOB_RESPONSE = 'print_job_response'


class ChannelError(Exception):
    """The realtime session is down; the caller should reconnect."""


class Channel:
    """Base class for a session on one topic."""

    def __init__(self, topic: str):
        self.topic = topic
        self.handlers: Dict[str, List[Callable]] = {}
        self.connected = False

    def on(self, event: str, handler: Callable):
        """Register a handler for an event; sync and async handlers are both accepted."""
        self.handlers.setdefault(event, []).append(handler)

    async def connect(self):
        raise NotImplementedError

    async def publish(self, event: str, payload: dict):
        raise NotImplementedError

    async def listen(self):
        """Deliver messages until close(); raise ChannelError if the session drops."""
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def handle_message(self, message: dict):
        """Process an incoming message."""
        event = message.get('event')
        payload = message.get('payload') or {}
        for handler in self.handlers.get(event, []):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(payload)
                else:
                    handler(payload)
            except Exception as e:
                logger.error(f"Handler for {self.topic}/{event} failed: {e}", exc_info=True)


@dataclass
class ReconnectPolicy:
    """Exponential backoff: base * factor^(n-1), capped, for at most max_attempts tries."""

    base: float = 2.0
    factor: float = 2.0
    cap: float = 10.0
    max_attempts: int = 10

    def delay(self, attempt: int) -> float:
        return min(self.base * self.factor ** max(attempt - 1, 0), self.cap)

    @classmethod
    def from_config(cls, config) -> 'ReconnectPolicy':
        return cls(
            base=float(config.get('bridge.reconnect_base_seconds', 2.0)),
            factor=float(config.get('bridge.reconnect_factor', 2.0)),
            cap=float(config.get('bridge.reconnect_cap_seconds', 10.0)),
            max_attempts=int(config.get('bridge.reconnect_max_attempts', 10)),
        )


async def maintain_session(channel: Channel, policy: ReconnectPolicy, stopping: asyncio.Event,
                           on_connect: Optional[Callable[[], Awaitable]] = None) -> bool:
    """
    Keep a channel connected until `stopping` is set.

    The attempt counter resets after every successful connect. Returns False
    when the reconnect budget is exhausted.
    """
    attempt = 0
    while not stopping.is_set():
        try:
            await channel.connect()
            attempt = 0
            logger.info(f"✓ Channel {channel.topic} connected")
            if on_connect:
                await on_connect()
            await channel.listen()
            if stopping.is_set():
                break
            raise ChannelError('session ended')
        except ChannelError as e:
            if stopping.is_set():
                break
            attempt += 1
            if attempt > policy.max_attempts:
                logger.error(f"Channel {channel.topic}: giving up after {policy.max_attempts} reconnect attempts")
                return False
            delay = policy.delay(attempt)
            logger.warning(f"Channel {channel.topic} lost ({e}); reconnect {attempt}/{policy.max_attempts} in {delay:.0f}s")
            try:
                await asyncio.wait_for(stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
    return True
