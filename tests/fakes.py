"""Test doubles shared by the test modules."""
import asyncio
import time

from print_bridge.printers.dialects import sniff_dialect
from print_bridge.printers.drivers import Transport, TransportError
from print_bridge.realtime.channel import Channel, ChannelError


class FakeTransport(Transport):
    """Records payloads; can fail, hang, or accept only one dialect."""
    transport_type = 'fake'

    def __init__(self, failures=0, slow_calls=0, delay=0.0, accepts=None, available=True):
        self.failures = failures
        self.slow_calls = slow_calls
        self.delay = delay
        self.accepts = accepts
        self.available = available
        self.calls = 0
        self.sent = []

    def is_available(self):
        return self.available

    def send(self, data):
        self.calls += 1
        if self.slow_calls > 0:
            self.slow_calls -= 1
            time.sleep(self.delay)
            return len(data)
        if self.failures > 0:
            self.failures -= 1
            raise TransportError(f'printer offline ({self.calls})')
        if self.accepts and sniff_dialect(data) != self.accepts:
            raise TransportError(f'printer rejected {sniff_dialect(data)} ({self.calls})')
        self.sent.append(data)
        return len(data)


async def wait_until(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    raise AssertionError('condition not met in time')


class RecordingChannel(Channel):
    """Channel that keeps published messages instead of sending them."""

    def __init__(self, topic='test', fail=False):
        super().__init__(topic)
        self.fail = fail
        self.published = []

    async def connect(self):
        self.connected = True

    async def publish(self, event, payload):
        if self.fail:
            raise ChannelError('session down')
        self.published.append((event, payload))

    async def listen(self):
        await asyncio.Event().wait()

    async def close(self):
        self.connected = False
