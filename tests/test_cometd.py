import asyncio
import unittest

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from print_bridge.realtime.channel import EVENT_PRINT_JOB, JOBS_TOPIC, ChannelError, ReconnectPolicy, maintain_session
from print_bridge.realtime.cometd import CometDChannel
from print_bridge.realtime.hub import CHANNEL_PREFIX, Hub, LocalChannel, add_routes

from fakes import wait_until


class TestBayeuxEndpoint(AioHTTPTestCase):

    async def get_application(self):
        self.hub = Hub()
        app = web.Application()
        add_routes(app, self.hub, poll_timeout=0.2)
        return app

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.tasks = []
        self.channels = []

    async def asyncTearDown(self):
        for channel in self.channels:
            await channel.close()
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        await super().asyncTearDown()

    async def remote(self, topic=JOBS_TOPIC, listen=True):
        channel = CometDChannel(str(self.server.make_url('/cometd')), topic, poll_timeout=5)
        self.channels.append(channel)
        await channel.connect()
        if listen:
            self.tasks.append(asyncio.create_task(channel.listen()))
        return channel

    async def local(self, topic=JOBS_TOPIC):
        channel = LocalChannel(self.hub, topic, poll_timeout=0.1)
        self.channels.append(channel)
        await channel.connect()
        self.tasks.append(asyncio.create_task(channel.listen()))
        return channel

    async def test_local_to_remote(self):
        remote = await self.remote()
        received = []
        remote.on(EVENT_PRINT_JOB, received.append)
        local = await self.local()

        await local.publish(EVENT_PRINT_JOB, {'jobId': 'j1', 'deviceId': 'B1'})
        await wait_until(lambda: received)
        self.assertEqual(received[0], {'jobId': 'j1', 'deviceId': 'B1'})

    async def test_remote_to_local(self):
        remote = await self.remote()
        local = await self.local()
        received = []
        local.on(EVENT_PRINT_JOB, received.append)

        await remote.publish(EVENT_PRINT_JOB, {'jobId': 'j2'})
        await wait_until(lambda: received)
        self.assertEqual(received[0]['jobId'], 'j2')

    async def test_sender_does_not_receive_own_message(self):
        sender = await self.remote()
        other = await self.remote()
        own, seen = [], []
        sender.on(EVENT_PRINT_JOB, own.append)
        other.on(EVENT_PRINT_JOB, seen.append)

        await sender.publish(EVENT_PRINT_JOB, {'jobId': 'j3'})
        await wait_until(lambda: seen)
        await asyncio.sleep(0.3)
        self.assertEqual(own, [])

    async def test_other_topics_not_delivered(self):
        remote = await self.remote(topic='print_bridge_presence')
        received = []
        remote.on(EVENT_PRINT_JOB, received.append)
        local = await self.local()
        await local.publish(EVENT_PRINT_JOB, {'jobId': 'j4'})
        await asyncio.sleep(0.3)
        self.assertEqual(received, [])

    async def test_unknown_client_told_to_handshake(self):
        resp = await self.client.post('/cometd', json=[{
            'channel': '/meta/connect', 'clientId': 'nope', 'connectionType': 'long-polling', 'id': '1',
        }])
        reply = (await resp.json())[0]
        self.assertFalse(reply['successful'])
        self.assertEqual(reply['advice'], {'reconnect': 'handshake'})
        self.assertEqual(reply['id'], '1')

    async def test_subscribe_outside_prefix_rejected(self):
        resp = await self.client.post('/cometd', json={'channel': '/meta/handshake', 'version': '1.0'})
        client_id = (await resp.json())[0]['clientId']
        resp = await self.client.post('/cometd', json=[{
            'channel': '/meta/subscribe', 'clientId': client_id, 'subscription': '/other/topic',
        }])
        reply = (await resp.json())[0]
        self.assertFalse(reply['successful'])
        self.assertTrue(reply['error'].startswith('403'))

    async def test_publish_reaches_subscriber_as_bayeux_message(self):
        local = await self.local()
        received = []
        local.on(EVENT_PRINT_JOB, received.append)
        resp = await self.client.post('/cometd', json={'channel': '/meta/handshake', 'version': '1.0'})
        client_id = (await resp.json())[0]['clientId']
        resp = await self.client.post('/cometd', json=[{
            'channel': CHANNEL_PREFIX + JOBS_TOPIC, 'clientId': client_id,
            'data': {'event': EVENT_PRINT_JOB, 'payload': {'jobId': 'j5'}},
        }])
        self.assertTrue((await resp.json())[0]['successful'])
        await wait_until(lambda: received)

    async def test_invalid_json(self):
        resp = await self.client.post('/cometd', data='{nope')
        self.assertEqual(resp.status, 400)

    async def test_dropped_session_raises(self):
        remote = await self.remote(listen=False)
        self.hub.drop(remote.client_id)
        with self.assertRaises(ChannelError):
            await asyncio.wait_for(remote.listen(), timeout=3)
        self.assertFalse(remote.connected)

    async def test_maintain_session_reconnects(self):
        remote = CometDChannel(str(self.server.make_url('/cometd')), JOBS_TOPIC, poll_timeout=5)
        self.channels.append(remote)
        stopping = asyncio.Event()
        connects = []

        async def on_connect():
            connects.append(remote.client_id)

        policy = ReconnectPolicy(base=0.05, factor=1, cap=0.05, max_attempts=3)
        self.tasks.append(asyncio.create_task(maintain_session(remote, policy, stopping, on_connect)))
        await wait_until(lambda: connects)
        self.hub.drop(connects[0])
        await wait_until(lambda: len(connects) == 2)
        self.assertNotEqual(connects[0], connects[1])
        stopping.set()


class TestReconnectPolicy(unittest.TestCase):

    def test_backoff(self):
        policy = ReconnectPolicy()
        self.assertEqual([policy.delay(n) for n in range(1, 6)], [2, 4, 8, 10, 10])

    def test_gives_up(self):
        class Unreachable(LocalChannel):
            async def connect(self):
                raise ChannelError('refused')

        async def run():
            return await maintain_session(Unreachable(Hub(), JOBS_TOPIC),
                                          ReconnectPolicy(base=0.01, cap=0.01, max_attempts=2),
                                          asyncio.Event())
        self.assertFalse(asyncio.run(run()))

    def test_stop_during_backoff_prevents_reconnect(self):
        class Unreachable(LocalChannel):
            connects = 0

            async def connect(self):
                Unreachable.connects += 1
                raise ChannelError('refused')

        async def run():
            stopping = asyncio.Event()
            task = asyncio.create_task(maintain_session(
                Unreachable(Hub(), JOBS_TOPIC), ReconnectPolicy(base=0.3, factor=1, cap=0.3, max_attempts=5),
                stopping))
            await wait_until(lambda: Unreachable.connects == 1)
            stopping.set()
            result = await asyncio.wait_for(task, timeout=1)
            await asyncio.sleep(0.5)
            return result

        self.assertTrue(asyncio.run(run()))
        self.assertEqual(Unreachable.connects, 1)


if __name__ == '__main__':
    unittest.main()
