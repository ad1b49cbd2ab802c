import asyncio
import unittest

from print_bridge.realtime.channel import PRESENCE_TOPIC
from print_bridge.realtime.hub import Hub, LocalChannel
from print_bridge.realtime.presence import ROLE_PRINT_BRIDGE, PresenceDirectory

from fakes import wait_until


class TestPresenceDirectory(unittest.TestCase):

    def setUp(self):
        self.now = [1000.0]
        self.presence = PresenceDirectory(stale_after=120, clock=lambda: self.now[0])

    def beat(self, device_id, role=ROLE_PRINT_BRIDGE, at=None):
        self.presence.apply_heartbeat({'deviceId': device_id, 'role': role, 'online': True},
                                      received_at=at)

    def test_candidates_most_recent_first(self):
        self.beat('B1', at=950.0)
        self.beat('B2', at=990.0)
        self.assertEqual([r.device_id for r in self.presence.candidates()], ['B2', 'B1'])

    def test_stale_heartbeat_excluded(self):
        self.beat('B1', at=870.0)       # 130 s old
        self.beat('B2', at=900.0)
        self.assertEqual([r.device_id for r in self.presence.candidates()], ['B2'])

    def test_other_roles_excluded(self):
        self.beat('D1', role='dispatcher')
        self.assertEqual(self.presence.candidates(), [])
        self.assertEqual(len(self.presence.snapshot()), 1)

    def test_leave_removes_candidate(self):
        self.beat('B1')
        left = []
        self.presence.subscribe(on_leave=left.append)
        self.presence.apply_leave({'deviceId': 'B1'})
        self.assertEqual(self.presence.candidates(), [])
        self.assertEqual(left[0].device_id, 'B1')

    def test_leave_for_unknown_device_ignored(self):
        self.presence.apply_leave({'deviceId': 'ghost'})
        self.assertEqual(self.presence.records, {})

    def test_join_fires_once_until_stale(self):
        joined = []
        self.presence.subscribe(on_join=joined.append)
        self.beat('B1')
        self.beat('B1')
        self.assertEqual(len(joined), 1)
        self.now[0] += 200
        self.beat('B1')
        self.assertEqual(len(joined), 2)

    def test_heartbeat_without_device_ignored(self):
        self.presence.apply_heartbeat({'role': ROLE_PRINT_BRIDGE})
        self.assertEqual(self.presence.records, {})

    def test_first_heartbeat_marks_synced(self):
        synced = []
        self.presence.subscribe(on_sync=synced.append)
        self.assertFalse(self.presence.synced.is_set())
        self.beat('B1')
        self.assertTrue(self.presence.synced.is_set())
        self.assertEqual([r.device_id for r in synced[0]], ['B1'])

    def test_failing_callback_does_not_break_directory(self):
        def boom(record):
            raise RuntimeError('boom')
        self.presence.subscribe(on_join=boom)
        self.beat('B1')
        self.assertEqual(len(self.presence.candidates()), 1)

    def test_to_dict(self):
        self.beat('B1', at=1000.0)
        self.assertEqual(self.presence.candidates()[0].to_dict(), {
            'deviceId': 'B1', 'role': ROLE_PRINT_BRIDGE, 'online': True, 'lastHeartbeatAt': 1000000,
        })


class TestPresenceOverHub(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.hub = Hub()
        self.bridge_channel = LocalChannel(self.hub, PRESENCE_TOPIC, poll_timeout=0.1)
        self.dispatcher_channel = LocalChannel(self.hub, PRESENCE_TOPIC, poll_timeout=0.1)
        await self.bridge_channel.connect()
        await self.dispatcher_channel.connect()
        self.bridge = PresenceDirectory(device_id='B1')
        self.dispatcher = PresenceDirectory()
        await self.bridge.attach(self.bridge_channel, request_sync=False)
        await self.dispatcher.attach(self.dispatcher_channel, request_sync=False)
        self.tasks = [asyncio.create_task(self.bridge_channel.listen()),
                      asyncio.create_task(self.dispatcher_channel.listen())]

    async def asyncTearDown(self):
        await self.bridge_channel.close()
        await self.dispatcher_channel.close()
        await asyncio.gather(*self.tasks, return_exceptions=True)

    async def test_sync_request_is_answered(self):
        await self.dispatcher.sync_request()
        self.assertTrue(await self.dispatcher.wait_for_sync(2))
        self.assertEqual([r.device_id for r in self.dispatcher.candidates()], ['B1'])

    async def test_wait_for_sync_times_out_without_bridges(self):
        await self.bridge_channel.close()
        await self.dispatcher.sync_request()
        self.assertFalse(await self.dispatcher.wait_for_sync(0.2))

    async def test_heartbeat_and_leave(self):
        await self.bridge.heartbeat()
        await wait_until(lambda: self.dispatcher.candidates())
        await self.bridge.leave()
        await wait_until(lambda: not self.dispatcher.candidates())

    async def test_own_heartbeat_not_echoed(self):
        await self.bridge.heartbeat()
        await wait_until(lambda: self.dispatcher.candidates())
        self.assertEqual(self.bridge.records, {})


if __name__ == '__main__':
    unittest.main()
