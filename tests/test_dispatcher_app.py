import asyncio
import unittest
from unittest.mock import patch

from aiohttp.test_utils import AioHTTPTestCase

from print_bridge.dispatcher.app import create_app
from print_bridge.dispatcher.service import Dispatcher
from print_bridge.jobs.ledger import SqlJobLedger
from print_bridge.jobs.models import COMPLETED, PROCESSING, UNASSIGNED_DEVICE
from print_bridge.jobs.remote import HttpJobLedger, LedgerError
from print_bridge.printers.drivers import DiscoveredPrinter, TransportError
from print_bridge.realtime.channel import JOBS_TOPIC, PRESENCE_TOPIC
from print_bridge.realtime.hub import Hub, LocalChannel
from print_bridge.realtime.presence import PresenceDirectory
from print_bridge.utils import from_base64, to_base64

API_KEY = 'secret'
AUTH = {'Authorization': f'Bearer {API_KEY}'}
PAYLOAD = b'\x1b@\x1bt\x02Teste\n\x1dV\x00'


class TestDispatcherApp(AioHTTPTestCase):

    async def get_application(self):
        self.ledger = SqlJobLedger('sqlite://')
        hub = Hub()
        self.dispatcher = Dispatcher(
            self.ledger, PresenceDirectory(),
            jobs_channel=LocalChannel(hub, JOBS_TOPIC, poll_timeout=0.1),
            presence_channel=LocalChannel(hub, PRESENCE_TOPIC, poll_timeout=0.1),
            presence_sync_timeout=0.05,
        )
        return create_app(self.dispatcher, hub, api_key=API_KEY)

    async def test_health_is_public(self):
        resp = await self.client.get('/health')
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertEqual(body['status'], 'ok')
        self.assertEqual(body['bridgesOnline'], 0)
        self.assertEqual(body['jobs'], {'pending': 0, 'processing': 0, 'completed': 0, 'failed': 0})

    async def test_api_key_required(self):
        resp = await self.client.get('/api/print-jobs')
        self.assertEqual(resp.status, 401)
        resp = await self.client.get('/api/print-jobs', headers={'Authorization': 'Bearer nope'})
        self.assertEqual(resp.status, 401)

    async def test_submit_base64_payload(self):
        resp = await self.client.post('/api/print-jobs', headers=AUTH, json={
            'payload': to_base64(PAYLOAD), 'documentType': 'receipt', 'recordId': 'os-1',
        })
        self.assertEqual(resp.status, 201)
        body = await resp.json()
        self.assertTrue(body['success'])
        self.assertTrue(body['queued'])
        self.assertEqual(body['deviceId'], UNASSIGNED_DEVICE)

        job = self.ledger.get(body['jobId'])
        self.assertEqual(job.payload, PAYLOAD)
        self.assertEqual(job.document_type, 'receipt')

    async def test_submit_lines(self):
        resp = await self.client.post('/api/print-jobs', headers=AUTH, json={
            'lines': [{'text': 'Total', 'bold': True}],
        })
        self.assertEqual(resp.status, 201)
        job = self.ledger.get((await resp.json())['jobId'])
        self.assertIn(b'Total\n', job.payload)

    async def test_submit_rejects_bad_input(self):
        for body in ({}, {'payload': '!!!'}, {'payload': to_base64(PAYLOAD), 'documentType': 'invoice'},
                     {'lines': [{'text': 'x', 'align': 'justify'}]}):
            resp = await self.client.post('/api/print-jobs', headers=AUTH, json=body)
            self.assertEqual(resp.status, 400, body)
        resp = await self.client.post('/api/print-jobs', headers=AUTH, data='not json')
        self.assertEqual(resp.status, 400)
        self.assertEqual(self.ledger.list_jobs(), [])

    async def test_submit_rejects_non_object_lines(self):
        for lines in (['x'], [{'text': 'ok'}, 3], 'Total'):
            resp = await self.client.post('/api/print-jobs', headers=AUTH, json={'lines': lines})
            self.assertEqual(resp.status, 400, lines)
            self.assertEqual((await resp.json())['error'], 'lines must be a list of objects')
        self.assertEqual(self.ledger.list_jobs(), [])

    async def test_submit_reports_ledger_failure(self):
        with patch.object(self.ledger, 'most_recent_target', side_effect=RuntimeError('db down')):
            resp = await self.client.post('/api/print-jobs', headers=AUTH, json={'payload': to_base64(PAYLOAD)})
        self.assertEqual(resp.status, 500)
        body = await resp.json()
        self.assertFalse(body['success'])
        self.assertEqual(body['error'], 'db down')

    async def test_list_and_get(self):
        job = self.ledger.create(PAYLOAD, 'B1')
        self.ledger.create(PAYLOAD, 'B2')

        resp = await self.client.get('/api/print-jobs', headers=AUTH, params={'deviceId': 'B1'})
        jobs = (await resp.json())['jobs']
        self.assertEqual([j['jobId'] for j in jobs], [job.job_id])

        resp = await self.client.get(f'/api/print-jobs/{job.job_id}', headers=AUTH)
        self.assertEqual(from_base64((await resp.json())['job']['payload']), PAYLOAD)

        resp = await self.client.get('/api/print-jobs/missing', headers=AUTH)
        self.assertEqual(resp.status, 404)
        resp = await self.client.get('/api/print-jobs', headers=AUTH, params={'status': 'lost'})
        self.assertEqual(resp.status, 400)

    async def test_presence(self):
        self.dispatcher.presence.apply_heartbeat({'deviceId': 'B1', 'role': 'print-bridge'})
        resp = await self.client.get('/api/presence', headers=AUTH)
        body = await resp.json()
        self.assertEqual(body['candidates'], ['B1'])
        self.assertEqual(body['records'][0]['deviceId'], 'B1')

    async def test_ledger_endpoints(self):
        job = self.ledger.create(PAYLOAD)

        resp = await self.client.post('/api/ledger/claim', headers=AUTH, json={'deviceId': 'B1'})
        self.assertEqual((await resp.json())['job']['deviceId'], 'B1')

        resp = await self.client.post(f'/api/ledger/{job.job_id}/start', headers=AUTH, json={'deviceId': 'B1'})
        self.assertEqual((await resp.json())['job']['status'], PROCESSING)
        resp = await self.client.post(f'/api/ledger/{job.job_id}/start', headers=AUTH, json={'deviceId': 'B1'})
        self.assertIsNone((await resp.json())['job'])

        resp = await self.client.post(f'/api/ledger/{job.job_id}/attempt', headers=AUTH)
        self.assertEqual((await resp.json())['attempts'], 1)

        resp = await self.client.post(f'/api/ledger/{job.job_id}/status', headers=AUTH,
                                      json={'status': COMPLETED})
        self.assertTrue((await resp.json())['updated'])
        self.assertEqual(self.ledger.get(job.job_id).status, COMPLETED)

    async def test_ledger_endpoint_validation(self):
        resp = await self.client.post('/api/ledger/claim', headers=AUTH, json={})
        self.assertEqual(resp.status, 400)
        resp = await self.client.post('/api/ledger/missing/attempt', headers=AUTH)
        self.assertEqual(resp.status, 404)
        resp = await self.client.post('/api/ledger/x/status', headers=AUTH, json={'status': 'pending'})
        self.assertEqual(resp.status, 400)

    async def test_network_print_relay(self):
        with patch('print_bridge.dispatcher.app.send_raw_tcp', return_value=len(PAYLOAD)) as send:
            resp = await self.client.post('/api/network-print', headers=AUTH, json={
                'ip': '192.168.0.50', 'port': 9100, 'data': to_base64(PAYLOAD),
            })
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.json(), {'success': True, 'bytes': len(PAYLOAD)})
        send.assert_called_once_with('192.168.0.50', 9100, PAYLOAD)

    async def test_network_print_failure(self):
        with patch('print_bridge.dispatcher.app.send_raw_tcp', side_effect=TransportError('refused')):
            resp = await self.client.post('/api/network-print', headers=AUTH, json={
                'ip': '192.168.0.50', 'data': to_base64(PAYLOAD),
            })
        self.assertEqual(resp.status, 502)
        self.assertEqual((await resp.json())['error'], 'refused')

        resp = await self.client.post('/api/network-print', headers=AUTH, json={'ip': '10.0.0.1'})
        self.assertEqual(resp.status, 400)

    async def test_network_printer_discovery(self):
        found = [DiscoveredPrinter('192.168.15.200', 9100, 'ESC/POS thermal printer (192.168.15.200)', 12)]
        with patch('print_bridge.dispatcher.app.discover_printers', return_value=found) as scan:
            resp = await self.client.get('/api/network-printers', headers=AUTH, params={'subnet': '192.168.15'})
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        scan.assert_called_once_with(['192.168.15'])
        self.assertEqual(body['total'], 1)
        self.assertEqual(body['printers'][0]['ip'], '192.168.15.200')
        self.assertEqual(body['printers'][0]['responseTime'], 12)

    async def test_network_printer_discovery_rejects_bad_subnet(self):
        with patch('print_bridge.dispatcher.app.discover_printers') as scan:
            resp = await self.client.get('/api/network-printers', headers=AUTH, params={'subnet': '192.168.1.0/24'})
        self.assertEqual(resp.status, 400)
        scan.assert_not_called()


class TestHttpJobLedger(AioHTTPTestCase):
    """The REST ledger client against a live dispatcher app."""

    async def get_application(self):
        self.ledger = SqlJobLedger('sqlite://')
        hub = Hub()
        dispatcher = Dispatcher(self.ledger, PresenceDirectory(), presence_sync_timeout=0.05)
        return create_app(dispatcher, hub, api_key=API_KEY)

    def remote(self, api_key=API_KEY):
        return HttpJobLedger(str(self.server.make_url('')), api_key=api_key)

    async def call(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def test_full_job_cycle(self):
        job = self.ledger.create(PAYLOAD)
        remote = self.remote()

        claimed = await self.call(remote.claim_next_for, 'B1')
        self.assertEqual(claimed.job_id, job.job_id)
        self.assertEqual(claimed.payload, PAYLOAD)

        started = await self.call(remote.start_processing, job.job_id, 'B1')
        self.assertEqual(started.status, PROCESSING)
        self.assertIsNone(await self.call(remote.start_processing, job.job_id, 'B1'))

        self.assertEqual(await self.call(remote.record_attempt, job.job_id), 1)
        self.assertTrue(await self.call(remote.update_status, job.job_id, COMPLETED))

        fetched = await self.call(remote.get, job.job_id)
        self.assertEqual(fetched.status, COMPLETED)
        self.assertEqual(len(await self.call(remote.list_jobs)), 1)

    async def test_nothing_to_claim(self):
        self.assertIsNone(await self.call(self.remote().claim_next_for, 'B1'))
        self.assertIsNone(await self.call(self.remote().get, 'missing'))

    async def test_missing_job_attempt(self):
        with self.assertRaises(KeyError):
            await self.call(self.remote().record_attempt, 'missing')

    async def test_bad_api_key(self):
        with self.assertRaises(LedgerError):
            await self.call(self.remote('wrong').claim_next_for, 'B1')


if __name__ == '__main__':
    unittest.main()
