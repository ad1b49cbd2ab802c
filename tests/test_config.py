import json
import os
import tempfile
import unittest

import toml

from print_bridge.bridge.diagnostics import JobLog
from print_bridge.config.manager import ConfigManager
from print_bridge.jobs.models import JobOutcome


class TestConfigManager(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, 'config.toml')

    def tearDown(self):
        self.tmp.cleanup()

    def test_defaults_fill_missing_keys(self):
        with open(self.path, 'w') as f:
            f.write('[bridge]\ndispatcher_url = "http://print-server:8080"\n')
        config = ConfigManager(self.path)
        self.assertEqual(config.get('bridge.dispatcher_url'), 'http://print-server:8080')
        self.assertEqual(config.get('bridge.heartbeat_interval'), 45)
        self.assertEqual(config.get('presence.stale_after'), 120)
        self.assertEqual(config.get('missing.key', 'fallback'), 'fallback')

    def test_without_defaults(self):
        config = ConfigManager(self.path, use_defaults=False)
        self.assertIsNone(config.get('bridge.heartbeat_interval'))

    def test_set_saves_toml(self):
        config = ConfigManager(self.path)
        config.set('printer.network_host', '192.168.0.50')
        self.assertTrue(config.exists())
        self.assertEqual(toml.load(self.path), {'printer': {'network_host': '192.168.0.50'}})

    def test_set_without_save(self):
        config = ConfigManager(self.path)
        config.set('bridge.device_id', 'B1', save=False)
        self.assertFalse(config.exists())
        self.assertEqual(config.get('bridge.device_id'), 'B1')

    def test_update_merges_sections(self):
        config = ConfigManager(self.path)
        config.set('printer.transport', 'usb')
        config.update({'printer': {'device_path': 'COM3'}})
        reloaded = ConfigManager(self.path)
        self.assertEqual(reloaded.get('printer.transport'), 'usb')
        self.assertEqual(reloaded.get('printer.device_path'), 'COM3')

    def test_json_file(self):
        path = os.path.join(self.tmp.name, 'config.json')
        with open(path, 'w') as f:
            json.dump({'dispatcher': {'port': 9000}}, f)
        config = ConfigManager(path)
        self.assertEqual(config.get('dispatcher.port'), 9000)
        self.assertEqual(config.get('dispatcher.host'), '0.0.0.0')

    def test_save_without_file(self):
        config = ConfigManager(self.path)
        config.config_file = None
        with self.assertRaises(ValueError):
            config.save_config()


class TestJobLog(unittest.TestCase):

    def outcome(self, job_id, ok=True):
        if ok:
            return JobOutcome(job_id=job_id, device_id='B1', status='OK', attempts=1,
                              dialect_used='escpos', transport_type='usb', processing_time_ms=120)
        return JobOutcome(job_id=job_id, device_id='B1', status='ERROR', attempts=2, error='paper out')

    def test_newest_first_and_capped(self):
        log = JobLog(max_entries=3)
        for n in range(5):
            log.record(self.outcome(f'j{n}'))
        self.assertEqual([e['jobId'] for e in log.recent()], ['j4', 'j3', 'j2'])

    def test_persisted(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'log', 'job_log.json')
            JobLog(path).record(self.outcome('j1', ok=False))
            entry = JobLog(path).recent()[0]
            self.assertEqual(entry['status'], 'ERROR')
            self.assertEqual(entry['error'], 'paper out')
            self.assertEqual(entry['attempts'], 2)

    def test_clear(self):
        log = JobLog()
        log.record(self.outcome('j1'))
        log.clear()
        self.assertEqual(log.recent(), [])


if __name__ == '__main__':
    unittest.main()
