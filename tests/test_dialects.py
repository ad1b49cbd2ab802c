import json
import os
import tempfile
import unittest

from print_bridge.printers.dialects import (
    DialectPreferences, alternate, convert_dialect, describe, payload_for, sniff_dialect,
)
from print_bridge.printers.escpos import ESCBEMA, ESCPOS, Barcode, LineSpec, QRCode, encode, sample_receipt

ESC = b'\x1b'
GS = b'\x1d'


class TestConvertDialect(unittest.TestCase):

    def setUp(self):
        self.lines = [
            LineSpec(text='Title', align='center', bold=True, double_size=True),
            LineSpec(text='Item 1  10,00'),
            LineSpec(text='Total', align='right', bold=True),
            LineSpec(text='code', barcode=Barcode('ABC-123')),
            LineSpec(text='qr', qrcode=QRCode('https://example.com/os/42', size=6)),
        ]

    def test_round_trip_reproduces_encoder_output(self):
        original = encode(self.lines)
        there = convert_dialect(original, ESCPOS, ESCBEMA)
        back = convert_dialect(there, ESCBEMA, ESCPOS)
        self.assertEqual(back, original)

    def test_round_trip_from_escbema(self):
        original = encode(self.lines, dialect=ESCBEMA)
        back = convert_dialect(convert_dialect(original, ESCBEMA, ESCPOS), ESCPOS, ESCBEMA)
        self.assertEqual(back, original)

    def test_same_dialect_is_identity(self):
        data = encode(self.lines)
        self.assertEqual(convert_dialect(data, ESCPOS, ESCPOS), data)

    def test_opcode_mapping(self):
        self.assertEqual(convert_dialect(ESC + b'@', ESCPOS, ESCBEMA), ESC + b'@' + ESC + b'U')
        self.assertEqual(convert_dialect(ESC + b'a\x01', ESCPOS, ESCBEMA), ESC + b'j\x01')
        self.assertEqual(convert_dialect(ESC + b'E\x01', ESCPOS, ESCBEMA), ESC + b'E')
        self.assertEqual(convert_dialect(ESC + b'E\x00', ESCPOS, ESCBEMA), ESC + b'F')
        self.assertEqual(convert_dialect(GS + b'!\x11', ESCPOS, ESCBEMA), ESC + b'!\x30')
        self.assertEqual(convert_dialect(GS + b'V\x00', ESCPOS, ESCBEMA), b'\n\n\n' + ESC + b'm')
        self.assertEqual(convert_dialect(GS + b'VA\x10', ESCPOS, ESCBEMA), b'\n\n\n' + ESC + b'm')

    def test_lone_bema_cut_maps_back(self):
        self.assertEqual(convert_dialect(ESC + b'm', ESCBEMA, ESCPOS), GS + b'V\x00')

    def test_barcode_block_untouched(self):
        block = GS + b'k\x49\x03' + b'E\x01a'
        self.assertEqual(convert_dialect(block, ESCPOS, ESCBEMA), block)

    def test_qr_block_untouched(self):
        # payload bytes that look like opcodes must not be rewritten
        data = ESC + b'a'
        block = GS + b'(k' + bytes([len(data) + 3, 0]) + b'1P0' + data
        self.assertEqual(convert_dialect(block, ESCPOS, ESCBEMA), block)

    def test_plain_text_passes_through(self):
        self.assertEqual(convert_dialect(b'hello\n', ESCPOS, ESCBEMA), b'hello\n')

    def test_unknown_dialect(self):
        with self.assertRaises(ValueError):
            convert_dialect(b'', ESCPOS, 'star')

    def test_payload_for(self):
        data = encode(self.lines)
        self.assertEqual(payload_for(data, ESCPOS), data)
        self.assertEqual(sniff_dialect(payload_for(data, ESCBEMA)), ESCBEMA)

    def test_alternate(self):
        self.assertEqual(alternate(ESCPOS), ESCBEMA)
        self.assertEqual(alternate(ESCBEMA), ESCPOS)


class TestDescribe(unittest.TestCase):

    def test_describe_escpos(self):
        info = describe(encode(sample_receipt('B1')))
        self.assertEqual(info['dialect'], ESCPOS)
        self.assertTrue(info['has_cut'])
        self.assertTrue(info['has_qrcode'])
        self.assertIn('Dispositivo: B1', info['text'])

    def test_describe_escbema_text(self):
        info = describe(encode([LineSpec(text='Olá', bold=True)], dialect=ESCBEMA))
        self.assertEqual(info['dialect'], ESCBEMA)
        self.assertIn('Olá', info['text'])

    def test_describe_unknown(self):
        self.assertIsNone(describe(b'raw text')['dialect'])


class TestDialectPreferences(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, 'prefs', 'dialects.json')

    def tearDown(self):
        self.tmp.cleanup()

    def test_default_is_escpos(self):
        self.assertEqual(DialectPreferences(self.path).get('B1'), ESCPOS)

    def test_save_persists_per_device_and_default(self):
        prefs = DialectPreferences(self.path)
        prefs.save(ESCBEMA, 'B1')
        reloaded = DialectPreferences(self.path)
        self.assertEqual(reloaded.get('B1'), ESCBEMA)
        self.assertEqual(reloaded.get('B2'), ESCBEMA)   # falls back to last global success
        with open(self.path) as f:
            stored = json.load(f)
        self.assertIn('last_updated', stored)

    def test_last_writer_wins(self):
        prefs = DialectPreferences(self.path)
        prefs.save(ESCBEMA, 'B1')
        prefs.save(ESCPOS, 'B1')
        self.assertEqual(DialectPreferences(self.path).get('B1'), ESCPOS)

    def test_corrupt_file_ignored(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            f.write('{not json')
        self.assertEqual(DialectPreferences(self.path).get('B1'), ESCPOS)

    def test_in_memory(self):
        prefs = DialectPreferences()
        prefs.save(ESCBEMA, 'B1')
        self.assertEqual(prefs.get('B1'), ESCBEMA)

    def test_rejects_unknown_dialect(self):
        with self.assertRaises(ValueError):
            DialectPreferences().save('zpl', 'B1')


if __name__ == '__main__':
    unittest.main()
