import unittest

from print_bridge.printers.escpos import (
    ESCBEMA, Barcode, LineSpec, QRCode, encode, encode_text, sample_receipt,
)

ESC = b'\x1b'
GS = b'\x1d'


class TestEncodeText(unittest.TestCase):

    def test_cp850_accents(self):
        self.assertEqual(encode_text('ção'), b'\x87\xc6o')

    def test_unmappable_becomes_question_mark(self):
        self.assertEqual(encode_text('a€b'), b'a?b')
        self.assertEqual(encode_text('日本'), b'??')

    def test_control_characters_replaced(self):
        self.assertEqual(encode_text('a\x1bb\nc'), b'a?b?c')


class TestEncode(unittest.TestCase):

    def test_single_line_layout(self):
        data = encode([LineSpec(text='Hi', align='center', bold=True)])
        expected = (
            ESC + b'@' + ESC + b't\x02'
            + ESC + b'a\x01'
            + ESC + b'E\x01'
            + b'Hi\n'
            + ESC + b'E\x00'
            + b'\n\n\n'
            + GS + b'V\x00'
        )
        self.assertEqual(data, expected)

    def test_double_size_toggles(self):
        data = encode([LineSpec(text='BIG', double_size=True)])
        self.assertIn(GS + b'!\x11BIG\n' + GS + b'!\x00', data)

    def test_barcode_centered_with_two_feeds(self):
        data = encode([LineSpec(text='code', barcode=Barcode('123'))])
        start = data.index(b'code\n') + len(b'code\n')
        self.assertTrue(data[start:].startswith(ESC + b'a\x01' + GS + b'h'))
        self.assertIn(GS + b'k\x49\x05{B123\n\n', data)

    def test_qrcode_block(self):
        data = encode([LineSpec(qrcode=QRCode('abc', size=4))])
        self.assertIn(GS + b'(k\x03\x00\x31\x43\x04', data)
        self.assertIn(GS + b'(k\x06\x00\x31\x50\x30abc', data)
        self.assertIn(GS + b'(k\x03\x00\x31\x51\x30\n\n', data)

    def test_escbema_commands(self):
        data = encode([LineSpec(text='x', align='right', bold=True)], dialect=ESCBEMA)
        self.assertTrue(data.startswith(ESC + b'@' + ESC + b'U'))
        self.assertIn(ESC + b'j\x02' + ESC + b'Ex\n' + ESC + b'F', data)
        self.assertTrue(data.endswith(b'\n\n\n' + ESC + b'm'))

    def test_accepts_dicts(self):
        data = encode([{'text': 'Total', 'align': 'right', 'doubleSize': True}])
        self.assertIn(ESC + b'a\x02' + GS + b'!\x11Total\n', data)

    def test_unknown_dialect(self):
        with self.assertRaises(ValueError):
            encode([], dialect='zpl')

    def test_unknown_alignment(self):
        with self.assertRaises(ValueError):
            LineSpec.from_dict({'text': 'x', 'align': 'justify'})

    def test_unsupported_barcode(self):
        with self.assertRaises(ValueError):
            encode([LineSpec(barcode=Barcode('1', type='PDF417'))])

    def test_sample_receipt_encodes(self):
        data = encode(sample_receipt('B1'))
        self.assertIn(b'Dispositivo: B1', data)


if __name__ == '__main__':
    unittest.main()
