"""
Receipt encoder.

Turns a list of receipt lines into a printer command buffer for one of the two
supported dialects:

  escpos   — standard ESC/POS (Bematech MP-4200 TH, Epson and compatibles)
  escbema  — legacy ESC/BEMA (older Bematech MP-20 / MP-40 / MP-2000 models)

Text is encoded to code page 850. Characters the code page cannot represent,
and control characters, are printed as '?'.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

ESCPOS = 'escpos'
ESCBEMA = 'escbema'
DIALECTS = (ESCPOS, ESCBEMA)
PRIMARY_DIALECT = ESCPOS

CODEPAGE = 'cp850'
REPLACEMENT_BYTE = b'?'

ESC = 0x1B
GS = 0x1D
LF = 0x0A

ALIGNMENTS = {'left': 0x00, 'center': 0x01, 'right': 0x02}
BARCODE_TYPES = {'CODE128': 0x49, 'CODE39': 0x45, 'EAN13': 0x43}

# Command tables per dialect
_COMMANDS = {
    ESCPOS: {
        'init': bytes([ESC, 0x40, ESC, 0x74, 0x02]),   # ESC @, ESC t 2 (PC850)
        'align': lambda n: bytes([ESC, 0x61, n]),
        'bold_on': bytes([ESC, 0x45, 0x01]),
        'bold_off': bytes([ESC, 0x45, 0x00]),
        'double_on': bytes([GS, 0x21, 0x11]),
        'double_off': bytes([GS, 0x21, 0x00]),
        'cut': bytes([GS, 0x56, 0x00]),
    },
    ESCBEMA: {
        'init': bytes([ESC, 0x40, ESC, 0x55]),
        'align': lambda n: bytes([ESC, 0x6A, n]),
        'bold_on': bytes([ESC, 0x45]),
        'bold_off': bytes([ESC, 0x46]),
        'double_on': bytes([ESC, 0x21, 0x30]),
        'double_off': bytes([ESC, 0x21, 0x00]),
        'cut': bytes([ESC, 0x6D]),
    },
}


@dataclass
class Barcode:
    data: str
    type: str = 'CODE128'      # CODE128 | CODE39 | EAN13


@dataclass
class QRCode:
    data: str
    size: int = 6              # module size 1-16


@dataclass
class LineSpec:
    """One printed line plus the optional barcode / QR block below it."""

    text: str = ''
    align: str = 'left'        # left | center | right
    bold: bool = False
    double_size: bool = False
    barcode: Optional[Barcode] = None
    qrcode: Optional[QRCode] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'LineSpec':
        """Build a LineSpec from the JSON shape used by document generators."""
        barcode = data.get('barcode')
        qrcode = data.get('qrcode')
        align = (data.get('align') or 'left').lower()
        if align not in ALIGNMENTS:
            raise ValueError(f"Unknown alignment: {align!r}")
        return cls(
            text=str(data.get('text') or ''),
            align=align,
            bold=bool(data.get('bold', False)),
            double_size=bool(data.get('doubleSize', data.get('double_size', False))),
            barcode=Barcode(barcode['data'], barcode.get('type', 'CODE128')) if barcode else None,
            qrcode=QRCode(qrcode['data'], int(qrcode.get('size', 6))) if qrcode else None,
        )


def encode_text(text: str) -> bytes:
    """Encode text to CP850, degrading anything unprintable to '?'."""
    out = bytearray()
    for ch in text:
        if ord(ch) < 0x20 or ord(ch) == 0x7F:
            out += REPLACEMENT_BYTE
            continue
        out += ch.encode(CODEPAGE, errors='replace')
    return bytes(out)


def barcode_block(barcode: Barcode) -> bytes:
    """GS k barcode with height, module width and HRI text below."""
    kind = barcode.type.upper()
    if kind not in BARCODE_TYPES:
        raise ValueError(f"Unsupported barcode type: {barcode.type!r}")
    data = encode_text(barcode.data)
    if kind == 'CODE128' and not data.startswith(b'{'):
        data = b'{B' + data
    data = data[:255]
    return (
        bytes([GS, 0x68, 50])          # height 50 dots
        + bytes([GS, 0x77, 0x02])      # module width
        + bytes([GS, 0x48, 0x02])      # HRI below
        + bytes([GS, 0x6B, BARCODE_TYPES[kind], len(data)])
        + data
    )


def qrcode_block(qrcode: QRCode) -> bytes:
    """GS ( k model 2 QR code: model, size, error correction M, store, print."""
    data = encode_text(qrcode.data)
    size = max(1, min(16, int(qrcode.size)))
    stored = len(data) + 3
    p_l, p_h = stored % 256, stored // 256
    return (
        bytes([GS, 0x28, 0x6B, 0x04, 0x00, 0x31, 0x41, 0x32, 0x00])
        + bytes([GS, 0x28, 0x6B, 0x03, 0x00, 0x31, 0x43, size])
        + bytes([GS, 0x28, 0x6B, 0x03, 0x00, 0x31, 0x45, 0x31])
        + bytes([GS, 0x28, 0x6B, p_l, p_h, 0x31, 0x50, 0x30]) + data
        + bytes([GS, 0x28, 0x6B, 0x03, 0x00, 0x31, 0x51, 0x30])
    )


def encode(lines: Iterable[LineSpec], dialect: str = PRIMARY_DIALECT) -> bytes:
    """
    Build the full command buffer for a receipt.

    Per line: alignment, emphasis on, text, LF, barcode / QR block, emphasis
    off. The receipt ends with three feeds and a full cut.
    """
    if dialect not in _COMMANDS:
        raise ValueError(f"Unknown dialect: {dialect!r}")
    cmd = _COMMANDS[dialect]

    buf = bytearray(cmd['init'])
    for line in lines:
        if isinstance(line, dict):
            line = LineSpec.from_dict(line)
        buf += cmd['align'](ALIGNMENTS.get(line.align, 0x00))
        if line.bold:
            buf += cmd['bold_on']
        if line.double_size:
            buf += cmd['double_on']

        buf += encode_text(line.text)
        buf.append(LF)

        if line.barcode:
            buf += cmd['align'](ALIGNMENTS['center'])
            buf += barcode_block(line.barcode)
            buf += bytes([LF, LF])
        if line.qrcode:
            buf += cmd['align'](ALIGNMENTS['center'])
            buf += qrcode_block(line.qrcode)
            buf += bytes([LF, LF])

        if line.bold:
            buf += cmd['bold_off']
        if line.double_size:
            buf += cmd['double_off']

    buf += bytes([LF, LF, LF])
    buf += cmd['cut']
    logger.debug(f"Encoded receipt: {len(buf)} bytes ({dialect})")
    return bytes(buf)


def sample_receipt(device_id: str = '', title: str = 'PRINT BRIDGE') -> List[LineSpec]:
    """A short receipt exercising alignment, emphasis and a QR code."""
    return [
        LineSpec(text=title, align='center', bold=True, double_size=True),
        LineSpec(text='Teste de impressão', align='center'),
        LineSpec(text='-' * 32),
        LineSpec(text=f'Dispositivo: {device_id or "-"}'),
        LineSpec(text='Acentuação: áéíóú ãõ ç ÁÉÍÓÚ'),
        LineSpec(text='-' * 32),
        LineSpec(text='OK', align='center', qrcode=QRCode(data=device_id or 'print-bridge', size=5)),
    ]
