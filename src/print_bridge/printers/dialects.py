"""
Dialect conversion and per-device dialect preference.

convert_dialect() is a best-effort opcode rewrite between ESC/POS and the
legacy ESC/BEMA command set. It is only used on the fallback path: payloads are
always produced in ESC/POS and converted when a retry targets the other
dialect.

Recognized opcodes (ESC/POS  <->  ESC/BEMA):
  ESC @           <->  ESC @ ESC U            initialize
  ESC a n         <->  ESC j n                alignment
  ESC E 1 / 0     <->  ESC E / ESC F          bold on / off
  GS ! n          <->  ESC ! m                character size (see _SIZE_MAP)
  GS V ...        <->  LF LF LF ESC m         cut (ESC m alone also maps back)

GS k (barcode) and GS ( k (QR code) blocks are copied verbatim. Every other
byte passes through unchanged.
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from print_bridge.printers.escpos import ESCPOS, ESCBEMA, DIALECTS, PRIMARY_DIALECT, ESC, GS, LF

logger = logging.getLogger(__name__)

# GS ! n (ESC/POS)  ->  ESC ! m (ESC/BEMA)
_SIZE_MAP = {0x00: 0x00, 0x01: 0x10, 0x10: 0x20, 0x11: 0x30}
_SIZE_MAP_REVERSE = {v: k for k, v in _SIZE_MAP.items()}

_BEMA_CUT_FEED = bytes([LF, LF, LF, ESC, 0x6D])


def _copy_block(data: bytes, i: int) -> int:
    """
    Return the end index of a barcode / QR block starting at i, or -1 when the
    bytes at i are not one of those blocks.
    """
    n = len(data)
    if data[i] != GS or i + 1 >= n:
        return -1
    op = data[i + 1]
    # GS h n / GS w n / GS H n: barcode setup
    if op in (0x68, 0x77, 0x48) and i + 2 < n:
        return i + 3
    # GS k m ...
    if op == 0x6B and i + 2 < n:
        m = data[i + 2]
        if m >= 65:
            if i + 3 >= n:
                return n
            return min(n, i + 4 + data[i + 3])
        end = data.find(b'\x00', i + 3)
        return n if end == -1 else end + 1
    # GS ( k pL pH ...
    if op == 0x28 and i + 4 < n and data[i + 2] == 0x6B:
        return min(n, i + 5 + data[i + 3] + data[i + 4] * 256)
    return -1


def _escpos_to_escbema(data: bytes) -> bytes:
    out = bytearray()
    i, n = 0, len(data)
    while i < n:
        end = _copy_block(data, i)
        if end != -1:
            out += data[i:end]
            i = end
            continue

        b = data[i]
        nxt = data[i + 1] if i + 1 < n else None

        if b == ESC and nxt == 0x40:
            out += bytes([ESC, 0x40, ESC, 0x55])
            i += 2
        elif b == ESC and nxt == 0x61 and i + 2 < n:
            out += bytes([ESC, 0x6A, data[i + 2]])
            i += 3
        elif b == ESC and nxt == 0x45 and i + 2 < n:
            out += bytes([ESC, 0x45]) if data[i + 2] & 0x01 else bytes([ESC, 0x46])
            i += 3
        elif b == GS and nxt == 0x21 and i + 2 < n:
            out += bytes([ESC, 0x21, _SIZE_MAP.get(data[i + 2], data[i + 2])])
            i += 3
        elif b == GS and nxt == 0x56 and i + 2 < n:
            out += _BEMA_CUT_FEED
            # GS V 65/66 n carries a feed argument
            i += 4 if data[i + 2] in (0x41, 0x42) else 3
        else:
            out.append(b)
            i += 1
    return bytes(out)


def _escbema_to_escpos(data: bytes) -> bytes:
    out = bytearray()
    i, n = 0, len(data)
    while i < n:
        end = _copy_block(data, i)
        if end != -1:
            out += data[i:end]
            i = end
            continue

        b = data[i]
        nxt = data[i + 1] if i + 1 < n else None

        if data.startswith(_BEMA_CUT_FEED, i):
            out += bytes([GS, 0x56, 0x00])
            i += len(_BEMA_CUT_FEED)
        elif b == ESC and nxt == 0x6D:
            out += bytes([GS, 0x56, 0x00])
            i += 2
        elif b == ESC and nxt == 0x40:
            out += bytes([ESC, 0x40])
            i += 2
            if data.startswith(bytes([ESC, 0x55]), i):
                i += 2
        elif b == ESC and nxt == 0x6A and i + 2 < n:
            out += bytes([ESC, 0x61, data[i + 2]])
            i += 3
        elif b == ESC and nxt == 0x45:
            out += bytes([ESC, 0x45, 0x01])
            i += 2
        elif b == ESC and nxt == 0x46:
            out += bytes([ESC, 0x45, 0x00])
            i += 2
        elif b == ESC and nxt == 0x21 and i + 2 < n:
            out += bytes([GS, 0x21, _SIZE_MAP_REVERSE.get(data[i + 2], data[i + 2])])
            i += 3
        else:
            out.append(b)
            i += 1
    return bytes(out)


def convert_dialect(buffer: bytes, from_dialect: str, to_dialect: str) -> bytes:
    """Rewrite a command buffer from one dialect to the other. Lossy."""
    for d in (from_dialect, to_dialect):
        if d not in DIALECTS:
            raise ValueError(f"Unknown dialect: {d!r}")
    if from_dialect == to_dialect:
        return bytes(buffer)
    if from_dialect == ESCPOS:
        return _escpos_to_escbema(bytes(buffer))
    return _escbema_to_escpos(bytes(buffer))


def payload_for(payload: bytes, dialect: str) -> bytes:
    """Payloads are stored in the primary dialect; convert when needed."""
    return convert_dialect(payload, PRIMARY_DIALECT, dialect)


def alternate(dialect: str) -> str:
    return ESCBEMA if dialect == ESCPOS else ESCPOS


def sniff_dialect(buffer: bytes) -> Optional[str]:
    """Guess the dialect of a buffer from its init sequence."""
    if buffer.startswith(bytes([ESC, 0x40, ESC, 0x55])):
        return ESCBEMA
    if buffer.startswith(bytes([ESC, 0x40])):
        return ESCPOS
    return None


def preview_text(buffer: bytes, limit: int = 400) -> str:
    """Printable text of a buffer with command bytes stripped, for logs and tools."""
    if sniff_dialect(buffer) == ESCBEMA:
        buffer = convert_dialect(buffer, ESCBEMA, ESCPOS)
    text = bytearray()
    i, n = 0, len(buffer)
    while i < n and len(text) < limit:
        end = _copy_block(buffer, i)
        if end != -1:
            i = end
            continue
        b = buffer[i]
        if b in (ESC, GS):
            # ESC @ is two bytes, the other commands we emit carry one argument
            i += 2 if i + 1 < n and buffer[i + 1] == 0x40 else 3
            continue
        if b == LF or b >= 0x20:
            text.append(b)
        i += 1
    return text.decode('cp850', errors='replace')


def describe(buffer: bytes) -> dict:
    """Summary of a command buffer: size, sniffed dialect, cut and a text preview."""
    dialect = sniff_dialect(buffer)
    return {
        'bytes': len(buffer),
        'dialect': dialect,
        'has_cut': bytes([GS, 0x56]) in buffer or bytes([ESC, 0x6D]) in buffer,
        'has_barcode': bytes([GS, 0x6B]) in buffer,
        'has_qrcode': bytes([GS, 0x28, 0x6B]) in buffer,
        'text': preview_text(buffer),
    }


class DialectPreferences:
    """
    Last dialect that printed successfully, per device.

    Stored as a small JSON file; last writer wins. Not shared across devices.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path).expanduser() if path else None
        self.prefs = {}
        self.load()

    def load(self):
        if not self.path or not self.path.exists():
            return
        try:
            with open(self.path, 'r') as f:
                self.prefs = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read dialect preferences {self.path}: {e}")
            self.prefs = {}

    def get(self, device_id: Optional[str] = None) -> str:
        """Preferred dialect for a device, falling back to the last global success."""
        value = None
        if device_id:
            value = self.prefs.get(device_id)
        if value not in DIALECTS:
            value = self.prefs.get('default')
        return value if value in DIALECTS else PRIMARY_DIALECT

    def save(self, dialect: str, device_id: Optional[str] = None):
        if dialect not in DIALECTS:
            raise ValueError(f"Unknown dialect: {dialect!r}")
        if device_id:
            self.prefs[device_id] = dialect
        self.prefs['default'] = dialect
        self.prefs['last_updated'] = datetime.now().isoformat()
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                json.dump(self.prefs, f, indent=2)
            logger.info(f"Dialect {dialect} saved as preferred for {device_id or 'default'}")
        except OSError as e:
            logger.error(f"Could not save dialect preference: {e}")
