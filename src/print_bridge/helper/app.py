"""
Local helper.

Small HTTP service on the printer's machine that owns a serial / USB-serial
port and accepts print data on loopback. Bridges reach it through
LocalHelperTransport when no other transport is available.

Routes:
  GET  /status     connection state
  GET  /ports      serial ports on this machine
  POST /connect    {"port": "COM3"} — select and test a port
  POST /print      {"data": <base64>} or raw application/octet-stream body
"""
import asyncio
import binascii
import logging
import threading
from typing import List, Optional

import serial
import serial.tools.list_ports
from aiohttp import web

from print_bridge.utils import from_base64

logger = logging.getLogger(__name__)

DEFAULT_PORT = 9100
DEFAULT_BAUDRATE = 9600
WRITE_TIMEOUT = 10

PRINTER_HINTS = ('printer', 'pos', 'thermal', 'bematech', 'epson', 'usb')


class SerialPrinter:
    """Serial port wrapper; writes are serialized with a lock."""

    def __init__(self, port: Optional[str] = None, baudrate: int = DEFAULT_BAUDRATE):
        self.port = port
        self.baudrate = baudrate
        self.last_error: Optional[str] = None
        self._lock = threading.Lock()

    @staticmethod
    def list_ports() -> List[dict]:
        return [
            {'device': p.device, 'description': p.description, 'hwid': p.hwid}
            for p in serial.tools.list_ports.comports()
        ]

    def auto_detect(self) -> Optional[str]:
        """First port that looks like a printer, else the last port listed."""
        ports = self.list_ports()
        if not ports:
            return None
        for p in ports:
            text = f"{p['description']} {p['hwid']}".lower()
            if any(hint in text for hint in PRINTER_HINTS):
                return p['device']
        return ports[-1]['device']

    def connect(self, port: Optional[str] = None) -> bool:
        port = port or self.port or self.auto_detect()
        if not port:
            self.last_error = 'No serial ports found'
            logger.error(self.last_error)
            return False
        try:
            with serial.Serial(port, self.baudrate, timeout=1):
                pass
        except serial.SerialException as e:
            self.last_error = str(e)
            logger.error(f"Cannot open {port}: {e}")
            return False
        self.port = port
        self.last_error = None
        logger.info(f"✓ Helper using {port} @ {self.baudrate}")
        return True

    def write(self, data: bytes) -> int:
        if not self.port and not self.connect():
            raise serial.SerialException(self.last_error or 'No printer port')
        with self._lock:
            with serial.Serial(
                self.port,
                self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=2,
                write_timeout=WRITE_TIMEOUT,
            ) as ser:
                written = ser.write(data)
                ser.flush()
        logger.info(f"✓ Printed {written} bytes on {self.port}")
        return written


PRINTER = web.AppKey('printer', SerialPrinter)


@web.middleware
async def cors_middleware(request: web.Request, handler):
    # browsers on the same machine call the helper directly
    if request.method == 'OPTIONS':
        response = web.Response()
    else:
        response = await handler(request)
    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
    return response


async def status(request: web.Request) -> web.Response:
    printer = request.app[PRINTER]
    return web.json_response({
        'status': 'ok',
        'connected': bool(printer.port),
        'port': printer.port,
        'baudrate': printer.baudrate,
        'error': printer.last_error,
    })


async def ports(request: web.Request) -> web.Response:
    found = await asyncio.get_running_loop().run_in_executor(None, SerialPrinter.list_ports)
    return web.json_response({'ports': found})


async def connect(request: web.Request) -> web.Response:
    printer = request.app[PRINTER]
    try:
        body = await request.json()
    except ValueError:
        body = {}
    ok = await asyncio.get_running_loop().run_in_executor(None, printer.connect, body.get('port'))
    if not ok:
        return web.json_response({'success': False, 'error': printer.last_error}, status=503)
    return web.json_response({'success': True, 'port': printer.port})


async def print_data(request: web.Request) -> web.Response:
    printer = request.app[PRINTER]
    if request.content_type == 'application/json':
        try:
            body = await request.json()
            data = from_base64(body.get('data') or '')
        except (ValueError, binascii.Error, AttributeError):
            return web.json_response({'success': False, 'error': 'Invalid JSON or base64 data'}, status=400)
    else:
        data = await request.read()
    if not data:
        return web.json_response({'success': False, 'error': 'No data'}, status=400)

    try:
        written = await asyncio.get_running_loop().run_in_executor(None, printer.write, data)
    except serial.SerialException as e:
        printer.last_error = str(e)
        logger.error(f"Helper print failed: {e}")
        return web.json_response({'success': False, 'error': str(e)}, status=503)
    return web.json_response({'success': True, 'bytes': written})


def create_app(printer: SerialPrinter) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app[PRINTER] = printer
    app.router.add_get('/status', status)
    app.router.add_get('/ports', ports)
    app.router.add_post('/connect', connect)
    app.router.add_post('/print', print_data)
    return app


def run_helper(config):
    printer = SerialPrinter(
        port=config.get('helper.serial_port') or None,
        baudrate=int(config.get('helper.baudrate', DEFAULT_BAUDRATE)),
    )
    port = int(config.get('helper.port', DEFAULT_PORT))
    logger.info(f"Local helper listening on 127.0.0.1:{port}")
    web.run_app(create_app(printer), host='127.0.0.1', port=port, print=None)
