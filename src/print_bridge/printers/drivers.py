"""
Printer transports.

A transport moves an already-encoded command buffer to the printer. Exactly one
transport is used per attempt; TransportChain.select() picks it.

Types:
  usb      — direct USB bulk transfer via pyusb
  host     — host-OS device: serial / COM port (pyserial) or a kernel printer
             node such as /dev/usb/lp0
  network  — raw TCP socket (port 9100 default), or through the dispatcher's
             relay when direct sockets are disabled
  helper   — loopback HTTP to the local helper process (print-bridge start-helper)

discover_printers() scans the usual printer addresses of a subnet for open
raw/LPD/IPP ports.
"""
import logging
import os
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import requests
import serial
import usb.core
import usb.util

from print_bridge.utils import to_base64

logger = logging.getLogger(__name__)

SOCKET_TIMEOUT = 10
HTTP_TIMEOUT = 10

USB_PRINTER_CLASS = 0x07
USB_MAX_CHUNK = 32
USB_CHUNK_DELAY = 0.01
USB_SETTLE_DELAY = 0.15
USB_WRITE_TIMEOUT_MS = 5000

SERIAL_BAUDRATE = 9600

CONNECT_TIMEOUT = 1.0
DISCOVERY_PORTS = {9100: 'ESC/POS thermal printer', 515: 'LPD printer', 631: 'IPP printer'}
DEFAULT_SUBNETS = ('192.168.1', '192.168.0', '10.0.0', '172.16.0')
MAX_DISCOVERED = 10
DISCOVERY_WORKERS = 32

USB = 'usb'
HOST = 'host'
NETWORK = 'network'
HELPER = 'helper'
TRANSPORT_ORDER = (USB, HOST, NETWORK, HELPER)


class TransportError(Exception):
    """A single delivery attempt failed."""


def send_raw_tcp(host: str, port: int, data: bytes, timeout: float = SOCKET_TIMEOUT) -> int:
    """Open a socket, write everything, close. Used by NetworkTransport and the relay."""
    try:
        logger.info(f"TCP → {host}:{port} ({len(data)} bytes)")
        with socket.create_connection((host, port), timeout=timeout) as sock:
            sock.sendall(data)
        logger.info(f"✓ Sent to {host}:{port}")
        return len(data)
    except socket.timeout:
        raise TransportError(f"Timeout connecting to {host}:{port}")
    except OSError as e:
        raise TransportError(f"Socket error → {host}:{port}: {e}")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Transport:
    transport_type = 'base'

    def is_available(self) -> bool:
        raise NotImplementedError

    def send(self, data: bytes) -> int:
        """Write data to the printer, returning the number of bytes sent."""
        raise NotImplementedError

    def open(self) -> bool:
        return self.is_available()

    def close(self):
        pass

    def __str__(self):
        return f"{self.__class__.__name__}({self.transport_type})"


# ---------------------------------------------------------------------------
# USB bulk
# ---------------------------------------------------------------------------

def _is_printer(device) -> bool:
    for cfg in device:
        if usb.util.find_descriptor(cfg, bInterfaceClass=USB_PRINTER_CLASS) is not None:
            return True
    return False


class UsbBulkTransport(Transport):
    """
    Writes straight to the printer's bulk OUT endpoint.

    Chunks are min(wMaxPacketSize, 32) bytes with a short pause between them;
    many receipt printers drop data when flooded. A transfer error triggers one
    recovery (clear halt, reset, reclaim) and a single resend.
    """
    transport_type = USB

    def __init__(self, vendor_id: Optional[int] = None, product_id: Optional[int] = None,
                 chunk_delay: float = USB_CHUNK_DELAY, settle_delay: float = USB_SETTLE_DELAY):
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.chunk_delay = chunk_delay
        self.settle_delay = settle_delay
        self.device = None
        self.interface = None
        self.endpoint_out = None

    def is_available(self) -> bool:
        return self.device is not None and self.endpoint_out is not None

    def open(self) -> bool:
        if self.is_available():
            return True
        if self.vendor_id and self.product_id:
            device = usb.core.find(idVendor=self.vendor_id, idProduct=self.product_id)
        else:
            device = usb.core.find(custom_match=_is_printer)
        if device is None:
            logger.debug("No USB printer found")
            return False
        try:
            self._claim(device)
        except usb.core.USBError as e:
            logger.warning(f"Could not claim USB printer: {e}")
            self.close()
            return False
        logger.info(f"✓ USB printer opened (VID: 0x{device.idVendor:04x}, PID: 0x{device.idProduct:04x})")
        return True

    def _claim(self, device):
        self.device = device
        try:
            if device.is_kernel_driver_active(0):
                device.detach_kernel_driver(0)
        except (NotImplementedError, usb.core.USBError):
            pass

        try:
            device.set_configuration()
        except usb.core.USBError:
            pass  # already configured

        cfg = device.get_active_configuration()
        intf = usb.util.find_descriptor(cfg, bInterfaceClass=USB_PRINTER_CLASS) or cfg[(0, 0)]
        usb.util.claim_interface(device, intf.bInterfaceNumber)
        self.interface = intf

        self.endpoint_out = usb.util.find_descriptor(
            intf,
            custom_match=lambda e: (
                usb.util.endpoint_direction(e.bEndpointAddress) == usb.util.ENDPOINT_OUT
                and usb.util.endpoint_type(e.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
            ),
        )
        if self.endpoint_out is None:
            raise usb.core.USBError("No bulk OUT endpoint")

    def _write(self, data: bytes) -> int:
        chunk_size = min(self.endpoint_out.wMaxPacketSize or USB_MAX_CHUNK, USB_MAX_CHUNK)
        self.device.clear_halt(self.endpoint_out)
        sent = 0
        for i in range(0, len(data), chunk_size):
            sent += self.endpoint_out.write(data[i:i + chunk_size], USB_WRITE_TIMEOUT_MS)
            if self.chunk_delay:
                time.sleep(self.chunk_delay)
        if self.settle_delay:
            time.sleep(self.settle_delay)
        return sent

    def _recover(self):
        """Clear halt, reset the device and claim it again."""
        device = self.device
        try:
            device.clear_halt(self.endpoint_out)
        except usb.core.USBError:
            pass
        device.reset()
        usb.util.dispose_resources(device)
        self._claim(device)

    def send(self, data: bytes) -> int:
        if not self.is_available() and not self.open():
            raise TransportError("USB printer not connected")
        try:
            return self._write(data)
        except usb.core.USBError as e:
            logger.warning(f"USB transfer error, resetting device: {e}")
            try:
                self._recover()
                return self._write(data)
            except usb.core.USBError as retry_error:
                self.close()
                raise TransportError(f"USB transfer failed after reset: {retry_error}")

    def close(self):
        if self.device is not None:
            try:
                usb.util.dispose_resources(self.device)
            except usb.core.USBError as e:
                logger.error(f"Error releasing USB printer: {e}")
        self.device = None
        self.interface = None
        self.endpoint_out = None


# ---------------------------------------------------------------------------
# Host OS device (serial / kernel printer node)
# ---------------------------------------------------------------------------

class HostDeviceTransport(Transport):
    """
    Printer reached through the host OS.

    Paths under /dev/usb/ (lp nodes) are written as files; anything else is
    opened as a serial port at 9600 8N1.
    """
    transport_type = HOST

    def __init__(self, device_path: str, baudrate: int = SERIAL_BAUDRATE, timeout: float = SOCKET_TIMEOUT):
        self.device_path = device_path
        self.baudrate = baudrate
        self.timeout = timeout

    @property
    def is_printer_node(self) -> bool:
        return self.device_path.startswith('/dev/usb/') or os.path.basename(self.device_path).startswith('lp')

    def is_available(self) -> bool:
        if not self.device_path:
            return False
        if self.device_path.upper().startswith('COM'):
            return True
        return os.path.exists(self.device_path)

    def send(self, data: bytes) -> int:
        if not self.device_path:
            raise TransportError("No host device configured")
        if self.is_printer_node:
            try:
                with open(self.device_path, 'wb') as f:
                    f.write(data)
                    f.flush()
                logger.info(f"✓ Wrote {len(data)} bytes to {self.device_path}")
                return len(data)
            except OSError as e:
                raise TransportError(f"Cannot write {self.device_path}: {e}")

        try:
            with serial.Serial(
                self.device_path,
                self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=2,
                write_timeout=self.timeout,
            ) as ser:
                written = ser.write(data)
                ser.flush()
            logger.info(f"✓ Wrote {written} bytes to {self.device_path} @ {self.baudrate}")
            return written
        except serial.SerialException as e:
            raise TransportError(f"Serial error on {self.device_path}: {e}")


# ---------------------------------------------------------------------------
# Network (raw TCP or relay)
# ---------------------------------------------------------------------------

class NetworkTransport(Transport):
    """Raw TCP to host:port, or POST {relay_url}/api/network-print when direct sockets are off."""
    transport_type = NETWORK

    def __init__(self, host: str, port: int = 9100, relay_url: Optional[str] = None,
                 api_key: Optional[str] = None, direct: bool = True, timeout: float = SOCKET_TIMEOUT):
        self.host = host
        self.port = port
        self.relay_url = relay_url.rstrip('/') if relay_url else None
        self.api_key = api_key
        self.direct = direct
        self.timeout = timeout

    def is_available(self) -> bool:
        return bool(self.host) and (self.direct or bool(self.relay_url))

    def send(self, data: bytes) -> int:
        if self.direct:
            return send_raw_tcp(self.host, self.port, data, self.timeout)
        if not self.relay_url:
            raise TransportError("Direct sockets disabled and no relay configured")

        headers = {'Authorization': f'Bearer {self.api_key}'} if self.api_key else {}
        try:
            resp = requests.post(
                f"{self.relay_url}/api/network-print",
                json={'ip': self.host, 'port': self.port, 'data': to_base64(data)},
                headers=headers,
                timeout=self.timeout + 5,
            )
        except requests.RequestException as e:
            raise TransportError(f"Relay unreachable: {e}")
        if resp.status_code != 200:
            raise TransportError(f"Relay error {resp.status_code}: {resp.text[:200]}")
        body = resp.json()
        if not body.get('success'):
            raise TransportError(body.get('error') or 'Relay reported failure')
        return int(body.get('bytes', len(data)))

    def test_connection(self, timeout: float = CONNECT_TIMEOUT) -> Optional[int]:
        """Connect time in ms when host:port accepts TCP, else None."""
        return check_port(self.host, self.port, timeout)


# ---------------------------------------------------------------------------
# Network discovery
# ---------------------------------------------------------------------------

@dataclass
class DiscoveredPrinter:
    ip: str
    port: int
    name: str
    response_time_ms: int

    def to_dict(self) -> dict:
        return {'ip': self.ip, 'port': self.port, 'name': self.name, 'status': 'online',
                'responseTime': self.response_time_ms}


def check_port(host: str, port: int, timeout: float = CONNECT_TIMEOUT) -> Optional[int]:
    """Open and close a TCP connection; return the connect time in ms, or None."""
    t0 = time.monotonic()
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError:
        return None
    return int((time.monotonic() - t0) * 1000)


def candidate_hosts(subnet: str) -> List[str]:
    """Addresses printers usually get on a /24: .100-.110 and .200-.210."""
    subnet = subnet.strip().rstrip('.')
    return [f"{subnet}.{n}" for n in (*range(100, 111), *range(200, 211))]


def _scan_host(ip: str, ports, timeout: float) -> Optional[DiscoveredPrinter]:
    # first open port wins
    for port in ports:
        elapsed = check_port(ip, port, timeout)
        if elapsed is not None:
            return DiscoveredPrinter(ip, port, f"{DISCOVERY_PORTS.get(port, 'Printer')} ({ip})", elapsed)
    return None


def discover_printers(subnets: Optional[Iterable[str]] = None, ports: Iterable[int] = tuple(DISCOVERY_PORTS),
                      timeout: float = CONNECT_TIMEOUT, limit: int = MAX_DISCOVERED,
                      workers: int = DISCOVERY_WORKERS) -> List[DiscoveredPrinter]:
    """
    Scan the usual printer addresses of each /24 subnet ("192.168.1") for open
    raw/LPD/IPP ports. Results keep address order and stop at `limit`.
    """
    subnets = list(subnets or DEFAULT_SUBNETS)
    ports = list(ports)
    hosts = [ip for subnet in subnets for ip in candidate_hosts(subnet)]
    logger.info(f"Scanning {len(hosts)} addresses in {', '.join(subnets)} on ports {ports}")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(lambda ip: _scan_host(ip, ports, timeout), hosts))

    found = [p for p in results if p is not None][:limit]
    for printer in found:
        logger.info(f"✓ Found {printer.ip}:{printer.port} ({printer.response_time_ms} ms)")
    logger.info(f"Discovery finished: {len(found)} printer(s)")
    return found


# ---------------------------------------------------------------------------
# Local helper (loopback HTTP)
# ---------------------------------------------------------------------------

class LocalHelperTransport(Transport):
    """POST {url}/print with {data: base64} to the helper on this machine."""
    transport_type = HELPER

    def __init__(self, url: str = 'http://localhost:9100', timeout: float = HTTP_TIMEOUT):
        self.url = url.rstrip('/')
        self.timeout = timeout

    def is_available(self) -> bool:
        return bool(self.url)

    def status(self) -> dict:
        try:
            resp = requests.get(f"{self.url}/status", timeout=3)
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Helper status failed: {e}")
            return {}

    def send(self, data: bytes) -> int:
        try:
            resp = requests.post(f"{self.url}/print", json={'data': to_base64(data)}, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"Local helper unreachable at {self.url}: {e}")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code != 200 or not body.get('success'):
            raise TransportError(body.get('error') or f"Local helper error {resp.status_code}")
        return int(body.get('bytes', len(data)))


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

class TransportChain:
    """
    Chooses the transport for an attempt.

    Order: explicit override → USB (handle open) → host device → network → helper.
    """

    def __init__(self, transports: Dict[str, Transport], override: Optional[str] = None):
        self.transports = transports
        self.override = (override or '').lower().strip() or None

    def open(self):
        """Try to open transports that hold a handle (USB). Failures are not fatal."""
        for transport in self.transports.values():
            try:
                transport.open()
            except Exception as e:
                logger.warning(f"Could not open {transport}: {e}")

    def select(self) -> Transport:
        if self.override:
            transport = self.transports.get(self.override)
            if transport is None:
                raise TransportError(f"Transport override '{self.override}' is not configured")
            return transport
        for name in TRANSPORT_ORDER:
            transport = self.transports.get(name)
            if transport is not None and transport.is_available():
                return transport
        raise TransportError("No printer transport available")

    def close(self):
        for transport in self.transports.values():
            transport.close()


def build_transports(config) -> TransportChain:
    """Build the chain from the [printer] section of a ConfigManager."""
    transports: Dict[str, Transport] = {}

    if config.get('printer.usb_enabled', True):
        transports[USB] = UsbBulkTransport(
            vendor_id=_hex(config.get('printer.usb_vendor_id')),
            product_id=_hex(config.get('printer.usb_product_id')),
        )

    device_path = config.get('printer.device_path', '')
    if device_path:
        transports[HOST] = HostDeviceTransport(device_path, int(config.get('printer.baudrate', SERIAL_BAUDRATE)))

    network_host = config.get('printer.network_host', '')
    if network_host:
        transports[NETWORK] = NetworkTransport(
            host=network_host,
            port=int(config.get('printer.network_port', 9100)),
            relay_url=config.get('printer.relay_url') or None,
            api_key=config.get('dispatcher.api_key') or None,
            direct=bool(config.get('printer.direct_sockets', True)),
        )

    helper_url = config.get('printer.helper_url', 'http://localhost:9100')
    if helper_url:
        transports[HELPER] = LocalHelperTransport(helper_url)

    override = config.get('printer.transport', '') or None
    if override and override not in transports:
        logger.warning(f"Unknown or unconfigured transport '{override}' — using automatic selection")
        override = None
    return TransportChain(transports, override=override)


def _hex(value) -> Optional[int]:
    if value in (None, '', 0):
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 16)
