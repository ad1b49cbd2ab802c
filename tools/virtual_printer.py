#!/usr/bin/env python3
"""
Virtual receipt printer: a raw TCP listener (like port 9100 on a network
printer) that stores every job it receives.

Point printer.network_host / printer.network_port of a bridge at it to try the
whole path without hardware.

Usage:
    python tools/virtual_printer.py                  # port 9200, saves to ./print_jobs/
    python tools/virtual_printer.py --port 9300 --output /tmp/jobs

Saved files are named after the time, a running number and the detected dialect:
    print_job_20260222_201500_001.escpos
    print_job_20260222_201500_002.escbema
    print_job_20260222_201500_003.bin        (no ESC @ at the start)
"""

import argparse
import datetime
import itertools
import os
import socket
import socketserver
import threading
from typing import Optional

from print_bridge.printers.dialects import describe

RECV_TIMEOUT = 3.0


def ok(msg):   print(f'[OK] {msg}')
def info(msg): print(f'[..] {msg}')
def err(msg):  print(f'[XX] {msg}')


def save_job(data: bytes, job_num: int, output_dir: str) -> Optional[str]:
    """Write one received buffer to disk and print what it would look like on paper."""
    if not data:
        info(f'#{job_num:03d}: connection closed without data')
        return None

    summary = describe(data)
    ext = summary['dialect'] or 'bin'
    stamp = datetime.datetime.now().strftime('%Y%m%d_%H%M%S')
    path = os.path.join(output_dir, f'print_job_{stamp}_{job_num:03d}.{ext}')
    with open(path, 'wb') as f:
        f.write(data)

    ok(f'#{job_num:03d}: {summary["bytes"]} bytes ({ext}) -> {path}')
    features = [name[4:] for name in ('has_cut', 'has_barcode', 'has_qrcode') if summary[name]]
    if features:
        info(f'#{job_num:03d}: {", ".join(features)}')
    for line in summary['text'].splitlines():
        print(f'    | {line}')
    return path


class PrintJobHandler(socketserver.BaseRequestHandler):
    """Reads until the client closes (or goes quiet) and saves the buffer."""

    def handle(self):
        job_num = self.server.next_job_number()
        self.request.settimeout(RECV_TIMEOUT)
        received = bytearray()
        try:
            while True:
                chunk = self.request.recv(4096)
                if not chunk:
                    break
                received.extend(chunk)
        except socket.timeout:
            pass
        except OSError as e:
            err(f'#{job_num:03d}: {e}')
            return
        save_job(bytes(received), job_num, self.server.output_dir)


class VirtualPrinter(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address, output_dir: str):
        os.makedirs(output_dir, exist_ok=True)
        self.output_dir = output_dir
        self._numbers = itertools.count(1)
        self._lock = threading.Lock()
        super().__init__(address, PrintJobHandler)

    def next_job_number(self) -> int:
        with self._lock:
            return next(self._numbers)


def main():
    parser = argparse.ArgumentParser(description='Virtual receipt printer (saves raw TCP jobs to files)')
    parser.add_argument('--port', type=int, default=9200, help='TCP port to listen on (default: 9200)')
    parser.add_argument('--output', default='print_jobs', help='Directory for received jobs')
    args = parser.parse_args()

    try:
        server = VirtualPrinter(('0.0.0.0', args.port), args.output)
    except OSError as e:
        err(f'Cannot listen on port {args.port}: {e}')
        raise SystemExit(1)

    ok(f'Virtual printer on port {args.port}, saving to {os.path.abspath(args.output)}')
    with server:
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            info('Stopped.')


if __name__ == '__main__':
    main()
