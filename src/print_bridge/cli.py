import argparse
import getpass
import shutil
import sys
from pathlib import Path

import requests

from print_bridge.config.manager import DEFAULTS_FILE, ConfigManager, find_config_file
from print_bridge.utils import parse_int, to_base64


def get_config_path():
    """Get the active config file path (matching ConfigManager priority)."""
    found = find_config_file()
    if found:
        return found
    # Default: per-user config
    return Path.home() / '.print_bridge' / 'config.toml'


def _bootstrap_config(config_path: Path):
    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy(DEFAULTS_FILE, config_path)
        print(f"Created new config at: {config_path}")


def _prompt(label: str, current: str = '', secret: bool = False) -> str:
    """Prompt user for a value, showing current (masked if secret). Empty input keeps current."""
    if current:
        display = ('*' * 6 + current[-4:]) if secret and len(current) > 4 else (('*' * 8) if secret else current)
        prompt_str = f"  {label} [{display}]: "
    else:
        prompt_str = f"  {label} (not set): "

    if secret:
        val = getpass.getpass(prompt_str)
    else:
        val = input(prompt_str).strip()

    return val if val else current


def run_setup():
    """Interactive setup wizard."""
    config_path = get_config_path()
    _bootstrap_config(config_path)
    print(f"Editing config at: {config_path}")
    config = ConfigManager(str(config_path))

    print("\n=== Print Bridge Setup ===")
    print("Press Enter to keep the current value.\n")

    fields = [
        ('bridge.dispatcher_url', 'Dispatcher URL (e.g. http://print-server:8080)', False),
        ('dispatcher.api_key', 'Shared API key', True),
        ('bridge.device_id', 'Device id for this bridge (blank = generate)', False),
        ('printer.transport', 'Transport override: usb | host | network | helper (blank = auto)', False),
        ('printer.device_path', 'Serial port or printer node (COM3, /dev/usb/lp0)', False),
        ('printer.network_host', 'Network printer IP', False),
    ]
    for key, label, secret in fields:
        value = _prompt(label, str(config.get(key, '') or ''), secret=secret)
        config.set(key, value, save=False)

    print()
    config.save_config()
    print("✓ Configuration saved.")
    print(f"  Config file: {config_path}")
    print("\nStart a bridge with:")
    print("  print-bridge start-bridge\n")
    return 0


def manage_config(args):
    """Manage configuration settings"""
    config_path = Path(args.config) if args.config else get_config_path()
    _bootstrap_config(config_path)
    config = ConfigManager(str(config_path))

    if args.show:
        key_set = bool(config.get('dispatcher.api_key'))
        print("\n=== Current Configuration ===")
        print(f"Configuration file: {config_path}")
        print("\n[Bridge]")
        print(f"  Device ID: {config.get('bridge.device_id') or 'Not set (generated on start)'}")
        print(f"  Dispatcher URL: {config.get('bridge.dispatcher_url', 'Not set')}")
        print(f"  API key: {'*' * 10 if key_set else 'Not set'}")
        print("\n[Ledger]")
        print(f"  Database URL: {config.get('ledger.url') or 'Not set (dispatcher REST API)'}")
        print("\n[Printer]")
        print(f"  Transport: {config.get('printer.transport') or 'auto'}")
        print(f"  Device path: {config.get('printer.device_path') or 'Not set'}")
        print(f"  Network printer: {config.get('printer.network_host') or 'Not set'}:{config.get('printer.network_port')}")
        print(f"  Local helper: {config.get('printer.helper_url') or 'Not set'}")
        return 0

    updates = {
        'bridge.device_id': args.device_id,
        'bridge.dispatcher_url': args.dispatcher_url,
        'dispatcher.api_key': args.api_key,
        'ledger.url': args.ledger_url,
        'printer.transport': args.transport,
        'printer.device_path': args.device_path,
        'printer.network_host': args.network_host,
    }
    changed = {k: v for k, v in updates.items() if v is not None}
    if not changed:
        print("No configuration changes specified. Use --help to see available options.")
        return 0

    for key, value in changed.items():
        config.set(key, value, save=False)
    config.save_config()
    print("\n✓ Configuration updated successfully!")
    for key, value in changed.items():
        print(f"  {key}: {'***' if key == 'dispatcher.api_key' else value}")
    return 0


def _load_config(args) -> ConfigManager:
    return ConfigManager(args.config) if args.config else ConfigManager()


def _auth_headers(config) -> dict:
    api_key = config.get('dispatcher.api_key')
    return {'Authorization': f'Bearer {api_key}'} if api_key else {}


def check_status(args):
    """Show local bridge state and what the dispatcher reports."""
    from print_bridge.bridge.diagnostics import JobLog
    from print_bridge.printers.dialects import DialectPreferences
    from print_bridge.printers.drivers import LocalHelperTransport, NetworkTransport, build_transports

    config = _load_config(args)
    device_id = config.get('bridge.device_id') or '(not generated yet)'
    prefs = DialectPreferences(config.get('bridge.preferences_file'))
    chain = build_transports(config)

    print("\n=== Bridge ===")
    print(f"  Device ID: {device_id}")
    print(f"  Preferred dialect: {prefs.get(config.get('bridge.device_id'))}")
    for name, transport in chain.transports.items():
        print(f"  Transport {name}: {'available' if transport.is_available() else 'not available'}")
        if isinstance(transport, LocalHelperTransport):
            helper = transport.status()
            if helper:
                print(f"    Helper port: {helper.get('port') or 'not connected'}"
                      f"{' (' + helper['error'] + ')' if helper.get('error') else ''}")
            else:
                print("    Helper: not running")
        elif isinstance(transport, NetworkTransport) and transport.direct:
            elapsed = transport.test_connection()
            reach = f"reachable ({elapsed} ms)" if elapsed is not None else "not reachable"
            print(f"    {transport.host}:{transport.port} {reach}")
    print(f"  Logged jobs: {len(JobLog(config.get('bridge.job_log_file')).entries)}")

    url = config.get('bridge.dispatcher_url', 'http://localhost:8080').rstrip('/')
    print(f"\n=== Dispatcher ({url}) ===")
    try:
        health = requests.get(f"{url}/health", timeout=5).json()
        presence = requests.get(f"{url}/api/presence", headers=_auth_headers(config), timeout=5)
    except (requests.RequestException, ValueError) as e:
        print(f"  ✗ Unreachable: {e}")
        return 1
    print(f"  Status: {health.get('status')}")
    print(f"  Bridges online: {health.get('bridgesOnline')}")
    jobs = health.get('jobs') or {}
    if jobs:
        print("  Jobs: " + ", ".join(f"{status} {count}" for status, count in jobs.items()))
    if presence.status_code == 200:
        for device in presence.json().get('candidates', []):
            marker = ' (this bridge)' if device == config.get('bridge.device_id') else ''
            print(f"    - {device}{marker}")
    else:
        print(f"  Presence: HTTP {presence.status_code}")
    return 0


def test_print(args):
    """Print a sample receipt locally, or submit it through the dispatcher."""
    from print_bridge.printers.dialects import convert_dialect, describe
    from print_bridge.printers.drivers import TransportError, build_transports
    from print_bridge.printers.escpos import PRIMARY_DIALECT, encode, sample_receipt

    config = _load_config(args)
    device_id = config.get('bridge.device_id', '')
    data = encode(sample_receipt(device_id))
    if args.dialect != PRIMARY_DIALECT:
        data = convert_dialect(data, PRIMARY_DIALECT, args.dialect)

    if args.preview:
        info = describe(data)
        print(f"{info['bytes']} bytes, dialect {info['dialect']}, cut={info['has_cut']}")
        print(info['text'])
        return 0

    if args.submit:
        url = config.get('bridge.dispatcher_url', 'http://localhost:8080').rstrip('/')
        try:
            resp = requests.post(
                f"{url}/api/print-jobs",
                json={'payload': to_base64(data), 'documentType': 'custom',
                      'metadata': {'description': 'Test print'}, 'requester': 'cli'},
                headers=_auth_headers(config), timeout=15,
            )
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            print(f"✗ Dispatcher unreachable: {e}")
            return 1
        if not body.get('success'):
            print(f"✗ Submission failed: {body.get('error')}")
            return 1
        print(f"✓ Job {body['jobId']} → {body['deviceId']}{' (queued)' if body.get('queued') else ''}")
        print(f"  {body.get('message')}")
        return 0

    chain = build_transports(config)
    chain.open()
    try:
        transport = chain.select()
        sent = transport.send(data)
    except TransportError as e:
        print(f"✗ Test print failed: {e}")
        return 1
    finally:
        chain.close()
    print(f"✓ Sent {sent} bytes via {transport.transport_type} ({args.dialect})")
    return 0


def discover(args):
    """Scan the network for printers, or check a single address."""
    from print_bridge.printers.drivers import discover_printers, check_port

    if args.test:
        host, _, port = args.test.partition(':')
        port = parse_int(port, 9100)
        elapsed = check_port(host, port, args.timeout)
        if elapsed is None:
            print(f"✗ {host}:{port} is not reachable")
            return 1
        print(f"✓ {host}:{port} is reachable ({elapsed} ms)")
        return 0

    print("Scanning for network printers...")
    found = discover_printers(args.subnet or None, timeout=args.timeout)
    if not found:
        print("No printers found. Check that the printer is on and on the same network.")
        return 0
    for printer in found:
        print(f"  {printer.ip}:{printer.port}  {printer.name}  ({printer.response_time_ms} ms)")
    print(f"\n{len(found)} printer(s) found. Use one with:")
    print(f"  print-bridge config --network-host {found[0].ip}")
    return 0


def show_logs(args):
    from print_bridge.bridge.diagnostics import JobLog

    config = _load_config(args)
    log = JobLog(config.get('bridge.job_log_file'))
    if args.clear:
        log.clear()
        print("✓ Job log cleared.")
        return 0
    entries = log.recent(args.limit)
    if not entries:
        print("No jobs logged yet.")
        return 0
    for e in entries:
        mark = '✓' if e.get('status') == 'OK' else '✗'
        detail = f"{e.get('dialect')}/{e.get('transport')}" if e.get('status') == 'OK' else e.get('error')
        print(f"{mark} {e.get('timestamp')}  {e.get('jobId')}  attempts={e.get('attempts')}  "
              f"{e.get('elapsedMs')} ms  {detail}")
    return 0


def display_help():
    """Display comprehensive help information"""
    help_text = """
╔══════════════════════════════════════════════════════════════════════════╗
║                       PRINT BRIDGE - HELP GUIDE                          ║
╚══════════════════════════════════════════════════════════════════════════╝

OVERVIEW:
  Print Bridge routes receipt print jobs from many clients to a small set of
  bridge machines attached to thermal printers (ESC/POS, ESC/BEMA). Jobs are
  stored in a ledger and announced over a realtime channel; bridges that were
  offline pick them up when they come back.

COMMANDS:
  setup               Interactive setup of this machine
  config              Manage configuration settings
  start-dispatcher    Start the dispatcher (REST API, realtime hub, ledger)
  start-bridge        Start a bridge next to a printer
  start-helper        Start the local serial helper on port 9100
  status              Show bridge and dispatcher status
  test-print          Print a sample receipt
  discover            Find network printers (or --test IP[:PORT])
  logs                Show the bridge's recent jobs
  help                Display this help information

CONFIGURATION:
  print-bridge config [OPTIONS]

  Options:
    --dispatcher-url URL    Dispatcher base URL
    --api-key KEY           Shared API key
    --device-id ID          Fixed device id for this bridge
    --ledger-url URL        SQLAlchemy URL (dispatcher, or bridges with DB access)
    --transport NAME        usb | host | network | helper
    --device-path PATH      Serial port or printer node
    --network-host IP       Network printer address
    --show                  Display current configuration

  Examples:
    print-bridge config --dispatcher-url http://print-server:8080 --api-key s3cret
    print-bridge config --transport host --device-path /dev/usb/lp0
    print-bridge test-print --preview
    print-bridge test-print --dialect escbema
    print-bridge discover --subnet 192.168.15

"""
    print(help_text)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog='print-bridge',
        description='Print Bridge CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--config', type=str, help='Path to config file')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('setup', help='Interactive setup of this machine')

    config_parser = subparsers.add_parser('config', help='Manage configuration settings')
    config_parser.add_argument('--dispatcher-url', type=str, help='Dispatcher base URL')
    config_parser.add_argument('--api-key', type=str, help='Shared API key')
    config_parser.add_argument('--device-id', type=str, help='Device id of this bridge')
    config_parser.add_argument('--ledger-url', type=str, help='SQLAlchemy URL of the ledger database')
    config_parser.add_argument('--transport', choices=['usb', 'host', 'network', 'helper', ''],
                               help='Force a printer transport')
    config_parser.add_argument('--device-path', type=str, help='Serial port or printer node')
    config_parser.add_argument('--network-host', type=str, help='Network printer IP')
    config_parser.add_argument('--show', action='store_true', help='Show current configuration')

    subparsers.add_parser('help', help='Display detailed help information')
    subparsers.add_parser('start-dispatcher', help='Start the dispatcher')
    subparsers.add_parser('start-bridge', help='Start a bridge')
    subparsers.add_parser('start-helper', help='Start the local serial helper')
    subparsers.add_parser('status', help='Check bridge and dispatcher status')

    test_parser = subparsers.add_parser('test-print', help='Print a sample receipt')
    test_parser.add_argument('--dialect', choices=['escpos', 'escbema'], default='escpos')
    test_parser.add_argument('--submit', action='store_true', help='Send through the dispatcher instead of locally')
    test_parser.add_argument('--preview', action='store_true', help='Only show what would be printed')

    discover_parser = subparsers.add_parser('discover', help='Find network printers')
    discover_parser.add_argument('--subnet', action='append', help='First three octets, e.g. 192.168.1 (repeatable)')
    discover_parser.add_argument('--test', metavar='IP[:PORT]', help='Only check whether one printer accepts connections')
    discover_parser.add_argument('--timeout', type=float, default=1.0, help='Connect timeout per address in seconds')

    logs_parser = subparsers.add_parser('logs', help='Show recent jobs on this bridge')
    logs_parser.add_argument('--limit', type=int, default=20)
    logs_parser.add_argument('--clear', action='store_true', help='Clear the job log')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'setup':
        return run_setup()
    elif args.command == 'config':
        return manage_config(args)
    elif args.command == 'help':
        return display_help()
    elif args.command == 'start-dispatcher':
        from print_bridge.main import run_dispatcher
        print("Starting Print Bridge dispatcher...")
        run_dispatcher(_load_config(args))
    elif args.command == 'start-bridge':
        from print_bridge.main import run_bridge
        print("Starting Print Bridge bridge...")
        run_bridge(_load_config(args))
    elif args.command == 'start-helper':
        from print_bridge.helper.app import run_helper
        from print_bridge.logging import setup_logging_from_config
        config = _load_config(args)
        setup_logging_from_config(config)
        run_helper(config)
    elif args.command == 'status':
        return check_status(args)
    elif args.command == 'test-print':
        return test_print(args)
    elif args.command == 'discover':
        return discover(args)
    elif args.command == 'logs':
        return show_logs(args)
    else:
        parser.print_help()
    return 0


if __name__ == '__main__':
    sys.exit(main())
