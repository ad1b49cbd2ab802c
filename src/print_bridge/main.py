"""
Entry points for the long-running processes.

  dispatcher  — REST API, realtime hub and ledger (one per installation)
  bridge      — runs next to a printer, executes jobs
"""
import asyncio
import logging
import signal
import socket
import sys
import uuid

from aiohttp import web

from print_bridge.bridge.runtime import build_runtime
from print_bridge.config.manager import ConfigManager
from print_bridge.dispatcher.app import build_app
from print_bridge.logging import setup_logging_from_config

logger = logging.getLogger(__name__)


def ensure_device_id(config: ConfigManager) -> str:
    """Return bridge.device_id, generating and persisting one on first use."""
    device_id = config.get('bridge.device_id')
    if device_id:
        return device_id
    device_id = f"{socket.gethostname().split('.')[0].lower()}-{uuid.uuid4().hex[:8]}"
    config.set('bridge.device_id', device_id)
    if config.config_file:
        logger.info(f"Generated device id {device_id} (saved to {config.config_file})")
    else:
        logger.warning(f"Generated device id {device_id} — no config file, it will change on restart")
    return device_id


def run_dispatcher(config: ConfigManager = None):
    """Start the dispatcher and serve until interrupted."""
    config = config or ConfigManager()
    setup_logging_from_config(config)
    host = config.get('dispatcher.host', '0.0.0.0')
    port = int(config.get('dispatcher.port', 8080))
    if not config.get('dispatcher.api_key'):
        logger.warning("dispatcher.api_key is not set — the API is open to anyone who can reach it")
    logger.info(f"Starting dispatcher on {host}:{port}")
    web.run_app(build_app(config), host=host, port=port, print=None)


async def start_bridge(config: ConfigManager):
    """Run a bridge until SIGINT / SIGTERM."""
    device_id = ensure_device_id(config)
    runtime = build_runtime(config, device_id)

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt ends asyncio.run instead

    await runtime.start()
    logger.info(f"Bridge {device_id} running — press Ctrl+C to stop")
    try:
        await stop_requested.wait()
    finally:
        logger.info("Shutting down...")
        await runtime.stop()


def run_bridge(config: ConfigManager = None):
    config = config or ConfigManager()
    setup_logging_from_config(config)
    try:
        asyncio.run(start_bridge(config))
    except KeyboardInterrupt:
        print("\nBridge stopped.")
        sys.exit(0)


def main():
    """Main entry point: `python -m print_bridge.main [dispatcher|bridge]`."""
    role = sys.argv[1] if len(sys.argv) > 1 else 'bridge'
    if role == 'dispatcher':
        run_dispatcher()
    elif role == 'bridge':
        run_bridge()
    else:
        print(f"Unknown role {role!r}; expected 'dispatcher' or 'bridge'")
        sys.exit(1)


if __name__ == "__main__":
    main()
