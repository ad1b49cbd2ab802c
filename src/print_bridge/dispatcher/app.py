"""
Dispatcher HTTP surface (aiohttp).

Routes:
  POST /api/print-jobs                  submit a job (payload base64, or lines to encode)
  GET  /api/print-jobs                  list jobs (?deviceId, ?status, ?limit)
  GET  /api/print-jobs/{job_id}         one job
  GET  /api/presence                    live presence records
  POST /api/ledger/claim                bridge: claim_next_for
  POST /api/ledger/{job_id}/start       bridge: start_processing
  POST /api/ledger/{job_id}/attempt     bridge: record_attempt
  POST /api/ledger/{job_id}/status      bridge: update_status
  POST /api/network-print               relay {ip, port, data} to a raw TCP printer
  GET  /api/network-printers            scan for network printers (?subnet=192.168.1, repeatable)
  POST /cometd                          realtime hub (Bayeux long-polling)
  GET  /health

Everything except /health requires `Authorization: Bearer <dispatcher.api_key>`
when an API key is configured.
"""
import asyncio
import binascii
import logging
import re
from typing import Optional

from aiohttp import web

from print_bridge.dispatcher.service import Dispatcher, SubmissionError
from print_bridge.jobs.ledger import SqlJobLedger
from print_bridge.jobs.models import STATUSES, TERMINAL_STATUSES
from print_bridge.printers.drivers import TransportError, discover_printers, send_raw_tcp
from print_bridge.printers.escpos import LineSpec, encode
from print_bridge.realtime.channel import JOBS_TOPIC, PRESENCE_TOPIC
from print_bridge.realtime.hub import Hub, LocalChannel, add_routes
from print_bridge.realtime.presence import PresenceDirectory
from print_bridge.utils import from_base64, parse_int

logger = logging.getLogger(__name__)

DISPATCHER = web.AppKey('dispatcher', Dispatcher)
HUB = web.AppKey('hub', Hub)

PUBLIC_PATHS = ('/health',)
SUBNET_RE = re.compile(r'^\d{1,3}\.\d{1,3}\.\d{1,3}$')


def _error(status: int, message: str) -> web.Response:
    return web.json_response({'success': False, 'error': message}, status=status)


def api_key_middleware(api_key: Optional[str]):
    @web.middleware
    async def middleware(request: web.Request, handler):
        if api_key and request.path not in PUBLIC_PATHS:
            if request.headers.get('Authorization', '') != f'Bearer {api_key}':
                return _error(401, 'Unauthorized')
        return await handler(request)
    return middleware


async def _json_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text='Invalid JSON', content_type='text/plain')
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text='Expected a JSON object', content_type='text/plain')
    return body


def _run(fn, *args):
    return asyncio.get_running_loop().run_in_executor(None, fn, *args)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

async def submit_job(request: web.Request) -> web.Response:
    dispatcher = request.app[DISPATCHER]
    body = await _json_body(request)
    try:
        if body.get('payload'):
            try:
                payload = from_base64(body['payload'])
            except (binascii.Error, ValueError):
                raise SubmissionError('payload is not valid base64')
        elif body.get('lines'):
            lines = body['lines']
            if not isinstance(lines, list) or not all(isinstance(line, dict) for line in lines):
                raise SubmissionError('lines must be a list of objects')
            payload = encode([LineSpec.from_dict(line) for line in lines])
        else:
            raise SubmissionError('payload or lines is required')

        result = await dispatcher.submit(
            payload,
            document_type=body.get('documentType', 'custom'),
            metadata=body.get('metadata') or {},
            record_id=body.get('recordId'),
            requester=body.get('requester'),
        )
    except (SubmissionError, ValueError, KeyError, TypeError, AttributeError) as e:
        return _error(400, str(e))

    return web.json_response(result.to_dict(), status=201 if result.success else 500)


async def list_jobs(request: web.Request) -> web.Response:
    ledger = request.app[DISPATCHER].ledger
    status = request.query.get('status')
    if status and status not in STATUSES:
        return _error(400, f'Unknown status {status!r}')
    limit = max(1, min(parse_int(request.query.get('limit'), 50), 500))
    jobs = await _run(lambda: ledger.list_jobs(device_id=request.query.get('deviceId'), status=status,
                                              limit=limit))
    return web.json_response({'jobs': [j.to_dict() for j in jobs]})


async def get_job(request: web.Request) -> web.Response:
    job = await _run(request.app[DISPATCHER].ledger.get, request.match_info['job_id'])
    if job is None:
        return _error(404, 'Job not found')
    return web.json_response({'job': job.to_dict()})


async def presence(request: web.Request) -> web.Response:
    directory = request.app[DISPATCHER].presence
    return web.json_response({
        'records': [r.to_dict() for r in directory.snapshot()],
        'candidates': [r.device_id for r in directory.candidates()],
    })


# ---------------------------------------------------------------------------
# Bridges (remote ledger)
# ---------------------------------------------------------------------------

async def ledger_claim(request: web.Request) -> web.Response:
    body = await _json_body(request)
    device_id = body.get('deviceId')
    if not device_id:
        return _error(400, 'deviceId is required')
    job = await _run(request.app[DISPATCHER].ledger.claim_next_for, device_id)
    return web.json_response({'job': job.to_dict() if job else None})


async def ledger_start(request: web.Request) -> web.Response:
    body = await _json_body(request)
    device_id = body.get('deviceId')
    if not device_id:
        return _error(400, 'deviceId is required')
    job = await _run(request.app[DISPATCHER].ledger.start_processing, request.match_info['job_id'], device_id)
    return web.json_response({'job': job.to_dict() if job else None})


async def ledger_attempt(request: web.Request) -> web.Response:
    try:
        attempts = await _run(request.app[DISPATCHER].ledger.record_attempt, request.match_info['job_id'])
    except KeyError:
        return _error(404, 'Job not found')
    return web.json_response({'attempts': attempts})


async def ledger_status(request: web.Request) -> web.Response:
    body = await _json_body(request)
    status = body.get('status')
    if status not in TERMINAL_STATUSES:
        return _error(400, f'status must be one of {", ".join(TERMINAL_STATUSES)}')
    updated = await _run(request.app[DISPATCHER].ledger.update_status,
                         request.match_info['job_id'], status, body.get('errorMessage'))
    return web.json_response({'updated': updated})


# ---------------------------------------------------------------------------
# Network relay
# ---------------------------------------------------------------------------

async def network_print(request: web.Request) -> web.Response:
    body = await _json_body(request)
    ip = body.get('ip')
    port = parse_int(body.get('port'), 9100)
    if not ip or not body.get('data'):
        return _error(400, 'ip and data are required')
    try:
        data = from_base64(body['data'])
    except (binascii.Error, ValueError):
        return _error(400, 'data is not valid base64')
    try:
        sent = await _run(send_raw_tcp, ip, port, data)
    except TransportError as e:
        logger.error(f"Relay to {ip}:{port} failed: {e}")
        return web.json_response({'success': False, 'error': str(e)}, status=502)
    return web.json_response({'success': True, 'bytes': sent})


async def network_printers(request: web.Request) -> web.Response:
    subnets = request.query.getall('subnet', [])
    bad = [s for s in subnets if not SUBNET_RE.match(s)]
    if bad:
        return _error(400, f'subnet must look like 192.168.1, got {bad[0]!r}')
    printers = await _run(lambda: discover_printers(subnets or None))
    return web.json_response({
        'printers': [p.to_dict() for p in printers],
        'total': len(printers),
        'message': f'{len(printers)} printer(s) found' if printers else 'No printers found on the network',
    })


async def health(request: web.Request) -> web.Response:
    dispatcher = request.app[DISPATCHER]
    return web.json_response({
        'status': 'ok',
        'bridgesOnline': len(dispatcher.presence.candidates()),
        'realtimeClients': len(request.app[HUB].clients),
        'jobs': await _run(dispatcher.ledger.counts),
    })


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_app(dispatcher: Dispatcher, hub: Hub, api_key: Optional[str] = None) -> web.Application:
    app = web.Application(middlewares=[api_key_middleware(api_key)])
    app[DISPATCHER] = dispatcher
    app[HUB] = hub

    app.router.add_post('/api/print-jobs', submit_job)
    app.router.add_get('/api/print-jobs', list_jobs)
    app.router.add_get('/api/print-jobs/{job_id}', get_job)
    app.router.add_get('/api/presence', presence)
    app.router.add_post('/api/ledger/claim', ledger_claim)
    app.router.add_post('/api/ledger/{job_id}/start', ledger_start)
    app.router.add_post('/api/ledger/{job_id}/attempt', ledger_attempt)
    app.router.add_post('/api/ledger/{job_id}/status', ledger_status)
    app.router.add_post('/api/network-print', network_print)
    app.router.add_get('/api/network-printers', network_printers)
    app.router.add_get('/health', health)
    add_routes(app, hub)

    async def lifecycle(app):
        await dispatcher.start()
        yield
        await dispatcher.stop()

    app.cleanup_ctx.append(lifecycle)
    return app


def build_app(config) -> web.Application:
    """Wire ledger, hub, presence and dispatcher from configuration."""
    hub = Hub()
    ledger = SqlJobLedger.from_config(config)
    directory = PresenceDirectory(stale_after=float(config.get('presence.stale_after', 120)))
    dispatcher = Dispatcher.from_config(
        config, ledger, directory,
        jobs_channel=LocalChannel(hub, JOBS_TOPIC),
        presence_channel=LocalChannel(hub, PRESENCE_TOPIC),
    )
    return create_app(dispatcher, hub, api_key=config.get('dispatcher.api_key') or None)
