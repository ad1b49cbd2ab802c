"""
Bridge runtime.

Runs on the machine attached to the printer. Holds two realtime sessions
(presence and jobs), each reconnecting on its own, and a single worker that
executes jobs strictly one at a time:

  - print_job announcements addressed to this device (or unaddressed) go into
    a FIFO
  - when the FIFO is empty the worker asks the ledger for the next job
    (after each drain, whenever the jobs session connects, and on a timer),
    which picks up anything announced while this bridge was away
"""
import asyncio
import logging
from typing import Callable, List, Optional

from print_bridge.bridge.diagnostics import JobLog
from print_bridge.jobs.ledger import JobLedger, SqlJobLedger
from print_bridge.jobs.models import JobOutcome, PrintJob
from print_bridge.jobs.processor import JobProcessor, RetryPolicy
from print_bridge.jobs.remote import HttpJobLedger
from print_bridge.printers.dialects import DialectPreferences
from print_bridge.printers.drivers import build_transports
from print_bridge.realtime.channel import (
    EVENT_PRINT_JOB, EVENT_PRINT_JOB_RESPONSE, JOBS_TOPIC, PRESENCE_TOPIC,
    Channel, ChannelError, ReconnectPolicy, maintain_session,
)
from print_bridge.realtime.cometd import CometDChannel
from print_bridge.realtime.presence import PresenceDirectory

logger = logging.getLogger(__name__)

# Remember finished job ids so repeated announcements are dropped (in-memory, resets on restart)
MAX_FINISHED_CACHE = 10_000

DEFAULT_HEARTBEAT_INTERVAL = 45
DEFAULT_POLL_INTERVAL = 30
DEFAULT_SHUTDOWN_TIMEOUT = 30


class BridgeRuntime:

    def __init__(self, device_id: str, ledger: JobLedger, processor: JobProcessor,
                 presence_channel: Channel, jobs_channel: Channel,
                 presence: Optional[PresenceDirectory] = None, job_log: Optional[JobLog] = None,
                 heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 reconnect_policy: Optional[ReconnectPolicy] = None,
                 shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT):
        self.device_id = device_id
        self.ledger = ledger
        self.processor = processor
        self.presence_channel = presence_channel
        self.jobs_channel = jobs_channel
        self.presence = presence or PresenceDirectory(device_id=device_id)
        self.job_log = job_log or JobLog()
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()

        self.queue: asyncio.Queue = asyncio.Queue()
        self.queued_ids = set()
        self.finished_ids = set()
        self.outcome_handlers: List[Callable] = []
        self.running = False

        self._stopping = asyncio.Event()
        self._wake = asyncio.Event()
        self._poll_due = False
        self._tasks: List[asyncio.Task] = []
        self._worker_task: Optional[asyncio.Task] = None
        self.shutdown_timeout = shutdown_timeout

        self.jobs_channel.on(EVENT_PRINT_JOB, self._on_announcement)

    # -- lifecycle ------------------------------------------------------------

    async def start(self):
        if self.running:
            return
        self.running = True
        self._stopping.clear()
        await self.presence.attach(self.presence_channel, request_sync=False)
        self.processor.transports.open()

        self._worker_task = asyncio.create_task(self._worker())
        self._tasks = [
            asyncio.create_task(maintain_session(
                self.presence_channel, self.reconnect_policy, self._stopping, self._on_presence_connected)),
            asyncio.create_task(maintain_session(
                self.jobs_channel, self.reconnect_policy, self._stopping, self._on_jobs_connected)),
            self._worker_task,
            asyncio.create_task(self._every(self.heartbeat_interval, self._heartbeat)),
            asyncio.create_task(self._every(self.poll_interval, self._request_poll_async)),
        ]
        logger.info(f"Bridge {self.device_id} started")

    async def stop(self):
        """Stop without reconnecting: announce leave, close sessions, cancel timers."""
        if not self.running:
            return
        self.running = False
        self._stopping.set()
        self._wake.set()

        if self.presence_channel.connected:
            try:
                await self.presence.leave()
            except ChannelError as e:
                logger.warning(f"Could not publish leave: {e}")

        await self.presence_channel.close()
        await self.jobs_channel.close()

        # the job in flight finishes; nothing new is started
        if self._worker_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._worker_task), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Job still running after {self.shutdown_timeout:g}s — cancelling worker")
            except Exception as e:
                logger.error(f"Worker ended with an error: {e}", exc_info=True)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._worker_task = None
        self.processor.transports.close()
        logger.info(f"Bridge {self.device_id} stopped")

    async def run_forever(self):
        await self.start()
        await self._stopping.wait()

    def on_outcome(self, handler: Callable):
        self.outcome_handlers.append(handler)

    # -- sessions and timers --------------------------------------------------

    async def _on_presence_connected(self):
        await self._heartbeat()

    async def _on_jobs_connected(self):
        self.request_poll()

    async def _heartbeat(self):
        if not self.presence_channel.connected:
            return
        try:
            await self.presence.heartbeat()
        except ChannelError as e:
            logger.warning(f"Heartbeat failed: {e}")

    def request_poll(self):
        self._poll_due = True
        self._wake.set()

    async def _request_poll_async(self):
        self.request_poll()

    async def _every(self, interval: float, fn):
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await fn()

    # -- intake ---------------------------------------------------------------

    def _on_announcement(self, payload: dict):
        try:
            job = PrintJob.from_announcement(payload)
        except ValueError as e:
            logger.error(f"Ignoring malformed print_job announcement: {e}")
            return
        if not job.is_unassigned and job.device_id != self.device_id:
            return
        if job.job_id in self.finished_ids or job.job_id in self.queued_ids:
            logger.info(f"Duplicate announcement — job already handled: {job.job_id}")
            return
        self.queued_ids.add(job.job_id)
        self.queue.put_nowait(job)
        logger.info(f"Queued {job.job_id} (FIFO depth {self.queue.qsize()})")
        self._wake.set()

    # -- worker ---------------------------------------------------------------

    async def _worker(self):
        while not self._stopping.is_set():
            self._wake.clear()

            if not self.queue.empty():
                job = self.queue.get_nowait()
                self.queued_ids.discard(job.job_id)
                await self._run(job)
                if self.queue.empty():
                    self._poll_due = True
                continue

            if self._poll_due:
                self._poll_due = False
                job = await self._claim()
                if job is not None:
                    await self._run(job)
                    self._poll_due = True
                continue

            await self._wake.wait()

    async def _claim(self) -> Optional[PrintJob]:
        loop = asyncio.get_running_loop()
        try:
            job = await loop.run_in_executor(None, self.ledger.claim_next_for, self.device_id)
        except Exception as e:
            logger.error(f"Ledger poll failed: {e}")
            return None
        if job is not None:
            logger.info(f"Claimed {job.job_id} from the ledger")
        return job

    async def _run(self, job: PrintJob):
        if job.job_id in self.finished_ids:
            logger.info(f"Skipping {job.job_id} — already finished here")
            return
        try:
            outcome = await self.processor.process(job)
        except Exception as e:
            logger.error(f"Job {job.job_id} aborted: {e}", exc_info=True)
            return

        if len(self.finished_ids) >= MAX_FINISHED_CACHE:
            self.finished_ids.clear()
        self.finished_ids.add(job.job_id)

        if outcome is None:
            return
        self.job_log.record(outcome)
        await self._publish_outcome(outcome)
        for handler in self.outcome_handlers:
            try:
                handler(outcome)
            except Exception as e:
                logger.error(f"Outcome handler failed for {outcome.job_id}: {e}", exc_info=True)

    async def _publish_outcome(self, outcome: JobOutcome):
        if not self.jobs_channel.connected:
            logger.warning(f"Jobs channel down — outcome of {outcome.job_id} only in the ledger")
            return
        try:
            await self.jobs_channel.publish(EVENT_PRINT_JOB_RESPONSE, outcome.to_event())
        except ChannelError as e:
            logger.warning(f"Could not publish outcome of {outcome.job_id}: {e}")


def build_ledger(config) -> JobLedger:
    """Direct database access when ledger.url is set, the dispatcher's REST API otherwise."""
    if config.get('ledger.url'):
        return SqlJobLedger.from_config(config)
    base_url = config.get('ledger.remote_url') or config.get('bridge.dispatcher_url', 'http://localhost:8080')
    return HttpJobLedger(base_url, api_key=config.get('dispatcher.api_key') or None)


def build_runtime(config, device_id: str) -> BridgeRuntime:
    """Wire a bridge from configuration."""
    dispatcher_url = config.get('bridge.dispatcher_url', 'http://localhost:8080').rstrip('/')
    realtime_url = config.get('realtime.url') or f"{dispatcher_url}/cometd"
    api_key = config.get('dispatcher.api_key') or None

    ledger = build_ledger(config)
    processor = JobProcessor(
        device_id=device_id,
        ledger=ledger,
        transports=build_transports(config),
        preferences=DialectPreferences(config.get('bridge.preferences_file', '~/.print_bridge/dialects.json')),
        policy=RetryPolicy.from_config(config),
    )
    return BridgeRuntime(
        device_id=device_id,
        ledger=ledger,
        processor=processor,
        presence_channel=CometDChannel(realtime_url, PRESENCE_TOPIC, api_key=api_key),
        jobs_channel=CometDChannel(realtime_url, JOBS_TOPIC, api_key=api_key),
        presence=PresenceDirectory(stale_after=float(config.get('presence.stale_after', 120)), device_id=device_id),
        job_log=JobLog(config.get('bridge.job_log_file', '~/.print_bridge/job_log.json')),
        heartbeat_interval=float(config.get('bridge.heartbeat_interval', DEFAULT_HEARTBEAT_INTERVAL)),
        poll_interval=float(config.get('bridge.poll_interval', DEFAULT_POLL_INTERVAL)),
        reconnect_policy=ReconnectPolicy.from_config(config),
    )
