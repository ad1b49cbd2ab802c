"""
Per-job execution on a bridge.

One job, up to max_attempts delivery attempts:
  attempt 1  preferred dialect for this device (escpos until something else worked)
  attempt 2  the other dialect, after a short delay

Payloads are stored in ESC/POS and converted when an attempt uses ESC/BEMA.
Every attempt is counted in the ledger before it is made. A send that does not
finish within the attempt timeout counts as a failure; the blocking write is
not interrupted, and no further send starts until it has returned, so bytes
from two attempts never reach the printer interleaved.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from print_bridge.jobs.ledger import JobLedger
from print_bridge.jobs.models import (
    COMPLETED, DEFAULT_MAX_ATTEMPTS, FAILED, OUTCOME_ERROR, OUTCOME_OK, JobOutcome, PrintJob,
)
from print_bridge.printers.dialects import DialectPreferences, alternate, payload_for
from print_bridge.printers.drivers import Transport, TransportChain, TransportError

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    attempt_timeout: float = 10.0
    retry_delay: float = 2.0

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        return cls(
            max_attempts=int(config.get('dispatcher.max_attempts', DEFAULT_MAX_ATTEMPTS)),
            attempt_timeout=float(config.get('bridge.print_timeout', 10.0)),
            retry_delay=float(config.get('bridge.retry_delay', 2.0)),
        )


def start_send(transport: Transport, data: bytes) -> asyncio.Future:
    """Start transport.send in the default executor."""
    return asyncio.get_running_loop().run_in_executor(None, transport.send, data)


async def attempt_with_timeout(write: asyncio.Future, timeout: float, transport_type: str) -> int:
    """
    Wait up to `timeout` seconds for a write started with start_send.
    On timeout the write keeps running; only the wait is abandoned.
    """
    try:
        return await asyncio.wait_for(asyncio.shield(write), timeout=timeout)
    except asyncio.TimeoutError:
        raise TransportError(f"Print timeout after {timeout:g}s ({transport_type})")


class JobProcessor:

    def __init__(self, device_id: str, ledger: JobLedger, transports: TransportChain,
                 preferences: DialectPreferences, policy: Optional[RetryPolicy] = None):
        self.device_id = device_id
        self.ledger = ledger
        self.transports = transports
        self.preferences = preferences
        self.policy = policy or RetryPolicy()
        self._pending_write: Optional[asyncio.Future] = None

    async def _ledger(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def _wait_for_pending_write(self):
        write, self._pending_write = self._pending_write, None
        if write is None or write.done():
            return
        logger.warning("Previous write still running — waiting before sending again")
        try:
            await write
        except Exception as e:
            logger.warning(f"Timed-out write finished with an error: {e}")

    async def _send(self, transport: Transport, data: bytes) -> int:
        await self._wait_for_pending_write()
        self._pending_write = start_send(transport, data)
        return await attempt_with_timeout(self._pending_write, self.policy.attempt_timeout,
                                          transport.transport_type)

    async def process(self, job: PrintJob) -> Optional[JobOutcome]:
        """
        Execute a job end to end. Returns None when the job was not ours to run
        (already processing or finished), otherwise the outcome.
        """
        started = await self._ledger(self.ledger.start_processing, job.job_id, self.device_id)
        if started is None:
            return None

        logger.info(f"Processing: {started}")
        t0 = time.monotonic()
        max_attempts = started.max_attempts or self.policy.max_attempts
        remaining = max(0, max_attempts - started.attempts)
        preferred = self.preferences.get(self.device_id)
        dialects = (preferred, alternate(preferred))

        attempts = started.attempts
        last_error = 'No attempts left'
        for i in range(remaining):
            dialect = dialects[i % 2]
            if i > 0 and self.policy.retry_delay:
                await asyncio.sleep(self.policy.retry_delay)

            attempts = await self._ledger(self.ledger.record_attempt, job.job_id)
            transport = None
            try:
                transport = self.transports.select()
                data = payload_for(started.payload, dialect)
                logger.info(f"Attempt {attempts}/{max_attempts} for {job.job_id}: "
                            f"{dialect} via {transport.transport_type} ({len(data)} bytes)")
                await self._send(transport, data)
            except TransportError as e:
                last_error = str(e)
                logger.warning(f"Attempt {attempts}/{max_attempts} for {job.job_id} failed: {e}")
                continue
            except Exception as e:
                last_error = f"{e.__class__.__name__}: {e}"
                logger.error(f"Attempt {attempts}/{max_attempts} for {job.job_id} failed: {e}", exc_info=True)
                continue

            elapsed = int((time.monotonic() - t0) * 1000)
            self.preferences.save(dialect, self.device_id)
            await self._ledger(self.ledger.update_status, job.job_id, COMPLETED)
            logger.info(f"✓ Job {job.job_id} printed ({dialect}, {transport.transport_type}, {elapsed} ms)")
            return JobOutcome(
                job_id=job.job_id,
                device_id=self.device_id,
                status=OUTCOME_OK,
                attempts=attempts,
                dialect_used=dialect,
                transport_type=transport.transport_type,
                processing_time_ms=elapsed,
            )

        elapsed = int((time.monotonic() - t0) * 1000)
        await self._ledger(self.ledger.update_status, job.job_id, FAILED, last_error)
        logger.error(f"Job {job.job_id} failed after {attempts} attempt(s): {last_error}")
        return JobOutcome(
            job_id=job.job_id,
            device_id=self.device_id,
            status=OUTCOME_ERROR,
            attempts=attempts,
            error=last_error,
            processing_time_ms=elapsed,
        )
