"""
Job dispatch.

submit() picks a target bridge, writes the ledger row and announces the job on
the jobs topic. The ledger row is the source of truth: an announcement that
nobody hears is picked up later by a bridge polling claim_next_for().

Target selection:
  1. most recently seen online print bridge (after a bounded presence sync)
  2. else the device of the most recent job that had one
  3. else "unassigned"; the first bridge to poll claims it
"""
import asyncio
import logging
from typing import Callable, List, Optional

from print_bridge.jobs.ledger import JobLedger
from print_bridge.jobs.models import (
    DEFAULT_MAX_ATTEMPTS, DOCUMENT_TYPES, UNASSIGNED_DEVICE, DispatchResult, JobOutcome,
)
from print_bridge.realtime.channel import (
    EVENT_PRINT_JOB, EVENT_PRINT_JOB_RESPONSE, Channel, ChannelError, ReconnectPolicy, maintain_session,
)
from print_bridge.realtime.presence import PresenceDirectory

logger = logging.getLogger(__name__)

DEFAULT_PRESENCE_SYNC_TIMEOUT = 3.0


class SubmissionError(ValueError):
    """Submission rejected before any ledger row was written."""


class Dispatcher:

    def __init__(self, ledger: JobLedger, presence: PresenceDirectory,
                 jobs_channel: Optional[Channel] = None, presence_channel: Optional[Channel] = None,
                 presence_sync_timeout: float = DEFAULT_PRESENCE_SYNC_TIMEOUT,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.ledger = ledger
        self.presence = presence
        self.jobs_channel = jobs_channel
        self.presence_channel = presence_channel
        self.presence_sync_timeout = presence_sync_timeout
        self.max_attempts = max_attempts
        self.outcome_handlers: List[Callable] = []
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

        if self.jobs_channel is not None:
            self.jobs_channel.on(EVENT_PRINT_JOB_RESPONSE, self._on_outcome)

    @classmethod
    def from_config(cls, config, ledger, presence, jobs_channel=None, presence_channel=None) -> 'Dispatcher':
        return cls(
            ledger, presence, jobs_channel=jobs_channel, presence_channel=presence_channel,
            presence_sync_timeout=float(config.get('dispatcher.presence_sync_timeout', DEFAULT_PRESENCE_SYNC_TIMEOUT)),
            max_attempts=int(config.get('dispatcher.max_attempts', DEFAULT_MAX_ATTEMPTS)),
        )

    # -- lifecycle ------------------------------------------------------------

    async def start(self, policy: Optional[ReconnectPolicy] = None):
        """Connect the channels and keep them connected in the background."""
        policy = policy or ReconnectPolicy()
        self._stopping.clear()

        if self.presence_channel is not None:
            async def _presence_connected():
                await self.presence.attach(self.presence_channel)
            self._tasks.append(asyncio.create_task(
                maintain_session(self.presence_channel, policy, self._stopping, _presence_connected)))

        if self.jobs_channel is not None:
            self._tasks.append(asyncio.create_task(
                maintain_session(self.jobs_channel, policy, self._stopping)))
        logger.info("Dispatcher started")

    async def stop(self):
        self._stopping.set()
        for channel in (self.presence_channel, self.jobs_channel):
            if channel is not None:
                await channel.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Dispatcher stopped")

    def on_outcome(self, handler: Callable):
        self.outcome_handlers.append(handler)

    def _on_outcome(self, payload: dict):
        outcome = JobOutcome.from_event(payload)
        if outcome.ok:
            logger.info(f"✓ Job {outcome.job_id} printed by {outcome.device_id} "
                        f"({outcome.dialect_used}/{outcome.transport_type}, {outcome.processing_time_ms} ms)")
        else:
            logger.warning(f"Job {outcome.job_id} failed on {outcome.device_id}: {outcome.error}")
        for handler in self.outcome_handlers:
            try:
                handler(outcome)
            except Exception as e:
                logger.error(f"Outcome handler failed for {outcome.job_id}: {e}", exc_info=True)

    # -- submission -----------------------------------------------------------

    def _validate(self, payload, document_type: str):
        if not isinstance(payload, (bytes, bytearray)):
            raise SubmissionError("payload must be bytes")
        if not payload:
            raise SubmissionError("payload is empty")
        if document_type not in DOCUMENT_TYPES:
            raise SubmissionError(
                f"Unknown document type {document_type!r} (expected one of {', '.join(DOCUMENT_TYPES)})")

    async def select_target(self):
        """Return (device_id, online) for a new job."""
        loop = asyncio.get_running_loop()
        synced = await self.presence.wait_for_sync(self.presence_sync_timeout)
        if not synced:
            logger.debug("Presence sync timed out — using current snapshot")
        candidates = self.presence.candidates()
        if candidates:
            return candidates[0].device_id, True
        recent = await loop.run_in_executor(None, self.ledger.most_recent_target)
        return (recent or UNASSIGNED_DEVICE), False

    async def submit(self, payload: bytes, document_type: str = 'custom', metadata: Optional[dict] = None,
                     record_id: Optional[str] = None, requester: Optional[str] = None) -> DispatchResult:
        """
        Create and announce a print job.

        Raises SubmissionError for invalid input. Ledger failures are returned
        as an unsuccessful DispatchResult.
        """
        self._validate(payload, document_type)
        metadata = dict(metadata or {})
        if requester:
            metadata.setdefault('requester', requester)

        loop = asyncio.get_running_loop()
        device_id = None
        try:
            device_id, online = await self.select_target()
            busy = False
            if device_id != UNASSIGNED_DEVICE:
                busy = await loop.run_in_executor(None, self.ledger.has_processing, device_id)
        except Exception as e:
            logger.error(f"Could not select a printer: {e}", exc_info=True)
            return DispatchResult(success=False, device_id=device_id, message='Could not select a printer',
                                  error=str(e))
        queued = busy or not online

        try:
            job = await loop.run_in_executor(
                None,
                lambda: self.ledger.create(
                    bytes(payload), device_id=device_id, document_type=document_type,
                    metadata=metadata, record_id=record_id, max_attempts=self.max_attempts,
                ),
            )
        except Exception as e:
            logger.error(f"Could not create print job: {e}", exc_info=True)
            return DispatchResult(success=False, device_id=device_id, message='Could not create print job',
                                  error=str(e))

        await self._announce(job)

        if not online:
            message = 'No bridge online — job queued until a bridge connects'
        elif busy:
            message = f'Printer {device_id} is busy — job queued'
        else:
            message = f'Job sent to {device_id}'
        logger.info(f"Dispatched {job.job_id} → {device_id} (queued={queued})")
        return DispatchResult(success=True, job_id=job.job_id, device_id=device_id, queued=queued,
                              message=message)

    async def _announce(self, job):
        if self.jobs_channel is None:
            logger.warning(f"No jobs channel — {job.job_id} will be picked up by polling")
            return
        try:
            await self.jobs_channel.publish(EVENT_PRINT_JOB, job.to_announcement())
        except ChannelError as e:
            logger.warning(f"Could not announce {job.job_id}, bridges will poll for it: {e}")
