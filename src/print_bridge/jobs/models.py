"""
Print job models.

PrintJob is the ledger row as the rest of the code sees it; the SQL table lives
in jobs/ledger.py. Announcements on the jobs topic carry the same fields in
camelCase with the payload base64 encoded.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from print_bridge.utils import from_base64, now_ms, parse_int, to_base64

logger = logging.getLogger(__name__)

UNASSIGNED_DEVICE = 'unassigned'

PENDING = 'pending'
PROCESSING = 'processing'
COMPLETED = 'completed'
FAILED = 'failed'
STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)
TERMINAL_STATUSES = (COMPLETED, FAILED)

DEFAULT_MAX_ATTEMPTS = 2

DOCUMENT_TYPES = ('service_order', 'checklist', 'receipt', 'warranty', 'custom')

OUTCOME_OK = 'OK'
OUTCOME_ERROR = 'ERROR'


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class PrintJob:
    job_id: str
    payload: bytes
    device_id: str = UNASSIGNED_DEVICE
    status: str = PENDING

    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    record_id: Optional[str] = None
    document_type: str = 'custom'
    metadata: dict = field(default_factory=dict)

    created_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def is_unassigned(self) -> bool:
        return not self.device_id or self.device_id == UNASSIGNED_DEVICE

    def to_dict(self) -> dict:
        """JSON shape used by the dispatcher's REST API."""
        return {
            'jobId': self.job_id,
            'deviceId': self.device_id,
            'status': self.status,
            'attempts': self.attempts,
            'maxAttempts': self.max_attempts,
            'recordId': self.record_id,
            'documentType': self.document_type,
            'metadata': self.metadata,
            'payload': to_base64(self.payload),
            'createdAt': _iso(self.created_at),
            'processingStartedAt': _iso(self.processing_started_at),
            'finishedAt': _iso(self.finished_at),
            'processingDurationMs': self.processing_duration_ms,
            'errorMessage': self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PrintJob':
        return cls(
            job_id=data['jobId'],
            payload=from_base64(data.get('payload') or ''),
            device_id=data.get('deviceId') or UNASSIGNED_DEVICE,
            status=data.get('status') or PENDING,
            attempts=parse_int(data.get('attempts'), 0),
            max_attempts=parse_int(data.get('maxAttempts'), DEFAULT_MAX_ATTEMPTS),
            record_id=data.get('recordId'),
            document_type=data.get('documentType') or 'custom',
            metadata=data.get('metadata') or {},
            created_at=_dt(data.get('createdAt')),
            processing_started_at=_dt(data.get('processingStartedAt')),
            finished_at=_dt(data.get('finishedAt')),
            processing_duration_ms=data.get('processingDurationMs'),
            error_message=data.get('errorMessage'),
        )

    def to_announcement(self) -> dict:
        """Payload of a print_job event on the jobs topic."""
        return {
            'jobId': self.job_id,
            'deviceId': self.device_id,
            'payload': to_base64(self.payload),
            'documentType': self.document_type,
            'metadata': self.metadata,
            'recordId': self.record_id,
            'maxAttempts': self.max_attempts,
        }

    @classmethod
    def from_announcement(cls, event: dict) -> 'PrintJob':
        """Build a PrintJob from a print_job event. Raises ValueError if it has no id or payload."""
        job_id = event.get('jobId')
        if not job_id:
            raise ValueError("Announcement has no jobId")
        payload = event.get('payload')
        if not payload:
            raise ValueError(f"Announcement {job_id} has no payload")
        return cls(
            job_id=job_id,
            payload=from_base64(payload),
            device_id=event.get('deviceId') or UNASSIGNED_DEVICE,
            document_type=event.get('documentType') or 'custom',
            metadata=event.get('metadata') or {},
            record_id=event.get('recordId'),
            max_attempts=parse_int(event.get('maxAttempts'), DEFAULT_MAX_ATTEMPTS),
        )

    def __str__(self):
        return (
            f"PrintJob(id={self.job_id} device={self.device_id} status={self.status} "
            f"type={self.document_type} attempts={self.attempts}/{self.max_attempts} "
            f"bytes={len(self.payload)})"
        )


@dataclass
class JobOutcome:
    """Result of one job on a bridge; published as print_job_response."""

    job_id: str
    device_id: str
    status: str                         # OK | ERROR
    attempts: int = 0
    error: Optional[str] = None
    dialect_used: Optional[str] = None
    transport_type: Optional[str] = None
    processing_time_ms: Optional[int] = None
    timestamp: int = field(default_factory=now_ms)

    @property
    def ok(self) -> bool:
        return self.status == OUTCOME_OK

    def to_event(self) -> dict:
        event = {
            'jobId': self.job_id,
            'deviceId': self.device_id,
            'status': self.status,
            'timestamp': self.timestamp,
            'attempts': self.attempts,
        }
        if self.error:
            event['error'] = self.error
        if self.dialect_used:
            event['dialectUsed'] = self.dialect_used
        if self.transport_type:
            event['transportType'] = self.transport_type
        if self.processing_time_ms is not None:
            event['processingTimeMs'] = self.processing_time_ms
        return event

    @classmethod
    def from_event(cls, event: dict) -> 'JobOutcome':
        return cls(
            job_id=event.get('jobId', ''),
            device_id=event.get('deviceId', ''),
            status=event.get('status', OUTCOME_ERROR),
            attempts=parse_int(event.get('attempts'), 0),
            error=event.get('error'),
            dialect_used=event.get('dialectUsed'),
            transport_type=event.get('transportType'),
            processing_time_ms=event.get('processingTimeMs'),
            timestamp=parse_int(event.get('timestamp'), now_ms()),
        )


@dataclass
class DispatchResult:
    success: bool
    job_id: Optional[str] = None
    device_id: Optional[str] = None
    queued: bool = False
    message: str = ''
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data: Any = {
            'success': self.success,
            'jobId': self.job_id,
            'deviceId': self.device_id,
            'queued': self.queued,
            'message': self.message,
        }
        if self.error:
            data['error'] = self.error
        return data
