"""
Durable job ledger.

One row per print job in the `print_jobs` table. Rows are never deleted.
Every state change is a conditional UPDATE (compare-and-swap on status and,
for unassigned jobs, on the target device) so concurrent bridges cannot both
win the same transition.
"""
import logging
import uuid
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, LargeBinary, String, Text, create_engine, select, update
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from print_bridge.jobs.models import (
    COMPLETED, DEFAULT_MAX_ATTEMPTS, DOCUMENT_TYPES, FAILED, PENDING, PROCESSING,
    TERMINAL_STATUSES, UNASSIGNED_DEVICE, PrintJob,
)
from print_bridge.utils import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_STALE_PROCESSING_SECONDS = 300


class PrintJobRow(Base):
    __tablename__ = 'print_jobs'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), unique=True, nullable=False, index=True)
    record_id = Column(String)
    document_type = Column(String(32), nullable=False, default='custom')
    payload = Column(LargeBinary, nullable=False)
    job_metadata = Column('metadata', JSON)
    device_id = Column(String, nullable=False, default=UNASSIGNED_DEVICE, index=True)
    status = Column(String(16), nullable=False, default=PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    processing_started_at = Column(DateTime)
    finished_at = Column(DateTime)
    processing_duration_ms = Column(Integer)
    error_message = Column(Text)

    def to_job(self) -> PrintJob:
        return PrintJob(
            job_id=self.job_id,
            payload=self.payload,
            device_id=self.device_id,
            status=self.status,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            record_id=self.record_id,
            document_type=self.document_type,
            metadata=self.job_metadata or {},
            created_at=self.created_at,
            processing_started_at=self.processing_started_at,
            finished_at=self.finished_at,
            processing_duration_ms=self.processing_duration_ms,
            error_message=self.error_message,
        )


def make_engine(url: str):
    """SQLAlchemy engine for the ledger; SQLite connections are shared across executor threads."""
    if url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


class JobLedger:
    """Operations every ledger backend provides."""

    def create(self, payload: bytes, device_id: Optional[str] = None, document_type: str = 'custom',
               metadata: Optional[dict] = None, record_id: Optional[str] = None,
               max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> PrintJob:
        raise NotImplementedError

    def claim_next_for(self, device_id: str) -> Optional[PrintJob]:
        raise NotImplementedError

    def start_processing(self, job_id: str, device_id: str) -> Optional[PrintJob]:
        raise NotImplementedError

    def record_attempt(self, job_id: str) -> int:
        raise NotImplementedError

    def update_status(self, job_id: str, status: str, error_message: Optional[str] = None) -> bool:
        raise NotImplementedError

    def most_recent_target(self) -> Optional[str]:
        raise NotImplementedError

    def has_processing(self, device_id: str) -> bool:
        raise NotImplementedError

    def get(self, job_id: str) -> Optional[PrintJob]:
        raise NotImplementedError

    def list_jobs(self, device_id: Optional[str] = None, status: Optional[str] = None,
                  limit: int = 50) -> List[PrintJob]:
        raise NotImplementedError


class SqlJobLedger(JobLedger):
    """Ledger stored in any SQLAlchemy-supported database (SQLite by default)."""

    def __init__(self, url: str = 'sqlite:///print_jobs.db',
                 stale_processing_seconds: int = DEFAULT_STALE_PROCESSING_SECONDS, engine=None):
        self.engine = engine or make_engine(url)
        self.stale_processing_seconds = stale_processing_seconds
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @classmethod
    def from_config(cls, config) -> 'SqlJobLedger':
        return cls(
            url=config.get('ledger.url') or 'sqlite:///print_jobs.db',
            stale_processing_seconds=int(config.get('ledger.stale_processing_seconds',
                                                    DEFAULT_STALE_PROCESSING_SECONDS)),
        )

    # -- writes ---------------------------------------------------------------

    def create(self, payload: bytes, device_id: Optional[str] = None, document_type: str = 'custom',
               metadata: Optional[dict] = None, record_id: Optional[str] = None,
               max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> PrintJob:
        if not payload:
            raise ValueError("payload must not be empty")
        if document_type not in DOCUMENT_TYPES:
            raise ValueError(f"Unknown document type: {document_type!r}")
        row = PrintJobRow(
            job_id=str(uuid.uuid4()),
            record_id=record_id,
            document_type=document_type,
            payload=bytes(payload),
            job_metadata=metadata or {},
            device_id=device_id or UNASSIGNED_DEVICE,
            status=PENDING,
            attempts=0,
            max_attempts=max_attempts,
            created_at=utcnow(),
        )
        with self.Session() as session:
            session.add(row)
            session.commit()
            job = row.to_job()
        logger.info(f"Ledger: created {job}")
        return job

    def claim_next_for(self, device_id: str) -> Optional[PrintJob]:
        """
        Oldest pending job this device may run, or None.

        Unassigned jobs are rewritten to the caller first; if another bridge
        got there first the next candidate is tried.
        """
        with self.Session() as session:
            self._recover_stale(session, device_id)

            candidates = session.execute(
                select(PrintJobRow.job_id, PrintJobRow.device_id)
                .where(
                    PrintJobRow.status == PENDING,
                    PrintJobRow.device_id.in_([device_id, UNASSIGNED_DEVICE]),
                    PrintJobRow.attempts < PrintJobRow.max_attempts,
                )
                .order_by(PrintJobRow.seq)
            ).all()

            for job_id, target in candidates:
                if target == UNASSIGNED_DEVICE:
                    result = session.execute(
                        update(PrintJobRow).execution_options(synchronize_session=False)
                        .where(
                            PrintJobRow.job_id == job_id,
                            PrintJobRow.status == PENDING,
                            PrintJobRow.device_id == UNASSIGNED_DEVICE,
                        )
                        .values(device_id=device_id)
                    )
                    session.commit()
                    if result.rowcount != 1:
                        logger.debug(f"Ledger: lost claim race for {job_id}")
                        continue
                    logger.info(f"Ledger: unassigned job {job_id} claimed by {device_id}")
                row = session.execute(select(PrintJobRow).where(PrintJobRow.job_id == job_id)).scalar_one()
                return row.to_job()
        return None

    def _recover_stale(self, session, device_id: str):
        """Requeue jobs stuck in processing; fail those with no attempts left."""
        if not self.stale_processing_seconds:
            return
        cutoff = utcnow() - timedelta(seconds=self.stale_processing_seconds)
        stale = (
            PrintJobRow.status == PROCESSING,
            PrintJobRow.processing_started_at < cutoff,
        )
        requeued = session.execute(
            update(PrintJobRow).execution_options(synchronize_session=False)
            .where(*stale, PrintJobRow.attempts < PrintJobRow.max_attempts)
            .values(status=PENDING, device_id=device_id, processing_started_at=None)
        ).rowcount
        abandoned = session.execute(
            update(PrintJobRow).execution_options(synchronize_session=False)
            .where(*stale, PrintJobRow.attempts >= PrintJobRow.max_attempts)
            .values(status=FAILED, finished_at=utcnow(),
                    error_message='Processing abandoned by bridge')
        ).rowcount
        session.commit()
        if requeued:
            logger.warning(f"Ledger: requeued {requeued} stale processing job(s) to {device_id}")
        if abandoned:
            logger.warning(f"Ledger: failed {abandoned} stale processing job(s) with no attempts left")

    def start_processing(self, job_id: str, device_id: str) -> Optional[PrintJob]:
        """pending → processing. None when the job is not pending (already taken or finished)."""
        with self.Session() as session:
            result = session.execute(
                update(PrintJobRow).execution_options(synchronize_session=False)
                .where(
                    PrintJobRow.job_id == job_id,
                    PrintJobRow.status == PENDING,
                    PrintJobRow.device_id.in_([device_id, UNASSIGNED_DEVICE]),
                )
                .values(status=PROCESSING, device_id=device_id, processing_started_at=utcnow())
            )
            session.commit()
            if result.rowcount != 1:
                logger.info(f"Ledger: job {job_id} not pending for {device_id} — skipping")
                return None
            row = session.execute(select(PrintJobRow).where(PrintJobRow.job_id == job_id)).scalar_one()
            return row.to_job()

    def record_attempt(self, job_id: str) -> int:
        with self.Session() as session:
            session.execute(
                update(PrintJobRow).execution_options(synchronize_session=False)
                .where(PrintJobRow.job_id == job_id)
                .values(attempts=PrintJobRow.attempts + 1)
            )
            session.commit()
            attempts = session.execute(
                select(PrintJobRow.attempts).where(PrintJobRow.job_id == job_id)
            ).scalar_one_or_none()
        if attempts is None:
            raise KeyError(job_id)
        return attempts

    def update_status(self, job_id: str, status: str, error_message: Optional[str] = None) -> bool:
        """processing → completed | failed. False when the row is not processing."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Invalid terminal status: {status!r}")
        with self.Session() as session:
            started = session.execute(
                select(PrintJobRow.processing_started_at).where(
                    PrintJobRow.job_id == job_id, PrintJobRow.status == PROCESSING)
            ).scalar_one_or_none()
            finished = utcnow()
            duration = int((finished - started).total_seconds() * 1000) if started else None
            result = session.execute(
                update(PrintJobRow).execution_options(synchronize_session=False)
                .where(PrintJobRow.job_id == job_id, PrintJobRow.status == PROCESSING)
                .values(
                    status=status,
                    finished_at=finished,
                    processing_duration_ms=duration,
                    error_message=error_message if status == FAILED else None,
                )
            )
            session.commit()
        if result.rowcount != 1:
            logger.warning(f"Ledger: rejected {status} for {job_id} (not processing)")
            return False
        logger.info(f"Ledger: job {job_id} → {status}" + (f" ({error_message})" if error_message else ''))
        return True

    # -- reads ----------------------------------------------------------------

    def most_recent_target(self) -> Optional[str]:
        with self.Session() as session:
            return session.execute(
                select(PrintJobRow.device_id)
                .where(PrintJobRow.device_id.is_not(None), PrintJobRow.device_id != UNASSIGNED_DEVICE)
                .order_by(PrintJobRow.seq.desc())
                .limit(1)
            ).scalar_one_or_none()

    def has_processing(self, device_id: str) -> bool:
        with self.Session() as session:
            return session.execute(
                select(PrintJobRow.seq)
                .where(PrintJobRow.device_id == device_id, PrintJobRow.status == PROCESSING)
                .limit(1)
            ).first() is not None

    def get(self, job_id: str) -> Optional[PrintJob]:
        with self.Session() as session:
            row = session.execute(select(PrintJobRow).where(PrintJobRow.job_id == job_id)).scalar_one_or_none()
            return row.to_job() if row else None

    def list_jobs(self, device_id: Optional[str] = None, status: Optional[str] = None,
                  limit: int = 50) -> List[PrintJob]:
        query = select(PrintJobRow).order_by(PrintJobRow.seq.desc()).limit(limit)
        if device_id:
            query = query.where(PrintJobRow.device_id == device_id)
        if status:
            query = query.where(PrintJobRow.status == status)
        with self.Session() as session:
            return [row.to_job() for row in session.execute(query).scalars()]

    def counts(self) -> dict:
        """Number of jobs per status, reported by the dispatcher's /health."""
        with self.Session() as session:
            rows = session.execute(select(PrintJobRow.status)).scalars().all()
        return {s: rows.count(s) for s in (PENDING, PROCESSING, COMPLETED, FAILED)}
