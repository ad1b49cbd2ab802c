"""Job log kept on each bridge: the last 100 outcomes, newest first, as JSON."""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from print_bridge.jobs.models import JobOutcome

logger = logging.getLogger(__name__)

MAX_ENTRIES = 100


class JobLog:

    def __init__(self, path: Optional[str] = None, max_entries: int = MAX_ENTRIES):
        self.path = Path(path).expanduser() if path else None
        self.max_entries = max_entries
        self.entries: List[dict] = []
        if self.path and self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    self.entries = json.load(f)[:max_entries]
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Could not read job log {self.path}: {e}")

    def record(self, outcome: JobOutcome):
        entry = {
            'jobId': outcome.job_id,
            'timestamp': datetime.now().isoformat(),
            'status': outcome.status,
            'attempts': outcome.attempts,
            'dialect': outcome.dialect_used,
            'transport': outcome.transport_type,
            'elapsedMs': outcome.processing_time_ms,
            'error': outcome.error,
        }
        self.entries.insert(0, entry)
        del self.entries[self.max_entries:]
        self._save()

    def _save(self):
        if not self.path:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                json.dump(self.entries, f, indent=2)
        except OSError as e:
            logger.error(f"Could not write job log {self.path}: {e}")

    def recent(self, limit: int = 20) -> List[dict]:
        return self.entries[:limit]

    def clear(self):
        self.entries = []
        self._save()
