"""
Ledger client for bridges without database access.

Talks to the dispatcher's /api/ledger endpoints with the shared API key.
"""
import logging
from typing import List, Optional

import requests

from print_bridge.jobs.ledger import JobLedger
from print_bridge.jobs.models import PrintJob, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15


class LedgerError(Exception):
    """The remote ledger could not be reached or answered with an error."""


class _BearerAuth(requests.auth.AuthBase):
    """Attaches a Bearer token to requests."""
    def __init__(self, token: str):
        self.token = token

    def __call__(self, r):
        r.headers['Authorization'] = f'Bearer {self.token}'
        return r


class HttpJobLedger(JobLedger):

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = REQUEST_TIMEOUT):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.http = requests.Session()
        if api_key:
            self.http.auth = _BearerAuth(api_key)

    def _request(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            resp = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise LedgerError(f"{method} {url} failed: {e}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise LedgerError(f"{method} {url} → {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    def claim_next_for(self, device_id: str) -> Optional[PrintJob]:
        body = self._request('POST', '/api/ledger/claim', json={'deviceId': device_id})
        job = (body or {}).get('job')
        return PrintJob.from_dict(job) if job else None

    def start_processing(self, job_id: str, device_id: str) -> Optional[PrintJob]:
        body = self._request('POST', f'/api/ledger/{job_id}/start', json={'deviceId': device_id})
        job = (body or {}).get('job')
        return PrintJob.from_dict(job) if job else None

    def record_attempt(self, job_id: str) -> int:
        body = self._request('POST', f'/api/ledger/{job_id}/attempt')
        if body is None:
            raise KeyError(job_id)
        return int(body['attempts'])

    def update_status(self, job_id: str, status: str, error_message: Optional[str] = None) -> bool:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Invalid terminal status: {status!r}")
        body = self._request('POST', f'/api/ledger/{job_id}/status',
                             json={'status': status, 'errorMessage': error_message})
        return bool((body or {}).get('updated'))

    def get(self, job_id: str) -> Optional[PrintJob]:
        body = self._request('GET', f'/api/print-jobs/{job_id}')
        return PrintJob.from_dict(body['job']) if body else None

    def list_jobs(self, device_id: Optional[str] = None, status: Optional[str] = None,
                  limit: int = 50) -> List[PrintJob]:
        params = {'limit': limit}
        if device_id:
            params['deviceId'] = device_id
        if status:
            params['status'] = status
        body = self._request('GET', '/api/print-jobs', params=params) or {}
        return [PrintJob.from_dict(j) for j in body.get('jobs', [])]
