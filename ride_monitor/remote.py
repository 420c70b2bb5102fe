# ride_monitor/remote.py

"""
Thin client for the remote REST store (PostgREST-style tables).

Used for location-memory reconciliation and event sync. Every failure is
raised as RemoteSyncError; callers keep their local copy authoritative and
retry later.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10


class RemoteSyncError(Exception):
    """Remote store unreachable or returned a non-2xx status."""


class RemoteStore:

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.api_key  = api_key
        self.timeout  = timeout
        self._session = session or requests.Session()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['apikey'] = self.api_key
            headers['Authorization'] = f'Bearer {self.api_key}'
        if extra:
            headers.update(extra)
        return headers

    def _url(self, table: str) -> str:
        return f'{self.base_url}/rest/v1/{table}'

    def upsert(self, table: str, rows: List[dict], on_conflict: Optional[str] = None):
        """Insert-or-merge rows. Raises RemoteSyncError on any failure."""
        if not rows:
            return
        params = {'on_conflict': on_conflict} if on_conflict else None
        try:
            response = self._session.post(
                self._url(table),
                json=rows,
                params=params,
                headers=self._headers({'Prefer': 'resolution=merge-duplicates'}),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteSyncError(f'upsert into {table} failed: {exc}') from exc
        logger.debug("Remote upsert | table=%s | rows=%d", table, len(rows))

    def select(self, table: str, **filters) -> List[dict]:
        """Equality-filtered select, e.g. select('location_memory', device_id=...)."""
        params = {'select': '*'}
        for column, value in filters.items():
            params[column] = f'eq.{value}'
        try:
            response = self._session.get(
                self._url(table),
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            rows = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise RemoteSyncError(f'select from {table} failed: {exc}') from exc
        if not isinstance(rows, list):
            raise RemoteSyncError(f'unexpected payload from {table}: {type(rows).__name__}')
        return rows


class SyncWorker:
    """
    Runs a sync callable on at most one daemon thread at a time.

    request() starts the thread when idle. Requests that arrive while a pass
    is running are folded into a single follow-up pass, so a burst of writes
    costs two pushes at most instead of one thread per write.
    """

    def __init__(self, sync: Callable[[], object], name: str = 'remote-sync'):
        self._sync    = sync
        self._name    = name
        self._lock    = threading.Lock()
        self._running = False
        self._again   = False
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def request(self):
        with self._lock:
            if self._running:
                self._again = True
                return
            self._running = True
            self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
            thread = self._thread
        thread.start()

    def join(self, timeout: Optional[float] = None):
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _loop(self):
        try:
            while True:
                self._sync()
                with self._lock:
                    if not self._again:
                        self._running = False
                        return
                    self._again = False
        except Exception:
            logger.error("%s pass failed", self._name, exc_info=True)
            with self._lock:
                self._running = False
                self._again = False
