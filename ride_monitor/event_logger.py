# ride_monitor/event_logger.py

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ride_monitor import config
from ride_monitor.clock import SystemClock
from ride_monitor.remote import RemoteSyncError, SyncWorker

logger = logging.getLogger(__name__)

RIDE_SESSIONS    = 'ride_sessions'
RISK_EVENTS      = 'risk_events'
EMERGENCY_EVENTS = 'emergency_events'
TABLES = (RIDE_SESSIONS, RISK_EVENTS, EMERGENCY_EVENTS)

# field holding each table's age for cleanup; emergencies are never aged out
_AGE_FIELD = {
    RIDE_SESSIONS: 'start_time',
    RISK_EVENTS:   'timestamp',
}


class EventStore:
    """
    Durable audit trail for ride sessions, risk events and emergencies.

    Local JSON is written on every upsert (atomic replace) and is the source
    of truth. Records carry a `synced` flag; sync() pushes everything still
    unsynced to the remote store. Upserting the same id twice replaces the
    record, so retries are idempotent.
    """

    def __init__(self, path, remote=None, clock=None, background=True):
        self.path       = Path(path)
        self.remote     = remote
        self.background = background
        self._clock     = clock or SystemClock()
        self._lock      = threading.RLock()
        self._worker    = SyncWorker(self.sync, name='event-sync')
        self._tables: Dict[str, Dict[str, dict]] = self._load()

    # ── Writes ────────────────────────────────────────────────────────────────

    def upsert(self, table: str, record: dict) -> dict:
        if table not in TABLES:
            raise ValueError(f'unknown table: {table}')
        if not record.get('id'):
            raise ValueError('record needs an id')

        with self._lock:
            stored = dict(record)
            stored['synced'] = False
            self._tables[table][stored['id']] = stored
            self._save()

        logger.debug("Stored %s | id=%s", table, stored['id'])
        if self.remote is not None:
            if self.background:
                self._worker.request()
            else:
                self.sync()
        return dict(stored)

    def log_ride_session(self, record: dict) -> dict:
        return self.upsert(RIDE_SESSIONS, record)

    def log_risk_event(self, record: dict) -> dict:
        return self.upsert(RISK_EVENTS, record)

    def log_emergency_event(self, record: dict) -> dict:
        return self.upsert(EMERGENCY_EVENTS, record)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, table: str, record_id: str) -> Optional[dict]:
        with self._lock:
            record = self._tables.get(table, {}).get(record_id)
            return dict(record) if record else None

    def records(self, table: str) -> List[dict]:
        with self._lock:
            return [dict(r) for r in self._tables.get(table, {}).values()]

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._tables.values() for r in t.values() if not r.get('synced'))

    # ── Sync + retention ──────────────────────────────────────────────────────

    def sync(self) -> int:
        """Push unsynced records. Returns how many were marked synced."""
        if self.remote is None:
            return 0

        with self._lock:
            pending = {
                table: [dict(r) for r in rows.values() if not r.get('synced')]
                for table, rows in self._tables.items()
            }

        synced = 0
        for table, rows in pending.items():
            # a bulk upsert needs every row to carry the same columns
            for batch in _by_columns(rows):
                payload = [_strip(r) for r in batch]
                try:
                    self.remote.upsert(table, payload, on_conflict='id')
                except RemoteSyncError as exc:
                    logger.warning("Event sync failed for %s, will retry: %s", table, exc)
                    continue
                synced += self._mark_synced(table, batch)

        if synced:
            logger.info("Events synced | records=%d", synced)
        return synced

    def _mark_synced(self, table: str, rows: List[dict]) -> int:
        synced = 0
        with self._lock:
            for pushed in rows:
                current = self._tables[table].get(pushed['id'])
                # only flip records that did not change while we were pushing
                if current is not None and _same_record(current, pushed):
                    current['synced'] = True
                    synced += 1
            self._save()
        return synced

    def cleanup(self, now: Optional[float] = None) -> int:
        """Drop ride sessions and risk events older than the retention window."""
        now = self._clock.now() if now is None else now
        cutoff = now - config.RECORD_RETENTION_DAYS * 24 * 3600
        removed = 0
        with self._lock:
            for table, age_field in _AGE_FIELD.items():
                rows = self._tables[table]
                stale = [rid for rid, r in rows.items() if (r.get(age_field) or 0) < cutoff]
                for rid in stale:
                    del rows[rid]
                removed += len(stale)
            if removed:
                self._save()
        if removed:
            logger.info("Event store cleanup | removed=%d", removed)
        return removed

    # ── Persistence ───────────────────────────────────────────────────────────

    def _load(self) -> Dict[str, Dict[str, dict]]:
        tables = {t: {} for t in TABLES}
        if not self.path.exists():
            return tables
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            for table in TABLES:
                for record in data.get(table, []):
                    tables[table][record['id']] = record
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Could not read %s, starting empty: %s", self.path, exc)
            return {t: {} for t in TABLES}
        return tables

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        try:
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump({t: list(rows.values()) for t, rows in self._tables.items()}, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.error("Failed to save event store: %s", exc, exc_info=True)


def _strip(record: dict) -> dict:
    return {k: v for k, v in record.items() if k != 'synced'}


def _same_record(a: dict, b: dict) -> bool:
    return _strip(a) == _strip(b)


def _by_columns(rows: List[dict]) -> List[List[dict]]:
    """Split rows into batches sharing one column set, in first-seen order."""
    batches: Dict[frozenset, List[dict]] = {}
    for row in rows:
        batches.setdefault(frozenset(_strip(row)), []).append(row)
    return list(batches.values())
