"""
ride_monitor/location_memory.py

Learned per-cell alarm history.

Every confirmed outcome at a location (rider said "I'm fine" / rider confirmed
danger) is recorded against a quantized lat/lng cell. The false-alarm ratio of
a cell becomes a negative confidence adjustment, which is how the system
learns that a pothole-heavy junction keeps tripping the fall rule.

Local JSON is authoritative. Remote reconciliation is best effort: records
are pushed on every write and on connectivity_restored(); remote rows merge
in by taking the max of each counter, so counts never go down except through
cleanup() of cells untouched for 30 days.

Usage
-----
    store = LocationMemoryStore("storage/location_memory.json", device_id)
    store.get_adjustment(12.9716, 77.5946)     # 0 .. -30
    store.record_false_alarm(12.9716, 77.5946, SensorSnapshot("fall_detected", 3.2))
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ride_monitor import config
from ride_monitor.clock import SystemClock
from ride_monitor.remote import RemoteStore, RemoteSyncError, SyncWorker

logger = logging.getLogger(__name__)

REMOTE_TABLE = "location_memories"
REMOTE_CONFLICT_KEY = "device_id,cell_id"


def cell_id(lat: float, lng: float, precision: int = config.CELL_PRECISION) -> str:
    """Quantize a coordinate pair into a cell key, e.g. '12.9716,77.5946'."""
    return f"{lat:.{precision}f},{lng:.{precision}f}"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class SensorSnapshot:
    """Sensor context captured at the moment an outcome was recorded."""
    event_type: str
    accel_variance: Optional[float] = None
    gyro_variance: Optional[float] = None
    speed_kmh: Optional[float] = None


@dataclass
class SensorSignature:
    avg_accel_variance: float = 0.0
    avg_gyro_variance: float = 0.0
    event_types: list[str] = field(default_factory=list)

    def updated(self, snapshot: SensorSnapshot) -> "SensorSignature":
        """Running average weighted by how many event types are remembered."""
        count = len(self.event_types)
        accel = snapshot.accel_variance or 0.0
        gyro = snapshot.gyro_variance or 0.0

        types = [t for t in self.event_types if t != snapshot.event_type]
        types.append(snapshot.event_type)

        return SensorSignature(
            avg_accel_variance=(self.avg_accel_variance * count + accel) / (count + 1),
            avg_gyro_variance=(self.avg_gyro_variance * count + gyro) / (count + 1),
            event_types=types[-config.SIGNATURE_MAX_EVENT_TYPES:],
        )

    @classmethod
    def first(cls, snapshot: SensorSnapshot) -> "SensorSignature":
        return cls(
            avg_accel_variance=snapshot.accel_variance or 0.0,
            avg_gyro_variance=snapshot.gyro_variance or 0.0,
            event_types=[snapshot.event_type],
        )

    def as_dict(self) -> dict:
        return {
            "avg_accel_variance": self.avg_accel_variance,
            "avg_gyro_variance": self.avg_gyro_variance,
            "event_types": list(self.event_types),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "SensorSignature | None":
        if not data:
            return None
        return cls(
            avg_accel_variance=float(data.get("avg_accel_variance", 0.0)),
            avg_gyro_variance=float(data.get("avg_gyro_variance", 0.0)),
            event_types=list(data.get("event_types", []))[-config.SIGNATURE_MAX_EVENT_TYPES:],
        )


@dataclass
class LocationMemory:
    cell_id: str
    false_alarm_count: int = 0
    true_alarm_count: int = 0
    last_triggered: float = 0.0
    sensor_signature: SensorSignature | None = None
    synced: bool = False

    @property
    def total(self) -> int:
        return self.false_alarm_count + self.true_alarm_count

    def adjustment(self) -> int:
        """Confidence adjustment in [-30, 0]; gentle until three outcomes are known."""
        if self.total == 0:
            return 0
        false_ratio = self.false_alarm_count / self.total
        scale = 10 if self.total < 3 else 30
        return -config.round_half_up(false_ratio * scale)

    def risk_score(self) -> int:
        if self.total == 0:
            return 50
        return config.round_half_up(50 + (self.true_alarm_count / self.total) * 50)

    def as_dict(self) -> dict:
        return {
            "cell_id": self.cell_id,
            "false_alarm_count": self.false_alarm_count,
            "true_alarm_count": self.true_alarm_count,
            "last_triggered": self.last_triggered,
            "sensor_signature": self.sensor_signature.as_dict() if self.sensor_signature else None,
            "synced": self.synced,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LocationMemory":
        return cls(
            cell_id=data["cell_id"],
            false_alarm_count=int(data.get("false_alarm_count", 0)),
            true_alarm_count=int(data.get("true_alarm_count", 0)),
            last_triggered=float(data.get("last_triggered", 0.0)),
            sensor_signature=SensorSignature.from_dict(data.get("sensor_signature")),
            synced=bool(data.get("synced", False)),
        )

    def copy(self) -> "LocationMemory":
        return LocationMemory.from_dict(self.as_dict())


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class LocationMemoryStore:
    """
    Parameters
    ----------
    path : str | Path
        Local JSON file. Created on first write.
    device_id : str
        Remote key; rows are unique per (device_id, cell_id).
    remote : RemoteStore | None
        None keeps the store offline-only.
    precision : int
        Cell precision. Must stay fixed for a deployment.
    clock :
        Anything with now(); defaults to wall-clock time.
    background : bool
        Push to the remote store on a single sync thread (True) or inline
        (False). Writes made while a push is running share one follow-up push.
    """

    def __init__(
        self,
        path: str | Path,
        device_id: str,
        remote: RemoteStore | None = None,
        precision: int = config.CELL_PRECISION,
        clock=None,
        background: bool = True,
    ) -> None:
        self.path = Path(path)
        self.device_id = device_id
        self.remote = remote
        self.precision = precision
        self.background = background
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._worker = SyncWorker(self.sync_pending, name="location-memory-sync")
        self._memories: dict[str, LocationMemory] = self._load()

    # ── Lookup ────────────────────────────────────────────────────────────

    def cell_for(self, lat: float, lng: float) -> str:
        return cell_id(lat, lng, self.precision)

    def get(self, lat: float, lng: float) -> LocationMemory | None:
        with self._lock:
            memory = self._memories.get(self.cell_for(lat, lng))
            return memory.copy() if memory else None

    def get_adjustment(self, lat: float, lng: float) -> int:
        memory = self.get(lat, lng)
        return memory.adjustment() if memory else 0

    def risk_score(self, lat: float, lng: float) -> int:
        """50 = unknown, rising toward 100 as confirmed dangers dominate."""
        memory = self.get(lat, lng)
        return memory.risk_score() if memory else 50

    def __len__(self) -> int:
        with self._lock:
            return len(self._memories)

    # ── Reinforcement ─────────────────────────────────────────────────────

    def record_false_alarm(self, lat: float, lng: float,
                           snapshot: SensorSnapshot | None = None) -> LocationMemory:
        return self._record(lat, lng, snapshot, false_alarm=True)

    def record_true_alarm(self, lat: float, lng: float,
                          snapshot: SensorSnapshot | None = None) -> LocationMemory:
        return self._record(lat, lng, snapshot, false_alarm=False)

    def _record(self, lat, lng, snapshot, false_alarm: bool) -> LocationMemory:
        key = self.cell_for(lat, lng)
        with self._lock:
            memory = self._memories.get(key) or LocationMemory(cell_id=key)
            if false_alarm:
                memory.false_alarm_count += 1
            else:
                memory.true_alarm_count += 1
            memory.last_triggered = self._clock.now()
            if snapshot is not None:
                memory.sensor_signature = (
                    memory.sensor_signature.updated(snapshot)
                    if memory.sensor_signature else SensorSignature.first(snapshot)
                )
            memory.synced = False
            self._memories[key] = memory
            self._save()
            result = memory.copy()

        logger.info(
            "Location memory | cell=%s | outcome=%s | false=%d | true=%d",
            key, "false_alarm" if false_alarm else "true_alarm",
            result.false_alarm_count, result.true_alarm_count,
        )
        self._push_async([result])
        return result

    # ── Remote reconciliation ─────────────────────────────────────────────

    def merge_remote(self, row: dict) -> LocationMemory:
        """Merge one remote row; every counter becomes max(local, remote)."""
        key = row["cell_id"]
        with self._lock:
            existing = self._memories.get(key)
            remote_false = int(row.get("false_alarm_count") or 0)
            remote_true = int(row.get("true_alarm_count") or 0)

            merged = LocationMemory(
                cell_id=key,
                false_alarm_count=max(existing.false_alarm_count if existing else 0, remote_false),
                true_alarm_count=max(existing.true_alarm_count if existing else 0, remote_true),
                last_triggered=(existing.last_triggered if existing
                                else _parse_timestamp(row.get("updated_at"), self._clock.now())),
                sensor_signature=(SensorSignature.from_dict(row.get("sensor_signature"))
                                  or (existing.sensor_signature if existing else None)),
            )
            # still unsynced if local had counts the remote hasn't seen
            merged.synced = (merged.false_alarm_count == remote_false
                             and merged.true_alarm_count == remote_true)
            self._memories[key] = merged
            return merged.copy()

    def load_from_remote(self) -> int:
        """Pull this device's rows and merge them in. Returns rows merged (0 on failure)."""
        if self.remote is None:
            return 0
        try:
            rows = self.remote.select(REMOTE_TABLE, device_id=self.device_id)
        except RemoteSyncError as exc:
            logger.warning("Location memory load failed, using local copy: %s", exc)
            return 0

        with self._lock:
            for row in rows:
                if row.get("cell_id"):
                    self.merge_remote(row)
            self._save()
        logger.info("Location memory loaded from remote | rows=%d", len(rows))
        return len(rows)

    def sync_pending(self) -> int:
        """Push every unsynced cell inline. Returns how many were confirmed synced."""
        with self._lock:
            pending = [m.copy() for m in self._memories.values() if not m.synced]
        if not pending:
            return 0
        return self._push(pending)

    def _push_async(self, memories: list[LocationMemory]) -> None:
        if self.remote is None:
            return
        if self.background:
            # the worker pushes every unsynced cell, these included
            self._worker.request()
        else:
            self._push(memories)

    def _push(self, memories: list[LocationMemory]) -> int:
        if self.remote is None:
            return 0
        rows = [self._remote_row(m) for m in memories]
        try:
            self.remote.upsert(REMOTE_TABLE, rows, on_conflict=REMOTE_CONFLICT_KEY)
        except RemoteSyncError as exc:
            logger.warning("Location memory sync failed, will retry: %s", exc)
            return 0

        synced = 0
        with self._lock:
            for pushed in memories:
                current = self._memories.get(pushed.cell_id)
                # a newer write landed meanwhile; leave it for the next push
                if (current is not None
                        and current.false_alarm_count == pushed.false_alarm_count
                        and current.true_alarm_count == pushed.true_alarm_count):
                    current.synced = True
                    synced += 1
            self._save()
        logger.info("Location memory synced | cells=%d", synced)
        return synced

    def _remote_row(self, memory: LocationMemory) -> dict:
        return {
            "device_id": self.device_id,
            "cell_id": memory.cell_id,
            "false_alarm_count": memory.false_alarm_count,
            "true_alarm_count": memory.true_alarm_count,
            "sensor_signature": memory.sensor_signature.as_dict() if memory.sensor_signature else None,
            "updated_at": datetime.fromtimestamp(memory.last_triggered, tz=timezone.utc).isoformat(),
        }

    # ── Retention ─────────────────────────────────────────────────────────

    def cleanup(self, now: float | None = None) -> int:
        """Drop cells not triggered within the retention window. Returns cells removed."""
        now = self._clock.now() if now is None else now
        cutoff = now - config.MEMORY_RETENTION_DAYS * 24 * 3600
        with self._lock:
            stale = [k for k, m in self._memories.items() if m.last_triggered < cutoff]
            for key in stale:
                del self._memories[key]
            if stale:
                self._save()
        if stale:
            logger.info("Location memory cleanup | removed=%d", len(stale))
        return len(stale)

    # ── Persistence ───────────────────────────────────────────────────────

    def _load(self) -> dict[str, LocationMemory]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return {m["cell_id"]: LocationMemory.from_dict(m) for m in data}
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Could not read %s, starting empty: %s", self.path, exc)
            return {}

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump([m.as_dict() for m in self._memories.values()], f, indent=2)
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.error("Failed to save location memory: %s", exc, exc_info=True)


def _parse_timestamp(value, default: float) -> float:
    if not value:
        return default
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return default
