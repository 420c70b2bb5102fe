# ride_monitor/risk_detector.py

import logging
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ride_monitor import config
from ride_monitor.clock import TimerHandle
from ride_monitor.config import VibrationPattern
from ride_monitor.sampler import Position, Sample

logger = logging.getLogger(__name__)


# ── Event types ───────────────────────────────────────────────────────────────

class RiskType(str, Enum):
    SPEED_WARNING    = 'speed_warning'
    HEAT_WARNING     = 'heat_warning'
    UNSAFE_ZONE      = 'unsafe_zone'
    SUDDEN_STOP      = 'sudden_stop'
    FALL_DETECTED    = 'fall_detected'
    LONG_IDLE        = 'long_idle'
    WELLNESS_CHECK   = 'wellness_check'
    RAIN_WARNING     = 'rain_warning'
    HIGH_WIND        = 'high_wind'
    EXTREME_WEATHER  = 'extreme_weather'
    POOR_AIR_QUALITY = 'poor_air_quality'


class Severity(str, Enum):
    LOW      = 'low'
    MEDIUM   = 'medium'
    HIGH     = 'high'
    CRITICAL = 'critical'


@dataclass(frozen=True)
class RiskEvent:
    """
    A discrete, typed risk event. Severity is fixed at creation.

    location : last known position when the event was raised, or None
    message  : optional free text (weather advice, manual trigger reason)
    """
    type     : RiskType
    severity : Severity
    timestamp: float
    location : Optional[Position] = None
    message  : Optional[str] = None
    id       : str = field(default_factory=lambda: str(uuid.uuid4()))

    def as_dict(self) -> dict:
        return {
            'id': self.id,
            'type': self.type.value,
            'severity': self.severity.value,
            'timestamp': self.timestamp,
            'location': self.location.as_dict() if self.location else None,
            'message': self.message,
        }


@dataclass
class RideState:
    """Snapshot returned by RiskEventDetector.stop()."""
    active            : bool
    start_time        : Optional[float]
    last_motion_time  : Optional[float]
    event_counts      : Dict[str, int]
    recent_events     : List[RiskEvent]


# Handler receives the event plus the history as it stood *before* the event
# was added. Returning False suppresses the detector's own notification.
EventHandler = Callable[[RiskEvent, List[RiskEvent]], Optional[bool]]


class RiskEventDetector:
    """
    Rule engine over the sampler's stream.

    Rules
      speed_warning  (medium)    speed > 60 km/h
      sudden_stop    (high)      prev > 20, cur < 2, drop > 20 km/h in one sample
      fall_detected  (critical)  |accel vector delta| > 25
      long_idle      (high)      no speed > 2 km/h for 5 min, checked every 30 s
      weather / manual events are injected through inject()

    A same-type event within 60 s of an unresolved prior one is dropped.
    fall_detected stays in that window even after being resolved, so a single
    impact is handled downstream exactly once.
    """

    def __init__(self, clock, notifier=None,
                 on_event: Optional[EventHandler] = None,
                 on_emergency: Optional[Callable[[RiskEvent], None]] = None,
                 debounce_seconds: float = config.DEBOUNCE_SECONDS,
                 history_window_seconds: float = config.HISTORY_WINDOW_SECONDS):
        self._clock        = clock
        self._notifier     = notifier
        self.on_event      = on_event
        self.on_emergency  = on_emergency
        self._debounce     = debounce_seconds
        self._window       = history_window_seconds

        self._active           = False
        self._start_time       = None
        self._last_motion_time = None
        self._last_position    = None
        self._history          = deque()
        self._resolved_ids     = set()
        self._counts           = Counter()

        self._idle_handle: Optional[TimerHandle] = None
        self._fall_handle: Optional[TimerHandle] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self, position: Optional[Position] = None):
        if self._active:
            return
        now = self._clock.now()
        self._active           = True
        self._start_time       = now
        self._last_motion_time = now
        self._last_position    = position
        self._history.clear()
        self._resolved_ids.clear()
        self._counts.clear()
        self._idle_handle = self._clock.call_every(config.IDLE_CHECK_INTERVAL_SECONDS, self._check_idle)
        logger.info("Risk detector started | ts=%.1f", now)

    def stop(self) -> RideState:
        snapshot = RideState(
            active=self._active,
            start_time=self._start_time,
            last_motion_time=self._last_motion_time,
            event_counts=dict(self._counts),
            recent_events=list(self._history),
        )
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        self.cancel_pending_emergency()
        self._active = False
        logger.info("Risk detector stopped | events=%d", sum(self._counts.values()))
        return snapshot

    # ── Sample processing ─────────────────────────────────────────────────────

    def process(self, sample: Sample) -> List[RiskEvent]:
        """Feed one sample; returns the events it raised (usually none)."""
        if not self._active:
            return []

        raised = []
        if sample.is_location:
            raised.extend(self._check_location(sample))
        if sample.is_motion:
            event = self._check_fall(sample)
            if event is not None:
                raised.append(event)
        return raised

    def inject(self, risk_type: RiskType, severity: Severity,
               message: Optional[str] = None,
               timestamp: Optional[float] = None) -> Optional[RiskEvent]:
        """Raise an externally sourced event (weather, unsafe zone, wellness check)."""
        if not self._active:
            return None
        event = RiskEvent(
            type=risk_type,
            severity=severity,
            timestamp=self._clock.now() if timestamp is None else timestamp,
            location=self._last_position,
            message=message,
        )
        return self._raise(event)

    def resolve(self, event_id: str):
        """Mark an event resolved so it no longer debounces newer events of its type."""
        self._resolved_ids.add(event_id)

    def cancel_pending_emergency(self):
        if self._fall_handle is not None:
            self._fall_handle.cancel()
            self._fall_handle = None

    # ── Queries ───────────────────────────────────────────────────────────────

    def history_as_of(self, timestamp: float) -> List[RiskEvent]:
        return [e for e in self._history if e.timestamp <= timestamp]

    @property
    def recent_events(self) -> List[RiskEvent]:
        return list(self._history)

    @property
    def event_counts(self) -> Dict[str, int]:
        return dict(self._counts)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def start_time(self) -> Optional[float]:
        return self._start_time

    @property
    def last_position(self) -> Optional[Position]:
        return self._last_position

    @property
    def emergency_pending(self) -> bool:
        return self._fall_handle is not None and self._fall_handle.active

    # ── Rules ─────────────────────────────────────────────────────────────────

    def _check_location(self, sample: Sample) -> List[RiskEvent]:
        raised = []
        self._last_position = sample.position
        speed = sample.speed_kmh or 0.0
        prev  = sample.previous_speed_kmh or 0.0

        if (prev > config.SUDDEN_STOP_FROM_KMH
                and speed < config.SUDDEN_STOP_TO_KMH
                and prev - speed > config.SUDDEN_STOP_DROP_KMH):
            event = self._raise(RiskEvent(
                type=RiskType.SUDDEN_STOP,
                severity=Severity.HIGH,
                timestamp=sample.timestamp,
                location=sample.position,
            ))
            if event:
                raised.append(event)

        if speed > config.SPEED_WARNING_KMH:
            event = self._raise(RiskEvent(
                type=RiskType.SPEED_WARNING,
                severity=Severity.MEDIUM,
                timestamp=sample.timestamp,
                location=sample.position,
            ))
            if event:
                raised.append(event)

        if speed > config.MOVING_SPEED_KMH:
            self._last_motion_time = sample.timestamp

        return raised

    def _check_fall(self, sample: Sample) -> Optional[RiskEvent]:
        if (sample.accel_delta or 0.0) <= config.FALL_DELTA_THRESHOLD:
            return None
        logger.debug("Impact signature | delta=%.1f", sample.accel_delta)
        return self._raise(RiskEvent(
            type=RiskType.FALL_DETECTED,
            severity=Severity.CRITICAL,
            timestamp=sample.timestamp,
            location=self._last_position,
        ))

    def _check_idle(self):
        if not self._active:
            return
        now = self._clock.now()
        idle_for = now - self._last_motion_time
        if idle_for > config.IDLE_WARNING_SECONDS:
            logger.debug("Idle for %.0fs", idle_for)
            self._raise(RiskEvent(
                type=RiskType.LONG_IDLE,
                severity=Severity.HIGH,
                timestamp=now,
                location=self._last_position,
            ))

    # ── Raise + debounce ──────────────────────────────────────────────────────

    def _is_debounced(self, event: RiskEvent) -> bool:
        for prior in reversed(self._history):
            if prior.type is not event.type:
                continue
            if event.timestamp - prior.timestamp >= self._debounce:
                return False
            if prior.id in self._resolved_ids and prior.type is not RiskType.FALL_DETECTED:
                continue
            return True
        return False

    def _prune(self, now: float):
        while self._history and now - self._history[0].timestamp > self._window:
            old = self._history.popleft()
            self._resolved_ids.discard(old.id)

    def _raise(self, event: RiskEvent) -> Optional[RiskEvent]:
        if self._is_debounced(event):
            logger.debug("Debounced %s at %.1f", event.type.value, event.timestamp)
            return None

        # the scorer must see history as of this event, not including it
        history_before = self.history_as_of(event.timestamp)

        self._history.append(event)
        self._counts[event.type.value] += 1
        self._prune(event.timestamp)

        logger.info(
            "Risk event raised | type=%s | severity=%s | ts=%.1f",
            event.type.value, event.severity.value, event.timestamp,
        )

        notify = True
        if self.on_event is not None:
            try:
                notify = self.on_event(event, history_before) is not False
            except Exception as exc:
                logger.error("Risk event handler failed: %s", exc, exc_info=True)

        if notify:
            self._notify(event)

        if event.type is RiskType.FALL_DETECTED and not self.emergency_pending:
            self._fall_handle = self._clock.call_later(
                config.FALL_GRACE_SECONDS, lambda: self._fire_fall_emergency(event))

        return event

    def _fire_fall_emergency(self, event: RiskEvent):
        self._fall_handle = None
        if not self._active:
            return
        logger.warning("Fall grace period elapsed | event=%s", event.id)
        if self.on_emergency is not None:
            self.on_emergency(event)

    def _notify(self, event: RiskEvent):
        if self._notifier is None:
            return
        pattern = (VibrationPattern.EMERGENCY if event.severity is Severity.CRITICAL
                   else VibrationPattern.ALERT)
        try:
            self._notifier.speak(event.type.value)
            self._notifier.vibrate(pattern)
        except Exception as exc:
            logger.error("Notification failed for %s: %s", event.type.value, exc, exc_info=True)
