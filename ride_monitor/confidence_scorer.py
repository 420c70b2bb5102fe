# ride_monitor/confidence_scorer.py

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, tzinfo
from enum import Enum
from typing import List, Optional

from ride_monitor import config
from ride_monitor.location_memory import cell_id
from ride_monitor.risk_detector import RiskEvent, RiskType, Severity
from ride_monitor.sampler import UNKNOWN, Reading

logger = logging.getLogger(__name__)


# ── Factor tables ─────────────────────────────────────────────────────────────

SEVERITY_BASE = {
    Severity.CRITICAL: 35,
    Severity.HIGH:     25,
    Severity.MEDIUM:   15,
    Severity.LOW:       8,
}

SENSOR_INTENSITY_CAP = 40
PATTERN_POINTS_PER_EVENT = 7
PATTERN_CAP = 20


class Action(str, Enum):
    SUPPRESS  = 'suppress'     # log only
    CONFIRM   = 'confirm'      # ask the rider
    ALERT     = 'alert'        # notify now, confirmation still offered
    EMERGENCY = 'emergency'    # skip confirmation, start the countdown


@dataclass
class ConfidenceFactors:
    """
    The six additive components. Each is bounded on its own:

    sensor_intensity      0 .. 40
    pattern_duration      0 .. 20
    location_adjustment -30 .. 0
    time_of_day           0 .. 10
    speed_context         0 .. 15
    behavior_consistency -20 .. 0
    """
    sensor_intensity    : int = 0
    pattern_duration    : int = 0
    location_adjustment : int = 0
    time_of_day         : int = 0
    speed_context       : int = 0
    behavior_consistency: int = 0

    def total(self) -> int:
        return (self.sensor_intensity + self.pattern_duration + self.location_adjustment
                + self.time_of_day + self.speed_context + self.behavior_consistency)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScoringContext:
    """
    Everything besides the event itself. Missing readings are UNKNOWN.

    current_speed         : unknown speed earns no speed bonus
    acceleration_variance : carried for reinforcement snapshots, not scored
    sensor_intensity      : 0..100; unknown keeps the severity base
    recent_events         : ride history as of the event, excluding it
    ride_event_count      : events raised earlier in the whole ride; the
                            erratic-session penalty uses it, falling back to
                            len(recent_events) when not given
    """
    ride_start_time       : float
    current_speed         : Reading = UNKNOWN
    acceleration_variance : Reading = UNKNOWN
    recent_events         : List[RiskEvent] = field(default_factory=list)
    sensor_intensity      : Reading = UNKNOWN
    ride_event_count      : Optional[int] = None


@dataclass
class ScoredRiskEvent:
    event                 : RiskEvent
    confidence            : int
    factors               : ConfidenceFactors
    requires_confirmation : bool
    location_cell_id      : Optional[str] = None

    @property
    def type(self) -> RiskType:
        return self.event.type

    @property
    def severity(self) -> Severity:
        return self.event.severity

    def as_dict(self) -> dict:
        d = self.event.as_dict()
        d.update({
            'confidence': self.confidence,
            'confidence_factors': self.factors.as_dict(),
            'requires_confirmation': self.requires_confirmation,
            'location_cell_id': self.location_cell_id,
        })
        return d


# ── Helpers ───────────────────────────────────────────────────────────────────

def sensor_intensity(accel_delta: float, speed_delta: float) -> int:
    """Map an acceleration delta and a speed change onto 0..100."""
    accel_score = min(50.0, accel_delta * 2)
    speed_score = min(50.0, abs(speed_delta) * 1.67)
    return config.round_half_up((accel_score + speed_score) / 2)


def action_for(confidence: int) -> Action:
    if confidence < config.CONFIDENCE_SUPPRESS:
        return Action.SUPPRESS
    if confidence >= config.CONFIDENCE_EMERGENCY:
        return Action.EMERGENCY
    if confidence >= config.CONFIDENCE_ALERT:
        return Action.ALERT
    return Action.CONFIRM


def should_auto_trigger_emergency(scored: ScoredRiskEvent) -> bool:
    if scored.type is RiskType.FALL_DETECTED and scored.confidence >= config.CONFIDENCE_EMERGENCY:
        return True
    if scored.severity is Severity.CRITICAL and scored.confidence >= config.CONFIDENCE_CRITICAL_AUTO:
        return True
    return False


def time_of_day_bonus(hour: int) -> int:
    if hour >= 22 or hour < 5:
        return 10
    # dusk/dawn band, only reached outside the night window
    if hour >= 19 or hour < 7:
        return 5
    return 0


def speed_bonus(speed: Reading) -> int:
    if not speed.known:
        return 0
    if speed.value > 40:
        return 15
    if speed.value > 20:
        return 10
    if speed.value > 5:
        return 5
    return 0


def consistency_penalty(event_count: int, ride_minutes: float) -> int:
    rate = event_count / max(1.0, ride_minutes)
    if rate > 2:
        return -20
    if rate > 1:
        return -10
    return 0


# ── Scorer ────────────────────────────────────────────────────────────────────

class ConfidenceScorer:
    """
    Additive factor model turning a RiskEvent plus ride context into a
    0..100 confidence and an action.

    Confidence is recomputed for every event and never written back onto
    the event; severity stays what the detector assigned.

    Time of day is read from the event timestamp in `tz` (local time when
    None) so replays and tests are deterministic.
    """

    def __init__(self, location_memory=None, tz: Optional[tzinfo] = None,
                 precision: int = config.CELL_PRECISION):
        self.location_memory = location_memory
        self.tz = tz
        self.precision = precision

    def score(self, event: RiskEvent, context: ScoringContext) -> ScoredRiskEvent:
        f = ConfidenceFactors()

        # 1. base: severity, or a supplied intensity
        if context.sensor_intensity.known:
            f.sensor_intensity = min(SENSOR_INTENSITY_CAP,
                                     config.round_half_up(context.sensor_intensity.value * 0.4))
        else:
            f.sensor_intensity = SEVERITY_BASE[event.severity]

        # 2. type adjustment
        if event.type is RiskType.FALL_DETECTED:
            f.sensor_intensity = min(SENSOR_INTENSITY_CAP, f.sensor_intensity + 10)
        elif event.type is RiskType.SUDDEN_STOP:
            f.sensor_intensity = min(SENSOR_INTENSITY_CAP, f.sensor_intensity + 5)
        elif event.type in (RiskType.SPEED_WARNING, RiskType.HEAT_WARNING):
            f.sensor_intensity = max(10, f.sensor_intensity - 5)
        f.sensor_intensity = max(0, f.sensor_intensity)

        # 3. sustained pattern
        similar = [
            e for e in context.recent_events
            if e.id != event.id and e.type is event.type
            and 0 <= event.timestamp - e.timestamp < config.PATTERN_WINDOW_SECONDS
        ]
        f.pattern_duration = min(PATTERN_CAP, len(similar) * PATTERN_POINTS_PER_EVENT)

        # 4. learned location history
        cell = None
        if event.location is not None:
            cell = cell_id(event.location.lat, event.location.lng, self.precision)
            if self.location_memory is not None:
                adj = self.location_memory.get_adjustment(event.location.lat, event.location.lng)
                f.location_adjustment = max(-30, min(0, int(adj)))

        # 5. time of day
        hour = datetime.fromtimestamp(event.timestamp, tz=self.tz).hour
        f.time_of_day = time_of_day_bonus(hour)

        # 6. speed
        f.speed_context = speed_bonus(context.current_speed)

        # 7. erratic session
        ride_minutes = max(0.0, (event.timestamp - context.ride_start_time) / 60.0)
        if context.ride_event_count is not None:
            prior_count = context.ride_event_count
        else:
            prior_count = len([e for e in context.recent_events if e.id != event.id])
        f.behavior_consistency = consistency_penalty(prior_count, ride_minutes)

        confidence = max(0, min(100, f.total()))
        scored = ScoredRiskEvent(
            event=event,
            confidence=confidence,
            factors=f,
            requires_confirmation=config.CONFIDENCE_SUPPRESS <= confidence < config.CONFIDENCE_ALERT,
            location_cell_id=cell,
        )
        logger.debug("Scored %s | confidence=%d | factors=%s", event.type.value, confidence, f)
        return scored

    def decide(self, scored: ScoredRiskEvent) -> Action:
        """Generic band, overridden to EMERGENCY by the fall / critical auto-trigger."""
        if should_auto_trigger_emergency(scored):
            return Action.EMERGENCY
        return action_for(scored.confidence)
