# ride_monitor/fatigue_estimator.py

import logging
import random
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from ride_monitor import config
from ride_monitor.config import VibrationPattern
from ride_monitor.sampler import UNKNOWN, Reading

logger = logging.getLogger(__name__)


# Short, actionable phrases. Unknown languages fall back to en-IN.
NUDGE_PHRASES = {
    'en-IN': {
        'mild': [
            'Slow now. Take a breath.',
            'Easy ride. Stay calm.',
            'Relax your shoulders.',
        ],
        'moderate': [
            'Pull over 60 seconds. You need rest.',
            'Stop for water. Stay sharp.',
            'Take a break. Safety first.',
        ],
        'severe': [
            'Stop now. You are too tired.',
            'Find shade. Rest 5 minutes.',
            'End ride soon. Fatigue danger.',
        ],
    },
    'hi-IN': {
        'mild': [
            'धीमे चलो। सांस लो।',
            'आराम से। शांत रहो।',
            'कंधे ढीले करो।',
        ],
        'moderate': [
            'रुको 1 मिनट। आराम करो।',
            'पानी पियो। सतर्क रहो।',
            'ब्रेक लो। सेफ्टी पहले।',
        ],
        'severe': [
            'अभी रुको। बहुत थके हो।',
            'छाया में रुको। 5 मिनट आराम।',
            'राइड खत्म करो। थकान खतरनाक।',
        ],
    },
    'ta-IN': {
        'mild': [
            'மெதுவாக. ஓய்வு எடு.',
            'சாந்தமாக. அமைதியாக.',
            'தோள்களை தளர்த்து.',
        ],
        'moderate': [
            '60 வினாடி நிறுத்து. ஓய்வு தேவை.',
            'தண்ணீர் குடி. விழிப்பாக இரு.',
            'இடைவேளை எடு. பாதுகாப்பு முதல்.',
        ],
        'severe': [
            'இப்போதே நிறுத்து. மிகவும் சோர்வு.',
            'நிழலில் நிறுத்து. 5 நிமிடம் ஓய்வு.',
            'சவாரி முடி. சோர்வு ஆபத்து.',
        ],
    },
}


class FatigueLevel(str, Enum):
    NONE     = 'none'
    MILD     = 'mild'
    MODERATE = 'moderate'
    SEVERE   = 'severe'


@dataclass
class Nudge:
    level    : FatigueLevel
    text     : str
    reason   : str                          # 'fatigue' or 'panic'
    vibration: Optional[VibrationPattern]
    timestamp: float


@dataclass
class FatigueSnapshot:
    monitoring      : bool
    ride_start_time : Optional[float]
    minutes_on_ride : float
    accel_variance  : float
    gyro_stability  : float
    speed_variance  : float
    ambient_temp    : Optional[float]
    fatigue_score   : int
    panic_score     : int
    level           : FatigueLevel
    last_nudge_time : Optional[float]


def time_on_ride_score(minutes: float) -> float:
    """
    Fatigue contribution from time in the saddle.

    Linear for the first hour (15 at 60 min), a flatter slope up to 90 min
    (20 at 90 min), then quadratic growth. Capped at 40.
    """
    if minutes <= 0:
        return 0.0
    if minutes <= 60:
        score = minutes / 4.0
    elif minutes <= 90:
        score = 15.0 + (minutes - 60) / 6.0
    else:
        score = 20.0 + ((minutes - 90) ** 2) / 100.0
    return min(40.0, score)


def level_for(fatigue_score: float) -> FatigueLevel:
    if fatigue_score >= config.FATIGUE_SEVERE:
        return FatigueLevel.SEVERE
    if fatigue_score >= config.FATIGUE_MODERATE:
        return FatigueLevel.MODERATE
    if fatigue_score >= config.FATIGUE_MILD:
        return FatigueLevel.MILD
    return FatigueLevel.NONE


class FatigueEstimator:
    """
    Rolling-window fatigue / panic estimator.

    Fed with the sampler's acceleration magnitude, orientation instability and
    speed, plus the ambient feels-like temperature from the weather feed.
    Scores are recomputed on every 30 s tick; a nudge goes out on a tick when
    the cooldown has elapsed and the rider is at least mildly fatigued or the
    panic score crossed its threshold.

    Does not raise RiskEvents.

    Usage
    -----
        est = FatigueEstimator(clock, notifier, language='hi-IN')
        est.start()
        est.add_motion(9.9); est.add_orientation(12.0); est.add_speed(24.0)
        ...
        snapshot = est.stop()
    """

    def __init__(self, clock, notifier=None, language: str = config.DEFAULT_LANGUAGE,
                 rng: Optional[random.Random] = None):
        self._clock    = clock
        self._notifier = notifier
        self.language  = language
        self._rng      = rng or random.Random()

        self._accel_buf = deque(maxlen=config.MOTION_BUFFER_SIZE)
        self._gyro_buf  = deque(maxlen=config.MOTION_BUFFER_SIZE)
        self._speed_buf = deque(maxlen=config.SPEED_BUFFER_SIZE)

        self._tick_handle = None
        self._reset_state()

    def _reset_state(self):
        self.monitoring      = False
        self.ride_start_time = None
        self.minutes_on_ride = 0.0
        self.accel_variance  = 0.0
        self.gyro_stability  = 100.0
        self.speed_variance  = 0.0
        self.ambient_temp    = UNKNOWN
        self.fatigue_score   = 0
        self.panic_score     = 0
        self.last_nudge_time = None
        self._accel_buf.clear()
        self._gyro_buf.clear()
        self._speed_buf.clear()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self):
        if self.monitoring:
            return
        self._reset_state()
        self.monitoring      = True
        self.ride_start_time = self._clock.now()
        self._tick_handle = self._clock.call_every(config.FATIGUE_TICK_SECONDS, self.tick)

    def stop(self) -> FatigueSnapshot:
        snapshot = self.snapshot()
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None
        self.monitoring = False
        return snapshot

    # ── Inputs ────────────────────────────────────────────────────────────────

    def add_motion(self, magnitude: float):
        self._accel_buf.append(float(magnitude))
        if len(self._accel_buf) >= config.MIN_MOTION_SAMPLES:
            self.accel_variance = min(10.0, float(np.var(self._accel_buf)))

    def add_orientation(self, instability: float):
        self._gyro_buf.append(float(instability))
        if len(self._gyro_buf) >= config.MIN_MOTION_SAMPLES:
            self.gyro_stability = max(0.0, 100.0 - float(np.var(self._gyro_buf)))

    def add_speed(self, speed_kmh: float):
        # stop-start riding shows up as speed variance
        self._speed_buf.append(float(speed_kmh))
        if len(self._speed_buf) >= config.MIN_SPEED_SAMPLES:
            self.speed_variance = min(100.0, float(np.var(self._speed_buf)))

    def set_temperature(self, feels_like_c):
        self.ambient_temp = Reading.of(feels_like_c)

    # ── Scoring ───────────────────────────────────────────────────────────────

    def update_scores(self, now: Optional[float] = None):
        now = self._clock.now() if now is None else now
        if self.ride_start_time is not None:
            self.minutes_on_ride = max(0.0, (now - self.ride_start_time) / 60.0)

        time_score  = time_on_ride_score(self.minutes_on_ride)
        accel_score = min(25.0, self.accel_variance * 3)
        gyro_score  = min(20.0, (100.0 - self.gyro_stability) / 5)

        # unknown temperature contributes nothing
        temp = self.ambient_temp.or_default(0.0)
        heat_score = 0.0
        if temp > config.HEAT_FATIGUE_FEELS_LIKE_C:
            heat_score = min(15.0, (temp - config.HEAT_FATIGUE_FEELS_LIKE_C) * 3)

        total = time_score + accel_score + gyro_score + heat_score
        self.fatigue_score = max(0, min(100, config.round_half_up(total)))

        panic = 0
        if self.accel_variance > 5:
            panic += 30
        if self.gyro_stability < 50:
            panic += 30
        if self.speed_variance > 50:
            panic += 20
        if temp > config.EXTREME_HEAT_C:
            panic += 20
        self.panic_score = min(100, panic)

    def tick(self, now: Optional[float] = None) -> Optional[Nudge]:
        """Recompute scores and emit a nudge if one is due."""
        if not self.monitoring:
            return None
        now = self._clock.now() if now is None else now
        self.update_scores(now)
        return self._maybe_nudge(now)

    def _maybe_nudge(self, now: float) -> Optional[Nudge]:
        if (self.last_nudge_time is not None
                and now - self.last_nudge_time < config.NUDGE_COOLDOWN_SECONDS):
            return None

        # panic takes priority over the fatigue band
        if self.panic_score >= config.PANIC_THRESHOLD:
            level, reason = FatigueLevel.SEVERE, 'panic'
        else:
            level, reason = self.level, 'fatigue'
            if level is FatigueLevel.NONE:
                return None

        phrases = NUDGE_PHRASES.get(self.language, NUDGE_PHRASES[config.DEFAULT_LANGUAGE])
        text = self._rng.choice(phrases[level.value])
        vibration = None if level is FatigueLevel.MILD else VibrationPattern.ALERT

        nudge = Nudge(level=level, text=text, reason=reason, vibration=vibration, timestamp=now)
        self.last_nudge_time = now
        logger.info(
            "Nudge | reason=%s | level=%s | fatigue=%d | panic=%d",
            reason, level.value, self.fatigue_score, self.panic_score,
        )

        if self._notifier is not None:
            try:
                self._notifier.speak_text(text, self.language)
                if vibration is not None:
                    self._notifier.vibrate(vibration)
            except Exception as exc:
                logger.error("Nudge delivery failed: %s", exc, exc_info=True)
        return nudge

    # ── Read-only views ───────────────────────────────────────────────────────

    @property
    def level(self) -> FatigueLevel:
        return level_for(self.fatigue_score)

    @property
    def acceleration_variance(self) -> Reading:
        """Variance as a Reading; unknown until the buffer has enough samples."""
        if len(self._accel_buf) < config.MIN_MOTION_SAMPLES:
            return UNKNOWN
        return Reading(self.accel_variance)

    def snapshot(self) -> FatigueSnapshot:
        return FatigueSnapshot(
            monitoring=self.monitoring,
            ride_start_time=self.ride_start_time,
            minutes_on_ride=self.minutes_on_ride,
            accel_variance=self.accel_variance,
            gyro_stability=self.gyro_stability,
            speed_variance=self.speed_variance,
            ambient_temp=self.ambient_temp.value,
            fatigue_score=self.fatigue_score,
            panic_score=self.panic_score,
            level=self.level,
            last_nudge_time=self.last_nudge_time,
        )
