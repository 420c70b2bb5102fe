# ride_monitor/pipeline.py

import logging
import queue
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from ride_monitor import config
from ride_monitor.clock import SystemClock
from ride_monitor.confidence_scorer import (
    Action,
    ConfidenceScorer,
    ScoringContext,
    sensor_intensity,
)
from ride_monitor.config import Settings
from ride_monitor.event_logger import EventStore
from ride_monitor.fatigue_estimator import FatigueEstimator
from ride_monitor.location_memory import LocationMemoryStore, SensorSnapshot
from ride_monitor.remote import RemoteStore
from ride_monitor.risk_detector import RiskEvent, RiskEventDetector, RiskType, Severity
from ride_monitor.sampler import UNKNOWN, GeoMotionSampler, Position, Reading
from ride_monitor.weather import WeatherData, assess_weather_risk, risk_event_for
from ride_response.emergency_alert import EmergencyEvent, EmergencyPhase, TriggerType
from ride_response.pipeline import ResponseCoordinator, TimeoutPolicy

logger = logging.getLogger(__name__)


# ── Result dataclass ──────────────────────────────────────────────────────────

@dataclass
class RideSummary:
    """
    Returned by RideMonitor.end_ride().

    status        : 'completed' | 'emergency' (an emergency went active)
    event_counts  : risk events raised this ride, by type
    """
    ride_id        : str
    start_time     : float
    end_time       : float
    duration_s     : float
    distance_km    : float
    max_speed_kmh  : float
    event_counts   : Dict[str, int] = field(default_factory=dict)
    fatigue_score  : int = 0
    panic_score    : int = 0
    fatigue_level  : str = 'none'
    status         : str = 'completed'


class RideMonitor:
    """
    Wires sampler → detector → scorer → response coordinator for one rider.

    Every sensor reading and rider command is put on a single inbox queue
    and handled one at a time, so detector / scorer / state-machine state is
    only ever touched by one thread. Run the inbox with start() (daemon
    worker) or drain it yourself with process_pending() (tests, replays).

    Usage
    -----
    monitor = RideMonitor(Settings.from_env(), notifier=VoiceNotifier())
    monitor.start()
    monitor.start_ride()
    monitor.on_location(12.9716, 77.5946)
    monitor.on_motion(0.3, 9.7, 1.1)
    ...
    summary = monitor.end_ride()
    monitor.stop()
    """

    def __init__(
        self,
        settings: Settings,
        clock=None,
        notifier=None,
        listening_engine=None,
        location_memory: Optional[LocationMemoryStore] = None,
        event_store: Optional[EventStore] = None,
        weather_feed=None,
        alerter_factory=None,
        tz=None,
        rng=None,
        timeout_policy: TimeoutPolicy = TimeoutPolicy.ALERT,
        background: bool = True,
        use_sensor_intensity: bool = False,
    ):
        self.settings   = settings
        self.background = background
        self.use_sensor_intensity = use_sensor_intensity
        self._inbox     = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._running   = False

        self.clock    = clock or SystemClock(dispatch=self.post_call)
        self.notifier = notifier

        data_dir = Path(settings.data_dir)
        remote = RemoteStore(settings.sync_url, settings.sync_key) if settings.sync_url else None

        self.location_memory = location_memory or LocationMemoryStore(
            data_dir / 'location_memory.json',
            device_id=settings.device_id,
            remote=remote,
            precision=settings.cell_precision,
            clock=self.clock,
            background=background,
        )
        self.event_store = event_store or EventStore(
            data_dir / 'events.json', remote=remote, clock=self.clock, background=background)
        self.weather_feed = weather_feed

        self.sampler  = GeoMotionSampler()
        self.fatigue  = FatigueEstimator(self.clock, notifier, language=settings.language, rng=rng)
        self.scorer   = ConfidenceScorer(self.location_memory, tz=tz, precision=settings.cell_precision)
        self.response = ResponseCoordinator(
            clock=self.clock,
            notifier=notifier,
            location_memory=self.location_memory,
            event_store=self.event_store,
            listening_engine=listening_engine,
            alerter_factory=alerter_factory,
            language=settings.language,
            timeout_policy=timeout_policy,
            background=background,
            on_event_resolved=self._on_event_resolved,
            on_emergency_change=self._on_emergency_change,
        )
        self.detector = RiskEventDetector(
            self.clock,
            notifier=notifier,
            on_event=self._on_risk_event,
            on_emergency=self.response.on_fall_grace_elapsed,
        )

        self.ride_id: Optional[str] = None
        self._session: Optional[dict] = None
        self._had_emergency = False
        self._last_accel_delta = 0.0
        self._last_speed_drop = 0.0
        self._weather_handle = None
        self._weather_requested = False

    # ── Inbox ─────────────────────────────────────────────────────────────────

    def post_call(self, fn: Callable[[], None]):
        """Queue work for the monitor thread. Safe from any thread."""
        self._inbox.put(fn)

    def process_pending(self) -> int:
        """Drain the inbox on the calling thread. Returns items handled."""
        handled = 0
        while True:
            try:
                fn = self._inbox.get_nowait()
            except queue.Empty:
                return handled
            self._run(fn)
            handled += 1

    def start(self):
        """Run the inbox on a daemon worker thread."""
        if self._running:
            return
        self._running = True
        self._worker = threading.Thread(target=self._loop, name='ride-monitor', daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0):
        if not self._running:
            return
        self._running = False
        self._inbox.put(None)
        if self._worker is not None:
            self._worker.join(timeout)
        self._worker = None

    def _loop(self):
        while self._running:
            fn = self._inbox.get()
            if fn is None:
                break
            self._run(fn)

    def _run(self, fn):
        try:
            fn()
        except Exception as exc:
            # one bad reading must never take the monitor down
            logger.error("Monitor task failed: %s", exc, exc_info=True)

    def _call(self, fn):
        """Run fn on the monitor thread and return its result."""
        if threading.current_thread() is self._worker:
            return fn()
        if self._worker is None:
            self.process_pending()
            return fn()
        future = Future()

        def task():
            try:
                future.set_result(fn())
            except Exception as exc:
                future.set_exception(exc)

        self.post_call(task)
        return future.result()

    # ── Ride lifecycle ────────────────────────────────────────────────────────

    def start_ride(self, position: Optional[Position] = None) -> str:
        return self._call(lambda: self._start_ride(position))

    def end_ride(self) -> Optional[RideSummary]:
        return self._call(self._end_ride)

    def status(self) -> dict:
        return self._call(self._status)

    # ── Sensor entry points ───────────────────────────────────────────────────

    def on_location(self, lat, lng, accuracy=None, timestamp=None):
        ts = self.clock.now() if timestamp is None else timestamp
        self.post_call(lambda: self._handle_location(Position(lat, lng, accuracy), ts))

    def on_motion(self, x, y, z, timestamp=None):
        ts = self.clock.now() if timestamp is None else timestamp
        self.post_call(lambda: self._handle_motion(x, y, z, ts))

    def on_orientation(self, beta, gamma, timestamp=None):
        ts = self.clock.now() if timestamp is None else timestamp
        self.post_call(lambda: self._handle_orientation(beta, gamma, ts))

    def on_weather(self, data: WeatherData):
        self.post_call(lambda: self._apply_weather(data))

    def on_transcript(self, text: str):
        self.post_call(lambda: self.response.feed_transcript(text))

    # ── Rider commands ────────────────────────────────────────────────────────

    def trigger_unsafe_zone(self, message: Optional[str] = None):
        self.post_call(lambda: self.detector.inject(RiskType.UNSAFE_ZONE, Severity.MEDIUM, message))

    def trigger_wellness_check(self):
        self.post_call(lambda: self.detector.inject(RiskType.WELLNESS_CHECK, Severity.LOW))

    def trigger_manual_emergency(self):
        self.post_call(lambda: self.response.start_emergency(
            TriggerType.MANUAL, self.sampler.last_position))

    def cancel_emergency(self):
        self.post_call(self.response.cancel_emergency)

    def resolve_emergency(self):
        self.post_call(self.response.resolve_emergency)

    def cancel_confirmation(self):
        self.post_call(self.response.cancel_confirmation)

    def connectivity_restored(self):
        """Push everything that failed to sync while offline."""
        self._in_background(self._sync_all)

    # ── Handlers (monitor thread only) ────────────────────────────────────────

    def _start_ride(self, position):
        if self.detector.active:
            logger.warning("Ride already active | id=%s", self.ride_id)
            return self.ride_id

        now = self.clock.now()
        self.ride_id = str(uuid.uuid4())
        self.response.ride_id = self.ride_id
        self._had_emergency = False
        self._weather_requested = False
        self._last_accel_delta = 0.0
        self._last_speed_drop = 0.0
        self.sampler.reset()

        if position is not None:
            self.sampler.location_update(position, now)

        self.detector.start(position=position)
        self.fatigue.start()

        self._session = {
            'id': self.ride_id,
            'device_id': self.settings.device_id,
            'start_time': now,
            'end_time': None,
            'duration_s': None,
            'start_location': position.as_dict() if position else None,
            'end_location': None,
            'status': 'active',
        }
        self.event_store.log_ride_session(self._session)

        self.location_memory.cleanup(now)
        self.event_store.cleanup(now)
        self._in_background(self.location_memory.load_from_remote)

        if self.weather_feed is not None:
            self._weather_handle = self.clock.call_every(
                config.WEATHER_FETCH_INTERVAL_SECONDS, self._poll_weather)

        self._speak('ride_started')
        logger.info("Ride started | id=%s | device=%s", self.ride_id, self.settings.device_id)
        return self.ride_id

    def _end_ride(self):
        if not self.detector.active:
            logger.warning("end_ride called with no active ride")
            return None

        now = self.clock.now()
        self.response.shutdown()
        state = self.detector.stop()
        fatigue = self.fatigue.stop()
        if self._weather_handle is not None:
            self._weather_handle.cancel()
            self._weather_handle = None

        end_pos = self.sampler.last_position
        summary = RideSummary(
            ride_id=self.ride_id,
            start_time=state.start_time,
            end_time=now,
            duration_s=now - state.start_time,
            distance_km=round(self.sampler.distance_m / 1000.0, 3),
            max_speed_kmh=round(self.sampler.max_speed, 1),
            event_counts=state.event_counts,
            fatigue_score=fatigue.fatigue_score,
            panic_score=fatigue.panic_score,
            fatigue_level=fatigue.level.value,
            status='emergency' if self._had_emergency else 'completed',
        )

        self._session.update({
            'end_time': now,
            'duration_s': summary.duration_s,
            'end_location': end_pos.as_dict() if end_pos else None,
            'status': summary.status,
            'distance_km': summary.distance_km,
            'max_speed_kmh': summary.max_speed_kmh,
            'event_counts': summary.event_counts,
        })
        self.event_store.log_ride_session(self._session)

        self._speak('ride_ended')
        logger.info(
            "Ride ended | id=%s | duration=%.0fs | distance=%.2fkm | status=%s",
            summary.ride_id, summary.duration_s, summary.distance_km, summary.status,
        )
        return summary

    def _status(self) -> dict:
        emergency = self.response.emergency
        return {
            'ride_id': self.ride_id,
            'riding': self.detector.active,
            'speed_kmh': self.sampler.current_speed,
            'distance_km': self.sampler.distance_m / 1000.0,
            'position': self.sampler.last_position.as_dict() if self.sampler.last_position else None,
            'fatigue_score': self.fatigue.fatigue_score,
            'panic_score': self.fatigue.panic_score,
            'fatigue_level': self.fatigue.level.value,
            'confirming': self.response.confirming,
            'emergency_phase': emergency.phase.name.lower() if emergency else None,
            'emergency_seconds_remaining': emergency.seconds_remaining if emergency else None,
            'event_counts': self.detector.event_counts,
        }

    def _handle_location(self, position: Position, ts: float):
        if not self.detector.active:
            return
        sample = self.sampler.location_update(position, ts)
        if sample is None:
            return
        self._last_speed_drop = (sample.previous_speed_kmh or 0.0) - (sample.speed_kmh or 0.0)
        self.fatigue.add_speed(sample.speed_kmh)
        self.detector.process(sample)

        if self.weather_feed is not None and not self._weather_requested:
            self._weather_requested = True
            self._poll_weather()

    def _handle_motion(self, x, y, z, ts: float):
        if not self.detector.active:
            return
        sample = self.sampler.motion_update(x, y, z, ts)
        if sample is None:
            return
        self._last_accel_delta = sample.accel_delta
        self.fatigue.add_motion(sample.accel_magnitude)
        self.detector.process(sample)

    def _handle_orientation(self, beta, gamma, ts: float):
        if not self.detector.active:
            return
        sample = self.sampler.orientation_update(beta, gamma, ts)
        if sample is not None:
            self.fatigue.add_orientation(sample.orientation_instability)

    # ── Scoring hand-off ──────────────────────────────────────────────────────

    def _on_risk_event(self, event: RiskEvent, history_before) -> bool:
        """Score, persist and route one event. Returns whether the detector should notify."""
        intensity = self._intensity_for(event)
        speed = Reading.of(self.sampler.current_speed) if self.sampler.last_position else UNKNOWN

        context = ScoringContext(
            ride_start_time=self.detector.start_time,
            current_speed=speed,
            acceleration_variance=self.fatigue.acceleration_variance,
            recent_events=history_before,
            # counts already include this event
            ride_event_count=max(0, sum(self.detector.event_counts.values()) - 1),
            sensor_intensity=Reading.of(intensity) if self.use_sensor_intensity else UNKNOWN,
        )
        scored = self.scorer.score(event, context)
        action = self.scorer.decide(scored)

        record = scored.as_dict()
        record.update({'ride_id': self.ride_id, 'action': action.value, 'sensor_intensity': intensity})
        self.event_store.log_risk_event(record)

        snapshot = SensorSnapshot(
            event_type=event.type.value,
            accel_variance=self.fatigue.acceleration_variance.value,
            gyro_variance=100.0 - self.fatigue.gyro_stability,
            speed_kmh=speed.value,
        )
        # after the detector has voiced the event
        self.post_call(lambda: self.response.handle(scored, action, snapshot))
        return action in (Action.ALERT, Action.EMERGENCY)

    def _intensity_for(self, event: RiskEvent) -> Optional[int]:
        if event.type is RiskType.FALL_DETECTED:
            return sensor_intensity(self._last_accel_delta, 0.0)
        if event.type is RiskType.SUDDEN_STOP:
            return sensor_intensity(0.0, self._last_speed_drop)
        return None

    def _on_event_resolved(self, event_id: str):
        self.detector.resolve(event_id)

    def _on_emergency_change(self, event: EmergencyEvent, phase: EmergencyPhase):
        if phase is EmergencyPhase.ACTIVE and self._session is not None:
            self._had_emergency = True
            self._session['status'] = 'emergency'
            self.event_store.log_ride_session(self._session)

    # ── Weather ───────────────────────────────────────────────────────────────

    def _poll_weather(self):
        position = self.sampler.last_position
        if position is None or self.weather_feed is None:
            return
        self._in_background(lambda: self._fetch_weather(position))

    def _fetch_weather(self, position: Position):
        data = self.weather_feed.fetch(position.lat, position.lng)
        if data is not None:
            self.post_call(lambda: self._apply_weather(data))

    def _apply_weather(self, data: WeatherData):
        if data.feels_like is not None:
            self.fatigue.set_temperature(data.feels_like)
        risk = assess_weather_risk(data)
        if risk.kind == 'uv':
            self._speak_text(risk.message)
            return
        mapped = risk_event_for(risk)
        if mapped is not None:
            risk_type, severity = mapped
            self.detector.inject(risk_type, severity, message=risk.message)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _sync_all(self):
        memory_synced = self.location_memory.sync_pending()
        events_synced = self.event_store.sync()
        logger.info("Connectivity restored | cells=%d | records=%d", memory_synced, events_synced)

    def _in_background(self, fn):
        if self.background:
            threading.Thread(target=fn, daemon=True).start()
        else:
            fn()

    def _speak(self, key: str):
        if self.notifier is None:
            return
        try:
            self.notifier.speak(key)
        except Exception as exc:
            logger.error("Notifier speak failed: %s", exc, exc_info=True)

    def _speak_text(self, text: str):
        if self.notifier is None:
            return
        try:
            self.notifier.speak_text(text)
        except Exception as exc:
            logger.error("Notifier speak_text failed: %s", exc, exc_info=True)
