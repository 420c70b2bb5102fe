import random
from datetime import timezone
from unittest.mock import MagicMock

import pytest

from ride_monitor.config import VibrationPattern
from ride_monitor.event_logger import RIDE_SESSIONS, RISK_EVENTS
from ride_monitor.pipeline import RideMonitor, RideSummary
from ride_monitor.sampler import Position
from ride_monitor.weather import WeatherData, assess_weather_risk
from ride_response.emergency_alert import EmergencyPhase, TriggerType

HERE = Position(12.9716, 77.5946)


def make_monitor(settings, clock, notifier, engine=None, **kwargs):
    return RideMonitor(
        settings,
        clock=clock,
        notifier=notifier,
        listening_engine=engine,
        tz=timezone.utc,
        rng=random.Random(0),
        background=False,
        **kwargs,
    )


def step(monitor, clock, seconds):
    clock.advance(seconds)
    monitor.process_pending()


def fall(monitor):
    monitor.on_motion(0.0, 9.8, 0.0)
    monitor.on_motion(30.0, 9.8, 0.0)
    monitor.process_pending()


def risk_records(monitor):
    return monitor.event_store.records(RISK_EVENTS)


@pytest.fixture
def monitor(settings, clock, notifier, engine):
    return make_monitor(settings, clock, notifier, engine)


class TestLifecycle:

    def test_start_and_end(self, monitor, clock, notifier):
        ride_id = monitor.start_ride(HERE)
        assert notifier.spoken == ["ride_started"]
        session = monitor.event_store.get(RIDE_SESSIONS, ride_id)
        assert session["status"] == "active"
        assert session["start_location"] == {"lat": HERE.lat, "lng": HERE.lng}

        step(monitor, clock, 120)
        summary = monitor.end_ride()

        assert isinstance(summary, RideSummary)
        assert summary.ride_id == ride_id
        assert summary.duration_s == pytest.approx(120)
        assert summary.status == "completed"
        assert notifier.spoken[-1] == "ride_ended"
        session = monitor.event_store.get(RIDE_SESSIONS, ride_id)
        assert session["status"] == "completed"
        assert session["end_location"] == {"lat": HERE.lat, "lng": HERE.lng}

    def test_start_twice_keeps_ride(self, monitor):
        first = monitor.start_ride(HERE)
        assert monitor.start_ride(HERE) == first

    def test_end_without_ride(self, monitor):
        assert monitor.end_ride() is None

    def test_readings_before_start_are_ignored(self, monitor):
        monitor.on_location(HERE.lat, HERE.lng)
        monitor.on_motion(50.0, 0.0, 0.0)
        monitor.process_pending()
        status = monitor.status()
        assert status["riding"] is False
        assert status["event_counts"] == {}

    def test_status_snapshot(self, monitor, clock):
        monitor.start_ride(HERE)
        step(monitor, clock, 1)
        monitor.on_location(HERE.lat + 0.0001, HERE.lng)

        status = monitor.status()

        assert status["riding"] is True
        assert status["speed_kmh"] == pytest.approx(40.0, abs=0.5)
        assert status["position"]["lat"] == HERE.lat + 0.0001
        assert status["confirming"] is False
        assert status["emergency_phase"] is None

    def test_broken_notifier_does_not_stop_the_ride(self, settings, clock):
        notifier = MagicMock()
        notifier.speak.side_effect = RuntimeError("audio device gone")
        monitor = make_monitor(settings, clock, notifier)
        assert monitor.start_ride(HERE) is not None
        assert monitor.end_ride().status == "completed"

    def test_worker_thread(self, settings, clock, notifier):
        monitor = make_monitor(settings, clock, notifier)
        monitor.start()
        try:
            monitor.start_ride(HERE)
            clock.advance(1)
            monitor.on_location(HERE.lat + 0.0001, HERE.lng)
            status = monitor.status()
        finally:
            monitor.stop()
        assert status["distance_km"] == pytest.approx(0.0111, abs=0.0005)


class TestRiskFlow:

    def test_speeding_is_scored_and_suppressed(self, monitor, clock, notifier):
        monitor.start_ride(HERE)
        step(monitor, clock, 1)
        monitor.on_location(HERE.lat + 0.0002, HERE.lng)      # ~80 km/h
        monitor.process_pending()

        [record] = risk_records(monitor)
        assert record["type"] == "speed_warning"
        assert record["confidence"] == 25
        assert record["action"] == "suppress"
        assert record["ride_id"] == monitor.ride_id
        assert "speed_warning" not in notifier.spoken

        summary = monitor.end_ride()
        assert summary.event_counts == {"speed_warning": 1}
        assert summary.max_speed_kmh == pytest.approx(80.0, abs=1.0)
        assert summary.distance_km == pytest.approx(0.022, abs=0.001)

    def test_repeat_within_debounce_is_one_record(self, monitor, clock):
        monitor.start_ride(HERE)
        for i in range(1, 4):
            step(monitor, clock, 1)
            monitor.on_location(HERE.lat + 0.0002 * i, HERE.lng)
        monitor.process_pending()

        assert len(risk_records(monitor)) == 1
        assert monitor.status()["event_counts"] == {"speed_warning": 1}

    def test_fall_confirmation_then_grace_then_emergency(self, monitor, clock, notifier):
        monitor.start_ride(HERE)
        fall(monitor)

        [record] = risk_records(monitor)
        assert record["type"] == "fall_detected"
        assert record["confidence"] == 45
        assert record["action"] == "confirm"
        assert record["sensor_intensity"] == 25
        assert notifier.spoken == ["ride_started", "are_you_okay"]

        step(monitor, clock, 5)                 # unanswered
        assert notifier.spoken[-1] == "fall_detected"
        assert notifier.vibrations[-1] is VibrationPattern.ALERT

        step(monitor, clock, 5)                 # fall grace
        emergency = monitor.response.emergency
        assert emergency.phase is EmergencyPhase.COUNTDOWN
        assert emergency.event.trigger_type is TriggerType.AUTO_FALL
        assert emergency.event.risk_event_id == record["id"]

        step(monitor, clock, 10)
        assert monitor.status()["emergency_phase"] == "active"
        assert notifier.spoken[-1] == "help_coming"

        summary = monitor.end_ride()
        assert summary.status == "emergency"
        assert summary.event_counts == {"fall_detected": 1}

    def test_rider_ok_stands_fall_down(self, monitor, clock, notifier):
        monitor.start_ride(HERE)
        fall(monitor)
        step(monitor, clock, 1)

        monitor.on_transcript("i'm fine")
        monitor.process_pending()
        step(monitor, clock, 15)

        assert monitor.response.emergency is None
        assert monitor.location_memory.get(HERE.lat, HERE.lng).false_alarm_count == 1
        assert notifier.vibrations == [VibrationPattern.CONFIRM]
        assert monitor.end_ride().status == "completed"

    def test_false_alarm_memory_lowers_next_score(self, monitor, clock):
        monitor.location_memory.record_false_alarm(HERE.lat, HERE.lng)
        monitor.location_memory.record_false_alarm(HERE.lat, HERE.lng)
        monitor.start_ride(HERE)
        fall(monitor)

        [record] = risk_records(monitor)
        assert record["confidence_factors"]["location_adjustment"] == -10
        assert record["confidence"] == 35
        assert record["action"] == "suppress"
        assert monitor.response.confirmation is None

    def test_sensor_intensity_mode(self, settings, clock, notifier):
        monitor = make_monitor(settings, clock, notifier, use_sensor_intensity=True)
        monitor.start_ride(HERE)
        fall(monitor)
        # intensity 25 scales to 10, plus the fall adjustment
        assert risk_records(monitor)[0]["confidence"] == 20

    def test_night_sudden_stop_and_call_for_help(self, settings, night_clock, notifier, engine):
        monitor = make_monitor(settings, night_clock, notifier, engine)
        monitor.start_ride(HERE)
        step(monitor, night_clock, 1)
        monitor.on_location(HERE.lat + 0.0001, HERE.lng)      # ~40 km/h
        step(monitor, night_clock, 1)
        monitor.on_location(HERE.lat + 0.0001, HERE.lng)      # stopped dead
        monitor.process_pending()

        [record] = risk_records(monitor)
        assert record["type"] == "sudden_stop"
        assert record["confidence_factors"]["time_of_day"] == 10
        assert record["confidence"] == 40
        assert record["action"] == "confirm"
        assert notifier.spoken[-1] == "are_you_okay"

        step(monitor, night_clock, 0.5)
        assert engine.starts == 1
        engine.on_transcript("help")
        monitor.process_pending()

        stop_cell = (HERE.lat + 0.0001, HERE.lng)
        assert monitor.location_memory.get(*stop_cell).true_alarm_count == 1
        assert monitor.response.emergency.event.trigger_type is TriggerType.AUTO_CRASH

    def test_idle_rider_is_checked(self, monitor, clock):
        monitor.start_ride(HERE)
        step(monitor, clock, 330)
        assert monitor.status()["event_counts"] == {"long_idle": 1}
        assert risk_records(monitor)[0]["type"] == "long_idle"


class TestCommands:

    def test_unsafe_zone_and_wellness_check(self, monitor):
        monitor.start_ride(HERE)
        monitor.trigger_unsafe_zone("dark stretch")
        monitor.trigger_wellness_check()
        monitor.process_pending()

        records = {r["type"]: r for r in risk_records(monitor)}
        assert records["unsafe_zone"]["severity"] == "medium"
        assert records["unsafe_zone"]["message"] == "dark stretch"
        assert records["wellness_check"]["severity"] == "low"
        assert records["unsafe_zone"]["location"] == {"lat": HERE.lat, "lng": HERE.lng}

    def test_manual_sos_alerts_contacts(self, settings, clock, notifier):
        alerter = MagicMock()
        alerter.send_alert.return_value = []
        monitor = make_monitor(settings, clock, notifier, alerter_factory=lambda: alerter)
        monitor.start_ride(HERE)

        monitor.trigger_manual_emergency()
        monitor.process_pending()
        assert monitor.response.emergency.event.trigger_type is TriggerType.MANUAL

        step(monitor, clock, 10)
        alerter.send_alert.assert_called_once_with(HERE)

        monitor.resolve_emergency()
        monitor.process_pending()
        assert monitor.response.emergency.phase is EmergencyPhase.RESOLVED
        assert monitor.end_ride().status == "emergency"

    def test_sos_cancelled_in_countdown(self, monitor, clock):
        monitor.start_ride(HERE)
        monitor.trigger_manual_emergency()
        monitor.process_pending()
        step(monitor, clock, 3)

        monitor.cancel_emergency()
        monitor.process_pending()

        assert monitor.response.emergency.phase is EmergencyPhase.FALSE_ALARM
        assert monitor.location_memory.get(HERE.lat, HERE.lng).false_alarm_count == 1
        assert monitor.end_ride().status == "completed"

    def test_cancel_confirmation_stands_fall_down(self, monitor, clock):
        monitor.start_ride(HERE)
        fall(monitor)
        monitor.cancel_confirmation()
        monitor.process_pending()
        step(monitor, clock, 15)
        assert monitor.response.emergency is None

    def test_connectivity_restored_pushes_pending(self, settings, clock, notifier):
        memory = MagicMock()
        memory.sync_pending.return_value = 2
        store = MagicMock()
        store.sync.return_value = 3
        monitor = make_monitor(settings, clock, notifier, location_memory=memory, event_store=store)

        monitor.connectivity_restored()

        memory.sync_pending.assert_called_once_with()
        store.sync.assert_called_once_with()


class TestWeather:

    def test_uv_is_spoken_advice_only(self, monitor, notifier):
        monitor.start_ride(HERE)
        data = WeatherData(uv_index=9.0)
        monitor.on_weather(data)
        monitor.process_pending()

        assert notifier.texts == [assess_weather_risk(data).message]
        assert risk_records(monitor) == []

    def test_extreme_heat_raises_event(self, monitor):
        monitor.start_ride(HERE)
        monitor.on_weather(WeatherData(feels_like=46.0))
        monitor.process_pending()

        [record] = risk_records(monitor)
        assert record["type"] == "extreme_weather"
        assert record["severity"] == "critical"
        assert record["message"] == assess_weather_risk(WeatherData(feels_like=46.0)).message
        assert monitor.fatigue.ambient_temp.value == 46.0

    def test_feed_polled_on_first_fix_and_every_interval(self, settings, clock, notifier):
        feed = MagicMock()
        feed.fetch.return_value = WeatherData(aqi=160)
        monitor = make_monitor(settings, clock, notifier, weather_feed=feed)
        monitor.start_ride(HERE)

        step(monitor, clock, 1)
        monitor.on_location(HERE.lat, HERE.lng + 0.00001)
        monitor.process_pending()
        assert feed.fetch.call_count == 1
        assert risk_records(monitor)[0]["type"] == "poor_air_quality"

        step(monitor, clock, 15 * 60)
        assert feed.fetch.call_count == 2

        monitor.end_ride()
        step(monitor, clock, 15 * 60)
        assert feed.fetch.call_count == 2
