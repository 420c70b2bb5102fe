import random

import pytest

from ride_monitor.config import VibrationPattern
from ride_monitor.fatigue_estimator import (
    NUDGE_PHRASES,
    FatigueEstimator,
    FatigueLevel,
    level_for,
    time_on_ride_score,
)


@pytest.fixture
def estimator(clock, notifier):
    est = FatigueEstimator(clock, notifier, language="en-IN", rng=random.Random(7))
    est.start()
    return est


def shaky(est, n=20):
    for i in range(n):
        est.add_motion(0.0 if i % 2 else 20.0)
        est.add_orientation(0.0 if i % 2 else 100.0)


class TestTimeOnRide:

    @pytest.mark.parametrize("minutes,expected", [
        (0, 0.0),
        (30, 7.5),
        (60, 15.0),
        (90, 20.0),
        (100, 21.0),
        (400, 40.0),
    ])
    def test_curve(self, minutes, expected):
        assert time_on_ride_score(minutes) == pytest.approx(expected)

    @pytest.mark.parametrize("score,level", [
        (29, FatigueLevel.NONE),
        (30, FatigueLevel.MILD),
        (50, FatigueLevel.MODERATE),
        (70, FatigueLevel.SEVERE),
    ])
    def test_levels(self, score, level):
        assert level_for(score) is level


class TestScores:

    def test_calm_short_ride_scores_low(self, estimator, clock):
        for _ in range(20):
            estimator.add_motion(9.8)
            estimator.add_orientation(5.0)
        clock.advance(720)
        assert estimator.fatigue_score == 3       # 12 min / 4
        assert estimator.panic_score == 0
        assert estimator.level is FatigueLevel.NONE

    def test_erratic_motion_raises_panic(self, estimator, clock):
        shaky(estimator)
        estimator.update_scores(clock.now())
        assert estimator.accel_variance == 10.0
        assert estimator.gyro_stability == 0.0
        assert estimator.panic_score == 60
        assert estimator.fatigue_score == 45

    def test_heat_adds_fatigue_and_panic(self, estimator, clock):
        estimator.set_temperature(41.0)
        estimator.update_scores(clock.now())
        assert estimator.fatigue_score == 15
        assert estimator.panic_score == 20

    def test_unknown_temperature_contributes_nothing(self, estimator, clock):
        estimator.set_temperature(None)
        estimator.update_scores(clock.now())
        assert estimator.fatigue_score == 0

    def test_variance_unknown_until_enough_samples(self, estimator):
        for _ in range(9):
            estimator.add_motion(9.8)
        assert not estimator.acceleration_variance.known
        estimator.add_motion(9.8)
        assert estimator.acceleration_variance.value == pytest.approx(0.0)

    def test_stop_start_riding_shows_as_speed_variance(self, estimator):
        for speed in (0, 40, 0, 40, 0, 40):
            estimator.add_speed(speed)
        assert estimator.speed_variance == pytest.approx(100.0)


class TestNudges:

    def test_panic_nudge_is_severe_and_vibrates(self, estimator, clock, notifier):
        shaky(estimator)
        clock.advance(30)

        assert len(notifier.texts) == 1
        assert notifier.texts[0] in NUDGE_PHRASES["en-IN"]["severe"]
        assert notifier.vibrations == [VibrationPattern.ALERT]

    def test_cooldown_between_nudges(self, estimator, clock, notifier):
        shaky(estimator)
        clock.advance(30)
        clock.advance(270)
        assert len(notifier.texts) == 1
        clock.advance(30)
        assert len(notifier.texts) == 2

    def test_mild_nudge_has_no_vibration(self, clock, notifier):
        est = FatigueEstimator(clock, notifier, rng=random.Random(1))
        est.start()
        clock.advance(130 * 60)

        nudge = est.tick()
        assert nudge is None                       # already nudged on an earlier tick
        assert est.level is FatigueLevel.MILD
        assert notifier.texts and notifier.texts[-1] in NUDGE_PHRASES["en-IN"]["mild"]
        assert notifier.vibrations == []

    def test_unknown_language_falls_back_to_english(self, clock, notifier):
        est = FatigueEstimator(clock, notifier, language="fr-FR", rng=random.Random(3))
        est.start()
        shaky(est)
        nudge = est.tick()
        assert nudge.text in NUDGE_PHRASES["en-IN"]["severe"]
        assert nudge.reason == "panic"

    def test_no_nudge_when_rested(self, estimator, clock, notifier):
        clock.advance(30 * 60)
        assert notifier.texts == []

    def test_stop_returns_snapshot_and_halts_ticks(self, estimator, clock, notifier):
        shaky(estimator)
        snapshot = estimator.stop()
        clock.advance(60)
        assert snapshot.monitoring is True
        assert notifier.texts == []
        assert estimator.tick() is None
