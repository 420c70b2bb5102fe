import time

import pytest

from ride_monitor.clock import SystemClock, VirtualClock


class TestVirtualClock:

    def test_timers_fire_in_deadline_order(self):
        clock = VirtualClock(start=100.0)
        fired = []
        clock.call_later(5, lambda: fired.append(("b", clock.now())))
        clock.call_later(2, lambda: fired.append(("a", clock.now())))

        clock.advance(10)

        assert fired == [("a", 102.0), ("b", 105.0)]
        assert clock.now() == 110.0

    def test_cancelled_timer_never_runs(self):
        clock = VirtualClock()
        fired = []
        handle = clock.call_later(1, lambda: fired.append(1))
        handle.cancel()
        handle.cancel()

        clock.advance(5)

        assert fired == []
        assert clock.pending_timers == 0

    def test_call_every_repeats_until_cancelled(self):
        clock = VirtualClock()
        ticks = []
        handle = clock.call_every(30, lambda: ticks.append(clock.now()))

        clock.advance(95)
        handle.cancel()
        clock.advance(100)

        assert ticks == [30.0, 60.0, 90.0]

    def test_call_every_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            VirtualClock().call_every(0, lambda: None)

    def test_timer_scheduled_inside_callback_fires_in_same_advance(self):
        clock = VirtualClock()
        fired = []
        clock.call_later(1, lambda: clock.call_later(1, lambda: fired.append(clock.now())))

        clock.advance(3)

        assert fired == [2.0]

    def test_advance_to_past_is_noop(self):
        clock = VirtualClock(start=50.0)
        clock.advance_to(10.0)
        assert clock.now() == 50.0


def _wait_for(items, timeout=1.0):
    deadline = time.time() + timeout
    while not items and time.time() < deadline:
        time.sleep(0.005)


class TestSystemClock:

    def test_dispatch_receives_fired_callback(self):
        posted = []
        clock = SystemClock(dispatch=posted.append)
        fired = []

        clock.call_later(0.01, lambda: fired.append(True))
        _wait_for(posted)

        assert len(posted) == 1
        posted[0]()
        assert fired == [True]

    def test_cancel_after_dispatch_still_suppresses_callback(self):
        posted = []
        clock = SystemClock(dispatch=posted.append)
        fired = []

        handle = clock.call_later(0.01, lambda: fired.append(True))
        _wait_for(posted)
        handle.cancel()
        posted[0]()

        assert fired == []
