import asyncio

import pytest

from rate_tracker import RateTracker


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRateTracker:

    def test_window_eviction(self):
        clock = FakeClock(0.0)
        tracker = RateTracker(window_seconds=60.0, clock=clock)
        tracker.record_request()
        clock.now = 70.0
        tracker.record_request()

        dropped = tracker.sweep(now=71.0)

        assert dropped == 1
        assert tracker.current_count(60) == 1

    def test_count_reads_swept_sequence(self):
        clock = FakeClock(0.0)
        tracker = RateTracker(clock=clock)
        for t in (0.0, 10.0, 20.0):
            clock.now = t
            tracker.record_request()

        # nothing swept yet
        clock.now = 200.0
        assert tracker.current_count() == 3
        tracker.sweep()
        assert tracker.current_count() == 0

    def test_sweep_is_whole_replacement(self):
        clock = FakeClock(0.0)
        tracker = RateTracker(clock=clock)
        tracker.record_request()
        snapshot = tracker.timestamps
        clock.now = 5.0
        tracker.record_request()

        assert snapshot == (0.0,)
        assert tracker.timestamps == (0.0, 5.0)

    def test_other_window_rejected(self):
        tracker = RateTracker(window_seconds=60.0)
        with pytest.raises(ValueError):
            tracker.current_count(30)

    def test_usage_ratio_and_reset(self):
        tracker = RateTracker(clock=FakeClock(1.0))
        for _ in range(15):
            tracker.record_request()
        assert tracker.usage_ratio(60) == 0.25
        tracker.reset()
        assert tracker.current_count() == 0

    @pytest.mark.asyncio
    async def test_background_sweep(self):
        clock = FakeClock(0.0)
        tracker = RateTracker(window_seconds=60.0, sweep_interval=0.01, clock=clock)
        tracker.record_request()
        clock.now = 120.0

        tracker.start()
        await asyncio.sleep(0.05)
        await tracker.stop()

        assert tracker.current_count() == 0
