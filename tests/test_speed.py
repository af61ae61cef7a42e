"""Throughput estimation."""

import pytest

from bucketdock.transfer import RateWindow, SpeedEstimator


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_estimate_waits_for_minimum_span() -> None:
    clock = FakeClock()
    estimator = SpeedEstimator(clock=clock)

    assert estimator.update(0) == 0.0
    clock.now = 0.5
    assert estimator.update(500) == 0.0
    clock.now = 1.0
    assert estimator.update(1000) == 1000.0


def test_spikes_are_capped_and_smoothed() -> None:
    clock = FakeClock()
    estimator = SpeedEstimator(clock=clock)
    estimator.update(0)
    clock.now = 1.0
    estimator.update(1000)

    clock.now = 2.0
    speed = estimator.update(100_000)

    # raw 50_000 B/s is capped at 3x the previous estimate before smoothing
    assert speed == pytest.approx(0.2 * 3000 + 0.8 * 1000)


def test_estimate_decays_to_zero_without_updates() -> None:
    clock = FakeClock()
    estimator = SpeedEstimator(clock=clock)
    estimator.update(0)
    clock.now = 1.0
    estimator.update(2000)
    assert estimator.current() == 2000.0

    clock.now = 2.5

    assert estimator.current() == 0.0


def test_shrinking_total_restarts_the_window() -> None:
    clock = FakeClock()
    estimator = SpeedEstimator(clock=clock)
    estimator.update(0)
    clock.now = 1.0
    estimator.update(4000)

    clock.now = 1.2
    assert estimator.update(100) == 4000.0
    clock.now = 2.2
    assert estimator.update(1100) == pytest.approx(0.2 * 1000 + 0.8 * 4000)


def test_reset_forgets_history() -> None:
    clock = FakeClock()
    estimator = SpeedEstimator(clock=clock)
    estimator.update(0)
    clock.now = 1.0
    estimator.update(1000)

    estimator.reset()

    assert estimator.current() == 0.0


def test_rate_window_slides() -> None:
    clock = FakeClock()
    window = RateWindow(2.0, clock=clock)

    assert window.add(0) == 0.0
    clock.now = 1.0
    assert window.add(500) == 500.0
    clock.now = 5.0
    assert window.add(1000) == 125.0
