from __future__ import annotations

import asyncio

import allure
import psutil
import pytest

from batch_control.engine.resources import ResourceMonitor, ResourceSample

pytestmark = [
    allure.epic("Batch Engine"),
    allure.feature("Adaptive Concurrency"),
]


@pytest.mark.parametrize(
    ("ratio", "requested", "expected"),
    [
        (0.85, 5, 1),
        (0.70, 5, 2),
        (0.70, 1, 1),
        (0.50, 5, 3),
        (0.50, 2, 2),
        (0.30, 5, 5),
        (0.80, 5, 2),
        (0.60, 5, 3),
        (0.40, 5, 5),
    ],
)
def test_recommended_concurrency_thresholds(fixed_monitor, ratio, requested, expected) -> None:
    monitor = fixed_monitor(ratio)

    assert monitor.recommended_concurrency(requested) == expected
    assert monitor.current_concurrency == expected


def test_recommendation_never_drops_below_one(fixed_monitor) -> None:
    assert fixed_monitor(0.1).recommended_concurrency(0) == 1


def test_non_adaptive_monitor_returns_requested(fixed_monitor) -> None:
    assert fixed_monitor(0.95, adaptive=False).recommended_concurrency(4) == 4


def test_check_pressure_fires_only_above_ninety_percent(fixed_monitor) -> None:
    assert asyncio.run(fixed_monitor(0.95).check_pressure()) is True
    assert asyncio.run(fixed_monitor(0.90).check_pressure()) is False


def test_default_sampler_reads_current_process() -> None:
    sample = ResourceMonitor(max_memory_bytes=1024 * 1024 * 1024).sample()

    assert sample.rss_bytes > 0
    assert sample.ratio == sample.rss_bytes / (1024 * 1024 * 1024)


def test_monitor_rejects_non_positive_budget() -> None:
    with pytest.raises(ValueError, match="max_memory_bytes"):
        ResourceMonitor(max_memory_bytes=0)


def test_sampler_failure_falls_back_to_requested_concurrency() -> None:
    def _broken_sampler() -> ResourceSample:
        raise psutil.NoSuchProcess(pid=0)

    monitor = ResourceMonitor(pressure_pause_seconds=0.0, sampler=_broken_sampler)

    assert monitor.try_sample() is None
    assert monitor.recommended_concurrency(4) == 4
    assert asyncio.run(monitor.check_pressure()) is False
