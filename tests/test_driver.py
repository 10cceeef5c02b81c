"""Tests for the load driver and its ramp schedule."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable

import httpx
import pytest

from healthload.config import RunPlan, Stage
from healthload.driver import (
    LoadDriver,
    VirtualUser,
    stage_index_at,
    target_vus_at,
    total_duration,
)
from healthload.executor import RequestExecutor
from healthload.metrics import HTTP_REQS, VUS_MAX, MetricsAggregator

RAMP = [Stage(10, 100), Stage(10, 100), Stage(5, 0)]


class FakeVirtualUser:
    """Stands in for a thread-backed VU so the driver can be tested without HTTP."""

    instances: list[FakeVirtualUser] = []

    def __init__(self, vu_id: int, executor: RequestExecutor) -> None:
        self.vu_id = vu_id
        self.started = False
        self.retired = False
        FakeVirtualUser.instances.append(self)

    def start(self) -> None:
        self.started = True

    def retire(self) -> None:
        self.retired = True

    def join(self, timeout: float | None = None) -> None:
        return None

    def is_alive(self) -> bool:
        return self.started and not self.retired


@pytest.fixture(autouse=True)
def _reset_fakes() -> None:
    FakeVirtualUser.instances = []


class TestSchedule:
    @pytest.mark.parametrize(
        ("elapsed", "expected"),
        [
            (0.0, 0),
            (2.5, 25),
            (5.0, 50),
            (9.99, 100),
            (10.0, 100),
            (15.0, 100),
            (20.0, 100),
            (22.5, 50),
            (25.0, 0),
            (99.0, 0),
        ],
    )
    def test_linear_ramp(self, elapsed: float, expected: int) -> None:
        assert target_vus_at(RAMP, elapsed) == expected

    def test_zero_duration_stage_jumps(self) -> None:
        stages = [Stage(0, 5), Stage(1, 5)]
        assert target_vus_at(stages, 0.0) == 5
        assert target_vus_at(stages, 0.5) == 5

    def test_ramp_between_nonzero_targets(self) -> None:
        stages = [Stage(1, 10), Stage(4, 30)]
        assert target_vus_at(stages, 1.0) == 10
        assert target_vus_at(stages, 3.0) == 20

    def test_stage_index(self) -> None:
        assert stage_index_at(RAMP, 0.0) == 0
        assert stage_index_at(RAMP, 10.0) == 1
        assert stage_index_at(RAMP, 24.9) == 2
        assert stage_index_at(RAMP, 25.0) == 3

    def test_total_duration(self) -> None:
        assert total_duration(RAMP) == 25

    @pytest.mark.parametrize("stage_index", [0, 1, 2])
    def test_target_reached_by_end_of_each_stage(self, stage_index: int) -> None:
        end = total_duration(RAMP[: stage_index + 1])
        # Just before the boundary the ramp is within one VU of the stage target.
        assert abs(target_vus_at(RAMP, end - 1e-6) - RAMP[stage_index].target) <= 1


class TestLoadDriver:
    def _driver(
        self,
        plan: RunPlan,
        aggregator: MetricsAggregator,
        vu_factory: Callable[..., object] = FakeVirtualUser,
    ) -> LoadDriver:
        executor = RequestExecutor(httpx.Client(), plan, aggregator)
        return LoadDriver(
            plan,
            executor,
            aggregator,
            tick_seconds=0.01,
            vu_factory=vu_factory,  # type: ignore[arg-type]
        )

    def test_concurrency_follows_targets(
        self,
        plan_factory: Callable[..., RunPlan],
        aggregator: MetricsAggregator,
    ) -> None:
        plan = plan_factory(stages=[Stage(0.2, 4), Stage(0.2, 4), Stage(0.1, 0)])
        stats = self._driver(plan, aggregator).run()

        timeline = aggregator.vu_timeline()
        assert timeline, "driver recorded no VU points"
        assert all(point.active == point.target for point in timeline)
        hold = [point for point in timeline if 0.2 <= point.elapsed_s < 0.4]
        assert hold and all(point.active == 4 for point in hold)
        assert timeline[-1].active == 0
        assert stats.peak_vus == 4
        assert stats.spawned == 4
        assert aggregator.aggregate(VUS_MAX, "value") == 4
        assert all(vu.retired for vu in FakeVirtualUser.instances)

    def test_retires_most_recent_first(
        self,
        plan_factory: Callable[..., RunPlan],
        aggregator: MetricsAggregator,
    ) -> None:
        plan = plan_factory(stages=[Stage(0, 3), Stage(0.05, 3), Stage(0, 1), Stage(0.05, 1)])
        driver = self._driver(plan, aggregator)
        driver._converge(3)
        driver._converge(1)
        assert [vu.retired for vu in FakeVirtualUser.instances] == [False, True, True]
        assert driver.active_vus == 1

    def test_spawn_failures_are_logged_and_skipped(
        self,
        plan_factory: Callable[..., RunPlan],
        aggregator: MetricsAggregator,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        failures = {"left": 2}

        class FlakyVirtualUser(FakeVirtualUser):
            def start(self) -> None:
                if failures["left"] > 0:
                    failures["left"] -= 1
                    raise RuntimeError("can't start new thread")
                super().start()

        plan = plan_factory(stages=[Stage(0.2, 3)])
        with caplog.at_level(logging.ERROR, logger="healthload.driver"):
            stats = self._driver(plan, aggregator, FlakyVirtualUser).run()

        assert stats.spawn_failures == 2
        assert stats.peak_vus == 3
        assert "Failed to spawn virtual user" in caplog.text

    def test_elapsed_just_below_total_uses_last_stage(
        self,
        plan_factory: Callable[..., RunPlan],
        aggregator: MetricsAggregator,
    ) -> None:
        stages = [Stage(3.31, 2), Stage(1.3, 2), Stage(2.71, 1)]
        total = total_duration(stages)
        readings = [0.0, math.nextafter(total, 0.0)]

        def clock() -> float:
            return readings.pop(0) if readings else total + 1.0

        plan = plan_factory(stages=stages)
        executor = RequestExecutor(httpx.Client(), plan, aggregator)
        driver = LoadDriver(
            plan,
            executor,
            aggregator,
            tick_seconds=0.01,
            clock=clock,
            vu_factory=FakeVirtualUser,  # type: ignore[arg-type]
        )
        stats = driver.run()

        assert stats.peak_vus == 1
        assert aggregator.vu_timeline()[0].target == 1

    def test_stop_ends_run_early(
        self,
        plan_factory: Callable[..., RunPlan],
        aggregator: MetricsAggregator,
    ) -> None:
        plan = plan_factory(stages=[Stage(30, 2)])
        driver = self._driver(plan, aggregator)
        timer = threading.Timer(0.1, driver.stop)
        timer.start()
        stats = driver.run()
        timer.join()
        assert stats.duration_s < 10
        assert aggregator.finished_at is not None


def test_threaded_run_issues_requests(
    plan_factory: Callable[..., RunPlan],
    aggregator: MetricsAggregator,
    transport_factory: Callable[..., httpx.MockTransport],
) -> None:
    plan = plan_factory(stages=[Stage(0.1, 3), Stage(0.2, 3), Stage(0.1, 0)], sleep_seconds=0.01)
    with httpx.Client(transport=transport_factory()) as client:
        executor = RequestExecutor(client, plan, aggregator)
        driver = LoadDriver(plan, executor, aggregator, tick_seconds=0.01, vu_factory=VirtualUser)
        stats = driver.run()

    assert stats.stragglers == 0
    assert stats.peak_vus == 3
    assert aggregator.aggregate(HTTP_REQS, "count") > 0
    assert all(sample.success for sample in aggregator.samples())
    assert not [t for t in threading.enumerate() if t.name.startswith("vu-")]
