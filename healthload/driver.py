from __future__ import annotations

import contextvars
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from .config import RunPlan, Stage, format_duration
from .executor import RequestExecutor
from .metrics import MetricsAggregator

LOGGER = logging.getLogger("healthload.driver")

DEFAULT_TICK_SECONDS = 0.1


def total_duration(stages: Sequence[Stage]) -> float:
    return sum(stage.duration_seconds for stage in stages)


def stage_index_at(stages: Sequence[Stage], elapsed_s: float) -> int:
    """Index of the stage running at ``elapsed_s``; ``len(stages)`` once the schedule is over."""
    remaining = elapsed_s
    for index, stage in enumerate(stages):
        if remaining < stage.duration_seconds:
            return index
        remaining -= stage.duration_seconds
    return len(stages)


def target_vus_at(stages: Sequence[Stage], elapsed_s: float) -> int:
    """Linear ramp from the previous stage's target to the current one."""
    start = 0
    remaining = max(elapsed_s, 0.0)
    for stage in stages:
        if remaining < stage.duration_seconds:
            fraction = remaining / stage.duration_seconds
            return int(math.floor(start + (stage.target - start) * fraction + 0.5))
        remaining -= stage.duration_seconds
        start = stage.target
    return start


@dataclass
class DriverStatistics:
    started_at: float
    finished_at: float
    peak_vus: int
    spawned: int
    spawn_failures: int
    stragglers: int

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)


class VirtualUser:
    """One simulated client: a thread looping over the executor until told to stop."""

    def __init__(self, vu_id: int, executor: RequestExecutor) -> None:
        self.vu_id = vu_id
        self.stop_event = threading.Event()
        self.iterations = 0
        self._executor = executor
        # Carry the spawning thread's log context (service, host) into the VU.
        context = contextvars.copy_context()
        self._thread = threading.Thread(
            target=context.run, args=(self._run,), name=f"vu-{vu_id}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def retire(self) -> None:
        self.stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        try:
            self.iterations = self._executor.run(self.stop_event)
        except Exception:  # noqa: BLE001
            LOGGER.exception("virtual user %d stopped unexpectedly", self.vu_id)


class LoadDriver:
    """Spawns and retires virtual users so their count follows the stage ramp."""

    def __init__(
        self,
        plan: RunPlan,
        executor: RequestExecutor,
        aggregator: MetricsAggregator,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        vu_factory: Callable[[int, RequestExecutor], VirtualUser] = VirtualUser,
    ) -> None:
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be > 0")
        self._plan = plan
        self._stages = list(plan.stages)
        self._executor = executor
        self._aggregator = aggregator
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._vu_factory = vu_factory
        self._stop_event = threading.Event()
        self._active: list[VirtualUser] = []
        self._retired: list[VirtualUser] = []
        self._next_id = 1
        self._spawned = 0
        self._spawn_failures = 0
        self._peak = 0

    @property
    def active_vus(self) -> int:
        return len(self._active)

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> DriverStatistics:
        total = total_duration(self._stages)
        started_wall = time.time()
        started = self._clock()
        self._aggregator.mark_started(started_wall)
        LOGGER.info(
            "Starting load run against %s: %d stage(s), %s total, peak %d VUs",
            self._plan.url,
            len(self._stages),
            format_duration(total),
            self._plan.max_vus,
        )

        current_stage = -1
        stragglers = 0
        try:
            while not self._stop_event.is_set():
                elapsed = self._clock() - started
                if elapsed >= total:
                    break
                index = min(stage_index_at(self._stages, elapsed), len(self._stages) - 1)
                if index != current_stage:
                    current_stage = index
                    stage = self._stages[index]
                    LOGGER.info(
                        "Stage %d/%d: %s toward %d VUs",
                        index + 1,
                        len(self._stages),
                        format_duration(stage.duration_seconds),
                        stage.target,
                    )
                target = target_vus_at(self._stages, elapsed)
                self._converge(target)
                self._aggregator.record_vus(elapsed, self.active_vus, target)
                self._stop_event.wait(timeout=min(self._tick_seconds, max(total - elapsed, 0.0)))
        finally:
            stragglers = self._shutdown()
            self._aggregator.record_vus(self._clock() - started, 0, 0)
            finished_wall = time.time()
            self._aggregator.mark_finished(finished_wall)
            LOGGER.info("Test finished.")

        return DriverStatistics(
            started_at=started_wall,
            finished_at=finished_wall,
            peak_vus=self._peak,
            spawned=self._spawned,
            spawn_failures=self._spawn_failures,
            stragglers=stragglers,
        )

    def _converge(self, target: int) -> None:
        self._retired = [vu for vu in self._retired if vu.is_alive()]
        while len(self._active) < target:
            vu = self._vu_factory(self._next_id, self._executor)
            try:
                vu.start()
            except RuntimeError as exc:
                self._spawn_failures += 1
                LOGGER.error("Failed to spawn virtual user %d: %s", self._next_id, exc)
                break
            self._next_id += 1
            self._spawned += 1
            self._active.append(vu)
        while len(self._active) > target:
            vu = self._active.pop()
            vu.retire()
            self._retired.append(vu)
        self._peak = max(self._peak, len(self._active))

    def _shutdown(self) -> int:
        everyone = self._active + self._retired
        self._active = []
        self._retired = []
        for vu in everyone:
            vu.retire()
        deadline = self._clock() + self._plan.graceful_stop_seconds
        for vu in everyone:
            vu.join(timeout=max(deadline - self._clock(), 0.0))
        stragglers = sum(1 for vu in everyone if vu.is_alive())
        if stragglers:
            LOGGER.warning(
                "%d virtual user(s) still running after the %s graceful stop window",
                stragglers,
                format_duration(self._plan.graceful_stop_seconds),
            )
        return stragglers
