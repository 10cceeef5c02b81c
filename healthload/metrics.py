from __future__ import annotations

import enum
import random
import threading
import time
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
CHECKS = "checks"
ERRORS = "errors"
HEALTH_CHECK_TIME = "health_check_time"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
VUS = "vus"
VUS_MAX = "vus_max"

SAMPLE_COLUMNS = [
    "timestamp",
    "group",
    "url",
    "status_code",
    "latency_ms",
    "success",
    "error",
    "correlation_id",
    "failed_checks",
]


class MetricKind(str, enum.Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    RATE = "rate"
    TREND = "trend"


@dataclass(frozen=True)
class Sample:
    """Outcome of a single request; never mutated after it is recorded."""

    timestamp: float
    latency_ms: float
    success: bool
    status_code: int
    group: str = ""
    url: str = ""
    error: str | None = None
    checks: tuple[tuple[str, bool], ...] = ()
    correlation_id: str | None = None

    @property
    def request_failed(self) -> bool:
        return self.status_code == 0 or self.status_code >= 400

    @property
    def failed_checks(self) -> list[str]:
        return [name for name, passed in self.checks if not passed]

    def to_row(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "group": self.group,
            "url": self.url,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "success": self.success,
            "error": self.error,
            "correlation_id": self.correlation_id,
            "failed_checks": ";".join(self.failed_checks),
        }


class Reservoir:
    """Uniform sample of a stream (Algorithm R); keeps everything when capacity is None."""

    def __init__(self, capacity: int | None = None, seed: int | None = None) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("Reservoir capacity must be > 0")
        self._capacity = capacity
        self._values: list[float] = []
        self._seen = 0
        self._sum = 0.0
        self._min: float | None = None
        self._max: float | None = None
        self._random = random.Random(seed)

    def add(self, value: float) -> None:
        self._seen += 1
        self._sum += value
        self._min = value if self._min is None else min(self._min, value)
        self._max = value if self._max is None else max(self._max, value)
        if self._capacity is None or len(self._values) < self._capacity:
            self._values.append(value)
            return
        slot = self._random.randrange(self._seen)
        if slot < self._capacity:
            self._values[slot] = value

    @property
    def count(self) -> int:
        return self._seen

    @property
    def mean(self) -> float:
        return self._sum / self._seen if self._seen else 0.0

    @property
    def minimum(self) -> float:
        return self._min if self._min is not None else 0.0

    @property
    def maximum(self) -> float:
        return self._max if self._max is not None else 0.0

    def percentile(self, pct: float) -> float:
        if not self._values:
            return 0.0
        return float(np.percentile(self._values, pct))

    def values(self) -> list[float]:
        return list(self._values)


class MetricSeries:
    """Values of one named metric. Not thread-safe on its own; the aggregator guards it."""

    def __init__(self, name: str, kind: MetricKind, reservoir_size: int | None = None) -> None:
        self.name = name
        self.kind = kind
        self.total = 0.0
        self.passes = 0
        self.fails = 0
        self.last: float | None = None
        self.low: float | None = None
        self.high: float | None = None
        self.reservoir = Reservoir(reservoir_size) if kind is MetricKind.TREND else None

    def add(self, value: float) -> None:
        if self.kind is MetricKind.COUNTER:
            self.total += value
        elif self.kind is MetricKind.RATE:
            if value:
                self.passes += 1
            else:
                self.fails += 1
        elif self.kind is MetricKind.GAUGE:
            self.last = value
            self.low = value if self.low is None else min(self.low, value)
            self.high = value if self.high is None else max(self.high, value)
        elif self.reservoir is not None:
            self.reservoir.add(value)

    @property
    def count(self) -> int:
        if self.kind is MetricKind.RATE:
            return self.passes + self.fails
        if self.reservoir is not None:
            return self.reservoir.count
        return int(self.total)

    @property
    def rate(self) -> float:
        total = self.passes + self.fails
        return self.passes / total if total else 0.0

    def aggregate(self, method: str, percentile: float | None = None, elapsed_s: float = 0.0) -> float:
        """Reduce the series the way a threshold expression asks for."""
        if self.kind is MetricKind.RATE:
            if method == "rate":
                return self.rate
            if method == "count":
                return float(self.count)
        elif self.kind is MetricKind.COUNTER:
            if method == "count":
                return self.total
            if method == "rate":
                return self.total / elapsed_s if elapsed_s > 0 else 0.0
        elif self.kind is MetricKind.GAUGE:
            if method == "value":
                return self.last or 0.0
            if method == "min":
                return self.low or 0.0
            if method == "max":
                return self.high or 0.0
        elif self.reservoir is not None:
            if method == "avg":
                return self.reservoir.mean
            if method == "min":
                return self.reservoir.minimum
            if method == "max":
                return self.reservoir.maximum
            if method == "med":
                return self.reservoir.percentile(50)
            if method == "count":
                return float(self.reservoir.count)
            if method == "p" and percentile is not None:
                return self.reservoir.percentile(percentile)
        raise ValueError(f"aggregation {method!r} is not supported for {self.kind.value} metric {self.name!r}")

    def summary(self, elapsed_s: float = 0.0) -> dict[str, float]:
        if self.kind is MetricKind.TREND:
            return {
                "avg": self.aggregate("avg"),
                "min": self.aggregate("min"),
                "med": self.aggregate("med"),
                "max": self.aggregate("max"),
                "p(90)": self.aggregate("p", 90),
                "p(95)": self.aggregate("p", 95),
                "count": self.aggregate("count"),
            }
        if self.kind is MetricKind.RATE:
            return {"rate": self.rate, "passes": float(self.passes), "fails": float(self.fails)}
        if self.kind is MetricKind.COUNTER:
            return {"count": self.total, "rate": self.aggregate("rate", elapsed_s=elapsed_s)}
        return {
            "value": self.aggregate("value"),
            "min": self.aggregate("min"),
            "max": self.aggregate("max"),
        }


BUILTIN_METRICS: dict[str, MetricKind] = {
    HTTP_REQS: MetricKind.COUNTER,
    HTTP_REQ_DURATION: MetricKind.TREND,
    HTTP_REQ_FAILED: MetricKind.RATE,
    CHECKS: MetricKind.RATE,
    ERRORS: MetricKind.RATE,
    HEALTH_CHECK_TIME: MetricKind.TREND,
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
    VUS: MetricKind.GAUGE,
    VUS_MAX: MetricKind.GAUGE,
}


@dataclass
class VuPoint:
    elapsed_s: float
    active: int
    target: int


class MetricsAggregator:
    """Thread-safe accumulator shared by every virtual user in a run."""

    def __init__(self, reservoir_size: int | None = None) -> None:
        self._lock = threading.Lock()
        self._reservoir_size = reservoir_size
        self._samples: list[Sample] = []
        self._series: dict[str, MetricSeries] = {}
        self._vu_timeline: list[VuPoint] = []
        self.started_at: float | None = None
        self.finished_at: float | None = None
        for name, kind in BUILTIN_METRICS.items():
            self.register(name, kind)

    def register(self, name: str, kind: MetricKind) -> MetricSeries:
        with self._lock:
            existing = self._series.get(name)
            if existing is not None:
                if existing.kind is not kind:
                    raise ValueError(f"metric {name!r} already registered as {existing.kind.value}")
                return existing
            series = MetricSeries(name, kind, self._reservoir_size)
            self._series[name] = series
            return series

    def mark_started(self, ts: float | None = None) -> None:
        with self._lock:
            self.started_at = time.time() if ts is None else ts

    def mark_finished(self, ts: float | None = None) -> None:
        with self._lock:
            self.finished_at = time.time() if ts is None else ts

    @property
    def elapsed_s(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.time()
        return max(end - self.started_at, 0.0)

    def add(self, name: str, value: float) -> None:
        with self._lock:
            series = self._series.get(name)
            if series is None:
                raise KeyError(f"unknown metric {name!r}")
            series.add(value)

    def record_sample(self, sample: Sample) -> None:
        with self._lock:
            self._samples.append(sample)
            self._series[HTTP_REQS].add(1)
            self._series[HTTP_REQ_DURATION].add(sample.latency_ms)
            self._series[HTTP_REQ_FAILED].add(sample.request_failed)
            for _, passed in sample.checks:
                self._series[CHECKS].add(passed)

    def record_iteration(self, success: bool, check_latency_ms: float, duration_ms: float) -> None:
        """Per-iteration series: the custom error rate and the health check trend."""
        with self._lock:
            self._series[ITERATIONS].add(1)
            self._series[ITERATION_DURATION].add(duration_ms)
            self._series[ERRORS].add(not success)
            self._series[HEALTH_CHECK_TIME].add(check_latency_ms)

    def record_vus(self, elapsed_s: float, active: int, target: int) -> None:
        with self._lock:
            self._vu_timeline.append(VuPoint(elapsed_s, active, target))
            self._series[VUS].add(active)
            vus_max = self._series[VUS_MAX]
            vus_max.add(max(active, int(vus_max.high or 0)))

    def series(self, name: str) -> MetricSeries:
        with self._lock:
            try:
                return self._series[name]
            except KeyError:
                raise KeyError(f"unknown metric {name!r}") from None

    def has_metric(self, name: str) -> bool:
        with self._lock:
            return name in self._series

    def metric_names(self) -> list[str]:
        with self._lock:
            return list(self._series)

    def samples(self) -> list[Sample]:
        with self._lock:
            return list(self._samples)

    def aggregate(self, name: str, method: str, percentile: float | None = None) -> float:
        elapsed = self.elapsed_s
        with self._lock:
            series = self._series.get(name)
            if series is None:
                raise KeyError(f"unknown metric {name!r}")
            return series.aggregate(method, percentile, elapsed_s=elapsed)

    def summaries(self) -> dict[str, dict[str, Any]]:
        elapsed = self.elapsed_s
        with self._lock:
            return {
                name: {"type": series.kind.value, **series.summary(elapsed)}
                for name, series in self._series.items()
            }

    def build_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = [sample.to_row() for sample in self._samples]
        if not rows:
            return pd.DataFrame(columns=SAMPLE_COLUMNS)
        return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)

    def build_vu_dataframe(self) -> pd.DataFrame:
        with self._lock:
            rows = [
                {"elapsed_s": point.elapsed_s, "active": point.active, "target": point.target}
                for point in self._vu_timeline
            ]
        if not rows:
            return pd.DataFrame(columns=["elapsed_s", "active", "target"])
        return pd.DataFrame(rows)

    def vu_timeline(self) -> list[VuPoint]:
        with self._lock:
            return list(self._vu_timeline)
