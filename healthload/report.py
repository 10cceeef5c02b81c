from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .driver import DriverStatistics
from .metrics import MetricsAggregator
from .thresholds import Threshold, ThresholdResult, evaluate_thresholds

LOGGER = logging.getLogger("healthload.report")

SUMMARY_METRIC_ORDER = [
    "checks",
    "errors",
    "health_check_time",
    "http_req_duration",
    "http_req_failed",
    "http_reqs",
    "iteration_duration",
    "iterations",
    "vus",
    "vus_max",
]


@dataclass
class RunReport:
    """Final outcome of a run: metric summaries plus the threshold verdicts."""

    started_at: float
    finished_at: float
    metrics: dict[str, dict[str, Any]]
    thresholds: list[ThresholdResult] = field(default_factory=list)
    driver: DriverStatistics | None = None

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.thresholds)

    @property
    def failed_thresholds(self) -> list[ThresholdResult]:
        return [result for result in self.thresholds if not result.passed]

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_s": self.duration_s,
            "passed": self.passed,
            "metrics": self.metrics,
            "thresholds": [result.to_dict() for result in self.thresholds],
        }
        if self.driver is not None:
            data["driver"] = {
                "peak_vus": self.driver.peak_vus,
                "spawned": self.driver.spawned,
                "spawn_failures": self.driver.spawn_failures,
                "stragglers": self.driver.stragglers,
            }
        return data


def build_report(
    aggregator: MetricsAggregator,
    thresholds: list[Threshold],
    driver: DriverStatistics | None = None,
) -> RunReport:
    started = aggregator.started_at if aggregator.started_at is not None else 0.0
    finished = aggregator.finished_at if aggregator.finished_at is not None else started
    return RunReport(
        started_at=started,
        finished_at=finished,
        metrics=aggregator.summaries(),
        thresholds=evaluate_thresholds(thresholds, aggregator),
        driver=driver,
    )


def format_summary(report: RunReport) -> str:
    by_metric: dict[str, list[ThresholdResult]] = {}
    for result in report.thresholds:
        by_metric.setdefault(result.threshold.metric, []).append(result)

    names = [name for name in SUMMARY_METRIC_ORDER if name in report.metrics]
    names += sorted(name for name in report.metrics if name not in SUMMARY_METRIC_ORDER)
    width = max((len(name) for name in names), default=0) + 2

    lines = []
    for name in names:
        results = by_metric.get(name, [])
        if results:
            marker = "✓" if all(result.passed for result in results) else "✗"
        else:
            marker = " "
        label = (name + " ").ljust(width, ".")
        lines.append(f"  {marker} {label}: {_format_metric(report.metrics[name])}")
        for result in results:
            verdict = "✓" if result.passed else "✗"
            lines.append(
                f"      {verdict} '{result.threshold.expression}' observed={result.observed:.4g}"
            )

    status = "PASSED" if report.passed else "FAILED"
    lines.append("")
    lines.append(
        f"  thresholds: {len(report.thresholds) - len(report.failed_thresholds)}/"
        f"{len(report.thresholds)} passed, run {status} in {report.duration_s:.1f}s"
    )
    return "\n".join(lines)


def write_artifacts(
    report: RunReport,
    aggregator: MetricsAggregator,
    output_dir: Path,
    render_charts: bool = True,
) -> dict[str, Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    written: dict[str, Path] = {}

    samples = aggregator.build_dataframe()
    samples_path = output_dir / "samples.csv"
    samples.to_csv(samples_path, index=False)
    written["samples"] = samples_path

    vus = aggregator.build_vu_dataframe()
    vus_path = output_dir / "vus.csv"
    vus.to_csv(vus_path, index=False)
    written["vus"] = vus_path

    summary_path = output_dir / "summary.json"
    with open(summary_path, "w", encoding="utf-8") as f:
        json.dump(report.to_dict(), f, indent=2)
    written["summary"] = summary_path
    LOGGER.info("Saved %d samples and run summary to %s", len(samples), output_dir)

    if render_charts:
        from .charts import render_run_charts

        for name, path in render_run_charts(samples, vus, output_dir).items():
            written[name] = path
    return written


def _format_metric(summary: dict[str, Any]) -> str:
    kind = summary.get("type")
    if kind == "trend":
        return " ".join(
            f"{key}={summary[key]:.2f}ms" for key in ("avg", "min", "med", "max", "p(90)", "p(95)")
        )
    if kind == "rate":
        total = int(summary["passes"] + summary["fails"])
        return f"{summary['rate'] * 100:.2f}% ✓ {int(summary['passes'])} ✗ {int(summary['fails'])} of {total}"
    if kind == "counter":
        return f"{int(summary['count'])} {summary['rate']:.2f}/s"
    return f"{summary['value']:g} min={summary['min']:g} max={summary['max']:g}"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
