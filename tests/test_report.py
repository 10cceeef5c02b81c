"""Tests for run reports and artefacts."""

from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import pytest

from healthload.config import DEFAULT_THRESHOLDS
from healthload.driver import DriverStatistics
from healthload.metrics import MetricsAggregator, Sample
from healthload.report import build_report, format_summary, write_artifacts
from healthload.thresholds import parse_thresholds


def _populate(aggregator: MetricsAggregator, failures: int, total: int = 200) -> None:
    aggregator.mark_started(1_700_000_000.0)
    for index in range(total):
        success = index >= failures
        latency = 20.0 + index % 50
        aggregator.record_sample(
            Sample(
                timestamp=1_700_000_000.0 + index * 0.05,
                latency_ms=latency,
                success=success,
                status_code=200 if success else 503,
                group="Health Check Endpoint",
                url="http://service.test/health",
                checks=(("is status 200", success), ("body contains status healthy", success)),
            )
        )
        aggregator.record_iteration(success, latency, latency + 1000)
    for step in range(11):
        aggregator.record_vus(step * 1.0, min(step, 5), min(step, 5))
    aggregator.mark_finished(1_700_000_010.0)


class TestRunReport:
    def test_passing_run(self, aggregator: MetricsAggregator) -> None:
        _populate(aggregator, failures=0)
        report = build_report(aggregator, parse_thresholds(DEFAULT_THRESHOLDS))

        assert report.passed
        assert report.failed_thresholds == []
        assert report.duration_s == pytest.approx(10.0)
        assert len(report.thresholds) == 4

        summary = format_summary(report)
        assert "✓ http_req_duration" in summary
        assert "'p(95)<500'" in summary
        assert "4/4 passed, run PASSED" in summary

    def test_failing_run(self, aggregator: MetricsAggregator) -> None:
        _populate(aggregator, failures=10)
        report = build_report(aggregator, parse_thresholds(DEFAULT_THRESHOLDS))

        assert not report.passed
        failed = {result.threshold.metric for result in report.failed_thresholds}
        assert failed == {"errors", "http_req_failed"}
        summary = format_summary(report)
        assert "✗ errors" in summary
        assert "run FAILED" in summary

    def test_to_dict_is_json_serialisable(self, aggregator: MetricsAggregator) -> None:
        _populate(aggregator, failures=1)
        stats = DriverStatistics(
            started_at=1_700_000_000.0,
            finished_at=1_700_000_010.0,
            peak_vus=5,
            spawned=5,
            spawn_failures=0,
            stragglers=0,
        )
        report = build_report(aggregator, parse_thresholds(DEFAULT_THRESHOLDS), stats)
        data = json.loads(json.dumps(report.to_dict()))

        assert data["passed"] is True
        assert data["driver"]["peak_vus"] == 5
        assert data["metrics"]["http_reqs"]["count"] == 200
        assert data["started_at"].startswith("2023-11-14")


class TestArtifacts:
    def test_writes_csv_json_and_charts(self, aggregator: MetricsAggregator, tmp_path: Path) -> None:
        _populate(aggregator, failures=3)
        report = build_report(aggregator, parse_thresholds(DEFAULT_THRESHOLDS))
        written = write_artifacts(report, aggregator, tmp_path / "out")

        assert set(written) == {
            "samples",
            "vus",
            "summary",
            "latency_timeline",
            "latency_distribution",
            "vus_timeline",
        }
        for path in written.values():
            assert path.exists()
            assert path.stat().st_size > 0

        samples = pd.read_csv(written["samples"])
        assert len(samples) == 200
        assert int((~samples["success"]).sum()) == 3
        summary = json.loads(written["summary"].read_text(encoding="utf-8"))
        assert summary["passed"] is False

    def test_charts_skipped_without_samples(self, aggregator: MetricsAggregator, tmp_path: Path) -> None:
        report = build_report(aggregator, [])
        written = write_artifacts(report, aggregator, tmp_path)
        assert set(written) == {"samples", "vus", "summary"}

    def test_no_charts(self, aggregator: MetricsAggregator, tmp_path: Path) -> None:
        _populate(aggregator, failures=0)
        report = build_report(aggregator, [])
        written = write_artifacts(report, aggregator, tmp_path, render_charts=False)
        assert set(written) == {"samples", "vus", "summary"}
        assert not (tmp_path / "latency_timeline.png").exists()
