from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

import httpx

from .config import (
    DEFAULT_BASE_URL,
    DEFAULT_DURATION,
    DEFAULT_EXPECTED_BODY,
    DEFAULT_PATH,
    DEFAULT_RAMP_DOWN,
    DEFAULT_RAMP_UP,
    DEFAULT_VUS,
    ConfigurationError,
    RunPlan,
    format_duration,
    load_plan,
    parse_duration,
    parse_threshold_overrides,
    ramp_stages,
)
from .driver import DEFAULT_TICK_SECONDS, DriverStatistics, LoadDriver
from .executor import RequestExecutor, create_client
from .logs import setup_logging
from .metrics import MetricsAggregator
from .report import RunReport, build_report, format_summary, write_artifacts
from .thresholds import Threshold, parse_thresholds, validate_thresholds

LOGGER = logging.getLogger("healthload")

EXIT_OK = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_INVALID_CONFIG = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="healthload",
        description="Ramp virtual users against an HTTP health endpoint and check thresholds",
    )
    parser.add_argument("--base-url", default=os.environ.get("BASE_URL", DEFAULT_BASE_URL))
    parser.add_argument("--path", default=os.environ.get("HEALTH_PATH", DEFAULT_PATH))
    parser.add_argument(
        "--vus",
        type=int,
        default=os.environ.get("VUS", str(DEFAULT_VUS)),
        help="Virtual users to hold during the main stage",
    )
    parser.add_argument("--ramp-up", default=os.environ.get("RAMP_UP_TIME", DEFAULT_RAMP_UP))
    parser.add_argument("--duration", default=os.environ.get("DURATION", DEFAULT_DURATION))
    parser.add_argument(
        "--ramp-down", default=os.environ.get("RAMP_DOWN_TIME", DEFAULT_RAMP_DOWN)
    )
    parser.add_argument(
        "--sleep",
        default=os.environ.get("SLEEP_SECONDS", "1"),
        help="Pause between iterations of a virtual user",
    )
    parser.add_argument("--timeout", default=os.environ.get("REQUEST_TIMEOUT", "60s"))
    parser.add_argument(
        "--expect-body",
        default=os.environ.get("EXPECT_BODY", DEFAULT_EXPECTED_BODY),
        help="Substring the response body must contain",
    )
    parser.add_argument(
        "--threshold",
        action="append",
        default=[],
        metavar="METRIC=EXPR",
        help="Threshold such as http_req_duration=p(95)<500; replaces the defaults for METRIC",
    )
    parser.add_argument(
        "--plan-path",
        default=os.environ.get("HEALTHLOAD_PLAN_PATH"),
        help="JSON file describing stages and thresholds",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("HEALTHLOAD_OUTPUT_DIR"),
        help="Directory to store run artefacts (CSV, JSON and charts)",
    )
    parser.add_argument("--no-charts", action="store_true", help="Skip chart rendering")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned run without executing it",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    parser.add_argument(
        "--log-format",
        choices=("console", "json"),
        default=os.environ.get("LOG_FORMAT") or None,
    )
    return parser.parse_args(argv)


def build_plan(args: argparse.Namespace) -> RunPlan:
    if args.vus < 0:
        raise ConfigurationError("--vus must be >= 0")
    plan = RunPlan(
        stages=ramp_stages(args.vus, args.ramp_up, args.duration, args.ramp_down),
        base_url=args.base_url,
        path=args.path,
        expected_body=args.expect_body,
        sleep_seconds=parse_duration(args.sleep),
        request_timeout_seconds=parse_duration(args.timeout),
    )
    if args.plan_path:
        plan = load_plan(args.plan_path, base=plan)
    if args.threshold:
        plan.thresholds.update(parse_threshold_overrides(args.threshold))
    plan.validate()
    return plan


def execute_plan(
    plan: RunPlan,
    thresholds: list[Threshold],
    transport: httpx.BaseTransport | None = None,
    tick_seconds: float = DEFAULT_TICK_SECONDS,
) -> tuple[RunReport, MetricsAggregator]:
    aggregator = MetricsAggregator(reservoir_size=plan.reservoir_size)
    validate_thresholds(thresholds, aggregator)

    stats: DriverStatistics | None = None
    with create_client(plan, transport=transport) as client:
        executor = RequestExecutor(client, plan, aggregator)
        driver = LoadDriver(plan, executor, aggregator, tick_seconds=tick_seconds)
        try:
            stats = driver.run()
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted; reporting on the samples collected so far")

    return build_report(aggregator, thresholds, stats), aggregator


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_format)

    try:
        plan = build_plan(args)
        thresholds = parse_thresholds(plan.thresholds)
        validate_thresholds(thresholds, MetricsAggregator())
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_INVALID_CONFIG

    if args.dry_run:
        _print_plan(plan)
        return EXIT_OK

    report, aggregator = execute_plan(plan, thresholds)
    print(format_summary(report))

    if args.output_dir:
        output_dir = Path(args.output_dir)
        try:
            written = write_artifacts(report, aggregator, output_dir, render_charts=not args.no_charts)
        except (OSError, ValueError):
            LOGGER.exception("Failed to write run artefacts to %s", output_dir)
        else:
            LOGGER.info("Run artefacts: %s", ", ".join(str(path) for path in written.values()))

    if not report.passed:
        for result in report.failed_thresholds:
            LOGGER.error(
                "Threshold %s '%s' crossed (observed %.4g)",
                result.threshold.metric,
                result.threshold.expression,
                result.observed,
            )
        return EXIT_THRESHOLDS_FAILED
    return EXIT_OK


def _print_plan(plan: RunPlan) -> None:
    print(f"Target: GET {plan.url} (group {plan.group!r})")
    print(
        f"Checks: status == {plan.expected_status}, body contains {plan.expected_body!r}; "
        f"sleep {format_duration(plan.sleep_seconds)} between iterations"
    )
    print("Stages:")
    for index, stage in enumerate(plan.stages, start=1):
        print(f"  {index}. {format_duration(stage.duration_seconds)} -> {stage.target} VUs")
    print("Thresholds:")
    for metric, expressions in plan.thresholds.items():
        for expression in expressions:
            print(f"  - {metric}: {expression}")


if __name__ == "__main__":
    sys.exit(main())
