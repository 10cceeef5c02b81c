from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence

DEFAULT_BASE_URL = "http://localhost"
DEFAULT_PATH = "/health"
DEFAULT_GROUP = "Health Check Endpoint"
DEFAULT_EXPECTED_BODY = '"status":"healthy"'
DEFAULT_VUS = 1000
DEFAULT_RAMP_UP = "10s"
DEFAULT_DURATION = "1m"
DEFAULT_RAMP_DOWN = "5s"

DEFAULT_THRESHOLDS: dict[str, tuple[str, ...]] = {
    "http_req_failed": ("rate<0.01",),
    "http_req_duration": ("p(95)<500",),
    "health_check_time": ("p(95)<200",),
    "errors": ("rate<0.01",),
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigurationError(ValueError):
    """Raised when a run plan cannot be executed as configured."""


def parse_duration(value: str | float | int) -> float:
    """Convert a k6-style duration ("1m30s", "500ms") or a number of seconds to seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif not isinstance(value, str):
        raise ConfigurationError(f"invalid duration {value!r}")
    else:
        text = value.strip()
        if not text:
            raise ConfigurationError("duration must not be empty")
        try:
            seconds = float(text)
        except ValueError:
            seconds = 0.0
            position = 0
            for match in _DURATION_PART.finditer(text):
                if match.start() != position:
                    raise ConfigurationError(f"invalid duration {value!r}") from None
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                position = match.end()
            if position != len(text):
                raise ConfigurationError(f"invalid duration {value!r}") from None
    if not math.isfinite(seconds):
        raise ConfigurationError(f"duration must be finite, got {value!r}")
    if seconds < 0:
        raise ConfigurationError(f"duration must be >= 0, got {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    if seconds < 1 and seconds != 0:
        return f"{seconds * 1000:g}ms"
    minutes, rest = divmod(seconds, 60)
    if minutes and rest:
        return f"{int(minutes)}m{rest:g}s"
    if minutes:
        return f"{int(minutes)}m"
    return f"{rest:g}s"


@dataclass(frozen=True)
class Stage:
    """Time window over which the driver moves linearly toward ``target`` VUs."""

    duration_seconds: float
    target: int

    @classmethod
    def from_dict(cls, data: Any) -> Stage:
        if not isinstance(data, dict):
            raise ConfigurationError(f"stage must be an object, got {data!r}")
        if "duration" not in data or "target" not in data:
            raise ConfigurationError(f"stage requires 'duration' and 'target': {data!r}")
        target = data["target"]
        if isinstance(target, bool) or not isinstance(target, int):
            raise ConfigurationError(f"stage target must be an integer, got {target!r}")
        return cls(duration_seconds=parse_duration(data["duration"]), target=target)

    def to_dict(self) -> dict[str, Any]:
        return {"duration": format_duration(self.duration_seconds), "target": self.target}


@dataclass
class RunPlan:
    """Everything the harness needs to execute one load run."""

    stages: list[Stage]
    base_url: str = DEFAULT_BASE_URL
    path: str = DEFAULT_PATH
    group: str = DEFAULT_GROUP
    expected_status: int = 200
    expected_body: str = DEFAULT_EXPECTED_BODY
    sleep_seconds: float = 1.0
    request_timeout_seconds: float = 60.0
    graceful_stop_seconds: float = 30.0
    reservoir_size: int | None = None
    thresholds: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS)
    )

    @property
    def url(self) -> str:
        return self.base_url.rstrip("/") + "/" + self.path.lstrip("/")

    @property
    def total_duration_seconds(self) -> float:
        return sum(stage.duration_seconds for stage in self.stages)

    @property
    def max_vus(self) -> int:
        return max((stage.target for stage in self.stages), default=0)

    def validate(self) -> None:
        if not self.stages:
            raise ConfigurationError("at least one stage is required")
        for index, stage in enumerate(self.stages):
            if stage.target < 0:
                raise ConfigurationError(f"stage {index} target must be >= 0")
            if stage.duration_seconds < 0:
                raise ConfigurationError(f"stage {index} duration must be >= 0")
        if self.total_duration_seconds <= 0:
            raise ConfigurationError("stages must have a total duration > 0")
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"base url must be http(s), got {self.base_url!r}")
        if self.sleep_seconds < 0:
            raise ConfigurationError("sleep interval must be >= 0")
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("request timeout must be > 0")
        if self.graceful_stop_seconds < 0:
            raise ConfigurationError("graceful stop must be >= 0")
        if self.reservoir_size is not None and self.reservoir_size <= 0:
            raise ConfigurationError("reservoir size must be > 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_url": self.base_url,
            "path": self.path,
            "group": self.group,
            "expected_status": self.expected_status,
            "expected_body": self.expected_body,
            "sleep_seconds": self.sleep_seconds,
            "request_timeout": format_duration(self.request_timeout_seconds),
            "graceful_stop": format_duration(self.graceful_stop_seconds),
            "reservoir_size": self.reservoir_size,
            "stages": [stage.to_dict() for stage in self.stages],
            "thresholds": {name: list(exprs) for name, exprs in self.thresholds.items()},
        }


def ramp_stages(
    vus: int,
    ramp_up: str | float,
    duration: str | float,
    ramp_down: str | float,
) -> list[Stage]:
    """Build the classic ramp-up, hold, ramp-down profile."""
    return [
        Stage(parse_duration(ramp_up), vus),
        Stage(parse_duration(duration), vus),
        Stage(parse_duration(ramp_down), 0),
    ]


def default_run_plan() -> RunPlan:
    return RunPlan(
        stages=ramp_stages(DEFAULT_VUS, DEFAULT_RAMP_UP, DEFAULT_DURATION, DEFAULT_RAMP_DOWN)
    )


def parse_threshold_overrides(items: Iterable[str]) -> dict[str, tuple[str, ...]]:
    """Parse ``METRIC=EXPR`` pairs; repeated metrics accumulate expressions."""
    overrides: dict[str, list[str]] = {}
    for item in items:
        metric, sep, expression = item.partition("=")
        if not sep or not metric.strip() or not expression.strip():
            raise ConfigurationError(f"threshold must look like METRIC=EXPR, got {item!r}")
        overrides.setdefault(metric.strip(), []).append(expression.strip())
    return {metric: tuple(exprs) for metric, exprs in overrides.items()}


def load_plan(path: str | Path, base: RunPlan | None = None) -> RunPlan:
    """Read a JSON plan file; keys that are absent keep the values of ``base``."""
    plan_path = Path(path)
    try:
        with open(plan_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as exc:
        raise ConfigurationError(f"cannot read plan file {plan_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"plan file {plan_path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"plan file {plan_path} must contain a JSON object")
    return plan_from_dict(data, base or default_run_plan())


def plan_from_dict(data: dict[str, Any], base: RunPlan) -> RunPlan:
    stages = base.stages
    if "stages" in data:
        raw_stages = data["stages"]
        if not isinstance(raw_stages, Sequence) or isinstance(raw_stages, str):
            raise ConfigurationError("'stages' must be a list")
        stages = [Stage.from_dict(item) for item in raw_stages]

    thresholds = dict(base.thresholds)
    if "thresholds" in data:
        raw_thresholds = data["thresholds"]
        if not isinstance(raw_thresholds, dict):
            raise ConfigurationError("'thresholds' must be an object")
        thresholds = {}
        for metric, exprs in raw_thresholds.items():
            if isinstance(exprs, str):
                exprs = [exprs]
            if not isinstance(exprs, list) or not all(isinstance(expr, str) for expr in exprs):
                raise ConfigurationError(
                    f"thresholds for {metric!r} must be a string or a list of strings"
                )
            thresholds[metric] = tuple(exprs)

    reservoir_size = data.get("reservoir_size", base.reservoir_size)
    if reservoir_size is not None and (
        isinstance(reservoir_size, bool) or not isinstance(reservoir_size, int)
    ):
        raise ConfigurationError(f"reservoir_size must be an integer, got {reservoir_size!r}")

    def pick(key: str, default: Any) -> Any:
        return data[key] if key in data else default

    try:
        plan = RunPlan(
            stages=stages,
            base_url=str(pick("base_url", base.base_url)),
            path=str(pick("path", base.path)),
            group=str(pick("group", base.group)),
            expected_status=int(pick("expected_status", base.expected_status)),
            expected_body=str(pick("expected_body", base.expected_body)),
            sleep_seconds=parse_duration(pick("sleep_seconds", base.sleep_seconds)),
            request_timeout_seconds=parse_duration(
                pick("request_timeout", base.request_timeout_seconds)
            ),
            graceful_stop_seconds=parse_duration(
                pick("graceful_stop", base.graceful_stop_seconds)
            ),
            reservoir_size=reservoir_size,
            thresholds=thresholds,
        )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, ConfigurationError):
            raise
        raise ConfigurationError(f"invalid plan value: {exc}") from exc
    return plan
