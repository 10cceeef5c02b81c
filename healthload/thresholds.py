"""Pass/fail conditions evaluated against aggregated run metrics.

Expressions follow the k6 grammar: ``<aggregation> <op> <number>``, for
example ``rate<0.01`` or ``p(95)<500``. They are parsed and validated before
the run starts so a typo fails fast instead of after a ten minute test.
"""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from .config import ConfigurationError
from .metrics import MetricKind, MetricsAggregator

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>rate|avg|min|max|med|count|value|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<bound>[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)\s*$"
)

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

SUPPORTED_AGGREGATIONS: dict[MetricKind, frozenset[str]] = {
    MetricKind.RATE: frozenset({"rate", "count"}),
    MetricKind.COUNTER: frozenset({"count", "rate"}),
    MetricKind.GAUGE: frozenset({"value", "min", "max"}),
    MetricKind.TREND: frozenset({"avg", "min", "max", "med", "count", "p"}),
}


@dataclass(frozen=True)
class Threshold:
    metric: str
    expression: str
    aggregation: str
    op: str
    bound: float
    percentile: float | None = None

    @classmethod
    def parse(cls, metric: str, expression: str) -> Threshold:
        match = _EXPRESSION.match(expression)
        if match is None:
            raise ConfigurationError(f"invalid threshold expression {expression!r} for {metric!r}")
        aggregation = match.group("agg")
        percentile = None
        if aggregation.startswith("p("):
            percentile = float(match.group("pct"))
            if not 0 <= percentile <= 100:
                raise ConfigurationError(f"percentile out of range in {expression!r}")
            aggregation = "p"
        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            op=match.group("op"),
            bound=float(match.group("bound")),
            percentile=percentile,
        )

    def validate_against(self, aggregator: MetricsAggregator) -> None:
        if not aggregator.has_metric(self.metric):
            raise ConfigurationError(f"threshold refers to unknown metric {self.metric!r}")
        kind = aggregator.series(self.metric).kind
        if self.aggregation not in SUPPORTED_AGGREGATIONS[kind]:
            raise ConfigurationError(
                f"threshold {self.expression!r} is not valid for {kind.value} metric {self.metric!r}"
            )

    def evaluate(self, aggregator: MetricsAggregator) -> ThresholdResult:
        observed = aggregator.aggregate(self.metric, self.aggregation, self.percentile)
        passed = _OPERATORS[self.op](observed, self.bound)
        return ThresholdResult(threshold=self, observed=observed, passed=passed)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: float
    passed: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "metric": self.threshold.metric,
            "expression": self.threshold.expression,
            "observed": self.observed,
            "passed": self.passed,
        }


def parse_thresholds(config: Mapping[str, Iterable[str]]) -> list[Threshold]:
    return [
        Threshold.parse(metric, expression)
        for metric, expressions in config.items()
        for expression in expressions
    ]


def validate_thresholds(thresholds: Iterable[Threshold], aggregator: MetricsAggregator) -> None:
    for threshold in thresholds:
        threshold.validate_against(aggregator)


def evaluate_thresholds(
    thresholds: Iterable[Threshold], aggregator: MetricsAggregator
) -> list[ThresholdResult]:
    return [threshold.evaluate(aggregator) for threshold in thresholds]
