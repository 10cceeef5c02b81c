"""Pytest fixtures for healthload tests."""

from __future__ import annotations

import logging
from collections.abc import Callable, Generator

import httpx
import pytest
import structlog

from healthload.config import RunPlan, Stage
from healthload.metrics import MetricsAggregator

HEALTHY_BODY = '{"status":"healthy"}'


def make_transport(
    status_code: int = 200,
    body: str = HEALTHY_BODY,
    headers: dict[str, str] | None = None,
) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text=body, headers=headers)

    return httpx.MockTransport(handler)


@pytest.fixture(autouse=True)
def _restore_logging() -> Generator[None, None, None]:
    """setup_logging() replaces the root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    httpx_logger = logging.getLogger("httpx")
    handlers = list(root.handlers)
    level = root.level
    httpx_level = httpx_logger.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    httpx_logger.setLevel(httpx_level)
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture
def plan_factory() -> Callable[..., RunPlan]:
    """Build a small, fast plan; keyword arguments override any field."""

    def factory(**overrides: object) -> RunPlan:
        values: dict[str, object] = {
            "stages": [Stage(0.2, 2), Stage(0.2, 2), Stage(0.1, 0)],
            "base_url": "http://service.test",
            "sleep_seconds": 0.0,
            "graceful_stop_seconds": 2.0,
        }
        values.update(overrides)
        return RunPlan(**values)  # type: ignore[arg-type]

    return factory


@pytest.fixture
def aggregator() -> MetricsAggregator:
    return MetricsAggregator()


@pytest.fixture
def transport_factory() -> Callable[..., httpx.MockTransport]:
    return make_transport
