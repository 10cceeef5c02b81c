from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import httpx

from .config import RunPlan
from .metrics import MetricsAggregator, Sample

LOGGER = logging.getLogger("healthload.executor")

CORRELATION_HEADER = "X-Correlation-ID"
BODY_CHECK_NAME = "body contains status healthy"
MAX_LOGGED_BODY = 200


def status_check_name(expected_status: int) -> str:
    return f"is status {expected_status}"


def create_client(plan: RunPlan, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    """Shared client for every VU; the pool is sized to the peak VU count."""
    from . import __version__

    pool_size = max(plan.max_vus, 1)
    return httpx.Client(
        timeout=plan.request_timeout_seconds,
        limits=httpx.Limits(max_connections=pool_size, max_keepalive_connections=pool_size),
        headers={"User-Agent": f"healthload/{__version__}"},
        transport=transport,
    )


class RequestExecutor:
    """Runs the health check iteration: GET, two checks, record, sleep."""

    def __init__(
        self,
        client: httpx.Client,
        plan: RunPlan,
        aggregator: MetricsAggregator,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._client = client
        self._plan = plan
        self._aggregator = aggregator
        self._clock = clock
        self._url = plan.url
        self._status_check = status_check_name(plan.expected_status)

    def execute(self) -> Sample:
        """Issue one request, evaluate the checks and record the sample."""
        timestamp = time.time()
        started = self._clock()
        status_code = 0
        body = ""
        error: str | None = None
        correlation_id: str | None = None
        try:
            response = self._client.get(self._url)
            status_code = response.status_code
            body = response.text
            correlation_id = response.headers.get(CORRELATION_HEADER)
        except httpx.HTTPError as exc:
            error = str(exc) or exc.__class__.__name__
        latency_ms = (self._clock() - started) * 1000.0

        checks = (
            (self._status_check, status_code == self._plan.expected_status),
            (BODY_CHECK_NAME, bool(body) and self._plan.expected_body in body),
        )
        sample = Sample(
            timestamp=timestamp,
            latency_ms=latency_ms,
            success=all(passed for _, passed in checks),
            status_code=status_code,
            group=self._plan.group,
            url=self._url,
            error=error,
            checks=checks,
            correlation_id=correlation_id,
        )
        self._aggregator.record_sample(sample)
        if not sample.success:
            self._log_failure(sample, body)
        return sample

    def run_iteration(self, stop_event: threading.Event | None = None) -> Sample:
        started = self._clock()
        sample = self.execute()
        self._sleep(stop_event)
        duration_ms = (self._clock() - started) * 1000.0
        self._aggregator.record_iteration(sample.success, sample.latency_ms, duration_ms)
        return sample

    def run(self, stop_event: threading.Event) -> int:
        iterations = 0
        while not stop_event.is_set():
            self.run_iteration(stop_event)
            iterations += 1
        return iterations

    def _sleep(self, stop_event: threading.Event | None) -> None:
        interval = self._plan.sleep_seconds
        if interval <= 0:
            return
        if stop_event is not None:
            stop_event.wait(timeout=interval)
        else:
            time.sleep(interval)

    def _log_failure(self, sample: Sample, body: str) -> None:
        detail = sample.error if sample.error else body[:MAX_LOGGED_BODY]
        if sample.correlation_id:
            LOGGER.warning(
                "Health check failed: %s - %s (correlation_id=%s)",
                sample.status_code,
                detail,
                sample.correlation_id,
            )
        else:
            LOGGER.warning("Health check failed: %s - %s", sample.status_code, detail)
