"""Rolling performance metrics for API calls and store queries."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60
TOP_SLOW_LIMIT = 10
STORE_NAME_PREFIX = "DB: "


@dataclass(frozen=True)
class PerformanceMetric:
    """One timed operation."""

    name: str
    duration_ms: float
    timestamp: float
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class EndpointTiming:
    name: str
    avg_duration: int
    count: int


@dataclass(frozen=True)
class PerformanceSnapshot:
    """Aggregated statistics over a time window."""

    total_requests: int
    success_rate: int
    average_response_time: int
    slow_requests: int
    error_rate: int
    top_slow_endpoints: list[EndpointTiming]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class PerformanceMonitor:
    """Keeps the most recent metrics in a ring buffer and summarises them."""

    def __init__(
        self,
        max_metrics: int = 1000,
        api_slow_threshold_ms: float = 1000.0,
        store_slow_threshold_ms: float = 500.0,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_metrics < 1:
            raise ValueError("max_metrics must be at least 1")

        self._metrics: deque[PerformanceMetric] = deque(maxlen=max_metrics)
        self._api_slow_threshold_ms = api_slow_threshold_ms
        self._store_slow_threshold_ms = store_slow_threshold_ms
        self._retention_seconds = retention_seconds
        self._clock = clock
        self._logger = logger or logging.getLogger("worker_lookup.performance")
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._intervals: dict[str, float] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)

    def now(self) -> float:
        return self._clock()

    def elapsed_ms(self, started_at: float) -> float:
        return (self._clock() - started_at) * 1000.0

    def record(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        error: str | None = None,
    ) -> PerformanceMetric:
        """Append a metric, dropping the oldest one when the buffer is full."""
        metric = PerformanceMetric(
            name=name,
            duration_ms=duration_ms,
            timestamp=self._clock(),
            success=success,
            error=error,
        )
        with self._lock:
            self._metrics.append(metric)
        return metric

    def track_api_call(
        self,
        name: str,
        started_at: float,
        success: bool,
        error: str | None = None,
    ) -> PerformanceMetric:
        """Record an API call started at started_at and warn when it was slow."""
        metric = self.record(name, self.elapsed_ms(started_at), success, error)
        if metric.duration_ms > self._api_slow_threshold_ms:
            self._logger.warning("Slow API call: %s took %.0fms", name, metric.duration_ms)
        return metric

    def track_store_query(
        self,
        query: str,
        started_at: float,
        success: bool,
        error: str | None = None,
    ) -> PerformanceMetric:
        """Record a record-store query and warn when it was slow."""
        metric = self.record(STORE_NAME_PREFIX + query[:50], self.elapsed_ms(started_at), success, error)
        if metric.duration_ms > self._store_slow_threshold_ms:
            self._logger.warning("Slow store query: %s took %.0fms", query[:100], metric.duration_ms)
        return metric

    @contextmanager
    def track_store_performance(self, query: str) -> Iterator[None]:
        """Time the enclosed store query, recording failures before re-raising."""
        started_at = self._clock()
        try:
            yield
        except Exception as exc:
            self.track_store_query(query, started_at, False, str(exc) or type(exc).__name__)
            raise
        self.track_store_query(query, started_at, True)

    def stats(self, window_minutes: float = 60) -> PerformanceSnapshot:
        """Summarise metrics recorded within the last window_minutes."""
        cutoff = self._clock() - window_minutes * 60
        with self._lock:
            recent = [metric for metric in self._metrics if metric.timestamp >= cutoff]

        if not recent:
            return PerformanceSnapshot(
                total_requests=0,
                success_rate=100,
                average_response_time=0,
                slow_requests=0,
                error_rate=0,
                top_slow_endpoints=[],
            )

        total = len(recent)
        successful = sum(1 for metric in recent if metric.success)
        slow = sum(1 for metric in recent if metric.duration_ms > self._api_slow_threshold_ms)
        total_duration = sum(metric.duration_ms for metric in recent)

        per_name: dict[str, list[float]] = {}
        for metric in recent:
            per_name.setdefault(metric.name, []).append(metric.duration_ms)

        endpoints = [
            EndpointTiming(
                name=name,
                avg_duration=_round_half_up(sum(durations) / len(durations)),
                count=len(durations),
            )
            for name, durations in per_name.items()
        ]
        endpoints.sort(key=lambda endpoint: endpoint.avg_duration, reverse=True)

        return PerformanceSnapshot(
            total_requests=total,
            success_rate=_round_half_up(successful / total * 100),
            average_response_time=_round_half_up(total_duration / total),
            slow_requests=slow,
            error_rate=_round_half_up((total - successful) / total * 100),
            top_slow_endpoints=endpoints[:TOP_SLOW_LIMIT],
        )

    def recent_errors(self, limit: int = 10) -> list[PerformanceMetric]:
        """Return the latest failed metrics that carry an error, newest first."""
        if limit <= 0:
            return []
        with self._lock:
            failures = [metric for metric in self._metrics if not metric.success and metric.error]
        return list(reversed(failures[-limit:]))

    def cleanup(self) -> int:
        """Drop metrics older than the retention window."""
        cutoff = self._clock() - self._retention_seconds
        with self._lock:
            before = len(self._metrics)
            kept = [metric for metric in self._metrics if metric.timestamp > cutoff]
            self._metrics.clear()
            self._metrics.extend(kept)
            return before - len(kept)

    def start(self, cleanup_interval: float = 3600.0, report_interval: float | None = None) -> None:
        """Schedule periodic cleanup and, optionally, a periodic stats log line."""
        self._schedule("cleanup", cleanup_interval)
        if report_interval:
            self._schedule("report", report_interval)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._intervals.clear()
        for timer in timers:
            timer.cancel()

    def log_stats(self, window_minutes: float = 10) -> None:
        snapshot = self.stats(window_minutes)
        if snapshot.total_requests == 0:
            return
        self._logger.info(
            "Performance (last %g min): requests=%d success=%d%% avg=%dms slow=%d errors=%d%%",
            window_minutes,
            snapshot.total_requests,
            snapshot.success_rate,
            snapshot.average_response_time,
            snapshot.slow_requests,
            snapshot.error_rate,
        )

    def _schedule(self, job: str, interval: float, reschedule: bool = False) -> None:
        with self._lock:
            if reschedule and job not in self._intervals:
                return
            self._intervals[job] = interval
            timer = threading.Timer(interval, self._run_job, args=(job,))
            timer.daemon = True
            previous = self._timers.get(job)
            self._timers[job] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _run_job(self, job: str) -> None:
        with self._lock:
            interval = self._intervals.get(job)
        if interval is None:
            return

        if job == "cleanup":
            removed = self.cleanup()
            if removed:
                self._logger.debug("Dropped %d metrics past retention", removed)
        else:
            self.log_stats(interval / 60)

        self._schedule(job, interval, reschedule=True)
