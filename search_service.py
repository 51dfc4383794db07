"""Worker lookup orchestration: validate, cache, fetch, rank, record."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Generic, Iterable, Mapping, Protocol, Sequence, TypeVar

from debouncer import CancellationToken, QueryDebouncer
from performance import PerformanceMonitor, PerformanceSnapshot
from ranking import (
    MIN_QUERY_LENGTH,
    RankedResult,
    ValidationError,
    normalize_search_term,
    rank_results,
    validate_search_term,
)
from ttl_cache import BoundedTTLCache, CacheStats

C = TypeVar("C")
C_co = TypeVar("C_co", covariant=True)

DEBOUNCE_KEY = "worker search"
METRIC_NAME = "worker_search"


class SearchError(Exception):
    """Base class for faults absorbed by the search service."""


class StoreUnavailable(SearchError):
    """The record store failed or did not answer in time."""


class CacheCorruption(SearchError):
    """A cached value could not be used as a ranked result list."""


class SearchCancelled(SearchError):
    """A newer query superseded this one before its fetch completed."""


class RecordStore(Protocol[C_co]):
    def search(self, term: str, limit: int, filters: Mapping[str, Any] | None = None) -> Sequence[C_co]:
        ...


@dataclass(frozen=True)
class SearchResponse(Generic[C]):
    """Ranked results handed back to the request handler."""

    results: list[RankedResult[C]] = field(default_factory=list)
    total_count: int = 0
    search_term: str = ""
    execution_time_ms: int = 0
    cached: bool = False


class WorkerSearchService(Generic[C]):
    """Real-time lookup over an external record store.

    Every call returns a response: invalid queries, store failures, timeouts
    and superseded queries all degrade to an empty result list, and every
    path leaves a metric on the performance monitor.
    """

    def __init__(
        self,
        store: RecordStore[C],
        texts_of: Callable[[C], Iterable[str]],
        cache: BoundedTTLCache[tuple[RankedResult[C], ...]],
        monitor: PerformanceMonitor,
        logger: logging.Logger,
        *,
        max_results: int = 10,
        cache_ttl: float = 120.0,
        store_timeout: float = 5.0,
        debounce_delay: float = 0.3,
        sweep_interval: float | None = 60.0,
        key_prefix: str = "worker_search",
        debouncer: QueryDebouncer | None = None,
        max_workers: int = 4,
    ) -> None:
        self._store = store
        self._texts_of = texts_of
        self._cache = cache
        self._monitor = monitor
        self._logger = logger
        self._max_results = max_results
        self._cache_ttl = cache_ttl
        self._store_timeout = store_timeout
        self._debounce_delay = debounce_delay
        self._sweep_interval = sweep_interval
        self._key_prefix = key_prefix
        self._debouncer = debouncer or QueryDebouncer(logger)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="worker-search")
        self._generation = 0
        self._generation_lock = threading.Lock()

    @property
    def monitor(self) -> PerformanceMonitor:
        return self._monitor

    def __enter__(self) -> WorkerSearchService[C]:
        self.start()
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.shutdown()

    def start(self) -> None:
        """Begin periodic cache sweeps."""
        if self._sweep_interval:
            self._cache.start_sweeper(self._sweep_interval)
        self._logger.info(
            "Worker search service started (max_results=%d, cache_ttl=%gs)",
            self._max_results,
            self._cache_ttl,
        )

    def shutdown(self) -> None:
        """Cancel pending debounced queries and background work."""
        self._debouncer.clear_all()
        self._cache.stop_sweeper()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._logger.info("Worker search service stopped")

    def cache_key(self, term: str, filters: Mapping[str, Any] | None = None) -> str:
        key = f"{self._key_prefix}:{term}"
        if filters:
            key += "|" + "&".join(f"{name}={filters[name]}" for name in sorted(filters))
        return key

    def search(
        self,
        raw_query: object,
        filters: Mapping[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> SearchResponse[C]:
        """Look up candidates for raw_query, best matches first."""
        started_at = self._monitor.now()

        try:
            trimmed = validate_search_term(raw_query)
        except ValidationError as exc:
            self._logger.debug("Skipping search for %r: %s", raw_query, exc)
            search_term = raw_query if isinstance(raw_query, str) else ""
            return self._finish(SearchResponse(search_term=search_term), started_at, f"{METRIC_NAME} (invalid)")

        term = normalize_search_term(trimmed)
        if len(term) < MIN_QUERY_LENGTH:
            self._logger.debug("Skipping search for %r: too short once normalized", raw_query)
            return self._finish(SearchResponse(search_term=trimmed), started_at, f"{METRIC_NAME} (invalid)")

        key = self.cache_key(term, filters)
        try:
            cached = self._cached_results(key)
        except CacheCorruption as exc:
            self._logger.warning("Discarding cache entry %s: %s", key, exc)
            cached = None
        if cached is not None:
            response = SearchResponse(results=cached, total_count=len(cached), search_term=term, cached=True)
            return self._finish(response, started_at, f"{METRIC_NAME} (cached)")

        generation = self._current_generation()
        try:
            candidates = self._fetch(term, filters, cancel_token)
        except SearchCancelled as exc:
            self._logger.debug("Search for %r abandoned: %s", term, exc)
            return self._finish(SearchResponse(search_term=term), started_at, f"{METRIC_NAME} (superseded)")
        except StoreUnavailable as exc:
            self._logger.warning(
                "Search for %r degraded to no results: %s", term, exc, exc_info=exc.__cause__
            )
            return self._degraded(term, started_at, exc)

        try:
            ranked = rank_results(candidates, term, self._texts_of)
        except Exception as exc:
            self._logger.exception("Ranking failed for %r", term)
            return self._degraded(term, started_at, exc)

        with self._generation_lock:
            # rows fetched before an invalidate() may already be stale
            if generation == self._generation:
                self._cache.set(key, tuple(ranked), self._cache_ttl)
        response = SearchResponse(results=ranked, total_count=len(ranked), search_term=term)
        return self._finish(response, started_at, METRIC_NAME)

    def debounced_search(self, delay: float | None = None) -> Callable[..., Future]:
        """Return a search callable that only runs the last query of a burst."""
        return self._debouncer.debounce(
            DEBOUNCE_KEY,
            self.search,
            self._debounce_delay if delay is None else delay,
            cancellable=True,
        )

    def invalidate(self) -> int:
        """Forget every cached search, e.g. after workers were added or edited."""
        with self._generation_lock:
            self._generation += 1
            removed = self._cache.delete_prefix(f"{self._key_prefix}:")
        self._logger.info("Invalidated %d cached worker searches", removed)
        return removed

    def get_stats(self, window_minutes: float = 60) -> PerformanceSnapshot:
        return self._monitor.stats(window_minutes)

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def _current_generation(self) -> int:
        with self._generation_lock:
            return self._generation

    def _cached_results(self, key: str) -> list[RankedResult[C]] | None:
        value = self._cache.get(key)
        if value is None:
            return None
        if not isinstance(value, tuple) or not all(isinstance(item, RankedResult) for item in value):
            self._cache.delete(key)
            raise CacheCorruption(f"unexpected cached value of type {type(value).__name__}")
        return list(value)

    def _fetch(
        self,
        term: str,
        filters: Mapping[str, Any] | None,
        cancel_token: CancellationToken | None,
    ) -> list[C]:
        if cancel_token is not None and cancel_token.cancelled:
            raise SearchCancelled("superseded before fetching")

        try:
            future = self._executor.submit(self._query_store, term, filters)
        except RuntimeError as exc:
            raise StoreUnavailable(f"search executor unavailable: {exc}") from exc

        finished = threading.Event()
        future.add_done_callback(lambda _future: finished.set())
        if cancel_token is not None:
            cancel_token.add_callback(finished.set)
        finished.wait(self._store_timeout)

        if future.done() and not future.cancelled():
            try:
                return future.result()
            except Exception as exc:
                raise StoreUnavailable(str(exc) or type(exc).__name__) from exc

        future.cancel()
        if cancel_token is not None and cancel_token.cancelled:
            raise SearchCancelled("superseded while fetching")
        raise StoreUnavailable(f"record store timed out after {self._store_timeout:g}s")

    def _query_store(self, term: str, filters: Mapping[str, Any] | None) -> list[C]:
        with self._monitor.track_store_performance(f"worker search '{term}'"):
            return list(self._store.search(term, self._max_results, filters))

    def _finish(
        self,
        response: SearchResponse[C],
        started_at: float,
        metric_name: str,
        error: str | None = None,
    ) -> SearchResponse[C]:
        duration_ms = self._monitor.elapsed_ms(started_at)
        self._monitor.record(metric_name, duration_ms, success=error is None, error=error)
        return replace(response, execution_time_ms=round(duration_ms))

    def _degraded(self, term: str, started_at: float, exc: Exception) -> SearchResponse[C]:
        error = str(exc) or type(exc).__name__
        return self._finish(SearchResponse(search_term=term), started_at, METRIC_NAME, error=error)
