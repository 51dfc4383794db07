import threading
from typing import Any, Mapping

import pytest

from debouncer import CancellationToken
from performance import PerformanceMonitor
from ranking import MatchTier
from search_service import WorkerSearchService
from ttl_cache import BoundedTTLCache


class DummyLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str]] = []
        self.exc_infos: list[object] = []

    def _add(self, level: str, msg: str, args: tuple[object, ...]) -> None:
        self.records.append((level, msg % args if args else msg))

    def debug(self, msg: str, *args: object) -> None:
        self._add("debug", msg, args)

    def info(self, msg: str, *args: object) -> None:
        self._add("info", msg, args)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        if kwargs.get("exc_info") is not None:
            self.exc_infos.append(kwargs["exc_info"])
        self._add("warning", msg, args)

    def exception(self, msg: str, *args: object) -> None:
        self._add("exception", msg, args)


class FakeStore:
    def __init__(self, rows: list[dict[str, str]], error: Exception | None = None) -> None:
        self.rows = rows
        self.error = error
        self.calls: list[tuple[str, int, Mapping[str, Any] | None]] = []
        self.release = threading.Event()
        self.release.set()
        self.entered = threading.Event()

    def search(self, term: str, limit: int, filters: Mapping[str, Any] | None = None) -> list[dict[str, str]]:
        self.calls.append((term, limit, filters))
        self.entered.set()
        self.release.wait(5)
        if self.error is not None:
            raise self.error
        return self.rows[:limit]


ROWS = [{"name": "Jane Doe"}, {"name": "John Smith"}, {"name": "Johnny Appleseed"}]


def _names(row: dict[str, str]) -> list[str]:
    return [row["name"]]


@pytest.fixture()
def monitor() -> PerformanceMonitor:
    return PerformanceMonitor(logger=DummyLogger())


@pytest.fixture()
def cache() -> BoundedTTLCache[Any]:
    return BoundedTTLCache(capacity=100, default_ttl=120)


@pytest.fixture()
def make_service(cache: BoundedTTLCache[Any], monitor: PerformanceMonitor):
    services: list[WorkerSearchService] = []

    def _factory(store: FakeStore, **kwargs: Any) -> WorkerSearchService:
        kwargs.setdefault("sweep_interval", None)
        service = WorkerSearchService(store, _names, cache, monitor, DummyLogger(), **kwargs)
        services.append(service)
        return service

    yield _factory
    for service in services:
        service.shutdown()


def test_end_to_end_ranking_and_caching(make_service, cache: BoundedTTLCache[Any]) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)

    first = service.search("john")

    assert [result.item["name"] for result in first.results] == ["John Smith", "Johnny Appleseed"]
    assert [(result.match_tier, result.score) for result in first.results] == [
        (MatchTier.PREFIX, 80),
        (MatchTier.PREFIX, 80),
    ]
    assert first.total_count == 2
    assert first.cached is False
    assert store.calls == [("john", 10, None)]

    second = service.search("john")

    assert second.cached is True
    assert [result.item for result in second.results] == [result.item for result in first.results]
    assert len(store.calls) == 1
    assert len(cache) == 1


@pytest.mark.parametrize("query", ["", "jo", "  jo  ", "!!!!", None, 42, "x" * 101])
def test_invalid_queries_return_empty_without_touching_cache_or_store(
    make_service, cache: BoundedTTLCache[Any], monitor: PerformanceMonitor, query: object
) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)

    response = service.search(query)

    assert response.results == []
    assert response.total_count == 0
    assert store.calls == []
    assert len(cache) == 0
    assert monitor.stats().total_requests == 1


def test_search_term_is_normalized_for_store_and_cache(make_service) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)

    service.search("  JOHN!  ")
    response = service.search("john")

    assert store.calls[0][0] == "john"
    assert response.cached is True


def test_store_failure_degrades_to_empty_and_records_failure(
    make_service, cache: BoundedTTLCache[Any], monitor: PerformanceMonitor
) -> None:
    store = FakeStore(ROWS, error=ConnectionError("database unreachable"))
    service = make_service(store)

    response = service.search("john")

    assert response.results == []
    assert response.total_count == 0
    assert len(cache) == 0
    errors = [metric.error for metric in monitor.recent_errors()]
    assert "database unreachable" in errors
    assert any(metric.name == "worker_search" for metric in monitor.recent_errors())

    service.search("john")
    assert len(store.calls) == 2


def test_store_timeout_degrades_to_empty(make_service, monitor: PerformanceMonitor) -> None:
    store = FakeStore(ROWS)
    store.release.clear()
    service = make_service(store, store_timeout=0.05)

    try:
        response = service.search("john")
    finally:
        store.release.set()

    assert response.results == []
    assert "timed out" in monitor.recent_errors(1)[0].error


def test_corrupted_cache_entry_is_treated_as_miss(make_service, cache: BoundedTTLCache[Any]) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)
    cache.set(service.cache_key("john"), "not a result list")

    response = service.search("john")

    assert response.cached is False
    assert response.total_count == 2
    assert len(store.calls) == 1
    assert isinstance(cache.get(service.cache_key("john")), tuple)


def test_filters_are_part_of_cache_key(make_service) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)

    service.search("john")
    service.search("john", {"state": "TX", "city": "Austin"})
    service.search("john", {"city": "Austin", "state": "TX"})

    assert len(store.calls) == 2
    assert store.calls[1][2] == {"state": "TX", "city": "Austin"}
    assert service.cache_key("john", {"state": "TX", "city": "Austin"}) == "worker_search:john|city=Austin&state=TX"


def test_max_results_bounds_store_request(make_service) -> None:
    store = FakeStore(ROWS)
    service = make_service(store, max_results=1)

    service.search("john")

    assert store.calls[0][1] == 1


def test_invalidate_forces_refetch(make_service) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)
    service.search("john")

    assert service.invalidate() == 1
    service.search("john")

    assert len(store.calls) == 2


def test_invalidate_during_fetch_keeps_stale_rows_out_of_cache(
    make_service, cache: BoundedTTLCache[Any]
) -> None:
    store = FakeStore(ROWS)
    store.release.clear()
    service = make_service(store)
    responses = []

    worker = threading.Thread(target=lambda: responses.append(service.search("john")))
    worker.start()
    assert store.entered.wait(3)
    service.invalidate()
    store.release.set()
    worker.join(3)

    assert not worker.is_alive()
    assert responses[0].total_count == 2
    assert len(cache) == 0

    refreshed = service.search("john")

    assert refreshed.cached is False
    assert len(store.calls) == 2


def test_store_failure_logs_underlying_traceback(cache: BoundedTTLCache[Any], monitor: PerformanceMonitor) -> None:
    logger = DummyLogger()
    failure = ConnectionError("database unreachable")
    service = WorkerSearchService(
        FakeStore(ROWS, error=failure), _names, cache, monitor, logger, sweep_interval=None
    )
    try:
        service.search("john")
    finally:
        service.shutdown()

    assert logger.exc_infos == [failure]


def test_superseded_search_does_not_count_as_error(make_service, monitor: PerformanceMonitor) -> None:
    store = FakeStore(ROWS)
    store.release.clear()
    service = make_service(store, store_timeout=5)
    token = CancellationToken()
    responses = []

    worker = threading.Thread(target=lambda: responses.append(service.search("john", cancel_token=token)))
    worker.start()
    assert store.entered.wait(3)
    token.cancel()
    worker.join(3)
    store.release.set()

    stats = monitor.stats()
    assert responses[0].results == []
    assert stats.error_rate == 0
    assert all(metric.name != "worker_search (superseded)" for metric in monitor.recent_errors())


def test_cancelled_token_skips_store(make_service, monitor: PerformanceMonitor) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)
    token = CancellationToken()
    token.cancel()

    response = service.search("john", cancel_token=token)

    assert response.results == []
    assert store.calls == []
    assert monitor.recent_errors() == []
    assert [endpoint.name for endpoint in monitor.stats().top_slow_endpoints] == ["worker_search (superseded)"]


def test_cancellation_during_fetch_abandons_wait(make_service, cache: BoundedTTLCache[Any]) -> None:
    store = FakeStore(ROWS)
    store.release.clear()
    service = make_service(store, store_timeout=5)
    token = CancellationToken()
    responses = []

    worker = threading.Thread(target=lambda: responses.append(service.search("john", cancel_token=token)))
    worker.start()
    assert store.entered.wait(3)
    token.cancel()
    worker.join(3)
    store.release.set()

    assert not worker.is_alive()
    assert responses[0].results == []
    assert len(cache) == 0


def test_ranking_failure_degrades_to_empty(cache: BoundedTTLCache[Any], monitor: PerformanceMonitor) -> None:
    def broken_texts(_row: dict[str, str]) -> list[str]:
        raise KeyError("name")

    logger = DummyLogger()
    service = WorkerSearchService(FakeStore(ROWS), broken_texts, cache, monitor, logger, sweep_interval=None)
    try:
        response = service.search("john")
    finally:
        service.shutdown()

    assert response.results == []
    assert any(level == "exception" for level, _ in logger.records)
    assert monitor.recent_errors(1)[0].name == "worker_search"


def test_search_after_shutdown_degrades_to_empty(make_service) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)
    service.shutdown()

    response = service.search("john")

    assert response.results == []


def test_every_path_records_a_metric(make_service, monitor: PerformanceMonitor) -> None:
    service = make_service(FakeStore(ROWS))

    service.search("jo")
    service.search("john")
    service.search("john")

    names = [endpoint.name for endpoint in service.get_stats().top_slow_endpoints]
    assert "worker_search (invalid)" in names
    assert "worker_search" in names
    assert "worker_search (cached)" in names
    assert any(name.startswith("DB: ") for name in names)


def test_debounced_search_only_runs_last_query(make_service) -> None:
    store = FakeStore(ROWS)
    service = make_service(store)
    search = service.debounced_search(delay=0.2)

    futures = [search(query) for query in ("joh", "john", "johnn", "johnny")]
    response = futures[-1].result(timeout=3)

    assert [call[0] for call in store.calls] == ["johnny"]
    assert [result.item["name"] for result in response.results] == ["Johnny Appleseed"]
    assert all(future.cancelled() for future in futures[:-1])


def test_start_and_context_manager_manage_sweeper(cache: BoundedTTLCache[Any], monitor: PerformanceMonitor) -> None:
    service = WorkerSearchService(FakeStore(ROWS), _names, cache, monitor, DummyLogger(), sweep_interval=30)

    with service as running:
        assert running is service
        assert cache._sweeper is not None

    assert cache._sweeper is None
