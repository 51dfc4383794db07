"""Entry point for the worker lookup HTTP service."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from config_loader import AppConfig, load_config
from performance import PerformanceMetric, PerformanceMonitor, PerformanceSnapshot
from search_service import SearchResponse, WorkerSearchService
from ttl_cache import BoundedTTLCache
from worker_store import InMemoryWorkerStore, Worker, load_workers, worker_search_texts

LOGGER = logging.getLogger("worker_lookup")

SEARCH_PATHS = ("/search", "/api/workers/search")
HEALTH_PATHS = ("/health", "/api/health")


def build_service(config: AppConfig, logger: logging.Logger) -> WorkerSearchService[Worker]:
    """Wire the worker store, cache and monitor into a search service."""
    store = InMemoryWorkerStore(load_workers(config.workers_file), logger.getChild("store"))
    logger.info("Loaded %d workers from %s", len(store), config.workers_file)

    monitor = PerformanceMonitor(
        max_metrics=config.metrics_capacity,
        api_slow_threshold_ms=config.api_slow_threshold_ms,
        store_slow_threshold_ms=config.store_slow_threshold_ms,
        logger=logger.getChild("performance"),
    )
    cache: BoundedTTLCache[Any] = BoundedTTLCache(
        capacity=config.cache_capacity,
        default_ttl=config.cache_ttl_seconds,
        logger=logger.getChild("cache"),
    )
    return WorkerSearchService(
        store,
        worker_search_texts,
        cache,
        monitor,
        logger.getChild("search"),
        max_results=config.max_results,
        cache_ttl=config.cache_ttl_seconds,
        store_timeout=config.store_timeout_seconds,
        debounce_delay=config.debounce_delay_ms / 1000,
        sweep_interval=config.cache_sweep_seconds or None,
    )


def search_payload(response: SearchResponse[Worker]) -> dict[str, object]:
    return {
        "results": [
            {
                "item": result.item.to_dict(),
                "score": result.score,
                "matchType": result.match_tier.label,
            }
            for result in response.results
        ],
        "totalCount": response.total_count,
        "searchTerm": response.search_term,
        "executionTime": response.execution_time_ms,
        "cached": response.cached,
    }


def snapshot_payload(snapshot: PerformanceSnapshot) -> dict[str, object]:
    return {
        "totalRequests": snapshot.total_requests,
        "successRate": snapshot.success_rate,
        "averageResponseTime": snapshot.average_response_time,
        "slowRequests": snapshot.slow_requests,
        "errorRate": snapshot.error_rate,
        "topSlowEndpoints": [
            {"name": item.name, "avgDuration": item.avg_duration, "count": item.count}
            for item in snapshot.top_slow_endpoints
        ],
    }


def metric_payload(metric: PerformanceMetric) -> dict[str, object]:
    return {
        "name": metric.name,
        "duration": round(metric.duration_ms),
        "timestamp": metric.timestamp,
        "success": metric.success,
        "error": metric.error,
    }


class WorkerSearchRequestHandler(BaseHTTPRequestHandler):
    """HTTP handler exposing health, worker search and admin metrics endpoints."""

    service: WorkerSearchService[Worker]
    monitor: PerformanceMonitor
    logger: logging.Logger

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        started_at = self.monitor.now()
        params = parse_qs(parsed.query)
        path = parsed.path

        if path in HEALTH_PATHS:
            status, payload = HTTPStatus.OK, {"status": "ok"}
        elif path in SEARCH_PATHS:
            status, payload = self._search(params)
        elif path == "/api/admin/performance":
            status, payload = self._performance(params)
        elif path == "/api/admin/performance/errors":
            status, payload = self._errors(params)
        elif path == "/api/admin/cache":
            status, payload = HTTPStatus.OK, asdict(self.service.cache_stats())
        else:
            path = "unknown"
            status, payload = (
                HTTPStatus.NOT_FOUND,
                {"error": "Not found", "message": "Use GET /api/workers/search?q=<text>"},
            )

        self._track(f"GET {path}", started_at, status)
        self._send_json(status, payload)

    def do_POST(self) -> None:
        parsed = urlparse(self.path)
        started_at = self.monitor.now()

        if parsed.path == "/api/admin/cache/invalidate":
            removed = self.service.invalidate()
            status, payload = HTTPStatus.OK, {"invalidated": removed}
            path = parsed.path
        else:
            status, payload = HTTPStatus.NOT_FOUND, {"error": "Not found"}
            path = "unknown"

        self._track(f"POST {path}", started_at, status)
        self._send_json(status, payload)

    def _search(self, params: dict[str, list[str]]) -> tuple[HTTPStatus, dict[str, object]]:
        query = (params.get("q") or [""])[0]
        try:
            response = self.service.search(query)
        except Exception as exc:
            self.logger.exception("Search failed for query: %s", query)
            return HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "internal server error", "details": str(exc)}
        return HTTPStatus.OK, search_payload(response)

    def _performance(self, params: dict[str, list[str]]) -> tuple[HTTPStatus, dict[str, object]]:
        window_raw = (params.get("window") or ["60"])[0].strip()
        try:
            window = max(1, min(int(window_raw), 24 * 60))
        except ValueError:
            return HTTPStatus.BAD_REQUEST, {"error": "Invalid query parameter 'window'"}
        return HTTPStatus.OK, snapshot_payload(self.service.get_stats(window))

    def _errors(self, params: dict[str, list[str]]) -> tuple[HTTPStatus, dict[str, object]]:
        limit_raw = (params.get("limit") or ["10"])[0].strip()
        try:
            limit = max(1, min(int(limit_raw), 100))
        except ValueError:
            return HTTPStatus.BAD_REQUEST, {"error": "Invalid query parameter 'limit'"}
        errors = self.monitor.recent_errors(limit)
        return HTTPStatus.OK, {"errors": [metric_payload(metric) for metric in errors]}

    def _track(self, name: str, started_at: float, status: HTTPStatus) -> None:
        success = status.value < 400
        self.monitor.track_api_call(name, started_at, success, None if success else f"HTTP {status.value}")

    def _send_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(status.value)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        self.logger.info("%s - %s", self.client_address[0], format % args)


def main() -> None:
    """Load configuration and workers, then serve worker lookups over HTTP."""
    base_dir = Path(__file__).resolve().parent
    config = load_config(base_dir / "config.yml")

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    service = build_service(config, LOGGER)
    monitor = service.monitor
    service.start()
    monitor.start(report_interval=10 * 60 if config.log_level == "DEBUG" else None)

    WorkerSearchRequestHandler.service = service
    WorkerSearchRequestHandler.monitor = monitor
    WorkerSearchRequestHandler.logger = LOGGER

    server_address = (config.host, config.port)
    httpd = ThreadingHTTPServer(server_address, WorkerSearchRequestHandler)

    LOGGER.info("Worker lookup service started on http://%s:%d", config.host, config.port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("Shutdown signal received")
    finally:
        httpd.server_close()
        service.shutdown()
        monitor.shutdown()
        LOGGER.info("Server stopped")


if __name__ == "__main__":
    main()
