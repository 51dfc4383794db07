"""Worker records and an in-memory record store with substring search."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml


@dataclass(frozen=True)
class Worker:
    """A worker as seen by the check-in lookup."""

    id: int
    first_name: str
    last_name: str
    email: str = ""
    phone: str = ""
    city: str = ""
    state: str = ""
    is_active: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["full_name"] = self.full_name
        return payload


def worker_search_texts(worker: Worker) -> list[str]:
    """Searchable projections of a worker, strongest first."""
    return [worker.full_name, worker.first_name, worker.last_name, worker.email, worker.phone]


class InMemoryWorkerStore:
    """Thread-safe worker store answering case-insensitive substring queries."""

    def __init__(self, workers: Iterable[Worker], logger: logging.Logger) -> None:
        self._logger = logger
        self._lock = threading.RLock()
        self._workers: dict[int, Worker] = {}
        for worker in workers:
            self.add(worker)

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)

    def add(self, worker: Worker) -> None:
        with self._lock:
            if worker.id in self._workers:
                raise ValueError(f"Duplicate worker id: {worker.id}")
            self._workers[worker.id] = worker

    def remove(self, worker_id: int) -> Worker | None:
        with self._lock:
            return self._workers.pop(worker_id, None)

    def search(
        self,
        term: str,
        limit: int,
        filters: Mapping[str, Any] | None = None,
    ) -> list[Worker]:
        """Return up to limit workers whose name, email or phone contains term."""
        needle = term.strip().lower()
        if not needle or limit <= 0:
            return []

        filters = dict(filters or {})
        include_inactive = bool(filters.pop("include_inactive", False))
        city = str(filters.pop("city", "") or "").lower()
        state = str(filters.pop("state", "") or "").lower()
        if filters:
            self._logger.debug("Ignoring unsupported worker filters: %s", sorted(filters))

        with self._lock:
            workers = list(self._workers.values())

        matches: list[tuple[int, str, str, Worker]] = []
        for worker in workers:
            if not worker.is_active and not include_inactive:
                continue
            if city and worker.city.lower() != city:
                continue
            if state and worker.state.lower() != state:
                continue

            fields = [
                worker.first_name.lower(),
                worker.last_name.lower(),
                worker.full_name.lower(),
                worker.email.lower(),
                worker.phone.lower(),
            ]
            if not any(needle in value for value in fields):
                continue

            matches.append(
                (
                    _prefix_priority(worker, needle),
                    worker.first_name.lower(),
                    worker.last_name.lower(),
                    worker,
                )
            )

        matches.sort(key=lambda match: match[:3])
        return [match[3] for match in matches[:limit]]


def _prefix_priority(worker: Worker, needle: str) -> int:
    if worker.full_name.lower().startswith(needle):
        return 1
    if worker.first_name.lower().startswith(needle):
        return 2
    if worker.last_name.lower().startswith(needle):
        return 3
    return 4


def load_workers(path: Path) -> list[Worker]:
    """Load and validate worker records from a YAML file."""
    if not path.exists():
        raise FileNotFoundError(f"Workers file not found: {path}")

    with path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}

    records = raw.get("workers")
    if not isinstance(records, list):
        raise ValueError("'workers' must be a list in the workers file")

    workers: list[Worker] = []
    for position, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValueError(f"Worker #{position} must be a mapping")

        worker_id = record.get("id")
        if not isinstance(worker_id, int) or isinstance(worker_id, bool):
            raise ValueError(f"Worker #{position} must have an integer 'id'")

        for required in ("first_name", "last_name"):
            value = record.get(required)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"Worker #{position} must have a non-empty '{required}'")

        workers.append(
            Worker(
                id=worker_id,
                first_name=record["first_name"].strip(),
                last_name=record["last_name"].strip(),
                email=str(record.get("email") or ""),
                phone=str(record.get("phone") or ""),
                city=str(record.get("city") or ""),
                state=str(record.get("state") or ""),
                is_active=bool(record.get("is_active", True)),
            )
        )

    return workers
