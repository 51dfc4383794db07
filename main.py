"""Demo of the worker lookup without starting the HTTP server."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from config_loader import load_config
from server import build_service, search_payload, snapshot_payload

LOGGER = logging.getLogger("worker_lookup.demo")


def run_demo() -> None:
    """Run a few lookups twice so the second pass is served from the cache."""
    base_dir = Path(__file__).resolve().parent
    config = load_config(base_dir / "config.yml")

    demo_queries = [
        "john",
        "smith",
        "jon",
        "@example.com",
        "jo",
    ]

    with build_service(config, LOGGER) as service:
        for _ in range(2):
            for query in demo_queries:
                payload = {"query": query, **search_payload(service.search(query))}
                print(json.dumps(payload, ensure_ascii=False, indent=2))

        print(json.dumps(snapshot_payload(service.get_stats(10)), ensure_ascii=False, indent=2))


def main() -> None:
    """Entry point of the demo mode."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_demo()


if __name__ == "__main__":
    main()
