"""
Observability

In-process counters and one-line structured log events.
"""

import json
import logging
import threading
from collections import defaultdict
from typing import Dict


class Metrics:
    """Thread-safe named counters"""

    def __init__(self):
        self._counters: Dict[str, float] = defaultdict(float)
        self._lock = threading.Lock()

    def increment(self, name: str, value: float = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()


def log_event(
    logger: logging.Logger,
    operation: str,
    outcome: str,
    level: int = logging.INFO,
    **fields,
) -> None:
    """Emit ``<operation> <outcome> {json fields}`` on ``logger``."""
    if not logger.isEnabledFor(level):
        return
    logger.log(level, "%s %s %s", operation, outcome, json.dumps(fields, default=str, sort_keys=True))
