"""Simple monitoring utilities for the process engine."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional


# 引擎记录的计数器名称
INSTANCES_STARTED = "instances_started"
INSTANCES_COMPLETED = "instances_completed"
INSTANCES_FAILED = "instances_failed"
INSTANCES_CANCELLED = "instances_cancelled"
TASKS_CREATED = "tasks_created"
TASKS_COMPLETED = "tasks_completed"
TASKS_EXPIRED = "tasks_expired"
AUTOMATIC_RETRIES = "automatic_retries"
TIMERS_FIRED = "timers_fired"
EVENTS_DELIVERED = "events_delivered"
EVENTS_BUFFERED = "events_buffered"
EVENTS_DUPLICATE = "events_duplicate"
CONCURRENCY_CONFLICTS = "concurrency_conflicts"
AUTOMATIC_CALL_SECONDS = "automatic_call_seconds"


class MetricsRecorder:
    """In-memory metrics recorder used for tests and demo deployments."""

    def __init__(self) -> None:
        self.counters: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self.histograms: Dict[str, Dict[str, List[float]]] = defaultdict(dict)

    def inc(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
        labels_key = self._labels_key(labels)
        self.counters[name][labels_key] += value

    def observe(
        self, name: str, value: float, labels: Optional[Dict[str, str]] = None
    ) -> None:
        labels_key = self._labels_key(labels)
        bucket = self.histograms[name].setdefault(labels_key, [])
        bucket.append(value)

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        labels_key = self._labels_key(labels)
        return self.counters[name].get(labels_key, 0.0)

    def total(self, name: str) -> float:
        """Sum of a counter across all label sets."""
        return sum(self.counters[name].values()) if name in self.counters else 0.0

    def snapshot(self) -> Dict[str, Any]:
        counters = {
            name: dict(values) for name, values in self.counters.items()
        }
        histograms = {
            name: {
                key: {"count": len(values), "sum": sum(values), "max": max(values)}
                for key, values in buckets.items() if values
            }
            for name, buckets in self.histograms.items()
        }
        return {"counters": counters, "histograms": histograms}

    def _labels_key(self, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return "__no_labels__"
        sorted_items = sorted(labels.items())
        return "|".join(f"{k}={v}" for k, v in sorted_items)


class EventLogger:
    """Structured lifecycle logger for process instances."""

    def __init__(self) -> None:
        self.logger = logging.getLogger("process_engine.lifecycle")

    def log(self, event: str, **payload: Any) -> None:
        details = " ".join(f"{k}={v}" for k, v in sorted(payload.items()))
        self.logger.info(f"{event} {details}".rstrip(), extra={"lifecycle": payload})
