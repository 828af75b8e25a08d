"""
STAC event log
Structured event sink for the matching engine: forwards every event to the
standard logger and keeps the most recent entries in memory for diagnostics.
"""
import logging
import threading
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class STACEventLog:
    """Bounded in-memory event sink with request performance metrics"""

    def __init__(self, component: str = "STACService", max_entries: int = 100,
                 sink: Optional[logging.Logger] = None):
        self.component = component
        self.max_entries = max_entries
        self._sink = sink or logger
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._metrics = self._empty_metrics()

    @staticmethod
    def _empty_metrics() -> Dict[str, Any]:
        return {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_processing_time_ms": 0.0,
            "fallback_usage": 0,
            "last_updated": datetime.now().isoformat(),
        }

    def record(self, message: str, **context: Any) -> Dict[str, Any]:
        """Record an event. Events carrying an ``error`` key are logged as errors."""
        level = "ERROR" if context.get("error") else "INFO"
        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "component": self.component,
            "message": message,
            "context": context,
        }

        if level == "ERROR":
            self._sink.error(f"[{self.component}] {message} {context}")
        else:
            self._sink.debug(f"[{self.component}] {message} {context}")

        with self._lock:
            self._entries.append(entry)
        return entry

    def record_request(self, processing_time_ms: float, success: bool, fallback_used: bool = False) -> None:
        """Account one completed match request in the performance metrics"""
        with self._lock:
            self._metrics["total_requests"] += 1
            if success:
                self._metrics["successful_requests"] += 1
            else:
                self._metrics["failed_requests"] += 1
            self._metrics["total_processing_time_ms"] += processing_time_ms
            if fallback_used:
                self._metrics["fallback_usage"] += 1
            self._metrics["last_updated"] = datetime.now().isoformat()

    def entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def metrics(self) -> Dict[str, Any]:
        """Snapshot of the performance metrics with derived rates (percent)"""
        with self._lock:
            metrics = dict(self._metrics)

        total = metrics["total_requests"]
        metrics["average_processing_time_ms"] = (
            metrics["total_processing_time_ms"] / total if total > 0 else 0
        )
        metrics["success_rate"] = (metrics["successful_requests"] / total) * 100 if total > 0 else 0
        metrics["fallback_rate"] = (metrics["fallback_usage"] / total) * 100 if total > 0 else 0
        return metrics
