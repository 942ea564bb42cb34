"""Metrics service for tracking recommendation and job performance.

Singleton service counting recommendation requests per type, fallback
resolutions, request latency and job outcomes.
"""

import threading
from collections import defaultdict
from typing import Any, Dict


class MetricsService:
    """Singleton service for tracking API and pipeline metrics.

    Thread-safe counters; job outcomes are fed in through the job queue and
    scheduler listeners.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        """Create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super(MetricsService, cls).__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize metrics counters."""
        if self._initialized:
            return

        self._lock = threading.Lock()
        self._reset_counters()
        self._initialized = True

    def _reset_counters(self) -> None:
        self._request_count = 0
        self._requests_by_type: Dict[str, int] = defaultdict(int)
        self._fallback_count = 0
        self._empty_count = 0
        self._total_latency_ms = 0.0
        self._min_latency_ms = float("inf")
        self._max_latency_ms = 0.0
        self._jobs_succeeded: Dict[str, int] = defaultdict(int)
        self._jobs_failed: Dict[str, int] = defaultdict(int)
        self._job_duration_s: Dict[str, float] = defaultdict(float)

    def record_request(
        self, recommendation_type: str, latency_ms: float, fallback: bool, empty: bool = False
    ) -> None:
        """Record a recommendation request.

        Args:
            recommendation_type: Requested recommendation type
            latency_ms: Latency in milliseconds
            fallback: Whether a fallback strategy produced the result
            empty: Whether every strategy came back empty
        """
        with self._lock:
            self._request_count += 1
            self._requests_by_type[recommendation_type] += 1
            if fallback:
                self._fallback_count += 1
            if empty:
                self._empty_count += 1
            self._total_latency_ms += latency_ms
            self._min_latency_ms = min(self._min_latency_ms, latency_ms)
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)

    def record_job(self, name: str, ok: bool, duration_s: float) -> None:
        with self._lock:
            if ok:
                self._jobs_succeeded[name] += 1
            else:
                self._jobs_failed[name] += 1
            self._job_duration_s[name] += duration_s

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics.

        Returns:
            Dictionary with request counts (total and per type), fallback
            and empty counts, latency statistics and per-job outcomes.
        """
        with self._lock:
            avg_latency = (
                self._total_latency_ms / self._request_count if self._request_count > 0 else 0.0
            )
            return {
                "request_count": self._request_count,
                "requests_by_type": dict(self._requests_by_type),
                "fallback_count": self._fallback_count,
                "empty_count": self._empty_count,
                "average_latency_ms": round(avg_latency, 2),
                "min_latency_ms": round(self._min_latency_ms, 2)
                if self._min_latency_ms != float("inf")
                else 0.0,
                "max_latency_ms": round(self._max_latency_ms, 2),
                "jobs": {
                    name: {
                        "succeeded": self._jobs_succeeded.get(name, 0),
                        "failed": self._jobs_failed.get(name, 0),
                        "total_duration_s": round(self._job_duration_s[name], 3),
                    }
                    for name in sorted(self._job_duration_s)
                },
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._reset_counters()


# Global singleton instance
metrics_service = MetricsService()
