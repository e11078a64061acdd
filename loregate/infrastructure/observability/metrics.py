from typing import Dict, Any, Optional
import threading
import structlog


# Counter names used by the dialogue pipeline
ATTEMPTS = "pipeline.attempts"
RETRIES = "pipeline.retries"
SUCCESSES = "pipeline.successes"
FAILURES = "pipeline.failures"
GENERATION_ERRORS = "pipeline.generation_errors"
VALIDATION_FAILURES = "pipeline.validation_failures"
CRITICAL_FAILURES = "pipeline.critical_failures"
STRUCTURED_PARSE_FAILURES = "pipeline.structured_parse_failures"
HEURISTIC_FALLBACKS = "pipeline.heuristic_fallbacks"
PREFIX_VIOLATIONS = "pipeline.prefix_violations"


class MetricsCollector:
    """Collect metrics in memory"""

    def __init__(self, logger=None):
        self.metrics: Dict[str, Any] = {}
        self.logger = logger or structlog.get_logger(__name__)
        self._lock = threading.Lock()

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        with self._lock:
            if key not in self.metrics:
                self.metrics[key] = {
                    "count": 0,
                    "sum": 0,
                    "min": float('inf'),
                    "max": 0
                }

            self.metrics[key]["count"] += 1
            self.metrics[key]["sum"] += duration_ms
            self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
            self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        self.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        with self._lock:
            self.metrics[name] = self.metrics.get(name, 0) + value

        self.logger.debug(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_counter(self, name: str) -> int:
        with self._lock:
            value = self.metrics.get(name, 0)
        return value if isinstance(value, int) else 0

    def reset(self):
        with self._lock:
            self.metrics.clear()

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        with self._lock:
            for key, value in self.metrics.items():
                if isinstance(value, dict) and "count" in value:
                    # Latency metric
                    summary[key] = {
                        "count": value["count"],
                        "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                        "min": value["min"] if value["min"] != float('inf') else 0,
                        "max": value["max"]
                    }
                else:
                    summary[key] = value

        return summary
