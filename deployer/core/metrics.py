"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters (worker slots update them from threads).
"""
import threading
from typing import Dict

# name -> help text, in exposition order
COUNTERS = {
    "requests_total": "Total HTTP requests",
    "deploy_jobs_enqueued_total": "Deploy jobs submitted",
    "deploy_jobs_completed_total": "Deploy jobs completed successfully",
    "deploy_jobs_failed_total": "Deploy jobs failed after all attempts",
    "deploy_jobs_retried_total": "Deploy attempts scheduled for retry",
    "deploy_jobs_stalled_total": "Deploy attempts recovered after lease expiry",
    "deploy_files_uploaded_total": "Artifact files uploaded",
    "deploy_files_failed_total": "Artifact files that failed to upload",
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}
        self._counters.update({"requests_2xx": 0, "requests_4xx": 0, "requests_5xx": 0})

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()

        for name, help_text in COUNTERS.items():
            lines.append(f"# HELP deployer_{name} {help_text}")
            lines.append(f"# TYPE deployer_{name} counter")
            lines.append(f"deployer_{name} {counters.get(name, 0)}")

        lines.append("# HELP deployer_requests_by_status HTTP requests by status class")
        lines.append("# TYPE deployer_requests_by_status counter")
        for status_class in ("2xx", "4xx", "5xx"):
            lines.append(
                f'deployer_requests_by_status{{status="{status_class}"}} '
                f"{counters[f'requests_{status_class}']}"
            )

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
