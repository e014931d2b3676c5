# file: app/services/metrics.py
import time
from typing import Any, Dict

from app.schema import JobCompleted, JobFailed


class Metrics:
    """In-process counters since startup; fed by the orchestrator, the queue events and the API."""

    def __init__(self):
        self.started = time.time()
        self.requests: Dict[str, Any] = {"total": 0, "errors": 0, "by_endpoint": {}, "by_status": {}}
        self.searches = {"total": 0, "in_progress": 0, "completed": 0, "failed": 0}
        self.emails = {"queued": 0, "sent": 0, "failed": 0, "stalled": 0}

    def attach(self, queue) -> None:
        queue.on_completed(self._on_completed)
        queue.on_failed(self._on_failed)
        queue.on_stalled(lambda event: self.record_email("stalled"))

    def _on_completed(self, event: JobCompleted) -> None:
        self.record_email("sent")

    def _on_failed(self, event: JobFailed) -> None:
        self.record_email("failed")

    def record_request(self, endpoint: str, status_code: int) -> None:
        self.requests["total"] += 1
        self.requests["by_endpoint"][endpoint] = self.requests["by_endpoint"].get(endpoint, 0) + 1
        self.requests["by_status"][str(status_code)] = self.requests["by_status"].get(str(status_code), 0) + 1
        if status_code >= 400:
            self.requests["errors"] += 1

    def search_started(self) -> None:
        self.searches["in_progress"] += 1

    def record_search(self, status: str) -> None:
        self.searches["total"] += 1
        self.searches["in_progress"] = max(0, self.searches["in_progress"] - 1)
        if status in ("completed", "failed"):
            self.searches[status] += 1

    def record_email(self, status: str, count: int = 1) -> None:
        if status in self.emails:
            self.emails[status] += count

    def snapshot(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.started, 1),
            "requests": self.requests,
            "searches": dict(self.searches),
            "emails": dict(self.emails),
        }
