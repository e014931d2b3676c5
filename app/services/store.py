# file: app/services/store.py
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from app.errors import NotFoundError, RunStateError
from app.schema import (
    ConversationEvent, FilterStats, RunMetrics, RunStatus, SearchQuery, SearchRun,
    SendRecord, Supplier, SupplierStatus, utcnow,
)

log = logging.getLogger("store")

IMMUTABLE_SUPPLIER_FIELDS = {"id", "search_id", "conversation_history"}


class SearchStore:
    """Runs, suppliers, run logs and send records; in memory with optional JSON persistence"""

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = Path(data_dir) if data_dir else None
        self.lock = asyncio.Lock()
        self.runs: Dict[str, SearchRun] = {}
        self.suppliers: Dict[str, Dict[str, Supplier]] = {}
        self.logs: Dict[str, List[dict]] = {}
        self.sends: List[SendRecord] = []
        if self.data_dir:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._load_data()

    # ---------- persistence ----------

    def _file(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def _load_json(self, path: Path, default):
        if path.exists():
            try:
                with open(path, encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as e:
                log.warning("Could not read %s: %s", path, e)
        return default

    def _save_json(self, path: Path, data) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)

    def _load_data(self) -> None:
        for item in self._load_json(self._file("runs"), []):
            run = SearchRun.model_validate(item)
            self.runs[run.id] = run
        for run_id, items in self._load_json(self._file("suppliers"), {}).items():
            self.suppliers[run_id] = {s["id"]: Supplier.model_validate(s) for s in items}
        self.logs = self._load_json(self._file("logs"), {})
        self.sends = [SendRecord.model_validate(s) for s in self._load_json(self._file("sends"), [])]

    def _persist(self, *names: str) -> None:
        if not self.data_dir:
            return
        for name in names:
            if name == "runs":
                data = [r.model_dump(mode="json") for r in self.runs.values()]
            elif name == "suppliers":
                data = {rid: [s.model_dump(mode="json") for s in by_id.values()]
                        for rid, by_id in self.suppliers.items()}
            elif name == "logs":
                data = self.logs
            else:
                data = [s.model_dump(mode="json") for s in self.sends]
            self._save_json(self._file(name), data)

    # ---------- runs ----------

    def _run(self, run_id: str) -> SearchRun:
        run = self.runs.get(run_id)
        if run is None:
            raise NotFoundError(f"Search {run_id} not found")
        return run

    async def create_run(self, run_id: str, query: SearchQuery, suppliers_requested: int = 0) -> SearchRun:
        async with self.lock:
            if run_id in self.runs:
                raise RunStateError(f"Search {run_id} already exists")
            run = SearchRun(id=run_id, query=query, metrics=RunMetrics(suppliers_requested=suppliers_requested))
            self.runs[run_id] = run
            self.suppliers[run_id] = {}
            self.logs[run_id] = []
            self._persist("runs")
            return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Optional[SearchRun]:
        run = self.runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self) -> List[SearchRun]:
        return sorted((r.model_copy(deep=True) for r in self.runs.values()),
                      key=lambda r: r.started_at, reverse=True)

    async def set_filter_stats(self, run_id: str, stats: FilterStats) -> None:
        async with self.lock:
            self._run(run_id).filter_stats = stats
            self._persist("runs")

    async def finalize_run(self, run_id: str, status: RunStatus, *, emails_queued: Optional[int] = None,
                           error: Optional[str] = None, code: Optional[str] = None) -> SearchRun:
        """Exactly once per run; a second call raises RunStateError."""
        async with self.lock:
            run = self._run(run_id)
            if run.status != RunStatus.PROCESSING:
                raise RunStateError(f"Search {run_id} already finalized as {run.status.value}")
            run.status = status
            run.completed_at = utcnow()
            run.metrics.suppliers_validated = len(self.suppliers.get(run_id, {}))
            if emails_queued is not None:
                run.metrics.emails_queued = emails_queued
            run.error, run.error_code = error, code
            self._persist("runs")
            return run.model_copy(deep=True)

    # ---------- suppliers ----------

    async def add_suppliers(self, run_id: str, suppliers: List[Supplier]) -> int:
        async with self.lock:
            run = self._run(run_id)
            by_id = self.suppliers.setdefault(run_id, {})
            for s in suppliers:
                by_id.setdefault(s.id, s.model_copy(deep=True))
            run.metrics.suppliers_validated = len(by_id)
            self._persist("suppliers", "runs")
            return len(by_id)

    def _supplier(self, run_id: str, supplier_id: str) -> Supplier:
        supplier = self.suppliers.get(run_id, {}).get(supplier_id)
        if supplier is None:
            raise NotFoundError(f"Supplier {supplier_id} not found in search {run_id}")
        return supplier

    async def get_supplier(self, run_id: str, supplier_id: str) -> Supplier:
        return self._supplier(run_id, supplier_id).model_copy(deep=True)

    async def list_suppliers(self, run_id: str) -> List[Supplier]:
        return [s.model_copy(deep=True) for s in self.suppliers.get(run_id, {}).values()]

    async def find_supplier_by_email(self, email: str) -> Optional[Supplier]:
        """Most recent supplier with this address, across runs."""
        email = (email or "").strip().lower()
        found = [s for by_id in self.suppliers.values() for s in by_id.values() if s.email.lower() == email]
        if not found:
            return None
        return max(found, key=lambda s: s.created_at).model_copy(deep=True)

    async def update_supplier(self, run_id: str, supplier_id: str, *, event: Optional[ConversationEvent] = None,
                              note: Optional[str] = None, increments: Optional[Dict[str, int]] = None,
                              status_from: Optional[Tuple[SupplierStatus, ...]] = None,
                              **changes: Any) -> Supplier:
        """
        Field updates plus append-only history; the history itself is never replaced.

        With `status_from`, a `status` change is applied only when the current
        status is one of those values (the event and other fields still apply).
        """
        blocked = IMMUTABLE_SUPPLIER_FIELDS & changes.keys()
        if blocked:
            raise RunStateError(f"Supplier fields cannot be rewritten: {', '.join(sorted(blocked))}")
        async with self.lock:
            supplier = self._supplier(run_id, supplier_id)
            if status_from is not None and supplier.status not in status_from:
                changes.pop("status", None)
            for key, value in changes.items():
                setattr(supplier, key, value)
            for key, delta in (increments or {}).items():
                setattr(supplier, key, getattr(supplier, key) + delta)
            if note:
                supplier.notes = "\n".join(p for p in (supplier.notes, note) if p)
            if event is not None:
                supplier.conversation_history.append(event)
            self._persist("suppliers")
            return supplier.model_copy(deep=True)

    # ---------- logs & send records ----------

    async def append_log(self, run_id: str, entry: dict) -> None:
        async with self.lock:
            self.logs.setdefault(run_id, []).append(entry)
            self._persist("logs")

    async def list_logs(self, run_id: str) -> List[dict]:
        return list(self.logs.get(run_id, []))

    async def record_send(self, run_id: str, supplier_id: str, status: str, error: Optional[str] = None,
                          at: Optional[datetime] = None) -> SendRecord:
        record = SendRecord(run_id=run_id, supplier_id=supplier_id, status=status, error=error, at=at or utcnow())
        async with self.lock:
            self.sends.append(record)
            self._persist("sends")
        return record

    async def count_sent_since(self, since: datetime) -> int:
        return sum(1 for s in self.sends if s.status == "sent" and s.at >= since)

    async def count_failed_since(self, since: datetime) -> int:
        return sum(1 for s in self.sends if s.status == "failed" and s.at >= since)

    async def last_sent_timestamp(self) -> Optional[datetime]:
        sent = [s.at for s in self.sends if s.status == "sent"]
        return max(sent) if sent else None
