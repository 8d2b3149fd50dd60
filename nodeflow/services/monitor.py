"""
Workflow Monitoring

Collects per-run records from executor events and logs each event with
structlog, for external observability tooling.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from nodeflow.logging_config import get_logger

logger = get_logger(__name__)


RUN_EVENTS = (
    "workflow_started",
    "workflow_completed",
    "workflow_failed",
    "workflow_suspended",
    "workflow_cancelled",
)

NODE_EVENTS = (
    "node_started",
    "node_completed",
    "node_failed",
    "node_skipped",
)


def generate_execution_id(workflow_id: str) -> str:
    """
    Build a sortable execution ID.

    Format: ``wf_<first 8 chars of workflow id>_<YYYYmmddHHMMSS>_<8 hex>``
    """
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    return f"wf_{str(workflow_id)[:8]}_{timestamp}_{uuid4().hex[:8]}"


class ExecutionRecord(BaseModel):
    """What the monitor knows about one run."""
    execution_id: str
    workflow_id: str
    status: str = "running"
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    nodes_started: int = 0
    nodes_completed: int = 0
    nodes_failed: int = 0
    nodes_skipped: int = 0
    node_metrics: List[Dict[str, Any]] = Field(default_factory=list)
    total_tokens: int = 0
    total_cost: float = 0.0
    error: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000


class WorkflowMonitor:
    """
    Subscribes to executor events and keeps an execution record per run.

    Usage:
        monitor = WorkflowMonitor()
        monitor.attach(executor)
    """

    def __init__(self, max_records: int = 1000):
        self._records: Dict[str, ExecutionRecord] = {}
        self._max_records = max_records

    def attach(self, executor: Any) -> None:
        """Register this monitor's handler for every executor event."""
        for event in RUN_EVENTS + NODE_EVENTS:
            executor.on_event(event, self.handle_event)

    def detach(self, executor: Any) -> None:
        for event in RUN_EVENTS + NODE_EVENTS:
            executor.off_event(event, self.handle_event)

    def handle_event(self, event: str, data: Dict[str, Any]) -> None:
        """Update the run's record and log the event."""
        execution_id = data.get("execution_id")
        if not execution_id:
            return

        record = self._records.get(execution_id)
        if record is None:
            record = ExecutionRecord(
                execution_id=execution_id,
                workflow_id=str(data.get("workflow_id", "")),
            )
            self._store(record)

        if event == "workflow_started":
            record.status = "running"
        elif event in RUN_EVENTS:
            record.status = data.get("status") or event.split("_", 1)[1]
            record.completed_at = datetime.utcnow()
            record.error = data.get("error")
        elif event == "node_started":
            record.nodes_started += 1
        elif event == "node_completed":
            record.nodes_completed += 1
            self._add_metrics(record, data.get("metrics"))
        elif event == "node_failed":
            record.nodes_failed += 1
            self._add_metrics(record, data.get("metrics"))
        elif event == "node_skipped":
            record.nodes_skipped += 1

        log = logger.error if event in ("workflow_failed", "node_failed") else logger.info
        log(
            event,
            execution_id=execution_id,
            workflow_id=record.workflow_id,
            node_id=data.get("node_id"),
            error=data.get("error"),
        )

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._records.get(execution_id)

    def list_executions(self, workflow_id: Optional[str] = None) -> List[ExecutionRecord]:
        """Records, newest first."""
        records = [
            record for record in self._records.values()
            if workflow_id is None or record.workflow_id == workflow_id
        ]
        return sorted(records, key=lambda r: r.started_at, reverse=True)

    def clear(self) -> None:
        self._records.clear()

    def _store(self, record: ExecutionRecord) -> None:
        if len(self._records) >= self._max_records:
            oldest = min(self._records.values(), key=lambda r: r.started_at)
            del self._records[oldest.execution_id]
        self._records[record.execution_id] = record

    @staticmethod
    def _add_metrics(record: ExecutionRecord, metrics: Optional[Dict[str, Any]]) -> None:
        if not metrics:
            return
        record.node_metrics.append(metrics)
        record.total_tokens += int(metrics.get("total_tokens", 0) or 0)
        record.total_cost += float(metrics.get("cost", 0.0) or 0.0)
