"""
Services Package

Run-level services shared by the executor and the engine facade.

The executor and engine live in ``nodeflow.services.dag_executor`` and
``nodeflow.services.workflow_engine``; import them from there.
"""

from .streaming import (
    CancellationToken,
    StreamSession,
    StreamUpdate,
    StreamUpdateType,
    bind_stream,
    emit_chunk,
)
from .monitor import ExecutionRecord, WorkflowMonitor, generate_execution_id

__all__ = [
    # Streaming
    "StreamSession",
    "StreamUpdate",
    "StreamUpdateType",
    "bind_stream",
    "emit_chunk",
    # Cancellation
    "CancellationToken",
    # Monitoring
    "ExecutionRecord",
    "WorkflowMonitor",
    "generate_execution_id",
]
