"""
Streaming and Cancellation

Control plane of a streaming run:
- StreamSession forwards text chunks to the consumer as ``(chunk, is_last)``
  and guarantees exactly one ``is_last=True`` per run
- A heartbeat ticker keeps long-lived connections alive independently of
  node progress
- CancellationToken stops the executor between node dispatches

Dispatchers never hold a session reference: they call ``emit_chunk`` and
the session bound to the current run (a context variable) receives it.
"""

import asyncio
import inspect
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Union

from pydantic import BaseModel, Field

from nodeflow.exceptions import WorkflowCancelledError
from nodeflow.logging_config import get_logger

logger = get_logger(__name__)


ChunkCallback = Callable[[str, bool], Union[None, Awaitable[None]]]
UpdateCallback = Callable[["StreamUpdate"], Union[None, Awaitable[None]]]


class StreamUpdateType(str, Enum):
    """Out-of-band updates sent alongside text chunks."""
    HEARTBEAT = "heartbeat"
    NODE_COMPLETE = "node_complete"
    ERROR = "error"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class StreamUpdate(BaseModel):
    """A single out-of-band update."""
    type: StreamUpdateType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


async def _invoke(callback: Callable, *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class StreamSession:
    """
    Chunk and update sink for one streaming run.

    Callbacks may be sync or async. Once closed, further chunks are
    dropped and ``close`` is a no-op.
    """

    def __init__(
        self,
        on_chunk: ChunkCallback,
        on_update: Optional[UpdateCallback] = None,
        heartbeat_interval: float = 10.0,
    ):
        self._on_chunk = on_chunk
        self._on_update = on_update
        self.heartbeat_interval = heartbeat_interval

        self._closed = False
        self._chunks_emitted = 0
        self._heartbeats_sent = 0
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def chunks_emitted(self) -> int:
        return self._chunks_emitted

    @property
    def heartbeats_sent(self) -> int:
        return self._heartbeats_sent

    async def emit(self, chunk: str) -> None:
        """Forward a text fragment to the consumer."""
        if self._closed or not chunk:
            return
        self._chunks_emitted += 1
        await _invoke(self._on_chunk, chunk, False)

    async def close(self) -> None:
        """Send the final ``is_last`` event exactly once."""
        if self._closed:
            return
        self._closed = True
        await self.stop_heartbeat()
        await _invoke(self._on_chunk, "", True)
        logger.debug("Stream closed", chunks_emitted=self._chunks_emitted)

    async def send_update(self, update_type: StreamUpdateType, data: Optional[Dict[str, Any]] = None) -> None:
        """Send an out-of-band update; consumer errors are logged, not raised."""
        if self._on_update is None:
            return
        try:
            await _invoke(self._on_update, StreamUpdate(type=update_type, data=data or {}))
        except Exception as e:
            logger.error("Error in stream update handler", update_type=update_type.value, error=str(e))

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    async def start_heartbeat(self) -> None:
        """Start the background heartbeat ticker."""
        if self._on_update is None or self.heartbeat_interval <= 0:
            return
        if self._heartbeat_task is not None:
            logger.warning("Heartbeat already running")
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop_heartbeat(self) -> None:
        """Stop the background heartbeat ticker."""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        """Emit a heartbeat every interval until stopped."""
        while not self._closed:
            await asyncio.sleep(self.heartbeat_interval)
            self._heartbeats_sent += 1
            await self.send_update(StreamUpdateType.HEARTBEAT, {"sequence": self._heartbeats_sent})


# The session of the run executing in the current task
current_stream: ContextVar[Optional[StreamSession]] = ContextVar("current_stream", default=None)


async def emit_chunk(text: str) -> None:
    """Stream text from inside a dispatcher (no-op outside a streaming run)."""
    session = current_stream.get()
    if session is not None:
        await session.emit(text)


@contextmanager
def bind_stream(session: Optional[StreamSession]) -> Iterator[Optional[StreamSession]]:
    """Bind a session to the current context for the duration of a run."""
    token = current_stream.set(session)
    try:
        yield session
    finally:
        current_stream.reset(token)


class CancellationToken:
    """
    Cooperative cancellation flag checked between node dispatches.

    Cancelling never interrupts an in-flight dispatch; the run stops
    before the next node is scheduled.
    """

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None
        self.cancelled_at: Optional[datetime] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        Request cancellation.

        Returns:
            True on the first call, False if already cancelled
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        self.cancelled_at = datetime.utcnow()
        return True

    def raise_if_cancelled(self, node_id: Optional[str] = None) -> None:
        """
        Raises:
            WorkflowCancelledError: If cancellation was requested
        """
        if self._cancelled:
            raise WorkflowCancelledError(self.reason or "Workflow cancelled", node_id=node_id)
