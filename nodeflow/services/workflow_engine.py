"""
Workflow Engine

Public entry point of the engine:
- Blocking and streaming dispatch of workflow runs
- Resuming runs paused at interactive nodes
- Cancellation of in-flight runs
- Background sweeping of expired interactions
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from nodeflow.config import Settings, get_settings
from nodeflow.exceptions import ValidationError
from nodeflow.logging_config import bind_execution_context, clear_execution_context, get_logger, setup_logging
from nodeflow.services.dag_executor import DAGExecutor, ExecutionResult, ExecutionStatus
from nodeflow.services.monitor import ExecutionRecord, WorkflowMonitor, generate_execution_id
from nodeflow.services.streaming import (
    CancellationToken,
    ChunkCallback,
    StreamSession,
    StreamUpdateType,
    UpdateCallback,
    bind_stream,
)
from nodeflow.workflows.graph import Workflow
from nodeflow.workflows.interactions import InteractionState, InteractionStore, interaction_store_from_settings
from nodeflow.workflows.registry import DispatcherRegistry, create_default_registry
from nodeflow.workflows.state import SYS_APP_ID, SYS_CHAT_ID, SYS_TEAM_ID, SYS_USER_ID

logger = get_logger(__name__)

Runner = Callable[[CancellationToken], Awaitable[ExecutionResult]]


class WorkflowEngine:
    """
    Runs workflows on top of a DAG executor.

    Usage:
        engine = WorkflowEngine()
        result = await engine.dispatch_workflow(workflow, {"message": "hi"})

        if result.status == ExecutionStatus.SUSPENDED:
            result = await engine.resume_interaction(result.interaction["id"], "yes")
    """

    def __init__(
        self,
        registry: Optional[DispatcherRegistry] = None,
        interaction_store: Optional[InteractionStore] = None,
        monitor: Optional[WorkflowMonitor] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the workflow engine.

        Args:
            registry: Dispatchers by node type (defaults to the built-ins)
            interaction_store: Checkpoints of paused runs (defaults to in-memory)
            monitor: Execution record keeper (created if omitted)
            settings: Engine settings (defaults to global settings)
        """
        self._settings = settings or get_settings()
        self._registry = registry or create_default_registry(settings=self._settings)
        self._interactions = interaction_store or interaction_store_from_settings(self._settings)
        self._executor = DAGExecutor(self._registry, self._interactions, self._settings)

        self._monitor = monitor or WorkflowMonitor()
        self._monitor.attach(self._executor)
        self._executor.on_event("node_completed", self._forward_node_completed)

        self._semaphore = asyncio.Semaphore(self._settings.MAX_CONCURRENT_RUNS)
        self._tokens: Dict[str, CancellationToken] = {}
        self._sessions: Dict[str, StreamSession] = {}

        self._sweep_interval = self._settings.INTERACTION_SWEEP_INTERVAL
        self._sweeper_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def registry(self) -> DispatcherRegistry:
        return self._registry

    @property
    def executor(self) -> DAGExecutor:
        return self._executor

    @property
    def monitor(self) -> WorkflowMonitor:
        return self._monitor

    @property
    def interaction_store(self) -> InteractionStore:
        return self._interactions

    @property
    def active_executions(self) -> List[str]:
        """IDs of runs currently in flight."""
        return list(self._tokens)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch_workflow(
        self,
        workflow: Union[Workflow, Dict[str, Any]],
        inputs: Optional[Dict[str, Any]] = None,
        *,
        execution_id: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
        app_id: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Run a workflow to completion, failure or suspension.

        Raises:
            ValidationError: If the workflow is malformed (nothing is dispatched)
        """
        workflow = self._coerce_workflow(workflow)
        workflow.validate_definition()
        execution_id = execution_id or generate_execution_id(workflow.id)
        system_variables = self._system_variables(user_id, team_id, app_id, chat_id)

        async def runner(token: CancellationToken) -> ExecutionResult:
            return await self._executor.execute(
                workflow,
                inputs,
                execution_id=execution_id,
                system_variables=system_variables,
                cancel_token=token,
            )

        return await self._execute(execution_id, workflow.id, runner)

    async def dispatch_workflow_streaming(
        self,
        workflow: Union[Workflow, Dict[str, Any]],
        inputs: Optional[Dict[str, Any]],
        on_chunk: ChunkCallback,
        *,
        on_update: Optional[UpdateCallback] = None,
        heartbeat_interval: Optional[float] = None,
        execution_id: Optional[str] = None,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
        app_id: Optional[str] = None,
        chat_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Run a workflow while streaming text chunks to ``on_chunk``.

        ``on_chunk(text, is_last)`` receives every fragment emitted by
        streaming nodes and exactly one final ``("", True)`` call, whatever
        the outcome. ``on_update`` receives heartbeats, node completions and
        a final complete/error/cancelled update.

        Raises:
            ValidationError: If the workflow is malformed (no chunk is sent)
        """
        workflow = self._coerce_workflow(workflow)
        workflow.validate_definition()
        execution_id = execution_id or generate_execution_id(workflow.id)
        system_variables = self._system_variables(user_id, team_id, app_id, chat_id)

        async def runner(token: CancellationToken) -> ExecutionResult:
            return await self._executor.execute(
                workflow,
                inputs,
                execution_id=execution_id,
                system_variables=system_variables,
                cancel_token=token,
            )

        session = self._create_session(on_chunk, on_update, heartbeat_interval)
        return await self._stream(session, execution_id, workflow.id, runner)

    async def resume_interaction(
        self,
        interaction_id: str,
        user_response: Any,
        *,
        on_chunk: Optional[ChunkCallback] = None,
        on_update: Optional[UpdateCallback] = None,
        heartbeat_interval: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Resume a paused run with the user's response.

        The interaction is claimed first, so a second resume of the same
        interaction fails without running anything.

        Raises:
            InteractionNotFoundError: Unknown or swept interaction
            InteractionExpiredError: The response came too late
            InteractionAlreadyProcessedError: The interaction was already resumed
        """
        interaction = await self._interactions.claim(interaction_id, user_response)

        logger.info(
            "Resuming interaction",
            interaction_id=interaction_id,
            execution_id=interaction.execution_id,
            node_id=interaction.node_id,
        )

        async def runner(token: CancellationToken) -> ExecutionResult:
            return await self._executor.resume(interaction, user_response, cancel_token=token)

        if on_chunk is None:
            return await self._execute(interaction.execution_id, interaction.workflow_id, runner)

        session = self._create_session(on_chunk, on_update, heartbeat_interval)
        return await self._stream(session, interaction.execution_id, interaction.workflow_id, runner)

    def cancel(self, execution_id: str, reason: Optional[str] = None) -> bool:
        """
        Request cancellation of an in-flight run.

        Returns:
            True if the run was found and not already cancelled
        """
        token = self._tokens.get(execution_id)
        if token is None:
            logger.warning("Cannot cancel unknown execution", execution_id=execution_id)
            return False

        cancelled = token.cancel(reason or "Workflow cancelled by request")
        if cancelled:
            logger.info("Cancellation requested", execution_id=execution_id)
        return cancelled

    # =========================================================================
    # Interactions and records
    # =========================================================================

    async def get_pending_interactions(self, workflow_id: Optional[str] = None) -> List[InteractionState]:
        """Interactions still waiting for a response."""
        return await self._interactions.pending_for_workflow(workflow_id)

    async def get_interaction(self, interaction_id: str) -> InteractionState:
        return await self._interactions.get(interaction_id)

    async def cleanup_expired_interactions(self) -> int:
        """
        Delete interactions past their deadline.

        Returns:
            Number of interactions deleted
        """
        return await self._interactions.cleanup_expired()

    def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._monitor.get_execution(execution_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Connect the interaction store and start the expiry sweeper."""
        if self._running:
            logger.warning("Workflow engine already running")
            return

        await self._interactions.connect()
        self._running = True
        self._sweeper_task = asyncio.create_task(self._sweep_loop())
        logger.info("Workflow engine started", sweep_interval=self._sweep_interval)

    async def stop(self) -> None:
        """Stop the sweeper and disconnect the interaction store."""
        self._running = False

        if self._sweeper_task:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None

        await self._interactions.disconnect()
        logger.info("Workflow engine stopped")

    async def _sweep_loop(self) -> None:
        """Periodically delete expired interactions."""
        while self._running:
            try:
                await asyncio.sleep(self._sweep_interval)
                await self.cleanup_expired_interactions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in interaction sweep loop", error=str(e))

    # =========================================================================
    # Internals
    # =========================================================================

    async def _execute(
        self,
        execution_id: str,
        workflow_id: str,
        runner: Runner,
        session: Optional[StreamSession] = None,
    ) -> ExecutionResult:
        """Run under the concurrency bound with a cancellation token registered."""
        token = CancellationToken()
        self._tokens[execution_id] = token
        if session is not None:
            self._sessions[execution_id] = session

        bind_execution_context(execution_id, workflow_id)
        try:
            async with self._semaphore:
                return await runner(token)
        finally:
            self._tokens.pop(execution_id, None)
            self._sessions.pop(execution_id, None)
            clear_execution_context()

    async def _stream(
        self,
        session: StreamSession,
        execution_id: str,
        workflow_id: str,
        runner: Runner,
    ) -> ExecutionResult:
        """Run with a bound stream session; always closes the stream once."""
        await session.start_heartbeat()
        try:
            with bind_stream(session):
                result = await self._execute(execution_id, workflow_id, runner, session)
            await session.send_update(self._final_update_type(result), {
                "execution_id": result.execution_id,
                "status": result.status.value,
                "error": result.error,
            })
            return result
        except Exception as e:
            await session.send_update(StreamUpdateType.ERROR, {
                "execution_id": execution_id,
                "error": str(e) or e.__class__.__name__,
            })
            raise
        finally:
            await session.close()

    def _create_session(
        self,
        on_chunk: ChunkCallback,
        on_update: Optional[UpdateCallback],
        heartbeat_interval: Optional[float],
    ) -> StreamSession:
        if heartbeat_interval is None:
            heartbeat_interval = self._settings.STREAM_HEARTBEAT_INTERVAL
        return StreamSession(on_chunk, on_update=on_update, heartbeat_interval=heartbeat_interval)

    async def _forward_node_completed(self, event: str, data: Dict[str, Any]) -> None:
        session = self._sessions.get(data.get("execution_id", ""))
        if session is None:
            return
        await session.send_update(StreamUpdateType.NODE_COMPLETE, {
            "node_id": data.get("node_id"),
            "node_type": data.get("node_type"),
            "metrics": data.get("metrics"),
        })

    @staticmethod
    def _final_update_type(result: ExecutionResult) -> StreamUpdateType:
        if result.status == ExecutionStatus.CANCELLED:
            return StreamUpdateType.CANCELLED
        if result.status in (ExecutionStatus.FAILED, ExecutionStatus.TIMEOUT):
            return StreamUpdateType.ERROR
        return StreamUpdateType.COMPLETE

    @staticmethod
    def _coerce_workflow(workflow: Union[Workflow, Dict[str, Any]]) -> Workflow:
        if isinstance(workflow, Workflow):
            return workflow
        if isinstance(workflow, dict):
            return Workflow.from_dict(workflow)
        raise ValidationError(
            f"workflow must be a Workflow or a dict, got {type(workflow).__name__}"
        )

    @staticmethod
    def _system_variables(
        user_id: Optional[str],
        team_id: Optional[str],
        app_id: Optional[str],
        chat_id: Optional[str],
    ) -> Dict[str, Any]:
        return {
            SYS_USER_ID: user_id,
            SYS_TEAM_ID: team_id,
            SYS_APP_ID: app_id,
            SYS_CHAT_ID: chat_id,
        }


# Singleton instance
_workflow_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get the singleton workflow engine instance."""
    global _workflow_engine
    if _workflow_engine is None:
        _workflow_engine = WorkflowEngine()
    return _workflow_engine


async def create_workflow_engine(
    registry: Optional[DispatcherRegistry] = None,
    interaction_store: Optional[InteractionStore] = None,
    settings: Optional[Settings] = None,
) -> WorkflowEngine:
    """
    Configure logging, then create and start a new workflow engine.

    Returns:
        Started WorkflowEngine instance
    """
    settings = settings or get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, log_format=settings.LOG_FORMAT)

    engine = WorkflowEngine(
        registry=registry,
        interaction_store=interaction_store,
        settings=settings,
    )
    await engine.start()
    return engine
