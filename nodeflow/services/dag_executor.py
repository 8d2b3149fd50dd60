"""
DAG Workflow Executor

Executes workflow graphs node by node from a FIFO worklist:
- Readiness from edge statuses (waiting / active / skipped)
- Named-handle routing of node outputs into downstream inputs
- Branch skipping for conditional nodes, with skip propagation
- Engine-owned loop frames for loopStart/loopEnd pairs
- Pause at interactive nodes with a persisted checkpoint, and resume
- Per-node retries and deadline, whole-run deadline, cancellation
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from nodeflow.config import Settings, get_settings
from nodeflow.exceptions import (
    AppException,
    DispatchNotFoundError,
    ErrorCode,
    NodeExecutionError,
    NodeTimeoutError,
    RunTimeoutError,
    SuspensionSignal,
    WorkflowCancelledError,
    WorkflowExecutionError,
)
from nodeflow.logging_config import get_logger
from nodeflow.services.monitor import generate_execution_id
from nodeflow.services.streaming import CancellationToken
from nodeflow.workflows.dispatchers.loop import (
    LOOP_CONDITION,
    LOOP_INDEX,
    LOOP_ITERATION,
    LOOP_MAX_ITERATIONS,
    LOOP_TOTAL,
    LOOP_TYPE,
    loop_item_outputs,
)
from nodeflow.workflows.graph import Workflow
from nodeflow.workflows.interactions import InteractionState, InteractionStore
from nodeflow.workflows.nodes import LoopStartConfig, Node, NodeStatus, NodeType
from nodeflow.workflows.outcome import Error, NodeOutcome, Success, Suspended
from nodeflow.workflows.registry import DispatcherRegistry
from nodeflow.workflows.state import (
    SYS_EXECUTION_ID,
    SYS_INTERACTION_ID,
    SYS_INTERACTION_RESPONSE,
    SYS_RESUMING,
    SYS_START_TIME,
    SYS_WORKFLOW_ID,
    VARIABLES_KEY,
    EdgeStatus,
    ExecutionContext,
    LoopFrame,
    NodeMetrics,
    RunState,
    is_system_key,
)

logger = get_logger(__name__)


class ExecutionStatus(str, Enum):
    """Final status of a workflow run."""
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class ExecutionResult:
    """Result of a workflow execution."""

    def __init__(
        self,
        execution_id: str,
        workflow_id: str,
        status: ExecutionStatus = ExecutionStatus.COMPLETED,
        outputs: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        failed_node_id: Optional[str] = None,
    ):
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.status = status
        self.outputs = outputs or {}
        self.error = error
        self.error_code = error_code
        self.failed_node_id = failed_node_id
        self.nodes_processed = 0
        self.interaction: Optional[Dict[str, Any]] = None
        self.node_metrics: List[Dict[str, Any]] = []
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "outputs": self.outputs,
            "error": self.error,
            "error_code": self.error_code,
            "failed_node_id": self.failed_node_id,
            "nodes_processed": self.nodes_processed,
            "interaction": self.interaction,
            "node_metrics": self.node_metrics,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class _Run:
    """Everything one in-flight run owns."""
    execution_id: str
    workflow: Workflow
    context: ExecutionContext
    state: RunState
    cancel_token: Optional[CancellationToken] = None
    current_node: Optional[str] = None
    resume_interaction_id: Optional[str] = None
    resume_response: Any = None
    interaction: Optional[InteractionState] = None


class _Readiness(str, Enum):
    READY = "ready"
    WAIT = "wait"
    SKIP = "skip"


class DAGExecutor:
    """
    Executes workflow graphs.

    A run owns its context and scheduler state exclusively; dispatch
    within a run is sequential and in worklist (FIFO) order, so a fixed
    workflow and input always produce the same dispatch order. Many runs
    may share one executor and registry.

    Usage:
        executor = DAGExecutor(registry)
        result = await executor.execute(workflow, {"message": "hi"})
    """

    def __init__(
        self,
        registry: DispatcherRegistry,
        interaction_store: Optional[InteractionStore] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the DAG executor.

        Args:
            registry: Dispatcher registry used to run nodes
            interaction_store: Where paused runs are checkpointed
            settings: Timeouts and bounds (defaults to global settings)
        """
        settings = settings or get_settings()
        self._registry = registry
        self._interactions = interaction_store or InteractionStore(
            ttl_seconds=settings.INTERACTION_TTL_SECONDS
        )
        self._run_timeout = settings.WORKFLOW_RUN_TIMEOUT
        self._node_timeout = settings.NODE_EXECUTION_TIMEOUT
        self._max_node_runs = settings.MAX_NODE_RUNS
        self._default_max_iterations = settings.DEFAULT_LOOP_MAX_ITERATIONS

        # Event handlers
        self._event_handlers: Dict[str, List[Callable]] = defaultdict(list)

        logger.info(
            "DAGExecutor initialized",
            run_timeout=self._run_timeout,
            node_timeout=self._node_timeout,
            max_node_runs=self._max_node_runs,
        )

    @property
    def registry(self) -> DispatcherRegistry:
        return self._registry

    @property
    def interaction_store(self) -> InteractionStore:
        return self._interactions

    # =========================================================================
    # Entry points
    # =========================================================================

    async def execute(
        self,
        workflow: Workflow,
        inputs: Optional[Dict[str, Any]] = None,
        *,
        execution_id: Optional[str] = None,
        system_variables: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """
        Execute a workflow.

        Args:
            workflow: Workflow definition
            inputs: Caller input variables (override workflow defaults)
            execution_id: Run identifier (generated if omitted)
            system_variables: Extra reserved variables (``__user_id`` ...)
            cancel_token: Checked between node dispatches

        Returns:
            Execution result

        Raises:
            ValidationError: If the workflow is malformed (before any dispatch)
        """
        workflow.validate_definition()

        execution_id = execution_id or generate_execution_id(workflow.id)
        system = {
            SYS_EXECUTION_ID: execution_id,
            SYS_WORKFLOW_ID: workflow.id,
            SYS_START_TIME: datetime.utcnow().isoformat(),
        }
        for key, value in (system_variables or {}).items():
            if value is not None:
                system[key] = value

        context = ExecutionContext.create(workflow.variables, inputs, system)
        state = RunState.initial(
            node_ids=[node.id for node in workflow.nodes],
            edge_ids=[edge.id for edge in workflow.edges],
            entry_ids=[node.id for node in workflow.get_entry_nodes()],
        )

        run = _Run(
            execution_id=execution_id,
            workflow=workflow,
            context=context,
            state=state,
            cancel_token=cancel_token,
        )
        return await self._run(run, resumed=False)

    async def resume(
        self,
        interaction: InteractionState,
        user_response: Any,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """
        Continue a paused run from its checkpoint.

        The waiting node is dispatched first, with the response available
        as ``userResponse`` (and, for dict responses, its keys) and under
        the reserved resume inputs.

        Args:
            interaction: The claimed interaction checkpoint
            user_response: What the user answered

        Returns:
            Execution result (same execution ID as the paused run)
        """
        workflow = Workflow.from_dict(interaction.workflow)
        context = ExecutionContext.from_dict(interaction.context)
        state = RunState.from_dict(interaction.run_state)
        node_id = interaction.node_id

        context.set_variable("userResponse", user_response)
        if isinstance(user_response, dict):
            for key, value in user_response.items():
                if not is_system_key(key):
                    context.set_variable(key, value)

        if node_id in state.worklist:
            state.worklist.remove(node_id)
        state.worklist.insert(0, node_id)
        state.set_status(node_id, NodeStatus.PENDING)
        state.resuming_node = node_id

        logger.info(
            "Resuming workflow from interaction",
            execution_id=interaction.execution_id,
            interaction_id=interaction.id,
            node_id=node_id,
        )

        run = _Run(
            execution_id=interaction.execution_id,
            workflow=workflow,
            context=context,
            state=state,
            cancel_token=cancel_token,
            resume_interaction_id=interaction.id,
            resume_response=user_response,
        )
        return await self._run(run, resumed=True)

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    async def _run(self, run: _Run, resumed: bool) -> ExecutionResult:
        workflow_id = run.workflow.id
        event_base = {"execution_id": run.execution_id, "workflow_id": workflow_id}

        result = ExecutionResult(execution_id=run.execution_id, workflow_id=workflow_id)
        result.started_at = datetime.utcnow()

        logger.info(
            "Starting workflow execution",
            execution_id=run.execution_id,
            workflow_id=workflow_id,
            resumed=resumed,
            nodes=len(run.workflow.nodes),
        )
        await self._emit_event("workflow_started", {**event_base, "resumed": resumed})

        try:
            await asyncio.wait_for(self._process_worklist(run), timeout=self._run_timeout)

            result.status = ExecutionStatus.COMPLETED
            result.outputs = self._collect_outputs(run)
            logger.info(
                "Workflow completed successfully",
                execution_id=run.execution_id,
                nodes_processed=run.state.nodes_processed,
            )
            await self._emit_event("workflow_completed", {**event_base, "status": result.status.value})

        except SuspensionSignal as signal:
            result.status = ExecutionStatus.SUSPENDED
            result.interaction = run.interaction.summary() if run.interaction else {
                "id": signal.interaction_id,
                "node_id": signal.node_id,
            }
            logger.info(
                "Workflow suspended for interaction",
                execution_id=run.execution_id,
                node_id=signal.node_id,
                interaction_id=signal.interaction_id,
            )
            await self._emit_event(
                "workflow_suspended",
                {**event_base, "node_id": signal.node_id, "interaction_id": signal.interaction_id},
            )

        except WorkflowCancelledError as e:
            result.status = ExecutionStatus.CANCELLED
            result.error = e.message
            result.error_code = e.error_code.value
            logger.info("Workflow execution cancelled", execution_id=run.execution_id)
            await self._emit_event("workflow_cancelled", {**event_base, "error": e.message})

        except asyncio.TimeoutError:
            timeout_error = RunTimeoutError(self._run_timeout)
            result.status = ExecutionStatus.TIMEOUT
            result.error = timeout_error.message
            result.error_code = timeout_error.error_code.value
            result.failed_node_id = run.current_node
            logger.error(
                "Workflow run timed out",
                execution_id=run.execution_id,
                timeout=self._run_timeout,
                node_id=run.current_node,
            )
            await self._emit_event(
                "workflow_failed",
                {**event_base, "status": result.status.value, "error": timeout_error.message},
            )

        except Exception as e:
            result.status = ExecutionStatus.FAILED
            if isinstance(e, AppException):
                result.error = e.message
                result.error_code = e.error_code.value
            else:
                result.error = str(e) or e.__class__.__name__
                result.error_code = ErrorCode.INTERNAL_ERROR.value
            if isinstance(e, WorkflowExecutionError) and e.node_id:
                result.failed_node_id = e.node_id
            else:
                result.failed_node_id = run.current_node

            logger.error(
                "Workflow execution failed",
                execution_id=run.execution_id,
                node_id=result.failed_node_id,
                error=result.error,
                nodes_processed=run.state.nodes_processed,
                exc_info=not isinstance(e, AppException),
            )
            await self._emit_event(
                "workflow_failed",
                {**event_base, "status": result.status.value, "error": result.error, "node_id": result.failed_node_id},
            )

        result.nodes_processed = run.state.nodes_processed
        result.node_metrics = list(run.state.node_metrics)
        result.completed_at = datetime.utcnow()
        return result

    async def _process_worklist(self, run: _Run) -> None:
        """Pop and run nodes until the worklist is empty."""
        state = run.state

        while state.worklist:
            if run.cancel_token is not None:
                run.cancel_token.raise_if_cancelled(node_id=run.current_node)

            node_id = state.worklist.pop(0)
            node = run.workflow.get_node(node_id)
            if node is None:
                logger.warning("Node not found in workflow", node_id=node_id)
                continue

            resuming = state.resuming_node == node_id
            if not resuming:
                if state.status_of(node_id) != NodeStatus.PENDING:
                    continue
                readiness = self._readiness(run, node)
                if readiness == _Readiness.WAIT:
                    continue
                if readiness == _Readiness.SKIP:
                    await self._skip_node(run, node)
                    continue

            run.current_node = node_id
            await self._run_node(run, node, resuming)

            # A dispatch in flight finishes; the run still ends cancelled
            if run.cancel_token is not None:
                run.cancel_token.raise_if_cancelled(node_id=node_id)

    def _readiness(self, run: _Run, node: Node) -> _Readiness:
        state = run.state
        incoming = run.workflow.incoming_edges(node.id)

        if not incoming or (node.is_entry and state.run_counts.get(node.id, 0) == 0):
            return _Readiness.READY

        statuses = [state.edge_status.get(edge.id, EdgeStatus.WAITING) for edge in incoming]
        if EdgeStatus.WAITING in statuses:
            return _Readiness.WAIT

        if all(status == EdgeStatus.SKIPPED for status in statuses):
            # A loop end always runs while its loop is active, even when
            # every body path into it was skipped
            if node.type == NodeType.LOOP_END.value and node.config.loop_start_id in state.loop_frames:
                return _Readiness.READY
            return _Readiness.SKIP

        return _Readiness.READY

    # =========================================================================
    # Node execution
    # =========================================================================

    async def _run_node(self, run: _Run, node: Node, resuming: bool) -> None:
        state = run.state

        runs = state.increment_runs(node.id)
        if runs > self._max_node_runs:
            raise NodeExecutionError(
                f"node '{node.id}' exceeded the maximum of {self._max_node_runs} runs",
                node_id=node.id,
            )

        state.set_status(node.id, NodeStatus.RUNNING)
        inputs = self._build_inputs(run, node, resuming)

        logger.info(
            "Executing node",
            execution_id=run.execution_id,
            node_id=node.id,
            node_type=node.type,
            node_name=node.name,
            run=runs,
        )
        await self._emit_event("node_started", self._node_event(run, node))

        metrics = NodeMetrics(node_id=node.id, node_type=node.type, started_at=datetime.utcnow())
        try:
            outcome = await self._dispatch_with_retries(node, inputs, metrics)
        except DispatchNotFoundError as e:
            await self._record_failure(run, node, e.message, e.error_code, metrics)
            raise

        if isinstance(outcome, Suspended):
            if not resuming:
                await self._suspend(run, node, outcome, metrics)
            outcome = Error(
                message=f"Node {node.id} requested another interaction while resuming",
                error_code=ErrorCode.TASK_INVALID_STATE,
            )

        if resuming:
            state.resuming_node = None
            run.resume_interaction_id = None
            run.resume_response = None

        state.nodes_processed += 1

        if isinstance(outcome, Error):
            await self._handle_error(run, node, outcome, metrics)
        else:
            await self._handle_success(run, node, outcome, metrics)

    async def _dispatch_with_retries(
        self,
        node: Node,
        inputs: Dict[str, Any],
        metrics: NodeMetrics,
    ) -> NodeOutcome:
        """Dispatch a node under its deadline, retrying errors with linear backoff."""
        timeout = node.timeout or self._node_timeout
        attempt = 0

        while True:
            try:
                outcome = await asyncio.wait_for(
                    self._registry.dispatch(node, inputs),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                timeout_error = NodeTimeoutError(node.id, timeout)
                outcome = Error(message=timeout_error.message, error_code=ErrorCode.TASK_TIMEOUT)

            metrics.retry_count = attempt
            if not isinstance(outcome, Error) or attempt >= node.max_retries:
                return outcome

            attempt += 1
            logger.warning(
                "Node execution failed, retrying",
                node_id=node.id,
                retry_count=attempt,
                max_retries=node.max_retries,
                error=outcome.message,
            )
            await asyncio.sleep(node.retry_delay * attempt)

    def _build_inputs(self, run: _Run, node: Node, resuming: bool) -> Dict[str, Any]:
        """
        Assemble a node's input slice.

        Entry nodes without incoming edges receive the user variables;
        other nodes receive the values routed along their active incoming
        edges, keyed by target handle. Several edges into one handle
        deliver a list in edge order.
        """
        context = run.context
        state = run.state
        incoming = run.workflow.incoming_edges(node.id)

        inputs: Dict[str, Any] = {}
        if not incoming:
            inputs.update(context.user_variables())
        else:
            routed_counts: Dict[str, int] = {}
            for edge in incoming:
                if state.edge_status.get(edge.id) != EdgeStatus.ACTIVE or edge.source_handle is None:
                    continue
                if not context.has_output(edge.source, edge.source_handle):
                    continue

                handle = edge.target_handle or edge.source_handle
                value = context.get_output(edge.source, edge.source_handle)
                count = routed_counts.get(handle, 0)
                if count == 0:
                    inputs[handle] = value
                elif count == 1:
                    inputs[handle] = [inputs[handle], value]
                else:
                    inputs[handle].append(value)
                routed_counts[handle] = count + 1

        inputs.update(context.system_variables)
        inputs[VARIABLES_KEY] = context.scope_view()

        if node.type == NodeType.LOOP_END.value:
            frame = state.loop_frames.get(node.config.loop_start_id)
            if frame is not None:
                inputs[LOOP_ITERATION] = frame.iteration
                inputs[LOOP_INDEX] = frame.index
                inputs[LOOP_TOTAL] = frame.total_items
                inputs[LOOP_MAX_ITERATIONS] = frame.max_iterations
                inputs[LOOP_TYPE] = frame.loop_type
                inputs[LOOP_CONDITION] = frame.condition

        if resuming:
            inputs[SYS_RESUMING] = True
            inputs[SYS_INTERACTION_ID] = run.resume_interaction_id
            inputs[SYS_INTERACTION_RESPONSE] = run.resume_response

        return inputs

    async def _handle_success(
        self,
        run: _Run,
        node: Node,
        outcome: Success,
        metrics: NodeMetrics,
    ) -> None:
        context = run.context
        state = run.state

        metrics.record_usage(outcome.metadata)
        metrics.complete("completed")
        state.node_metrics.append(metrics.to_dict())

        context.set_outputs(node.id, outcome.outputs)
        if outcome.new_variables:
            context.update_variables(outcome.new_variables)
        state.mark_completed(node.id)

        await self._emit_event("node_completed", {
            **self._node_event(run, node),
            "metrics": metrics.to_dict(),
            "outputs": outcome.outputs,
        })

        if node.type == NodeType.LOOP_START.value:
            if self._start_loop(run, node, outcome):
                return
        elif node.type == NodeType.LOOP_END.value:
            if self._end_loop(run, node, outcome):
                return

        self._fire_edges(run, node, outcome.skipped_handles)

    async def _handle_error(
        self,
        run: _Run,
        node: Node,
        outcome: Error,
        metrics: NodeMetrics,
    ) -> None:
        """
        Fail the run for required nodes; otherwise record the error and
        continue along every outgoing edge.
        """
        state = run.state
        await self._record_failure(run, node, outcome.message, outcome.error_code, metrics)

        if node.is_required:
            logger.error(
                "Node execution failed",
                node_id=node.id,
                error=outcome.message,
                retries=metrics.retry_count,
            )
            raise NodeExecutionError(
                outcome.message,
                node_id=node.id,
                error_code=outcome.error_code,
                details={"nodes_processed": state.nodes_processed},
            )

        logger.warning(
            "Non-required node failed, continuing",
            node_id=node.id,
            error=outcome.message,
        )
        run.context.set_outputs(node.id, {"error": outcome.message})
        self._fire_edges(run, node, [])

    async def _record_failure(
        self,
        run: _Run,
        node: Node,
        message: str,
        error_code: ErrorCode,
        metrics: NodeMetrics,
    ) -> None:
        """Mark a node failed and report it to event handlers."""
        metrics.complete("failed", message)
        run.state.node_metrics.append(metrics.to_dict())
        run.state.mark_failed(node.id, message)

        await self._emit_event("node_failed", {
            **self._node_event(run, node),
            "error": message,
            "error_code": error_code.value,
            "metrics": metrics.to_dict(),
        })

    async def _suspend(
        self,
        run: _Run,
        node: Node,
        outcome: Suspended,
        metrics: NodeMetrics,
    ) -> None:
        """
        Checkpoint the run and stop advancing.

        Raises:
            SuspensionSignal: Always
        """
        state = run.state

        state.set_status(node.id, NodeStatus.WAITING)
        run.context.set_outputs(node.id, outcome.partial_outputs)
        metrics.complete("waiting")
        state.node_metrics.append(metrics.to_dict())

        run.interaction = await self._interactions.create_interaction(
            execution_id=run.execution_id,
            workflow_id=run.workflow.id,
            node_id=node.id,
            request=outcome.interaction,
            context=run.context.to_dict(),
            run_state=state.to_dict(),
            workflow=run.workflow.to_dict(),
            interaction_id=outcome.interaction_id,
        )

        raise SuspensionSignal(node.id, run.interaction.id)

    async def _skip_node(self, run: _Run, node: Node) -> None:
        """Skip a node whose every incoming edge was skipped."""
        run.state.set_status(node.id, NodeStatus.SKIPPED)
        logger.debug("Skipping node", node_id=node.id)
        await self._emit_event("node_skipped", self._node_event(run, node))

        for edge in run.workflow.outgoing_edges(node.id):
            run.state.edge_status[edge.id] = EdgeStatus.SKIPPED
        for target in run.workflow.get_next_nodes(node.id):
            self._enqueue_if_resolved(run, target)

    # =========================================================================
    # Routing
    # =========================================================================

    def _fire_edges(self, run: _Run, node: Node, skipped_handles: List[str]) -> None:
        """Resolve a node's outgoing edges and enqueue targets that became ready."""
        for edge in run.workflow.outgoing_edges(node.id):
            if edge.source_handle is not None and edge.source_handle in skipped_handles:
                run.state.edge_status[edge.id] = EdgeStatus.SKIPPED
            else:
                run.state.edge_status[edge.id] = EdgeStatus.ACTIVE

        for target in run.workflow.get_next_nodes(node.id):
            self._enqueue_if_resolved(run, target)

    def _enqueue_if_resolved(self, run: _Run, node_id: str) -> None:
        state = run.state
        if state.status_of(node_id) != NodeStatus.PENDING:
            return
        if any(
            state.edge_status.get(edge.id) == EdgeStatus.WAITING
            for edge in run.workflow.incoming_edges(node_id)
        ):
            return
        state.enqueue(node_id)

    # =========================================================================
    # Loops
    # =========================================================================

    def _start_loop(self, run: _Run, node: Node, outcome: Success) -> bool:
        """
        Open a loop frame after loopStart succeeded.

        Returns:
            True if edges were already handled (empty loop)
        """
        config: LoopStartConfig = node.config
        workflow = run.workflow
        context = run.context
        state = run.state
        loop_end_id = workflow.get_loop_end(node.id)

        frame = LoopFrame(
            loop_start_id=node.id,
            loop_end_id=loop_end_id,
            loop_type=config.loop_type,
            loop_variable=config.loop_variable,
            condition=config.condition,
            items=outcome.metadata.get("items", []),
            max_iterations=outcome.metadata.get(
                "max_iterations", config.max_iterations or self._default_max_iterations
            ),
        )

        if outcome.outputs.get("shouldContinue"):
            state.loop_frames[node.id] = frame
            context.push_scope()
            logger.debug("Loop started", loop_start_id=node.id, total_items=frame.total_items)
            return False

        # Zero iterations: skip the body, complete the loop end directly
        logger.info("Loop has nothing to iterate", loop_start_id=node.id)
        context.set_outputs(loop_end_id, {
            "shouldContinue": False,
            "currentIteration": 0,
            "results": [],
            "iterations": 0,
            "loopCompleted": True,
        })
        state.mark_completed(loop_end_id)

        for edge in workflow.outgoing_edges(node.id):
            state.edge_status[edge.id] = EdgeStatus.SKIPPED
        for target in workflow.get_next_nodes(node.id):
            self._enqueue_if_resolved(run, target)

        self._fire_edges(run, workflow.get_node(loop_end_id), [])
        return True

    def _end_loop(self, run: _Run, node: Node, outcome: Success) -> bool:
        """
        Advance or close the loop after loopEnd succeeded.

        Returns:
            True if another iteration was scheduled (loop end edges stay closed)
        """
        workflow = run.workflow
        context = run.context
        state = run.state
        start_id = node.config.loop_start_id

        frame = state.loop_frames.get(start_id)
        if frame is None:
            return False

        frame.results.append(outcome.outputs.get("result"))

        if outcome.outputs.get("shouldContinue"):
            frame.iteration += 1
            frame.index += 1

            body = workflow.get_loop_body(start_id)
            state.reset_nodes(body)
            for edge in workflow.edges:
                if edge.target in body and edge.source in body:
                    state.edge_status[edge.id] = EdgeStatus.WAITING
            context.clear_outputs(body)

            context.set_outputs(start_id, loop_item_outputs(
                frame.loop_type,
                frame.loop_variable,
                frame.items,
                index=frame.index,
                iteration=frame.iteration,
                max_iterations=frame.max_iterations,
                should_continue=True,
            ))

            logger.debug("Loop iteration", loop_start_id=start_id, iteration=frame.iteration)
            self._fire_edges(run, workflow.get_node(start_id), [])
            return True

        context.pop_scope(merge=True)
        del state.loop_frames[start_id]

        final_outputs = dict(outcome.outputs)
        final_outputs.update({
            "results": frame.results,
            "iterations": frame.iteration,
            "loopCompleted": True,
        })
        context.set_outputs(node.id, final_outputs)

        logger.info("Loop completed", loop_start_id=start_id, iterations=frame.iteration)
        return False

    # =========================================================================
    # Results
    # =========================================================================

    def _collect_outputs(self, run: _Run) -> Dict[str, Any]:
        """
        Merged outputs of nodes flagged ``is_output``; when none is flagged,
        of the completed sink nodes. Reserved keys are never returned.
        """
        workflow = run.workflow
        output_nodes = [node for node in workflow.nodes if node.is_output]
        if not output_nodes:
            output_nodes = workflow.get_sink_nodes()

        outputs: Dict[str, Any] = {}
        for node in output_nodes:
            if run.state.status_of(node.id) != NodeStatus.COMPLETED:
                continue
            node_outputs = run.context.get_node_outputs(node.id) or {}
            outputs.update({
                key: value for key, value in node_outputs.items()
                if not is_system_key(key)
            })
        return outputs

    # =========================================================================
    # Events
    # =========================================================================

    @staticmethod
    def _node_event(run: _Run, node: Node) -> Dict[str, Any]:
        return {
            "execution_id": run.execution_id,
            "workflow_id": run.workflow.id,
            "node_id": node.id,
            "node_type": node.type,
        }

    def on_event(self, event: str, handler: Callable) -> None:
        """
        Register an event handler.

        Args:
            event: Event name (e.g., "node_completed", "workflow_failed")
            handler: Sync or async handler called with (event, data)
        """
        self._event_handlers[event].append(handler)

    def off_event(self, event: str, handler: Callable) -> None:
        """
        Unregister an event handler.

        Args:
            event: Event name
            handler: Handler to remove
        """
        if handler in self._event_handlers[event]:
            self._event_handlers[event].remove(handler)

    async def _emit_event(self, event: str, data: Dict[str, Any]) -> None:
        """Emit an event to all registered handlers."""
        for handler in list(self._event_handlers.get(event, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event, data)
                else:
                    handler(event, data)
            except Exception as e:
                logger.error(
                    "Error in event handler",
                    event_name=event,
                    error=str(e),
                )
