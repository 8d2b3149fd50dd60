"""Pytest configuration and fixtures for engine tests"""

from typing import Any, Dict, List, Tuple

import pytest
import pytest_asyncio

from nodeflow.config import Settings
from nodeflow.services.dag_executor import DAGExecutor
from nodeflow.services.monitor import NODE_EVENTS, RUN_EVENTS
from nodeflow.services.workflow_engine import WorkflowEngine
from nodeflow.workflows.interactions import InteractionStore
from nodeflow.workflows.registry import DispatcherRegistry, create_default_registry


# ==================== Settings ====================


@pytest.fixture
def settings() -> Settings:
    """Engine settings with short deadlines and no heartbeat"""
    return Settings(
        WORKFLOW_RUN_TIMEOUT=10.0,
        NODE_EXECUTION_TIMEOUT=5.0,
        INTERACTION_TTL_SECONDS=60,
        INTERACTION_SWEEP_INTERVAL=3600,
        STREAM_HEARTBEAT_INTERVAL=0.0,
    )


# ==================== Engine Fixtures ====================


@pytest.fixture
def registry(settings: Settings) -> DispatcherRegistry:
    """Registry with every built-in dispatcher"""
    return create_default_registry(settings=settings)


@pytest.fixture
def interaction_store() -> InteractionStore:
    """In-memory interaction store"""
    return InteractionStore(ttl_seconds=60)


@pytest.fixture
def executor(registry, interaction_store, settings) -> DAGExecutor:
    """DAG executor over the default registry"""
    return DAGExecutor(registry, interaction_store, settings)


@pytest_asyncio.fixture
async def engine(registry, interaction_store, settings):
    """Workflow engine; stopped after the test"""
    engine = WorkflowEngine(
        registry=registry,
        interaction_store=interaction_store,
        settings=settings,
    )
    yield engine
    await engine.stop()


# ==================== Event Recording ====================


@pytest.fixture
def recorded_events(executor) -> List[Tuple[str, Dict[str, Any]]]:
    """Every executor event, in emission order"""
    events: List[Tuple[str, Dict[str, Any]]] = []

    def record(event: str, data: Dict[str, Any]) -> None:
        events.append((event, data))

    for event in RUN_EVENTS + NODE_EVENTS:
        executor.on_event(event, record)
    return events
