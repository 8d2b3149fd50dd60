"""
Workflow Interaction Persistence

Stores the checkpoint a run leaves behind when a node waits for human
input:
- Save the paused run (context, scheduler state, workflow definition)
- Atomically claim an interaction when the user responds
- Expire and sweep interactions nobody answered
- Support for multiple storage backends

Lifecycle of a record: created -> processed | expired. A processed
record is never re-created and never claimed twice.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

import redis.asyncio as redis
from pydantic import BaseModel, Field
from redis.asyncio import Redis
from redis.exceptions import RedisError

from nodeflow.config import Settings, get_settings
from nodeflow.exceptions import (
    InteractionAlreadyProcessedError,
    InteractionExpiredError,
    InteractionNotFoundError,
    ServiceUnavailableError,
)
from .outcome import InteractionKind, InteractionRequest

logger = logging.getLogger(__name__)


DEFAULT_TTL_SECONDS = 3600


class InteractionState(BaseModel):
    """
    A workflow run paused at an interactive node.

    Contains everything needed to rebuild the run and re-dispatch the
    waiting node once the user responds.
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    execution_id: str
    workflow_id: str
    node_id: str
    kind: InteractionKind
    prompt: str = ""
    options: List[Any] = Field(default_factory=list)
    fields: List[Dict[str, Any]] = Field(default_factory=list)
    validation_rules: Dict[str, Any] = Field(default_factory=dict)
    default_value: Any = None

    # Snapshots
    context: Dict[str, Any] = Field(default_factory=dict)  # Serialized ExecutionContext
    run_state: Dict[str, Any] = Field(default_factory=dict)  # Serialized RunState
    workflow: Dict[str, Any] = Field(default_factory=dict)  # Workflow definition
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime = Field(
        default_factory=lambda: datetime.utcnow() + timedelta(seconds=DEFAULT_TTL_SECONDS)
    )
    processed: bool = False
    processed_at: Optional[datetime] = None
    response: Any = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the response deadline has passed."""
        return (now or datetime.utcnow()) >= self.expires_at

    def to_json(self) -> str:
        """Serialize interaction to JSON string."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str) -> "InteractionState":
        """Deserialize interaction from JSON string."""
        return cls.model_validate_json(json_str)

    def summary(self) -> Dict[str, Any]:
        """What a caller needs to render the prompt."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "prompt": self.prompt,
            "options": self.options,
            "fields": self.fields,
            "node_id": self.node_id,
            "expires_at": self.expires_at.isoformat(),
        }


class InteractionStorageBackend(ABC):
    """
    Abstract base class for interaction storage backends.

    Implementations must make ``mark_processed`` atomic: of several
    concurrent calls for the same interaction, exactly one returns True.
    """

    @abstractmethod
    async def save_interaction(self, state: InteractionState) -> str:
        """
        Save an interaction.

        Returns:
            Interaction ID
        """
        pass

    @abstractmethod
    async def get_interaction(self, interaction_id: str) -> Optional[InteractionState]:
        """Get an interaction by ID, or None if not found."""
        pass

    @abstractmethod
    async def find_interaction_by_execution_id(self, execution_id: str) -> Optional[InteractionState]:
        """Get the interaction a run is currently paused on."""
        pass

    @abstractmethod
    async def mark_processed(self, interaction_id: str, response: Any) -> bool:
        """
        Atomically mark an interaction processed.

        Returns:
            True if this call claimed it, False if missing or already processed
        """
        pass

    @abstractmethod
    async def list_pending(self, workflow_id: Optional[str] = None) -> List[InteractionState]:
        """List unprocessed interactions, oldest first."""
        pass

    @abstractmethod
    async def delete_interaction(self, interaction_id: str) -> bool:
        """
        Delete an interaction.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    async def delete_expired_before(self, cutoff: datetime) -> int:
        """
        Delete interactions whose deadline is before ``cutoff``.

        Returns:
            Number of interactions deleted
        """
        pass


class InMemoryInteractionBackend(InteractionStorageBackend):
    """Process-local backend for tests and single-process deployments."""

    def __init__(self):
        self._records: Dict[str, InteractionState] = {}
        self._by_execution: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save_interaction(self, state: InteractionState) -> str:
        async with self._lock:
            self._records[state.id] = state.model_copy(deep=True)
            self._by_execution[state.execution_id] = state.id
        logger.debug(f"Saved interaction {state.id} for execution {state.execution_id}")
        return state.id

    async def get_interaction(self, interaction_id: str) -> Optional[InteractionState]:
        async with self._lock:
            state = self._records.get(interaction_id)
            return state.model_copy(deep=True) if state else None

    async def find_interaction_by_execution_id(self, execution_id: str) -> Optional[InteractionState]:
        async with self._lock:
            interaction_id = self._by_execution.get(execution_id)
            state = self._records.get(interaction_id) if interaction_id else None
            return state.model_copy(deep=True) if state else None

    async def mark_processed(self, interaction_id: str, response: Any) -> bool:
        async with self._lock:
            state = self._records.get(interaction_id)
            if state is None or state.processed:
                return False
            state.processed = True
            state.processed_at = datetime.utcnow()
            state.response = response
            return True

    async def list_pending(self, workflow_id: Optional[str] = None) -> List[InteractionState]:
        async with self._lock:
            pending = [
                state.model_copy(deep=True)
                for state in self._records.values()
                if not state.processed and (workflow_id is None or state.workflow_id == workflow_id)
            ]
        return sorted(pending, key=lambda s: s.created_at)

    async def delete_interaction(self, interaction_id: str) -> bool:
        async with self._lock:
            return self._remove(interaction_id)

    async def delete_expired_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [
                interaction_id
                for interaction_id, state in self._records.items()
                if state.expires_at < cutoff
            ]
            for interaction_id in expired:
                self._remove(interaction_id)
        return len(expired)

    def _remove(self, interaction_id: str) -> bool:
        state = self._records.pop(interaction_id, None)
        if state is None:
            return False
        if self._by_execution.get(state.execution_id) == interaction_id:
            del self._by_execution[state.execution_id]
        return True


class RedisInteractionBackend(InteractionStorageBackend):
    """
    Redis-based interaction storage backend.

    Records are JSON strings with a key TTL; a sorted set scored by
    deadline indexes them for the sweeper, and a ``SET NX`` claim key
    makes processing atomic across engine processes.
    """

    # Key patterns
    KEY_INTERACTION = "workflow:interaction:{interaction_id}"
    KEY_PROCESSED = "workflow:interaction:{interaction_id}:processed"
    KEY_EXECUTION = "workflow:interaction:execution:{execution_id}"
    KEY_EXPIRY_INDEX = "workflow:interactions:expiry"

    # Records outlive their deadline so late resumes report "expired"
    DEFAULT_GRACE = 24 * 3600

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        redis_url: str = "redis://localhost:6379",
        grace_seconds: int = DEFAULT_GRACE,
    ):
        """
        Initialize Redis interaction backend.

        Args:
            redis_client: Existing Redis client or None to create new
            redis_url: Redis connection URL
            grace_seconds: How long records are kept past their deadline
        """
        self._redis: Optional[Redis] = redis_client
        self._redis_url = redis_url
        self._grace = grace_seconds
        self._connected = redis_client is not None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        try:
            await self._redis.ping()
        except RedisError as e:
            raise ServiceUnavailableError("Redis", details={"error": str(e)})
        self._connected = True
        logger.info("Interaction storage connected to Redis")

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        self._connected = False
        logger.info("Interaction storage disconnected from Redis")

    def _ensure_connected(self) -> None:
        """Ensure Redis is connected."""
        if not self._connected or self._redis is None:
            raise ServiceUnavailableError("Redis", details={"reason": "connect() not called"})

    def _ttl_for(self, state: InteractionState) -> int:
        remaining = (state.expires_at - datetime.utcnow()).total_seconds()
        return max(int(remaining), 0) + self._grace

    async def save_interaction(self, state: InteractionState) -> str:
        self._ensure_connected()

        ttl = self._ttl_for(state)
        interaction_key = self.KEY_INTERACTION.format(interaction_id=state.id)
        execution_key = self.KEY_EXECUTION.format(execution_id=state.execution_id)

        await self._redis.set(interaction_key, state.to_json(), ex=ttl)
        await self._redis.set(execution_key, state.id, ex=ttl)
        await self._redis.zadd(self.KEY_EXPIRY_INDEX, {state.id: state.expires_at.timestamp()})

        logger.debug(
            f"Saved interaction {state.id} for execution {state.execution_id} "
            f"at node {state.node_id}"
        )
        return state.id

    async def get_interaction(self, interaction_id: str) -> Optional[InteractionState]:
        self._ensure_connected()

        data = await self._redis.get(self.KEY_INTERACTION.format(interaction_id=interaction_id))
        if data:
            return InteractionState.from_json(data)
        return None

    async def find_interaction_by_execution_id(self, execution_id: str) -> Optional[InteractionState]:
        self._ensure_connected()

        interaction_id = await self._redis.get(self.KEY_EXECUTION.format(execution_id=execution_id))
        if not interaction_id:
            return None
        return await self.get_interaction(interaction_id)

    async def mark_processed(self, interaction_id: str, response: Any) -> bool:
        self._ensure_connected()

        state = await self.get_interaction(interaction_id)
        if state is None or state.processed:
            return False

        claimed = await self._redis.set(
            self.KEY_PROCESSED.format(interaction_id=interaction_id),
            "1",
            nx=True,
            ex=self._ttl_for(state),
        )
        if not claimed:
            return False

        state.processed = True
        state.processed_at = datetime.utcnow()
        state.response = response
        await self._redis.set(
            self.KEY_INTERACTION.format(interaction_id=interaction_id),
            state.to_json(),
            keepttl=True,
        )
        return True

    async def list_pending(self, workflow_id: Optional[str] = None) -> List[InteractionState]:
        self._ensure_connected()

        pending = []
        for interaction_id in await self._redis.zrange(self.KEY_EXPIRY_INDEX, 0, -1):
            state = await self.get_interaction(interaction_id)
            if state is None or state.processed:
                continue
            if workflow_id is None or state.workflow_id == workflow_id:
                pending.append(state)
        return sorted(pending, key=lambda s: s.created_at)

    async def delete_interaction(self, interaction_id: str) -> bool:
        self._ensure_connected()

        state = await self.get_interaction(interaction_id)
        await self._redis.zrem(self.KEY_EXPIRY_INDEX, interaction_id)
        await self._redis.delete(self.KEY_PROCESSED.format(interaction_id=interaction_id))
        if state is None:
            return False

        execution_key = self.KEY_EXECUTION.format(execution_id=state.execution_id)
        if await self._redis.get(execution_key) == interaction_id:
            await self._redis.delete(execution_key)

        deleted = await self._redis.delete(self.KEY_INTERACTION.format(interaction_id=interaction_id))
        if deleted:
            logger.debug(f"Deleted interaction {interaction_id}")
            return True
        return False

    async def delete_expired_before(self, cutoff: datetime) -> int:
        self._ensure_connected()

        expired_ids = await self._redis.zrangebyscore(
            self.KEY_EXPIRY_INDEX, "-inf", f"({cutoff.timestamp()}"
        )

        deleted_count = 0
        for interaction_id in expired_ids:
            await self.delete_interaction(interaction_id)
            deleted_count += 1

        if deleted_count:
            logger.info(f"Deleted {deleted_count} expired interactions")
        return deleted_count


class InteractionStore:
    """
    High-level interaction management interface.

    Enforces the interaction state machine on top of a storage backend.
    """

    def __init__(
        self,
        backend: Optional[InteractionStorageBackend] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ):
        """
        Initialize interaction store.

        Args:
            backend: Storage backend to use (defaults to in-memory)
            ttl_seconds: How long a paused run waits for a response
        """
        self._backend = backend or InMemoryInteractionBackend()
        self.ttl_seconds = ttl_seconds

    @property
    def backend(self) -> InteractionStorageBackend:
        """Get the storage backend."""
        return self._backend

    async def connect(self) -> None:
        """Connect to the storage backend."""
        if isinstance(self._backend, RedisInteractionBackend):
            await self._backend.connect()

    async def disconnect(self) -> None:
        """Disconnect from the storage backend."""
        if isinstance(self._backend, RedisInteractionBackend):
            await self._backend.disconnect()

    async def create_interaction(
        self,
        *,
        execution_id: str,
        workflow_id: str,
        node_id: str,
        request: InteractionRequest,
        context: Dict[str, Any],
        run_state: Dict[str, Any],
        workflow: Dict[str, Any],
        interaction_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InteractionState:
        """
        Persist the checkpoint of a paused run.

        Returns:
            The saved InteractionState
        """
        now = datetime.utcnow()
        state = InteractionState(
            id=interaction_id or str(uuid4()),
            execution_id=execution_id,
            workflow_id=workflow_id,
            node_id=node_id,
            kind=request.kind,
            prompt=request.prompt,
            options=request.options,
            fields=request.fields,
            validation_rules=request.validation_rules,
            default_value=request.default_value,
            context=context,
            run_state=run_state,
            workflow=workflow,
            metadata=metadata or {},
            created_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )

        await self._backend.save_interaction(state)

        logger.info(
            f"Created interaction {state.id} for execution {execution_id} "
            f"at node {node_id} ({state.kind.value})"
        )
        return state

    async def get(self, interaction_id: str) -> InteractionState:
        """
        Get an interaction.

        Raises:
            InteractionNotFoundError: If it does not exist
        """
        state = await self._backend.get_interaction(interaction_id)
        if state is None:
            raise InteractionNotFoundError(interaction_id)
        return state

    async def find_by_execution_id(self, execution_id: str) -> Optional[InteractionState]:
        return await self._backend.find_interaction_by_execution_id(execution_id)

    async def claim(self, interaction_id: str, response: Any) -> InteractionState:
        """
        Move an interaction from created to processed.

        Raises:
            InteractionNotFoundError: Unknown or swept interaction
            InteractionExpiredError: Deadline passed (the record is deleted)
            InteractionAlreadyProcessedError: Already claimed by an earlier resume
        """
        state = await self.get(interaction_id)

        if state.processed:
            raise InteractionAlreadyProcessedError(interaction_id)

        if state.is_expired():
            await self._backend.delete_interaction(interaction_id)
            logger.warning(f"Interaction {interaction_id} expired at {state.expires_at.isoformat()}")
            raise InteractionExpiredError(interaction_id)

        if not await self._backend.mark_processed(interaction_id, response):
            raise InteractionAlreadyProcessedError(interaction_id)

        state.processed = True
        state.processed_at = datetime.utcnow()
        state.response = response

        logger.info(f"Claimed interaction {interaction_id} for execution {state.execution_id}")
        return state

    async def pending_for_workflow(self, workflow_id: Optional[str] = None) -> List[InteractionState]:
        """List interactions still waiting for a response."""
        now = datetime.utcnow()
        pending = await self._backend.list_pending(workflow_id)
        return [state for state in pending if not state.is_expired(now)]

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete every interaction whose deadline has passed.

        Returns:
            Number of interactions deleted
        """
        deleted = await self._backend.delete_expired_before(now or datetime.utcnow())
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired interactions")
        return deleted


# Singleton instance
_interaction_store: Optional[InteractionStore] = None


def interaction_store_from_settings(settings: Optional[Settings] = None) -> InteractionStore:
    """Build a store for the configured backend (not connected yet)."""
    settings = settings or get_settings()
    backend: InteractionStorageBackend
    if settings.INTERACTION_BACKEND == "redis":
        backend = RedisInteractionBackend(redis_url=settings.REDIS_URL)
    else:
        backend = InMemoryInteractionBackend()
    return InteractionStore(backend=backend, ttl_seconds=settings.INTERACTION_TTL_SECONDS)


def get_interaction_store() -> InteractionStore:
    """Get the singleton interaction store instance."""
    global _interaction_store
    if _interaction_store is None:
        _interaction_store = interaction_store_from_settings()
    return _interaction_store


async def create_interaction_store(
    backend_type: str = "memory",
    redis_url: str = "redis://localhost:6379",
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
) -> InteractionStore:
    """
    Create and connect a new interaction store.

    Args:
        backend_type: "memory" or "redis"
        redis_url: Redis connection URL
        ttl_seconds: Interaction time to live in seconds

    Returns:
        Connected InteractionStore instance
    """
    backend: InteractionStorageBackend
    if backend_type == "redis":
        backend = RedisInteractionBackend(redis_url=redis_url)
    else:
        backend = InMemoryInteractionBackend()
    store = InteractionStore(backend=backend, ttl_seconds=ttl_seconds)
    await store.connect()
    return store
