"""
Content Dispatchers

Nodes backed by external AI collaborators. The engine only depends on
the narrow client interfaces declared here; concrete model providers and
vector indexes are supplied by the host application. Merging search
results (``datasetConcatNode``) needs no collaborator.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field

from nodeflow.services.streaming import emit_chunk
from ..nodes import ChatConfig, DatasetConcatConfig, DatasetSearchConfig, Node, NodeType
from ..outcome import Error, NodeOutcome, Success
from ..template import build_scope, render_text
from .base import NodeDispatcher

logger = logging.getLogger(__name__)


# =============================================================================
# Collaborator interfaces
# =============================================================================


class ChatUsage(BaseModel):
    """Token and cost counters reported by a model provider."""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0


class ChatChunk(BaseModel):
    """One streamed fragment of a model response."""
    text: str = ""
    usage: Optional[ChatUsage] = None


class ChatModelClient(ABC):
    """Streaming chat completion provider."""

    @abstractmethod
    def stream_chat(
        self,
        messages: List[Dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[ChatChunk]:
        """Yield response fragments; the last chunk may carry usage."""
        pass


class DatasetRetriever(ABC):
    """Knowledge-base search provider."""

    @abstractmethod
    async def search(
        self,
        query: str,
        *,
        dataset_ids: List[str],
        limit: int,
        similarity: float,
    ) -> List[Dict[str, Any]]:
        """Return matching chunks, best first."""
        pass


# =============================================================================
# Dispatchers
# =============================================================================


class ChatDispatcher(NodeDispatcher):
    """
    Dispatcher for ``chatNode``.

    Streams each fragment to the caller as it arrives and reports token
    usage in metadata so the executor can record it.
    """

    node_type = NodeType.CHAT.value
    config_model = ChatConfig

    def __init__(self, client: ChatModelClient):
        self.client = client

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: ChatConfig = node.config
        scope = build_scope(inputs)

        prompt = render_text(config.prompt, scope)
        if not prompt.strip():
            return Error(message="No prompt provided")

        messages: List[Dict[str, str]] = []
        if config.system_prompt:
            messages.append({"role": "system", "content": render_text(config.system_prompt, scope)})
        history = inputs.get("history")
        if isinstance(history, list):
            messages.extend(item for item in history if isinstance(item, dict))
        messages.append({"role": "user", "content": prompt})

        parts: List[str] = []
        usage = ChatUsage()
        async for chunk in self.client.stream_chat(
            messages,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        ):
            if chunk.text:
                parts.append(chunk.text)
                await emit_chunk(chunk.text)
            if chunk.usage is not None:
                usage = chunk.usage

        answer = "".join(parts)
        logger.info(
            f"Chat node {node.id} answered with {len(answer)} characters "
            f"({usage.input_tokens}+{usage.output_tokens} tokens)"
        )

        return Success(
            outputs={
                "answerText": answer,
                "history": messages + [{"role": "assistant", "content": answer}],
            },
            metadata={
                "model": config.model,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "total_tokens": usage.input_tokens + usage.output_tokens,
                "cost": usage.cost,
            },
        )


class DatasetSearchDispatcher(NodeDispatcher):
    """Dispatcher for ``datasetSearchNode``."""

    node_type = NodeType.DATASET_SEARCH.value
    config_model = DatasetSearchConfig

    def __init__(self, retriever: DatasetRetriever):
        self.retriever = retriever

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: DatasetSearchConfig = node.config
        query = render_text(config.query, build_scope(inputs)).strip()

        if not query:
            return Error(message="No search query")
        if not config.dataset_ids:
            return Success(outputs={"quoteList": [], "isEmpty": True})

        results = await self.retriever.search(
            query,
            dataset_ids=config.dataset_ids,
            limit=config.limit,
            similarity=config.similarity,
        )

        return Success(
            outputs={"quoteList": results, "isEmpty": not results},
            metadata={"query": query, "result_count": len(results)},
        )


class DatasetConcatDispatcher(NodeDispatcher):
    """
    Dispatcher for ``datasetConcatNode``.

    Merges the ``searchResults`` routed into the node. Several edges into
    that handle arrive as a list of result lists, which is flattened.
    Results are de-duplicated by ``id`` (or ``text`` when there is no id),
    keeping the first occurrence, and cut to ``limit``.
    """

    node_type = NodeType.DATASET_CONCAT.value
    config_model = DatasetConcatConfig

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: DatasetConcatConfig = node.config

        incoming = inputs.get("searchResults")
        if not isinstance(incoming, list):
            incoming = []

        flattened: List[Any] = []
        for item in incoming:
            if isinstance(item, list):
                flattened.extend(item)
            else:
                flattened.append(item)

        merged: List[Dict[str, Any]] = []
        seen = set()
        for result in flattened:
            if not isinstance(result, dict):
                continue
            key = result.get("id") or result.get("text")
            if key is not None:
                key = str(key)
                if key in seen:
                    continue
                seen.add(key)
            merged.append(result)

        if config.limit is not None:
            merged = merged[:config.limit]

        context = "\n\n".join(str(result["text"]) for result in merged if result.get("text"))

        return Success(
            outputs={"searchResults": merged, "context": context, "isEmpty": not merged},
            metadata={"input_count": len(flattened), "output_count": len(merged)},
        )
