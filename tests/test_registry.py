"""Unit tests for DispatcherRegistry"""

from typing import Any, Dict

import pytest

from nodeflow.exceptions import DispatcherAlreadyRegisteredError, DispatchNotFoundError, ErrorCode
from nodeflow.workflows.dispatchers import ChatModelClient, NodeDispatcher
from nodeflow.workflows.nodes import Node, NodeType
from nodeflow.workflows.outcome import Error, NodeOutcome, Success
from nodeflow.workflows.registry import DispatcherRegistry, create_default_registry


class EchoDispatcher(NodeDispatcher):
    node_type = "echo"

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        return Success(outputs={"echo": inputs.get("value")})


class ExplodingDispatcher(NodeDispatcher):
    node_type = "explode"

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        raise RuntimeError("kaboom")


class StubChatClient(ChatModelClient):
    async def stream_chat(self, messages, *, model, temperature, max_tokens=None):
        if False:
            yield None


@pytest.fixture
def empty_registry() -> DispatcherRegistry:
    return DispatcherRegistry()


class TestRegistration:
    """Tests for registering dispatchers."""

    def test_register_and_get(self, empty_registry):
        dispatcher = EchoDispatcher()
        empty_registry.register("echo", dispatcher)

        assert empty_registry.get("echo") is dispatcher
        assert empty_registry.has("echo")
        assert "echo" in empty_registry
        assert len(empty_registry) == 1

    def test_register_enum_type(self, empty_registry):
        """Test enum node types are stored by value."""
        empty_registry.register(NodeType.EMPTY, EchoDispatcher())
        assert empty_registry.list_types() == ["emptyNode"]

    def test_duplicate_registration_raises(self, empty_registry):
        empty_registry.register_dispatcher(EchoDispatcher())

        with pytest.raises(DispatcherAlreadyRegisteredError) as exc_info:
            empty_registry.register_dispatcher(EchoDispatcher())
        assert exc_info.value.error_code == ErrorCode.RESOURCE_ALREADY_EXISTS

    def test_overwrite(self, empty_registry):
        empty_registry.register_dispatcher(EchoDispatcher())
        replacement = EchoDispatcher()
        empty_registry.register_dispatcher(replacement, overwrite=True)

        assert empty_registry.get("echo") is replacement

    def test_unregister(self, empty_registry):
        empty_registry.register_dispatcher(EchoDispatcher())

        assert empty_registry.unregister("echo") is True
        assert empty_registry.unregister("echo") is False
        assert empty_registry.get_safe("echo") is None

    def test_get_unknown_raises(self, empty_registry):
        with pytest.raises(DispatchNotFoundError) as exc_info:
            empty_registry.get("mystery")

        assert exc_info.value.error_code == ErrorCode.DISPATCH_NOT_FOUND
        assert "mystery" in exc_info.value.message

    def test_clear(self, empty_registry):
        empty_registry.register_dispatcher(EchoDispatcher())
        empty_registry.register_dispatcher(ExplodingDispatcher())

        assert empty_registry.clear() == 2
        assert len(empty_registry) == 0


class TestDispatch:
    """Tests for routing a node to its dispatcher."""

    @pytest.mark.asyncio
    async def test_dispatch_adds_metadata(self, empty_registry):
        empty_registry.register_dispatcher(EchoDispatcher())
        node = Node(id="n1", type="echo")

        outcome = await empty_registry.dispatch(node, {"value": 42})

        assert isinstance(outcome, Success)
        assert outcome.outputs == {"echo": 42}
        assert outcome.metadata["node_type"] == "echo"
        assert outcome.metadata["execution_time_ms"] >= 0

    @pytest.mark.asyncio
    async def test_dispatcher_exception_becomes_error(self, empty_registry):
        empty_registry.register_dispatcher(ExplodingDispatcher())
        node = Node(id="n1", type="explode")

        outcome = await empty_registry.dispatch(node, {})

        assert isinstance(outcome, Error)
        assert outcome.message == "Execution error: kaboom"

    @pytest.mark.asyncio
    async def test_missing_dispatcher_is_not_caught(self, empty_registry):
        node = Node(id="n1", type="mystery")

        with pytest.raises(DispatchNotFoundError):
            await empty_registry.dispatch(node, {})


class TestDefaultRegistry:
    """Tests for the built-in registry."""

    def test_builtin_types(self, settings):
        registry = create_default_registry(settings=settings)

        expected = {
            "workflowStart", "pluginOutput", "emptyNode", "answerNode",
            "ifElseNode", "loopStart", "loopEnd", "httpRequest468", "code",
            "textEditor", "variableUpdate", "userSelect", "formInput",
            "textInput", "confirmation", "fileUpload", "customFeedback",
            "documentSplitter", "datasetConcatNode",
        }
        assert set(registry.list_types()) == expected

    def test_content_dispatchers_need_collaborators(self, settings):
        registry = create_default_registry(chat_client=StubChatClient(), settings=settings)

        assert registry.has(NodeType.CHAT)
        assert not registry.has(NodeType.DATASET_SEARCH)
