"""
Tests for the sandboxed code dispatcher

Scripts run in a spawned child process, so these tests are slower than
the other dispatcher tests.
"""

import pytest

from nodeflow.exceptions import ErrorCode
from nodeflow.workflows.dispatchers import CodeDispatcher
from nodeflow.workflows.nodes import Node, NodeType
from nodeflow.workflows.outcome import Error, Success


def code_node(code: str, **data) -> Node:
    return Node(id="script", type=NodeType.CODE, data={"code": code, **data})


@pytest.fixture
def dispatcher() -> CodeDispatcher:
    return CodeDispatcher(default_timeout_ms=5000)


class TestCodeExecution:
    """Tests for running scripts."""

    @pytest.mark.asyncio
    async def test_result_and_console(self, dispatcher):
        node = code_node("result = a + b\nprint('sum', result)")

        outcome = await dispatcher.dispatch(node, {"a": 2, "b": 3})

        assert isinstance(outcome, Success)
        assert outcome.outputs["result"] == 5
        assert outcome.outputs["console"] == ["sum 5"]

    @pytest.mark.asyncio
    async def test_console_log(self, dispatcher):
        node = code_node("console.log('items', len(items))\nresult = {'first': items[0]}")

        outcome = await dispatcher.dispatch(node, {"items": ["x", "y"]})

        assert outcome.outputs["result"] == {"first": "x"}
        assert outcome.outputs["console"] == ["items 2"]

    @pytest.mark.asyncio
    async def test_run_variables_are_visible(self, dispatcher):
        outcome = await dispatcher.dispatch(
            code_node("result = greeting.upper()"),
            {"__variables": {"greeting": "hi"}},
        )
        assert outcome.outputs["result"] == "HI"

    @pytest.mark.asyncio
    async def test_script_exception(self, dispatcher):
        outcome = await dispatcher.dispatch(code_node("raise ValueError('bad')"), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "ValueError: bad"

    @pytest.mark.asyncio
    async def test_timeout(self, dispatcher):
        node = code_node("while True:\n    pass", timeout=50)

        outcome = await dispatcher.dispatch(node, {})

        assert isinstance(outcome, Error)
        assert outcome.error_code == ErrorCode.TASK_TIMEOUT
        assert outcome.message == "Code execution timed out after 50ms"

    @pytest.mark.asyncio
    async def test_short_timeout_excludes_process_start(self, dispatcher):
        """Interpreter start-up does not count against the script's budget."""
        outcome = await dispatcher.dispatch(code_node("result = 1", timeout=300), {})

        assert isinstance(outcome, Success)
        assert outcome.outputs["result"] == 1

    @pytest.mark.asyncio
    async def test_startup_bound(self):
        dispatcher = CodeDispatcher(default_timeout_ms=5000, startup_timeout_ms=1)

        outcome = await dispatcher.dispatch(code_node("result = 1"), {})

        assert isinstance(outcome, Error)
        assert outcome.error_code != ErrorCode.TASK_TIMEOUT
        assert outcome.message == "Code execution process did not start within 1ms"

    @pytest.mark.asyncio
    async def test_allow_list_hides_other_variables(self, dispatcher):
        node = code_node("result = b", variables=["a"])

        outcome = await dispatcher.dispatch(node, {"a": 1, "b": 2})

        assert isinstance(outcome, Error)
        assert outcome.message.startswith("NameError")

    @pytest.mark.asyncio
    async def test_imports_are_blocked(self, dispatcher):
        outcome = await dispatcher.dispatch(code_node("import os\nresult = os.getcwd()"), {})

        assert isinstance(outcome, Error)


class TestCodeValidation:
    """Tests for rejected configurations."""

    @pytest.mark.asyncio
    async def test_no_code(self, dispatcher):
        outcome = await dispatcher.dispatch(code_node("   "), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "No code provided for execution"

    @pytest.mark.asyncio
    async def test_unsupported_language(self, dispatcher):
        outcome = await dispatcher.dispatch(code_node("1", codeType="ruby"), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "Unsupported language: ruby"
