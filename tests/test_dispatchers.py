"""
Tests for built-in node dispatchers

Tests cover:
1. Pass-through and answer nodes
2. If/else conditions (expressions and structured clauses)
3. Loop start / loop end decisions
4. Text editing, document splitting and variable updates
5. Interactive nodes (suspend and resume)
6. Chat and dataset search with injected collaborators
7. Merging search results
"""

from typing import Any, Dict, List, Optional

import pytest

from nodeflow.exceptions import NodeConfigError
from nodeflow.services.streaming import StreamSession, bind_stream
from nodeflow.workflows.dispatchers import (
    AnswerDispatcher,
    ChatChunk,
    ChatDispatcher,
    ChatModelClient,
    ChatUsage,
    DatasetConcatDispatcher,
    DatasetRetriever,
    DatasetSearchDispatcher,
    DocumentSplitterDispatcher,
    IfElseDispatcher,
    InteractiveDispatcher,
    LoopEndDispatcher,
    LoopStartDispatcher,
    PassThroughDispatcher,
    TextEditorDispatcher,
    VariableUpdateDispatcher,
    WorkflowStartDispatcher,
)
from nodeflow.workflows.dispatchers.condition import compare
from nodeflow.workflows.dispatchers.loop import (
    LOOP_CONDITION,
    LOOP_INDEX,
    LOOP_ITERATION,
    LOOP_MAX_ITERATIONS,
    LOOP_TOTAL,
    LOOP_TYPE,
)
from nodeflow.workflows.graph import Workflow
from nodeflow.workflows.nodes import Node, NodeType
from nodeflow.workflows.outcome import Error, InteractionKind, Success, Suspended
from nodeflow.workflows.state import SYS_INTERACTION_RESPONSE, SYS_RESUMING, VARIABLES_KEY


def make_node(node_type: Any, data: Optional[Dict[str, Any]] = None, node_id: str = "node") -> Node:
    return Node(id=node_id, type=node_type, data=data or {})


def loop_inputs(iteration: int, index: int, total: int, max_iterations: int, **extra) -> Dict[str, Any]:
    inputs = {
        LOOP_ITERATION: iteration,
        LOOP_INDEX: index,
        LOOP_TOTAL: total,
        LOOP_MAX_ITERATIONS: max_iterations,
        LOOP_TYPE: "forEach",
    }
    inputs.update(extra)
    return inputs


# =============================================================================
# Pass-through Tests
# =============================================================================


class TestPassThrough:
    """Tests for pass-through dispatchers."""

    @pytest.mark.asyncio
    async def test_workflow_start_drops_reserved_keys(self):
        outcome = await WorkflowStartDispatcher().dispatch(
            make_node(NodeType.WORKFLOW_START),
            {"message": "hi", "__execution_id": "e1", VARIABLES_KEY: {}},
        )
        assert outcome.outputs == {"message": "hi"}

    @pytest.mark.asyncio
    async def test_plugin_output_echoes(self):
        dispatcher = PassThroughDispatcher(NodeType.PLUGIN_OUTPUT.value)
        outcome = await dispatcher.dispatch(make_node(NodeType.PLUGIN_OUTPUT), {"a": 1, "b": [2]})

        assert dispatcher.node_type == "pluginOutput"
        assert outcome.outputs == {"a": 1, "b": [2]}

    @pytest.mark.asyncio
    async def test_answer_renders_and_streams(self):
        chunks: List[Any] = []
        session = StreamSession(lambda text, is_last: chunks.append((text, is_last)))
        node = make_node(NodeType.ANSWER, {"text": "Hello {{name}}!"})

        with bind_stream(session):
            outcome = await AnswerDispatcher().dispatch(node, {VARIABLES_KEY: {"name": "Ada"}})

        assert outcome.outputs == {"answerText": "Hello Ada!"}
        assert chunks == [("Hello Ada!", False)]

    @pytest.mark.asyncio
    async def test_answer_uses_routed_text(self):
        outcome = await AnswerDispatcher().dispatch(make_node(NodeType.ANSWER), {"answerText": "routed"})
        assert outcome.outputs == {"answerText": "routed"}


# =============================================================================
# Condition Tests
# =============================================================================


class TestIfElse:
    """Tests for IfElseDispatcher."""

    @pytest.mark.asyncio
    async def test_expression_true_skips_else(self):
        node = make_node(NodeType.IF_ELSE, {"condition": "score >= 5 and status == 'ok'"})
        outcome = await IfElseDispatcher().dispatch(node, {"score": 7, "status": "ok"})

        assert isinstance(outcome, Success)
        assert outcome.outputs["conditionResult"] is True
        assert outcome.outputs["then"] == {"score": 7, "status": "ok"}
        assert outcome.skipped_handles == ["else"]
        assert outcome.metadata["branch"] == "then"

    @pytest.mark.asyncio
    async def test_expression_false_skips_then(self):
        node = make_node(NodeType.IF_ELSE, {"condition": "score >= 5"})
        outcome = await IfElseDispatcher().dispatch(node, {"score": 1})

        assert outcome.outputs["conditionResult"] is False
        assert "else" in outcome.outputs
        assert outcome.skipped_handles == ["then"]

    @pytest.mark.asyncio
    async def test_expression_reads_run_variables(self):
        node = make_node(NodeType.IF_ELSE, {"condition": "len(tags) == 2"})
        outcome = await IfElseDispatcher().dispatch(node, {VARIABLES_KEY: {"tags": ["a", "b"]}})

        assert outcome.outputs["conditionResult"] is True

    @pytest.mark.asyncio
    async def test_structured_clauses(self):
        node = make_node(NodeType.IF_ELSE, {
            "conditions": [
                {"field": "result.status", "operator": "==", "value": "ok"},
                {"field": "result.count", "operator": ">", "value": 10},
            ],
            "logic": "or",
        })
        outcome = await IfElseDispatcher().dispatch(node, {"result": {"status": "ok", "count": 1}})

        assert outcome.outputs["conditionResult"] is True

    @pytest.mark.asyncio
    async def test_empty_condition(self):
        outcome = await IfElseDispatcher().dispatch(make_node(NodeType.IF_ELSE), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "Condition is empty"

    @pytest.mark.asyncio
    async def test_undefined_name(self):
        node = make_node(NodeType.IF_ELSE, {"condition": "missing > 1"})
        outcome = await IfElseDispatcher().dispatch(node, {})

        assert isinstance(outcome, Error)
        assert outcome.message.startswith("Condition evaluation failed")

    def test_compare_operators(self):
        assert compare(3, "<=", 3)
        assert compare("a", "in", ["a", "b"])
        assert compare([1, 2], "contains", 2)
        assert compare(None, "is_none", None)
        assert compare(0, "is_false", None)
        with pytest.raises(ValueError, match="Unknown operator"):
            compare(1, "~=", 1)


# =============================================================================
# Loop Tests
# =============================================================================


class TestLoopStart:
    """Tests for LoopStartDispatcher."""

    @pytest.mark.asyncio
    async def test_for_each_first_item(self):
        node = make_node(NodeType.LOOP_START, {"loopVariable": "city"})
        outcome = await LoopStartDispatcher().dispatch(node, {"items": ["Oslo", "Rome"]})

        assert outcome.outputs["city"] == "Oslo"
        assert outcome.outputs["item"] == "Oslo"
        assert outcome.outputs["totalItems"] == 2
        assert outcome.outputs["currentIteration"] == 1
        assert outcome.outputs["shouldContinue"] is True
        assert outcome.metadata == {"items": ["Oslo", "Rome"], "max_iterations": 100}

    @pytest.mark.asyncio
    async def test_for_each_items_from_variables(self):
        node = make_node(NodeType.LOOP_START, {"listKey": "data.rows"})
        outcome = await LoopStartDispatcher(default_max_iterations=7).dispatch(
            node, {VARIABLES_KEY: {"data": {"rows": [1]}}}
        )

        assert outcome.outputs["item"] == 1
        assert outcome.outputs["maxIterations"] == 7

    @pytest.mark.asyncio
    async def test_for_each_empty(self):
        outcome = await LoopStartDispatcher().dispatch(make_node(NodeType.LOOP_START), {})

        assert outcome.outputs["shouldContinue"] is False
        assert outcome.outputs["item"] is None

    @pytest.mark.asyncio
    async def test_for_each_not_a_list(self):
        outcome = await LoopStartDispatcher().dispatch(make_node(NodeType.LOOP_START), {"items": "abc"})

        assert isinstance(outcome, Error)
        assert outcome.message == "Loop input 'items' is not a list"

    @pytest.mark.asyncio
    async def test_while_requires_condition(self):
        node = make_node(NodeType.LOOP_START, {"loopType": "while"})
        outcome = await LoopStartDispatcher().dispatch(node, {})

        assert isinstance(outcome, Error)
        assert outcome.message == "While loop requires a condition"

    @pytest.mark.asyncio
    async def test_while_condition(self):
        node = make_node(NodeType.LOOP_START, {"loopType": "while", "condition": "n < 3"})
        outcome = await LoopStartDispatcher().dispatch(node, {VARIABLES_KEY: {"n": 5}})

        assert outcome.outputs["shouldContinue"] is False
        assert outcome.outputs["loopType"] == "while"


class TestLoopEnd:
    """Tests for LoopEndDispatcher."""

    @pytest.mark.asyncio
    async def test_requires_active_loop(self):
        node = make_node(NodeType.LOOP_END, {"loopStartId": "loop"}, node_id="end")
        outcome = await LoopEndDispatcher().dispatch(node, {})

        assert isinstance(outcome, Error)
        assert outcome.message == "Loop end end has no active loop"

    @pytest.mark.asyncio
    async def test_for_each_continues_while_items_remain(self):
        node = make_node(NodeType.LOOP_END, {"loopStartId": "loop"})

        more = await LoopEndDispatcher().dispatch(node, loop_inputs(1, 0, 2, 10, result="A"))
        done = await LoopEndDispatcher().dispatch(node, loop_inputs(2, 1, 2, 10, result="B"))

        assert more.outputs["shouldContinue"] is True
        assert more.outputs["result"] == "A"
        assert done.outputs["shouldContinue"] is False

    @pytest.mark.asyncio
    async def test_stops_at_max_iterations(self):
        node = make_node(NodeType.LOOP_END, {"loopStartId": "loop"})
        outcome = await LoopEndDispatcher().dispatch(node, loop_inputs(3, 2, 10, 3))

        assert outcome.outputs["shouldContinue"] is False

    @pytest.mark.asyncio
    async def test_while_condition(self):
        node = make_node(NodeType.LOOP_END, {"loopStartId": "loop"})
        inputs = loop_inputs(1, 0, 0, 10, **{LOOP_TYPE: "while", LOOP_CONDITION: "flag"})
        inputs[VARIABLES_KEY] = {"flag": False}

        outcome = await LoopEndDispatcher().dispatch(node, inputs)

        assert outcome.outputs["shouldContinue"] is False


# =============================================================================
# Text and Variable Tests
# =============================================================================


class TestTextEditor:
    """Tests for TextEditorDispatcher."""

    @pytest.mark.asyncio
    async def test_trim_case_and_affixes(self):
        node = make_node(NodeType.TEXT_EDITOR, {"trim": True, "case": "upper", "prefix": ">"})
        outcome = await TextEditorDispatcher().dispatch(node, {"text": "  hello world  "})

        assert outcome.outputs == {"text": ">HELLO WORLD", "length": 12}

    @pytest.mark.asyncio
    async def test_split_and_join(self):
        node = make_node(NodeType.TEXT_EDITOR, {"splitDelimiter": ",", "joinDelimiter": " | "})
        outcome = await TextEditorDispatcher().dispatch(node, {"text": "a,b,c"})

        assert outcome.outputs["parts"] == ["a", "b", "c"]
        assert outcome.outputs["text"] == "a | b | c"

    @pytest.mark.asyncio
    async def test_regex_and_replace(self):
        node = make_node(NodeType.TEXT_EDITOR, {
            "regex": r"\d+",
            "regexReplacement": "#",
            "replace": [{"pattern": "cat", "replacement": "{{animal}}"}],
        })
        outcome = await TextEditorDispatcher().dispatch(
            node, {"text": "cat 12 and cat 7", VARIABLES_KEY: {"animal": "dog"}}
        )

        assert outcome.outputs["text"] == "dog # and dog #"

    @pytest.mark.asyncio
    async def test_no_input(self):
        outcome = await TextEditorDispatcher().dispatch(make_node(NodeType.TEXT_EDITOR), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "No input text"


class TestDocumentSplitter:
    """Tests for DocumentSplitterDispatcher."""

    @pytest.mark.asyncio
    async def test_paragraphs(self):
        text = "First para.\n\n  Second para.  \n \nThird"
        outcome = await DocumentSplitterDispatcher().dispatch(make_node(NodeType.DOCUMENT_SPLITTER), {"text": text})

        assert [chunk["text"] for chunk in outcome.outputs["chunks"]] == ["First para.", "Second para.", "Third"]
        assert outcome.outputs["chunks"][1] == {"text": "Second para.", "index": 1, "length": 12}
        assert outcome.outputs["chunkCount"] == 3
        assert outcome.outputs["totalLength"] == 37

    @pytest.mark.asyncio
    async def test_sentences_keep_punctuation(self):
        node = make_node(NodeType.DOCUMENT_SPLITTER, {"splitBy": "sentence"})
        outcome = await DocumentSplitterDispatcher().dispatch(node, {"text": "Hi there. How are you? Fine!"})

        assert [chunk["text"] for chunk in outcome.outputs["chunks"]] == ["Hi there.", "How are you?", "Fine!"]

    @pytest.mark.asyncio
    async def test_character_windows_overlap(self):
        node = make_node(NodeType.DOCUMENT_SPLITTER, {"splitBy": "character", "chunkSize": 4, "chunkOverlap": 1})
        outcome = await DocumentSplitterDispatcher().dispatch(node, {"text": "abcdefghij"})

        assert [chunk["text"] for chunk in outcome.outputs["chunks"]] == ["abcd", "defg", "ghij"]
        assert outcome.metadata["chunk_size"] == 4

    @pytest.mark.asyncio
    async def test_token_windows(self):
        node = make_node(NodeType.DOCUMENT_SPLITTER, {"splitBy": "token", "chunkSize": 2, "chunkOverlap": 0})
        outcome = await DocumentSplitterDispatcher().dispatch(node, {"text": "aaaabbbbcccc"})

        assert [chunk["text"] for chunk in outcome.outputs["chunks"]] == ["aaaabbbb", "cccc"]

    @pytest.mark.asyncio
    async def test_templated_text(self):
        node = make_node(NodeType.DOCUMENT_SPLITTER, {"text": "{{doc}}"})
        outcome = await DocumentSplitterDispatcher().dispatch(node, {VARIABLES_KEY: {"doc": "a\n\nb"}})

        assert outcome.outputs["chunkCount"] == 2

    @pytest.mark.asyncio
    async def test_empty_text(self):
        outcome = await DocumentSplitterDispatcher().dispatch(make_node(NodeType.DOCUMENT_SPLITTER), {})

        assert isinstance(outcome, Success)
        assert outcome.outputs == {"chunks": [], "chunkCount": 0, "totalLength": 0}

    def test_overlap_must_be_smaller_than_size(self):
        with pytest.raises(NodeConfigError, match="chunkOverlap must be smaller than chunkSize"):
            Workflow.from_dict({
                "id": "wf",
                "nodes": [
                    {"id": "split", "type": "documentSplitter", "data": {"chunkSize": 10, "chunkOverlap": 10}},
                ],
            })


class TestVariableUpdate:
    """Tests for VariableUpdateDispatcher."""

    @pytest.mark.asyncio
    async def test_updates_are_rendered_and_coerced(self):
        node = make_node(NodeType.VARIABLE_UPDATE, {
            "updates": {"count": "5", "ratio": "0.5", "done": "true", "name": "{{user}}"},
        })
        outcome = await VariableUpdateDispatcher().dispatch(node, {"user": "ann"})

        assert outcome.new_variables == {"count": 5, "ratio": 0.5, "done": True, "name": "ann"}
        assert outcome.outputs["success"] is True

    @pytest.mark.asyncio
    async def test_reserved_name(self):
        node = make_node(NodeType.VARIABLE_UPDATE, {"updates": {"__user_id": "x"}})
        outcome = await VariableUpdateDispatcher().dispatch(node, {})

        assert isinstance(outcome, Error)
        assert outcome.message == "Variable name is reserved: __user_id"


# =============================================================================
# Interactive Tests
# =============================================================================


class TestInteractive:
    """Tests for InteractiveDispatcher."""

    @pytest.mark.asyncio
    async def test_first_dispatch_suspends(self):
        node = make_node(NodeType.USER_SELECT, {
            "prompt": "Pick one, {{name}}",
            "options": [{"label": "A", "value": "a"}, {"label": "B", "value": "b"}],
        })
        dispatcher = InteractiveDispatcher(InteractionKind.USER_SELECT)

        outcome = await dispatcher.dispatch(node, {"name": "Ada"})

        assert isinstance(outcome, Suspended)
        assert outcome.interaction.kind == InteractionKind.USER_SELECT
        assert outcome.interaction.prompt == "Pick one, Ada"
        assert outcome.partial_outputs["waitingForInteraction"] is True
        assert outcome.interaction_id

    @pytest.mark.asyncio
    async def test_default_prompt(self):
        outcome = await InteractiveDispatcher(InteractionKind.TEXT_INPUT).dispatch(
            make_node(NodeType.TEXT_INPUT), {}
        )
        assert outcome.interaction.prompt == "Please enter text:"

    @pytest.mark.asyncio
    async def test_resume_valid_selection(self):
        node = make_node(NodeType.USER_SELECT, {"options": ["a", "b"]})
        outcome = await InteractiveDispatcher(InteractionKind.USER_SELECT).dispatch(
            node, {SYS_RESUMING: True, SYS_INTERACTION_RESPONSE: "a"}
        )

        assert isinstance(outcome, Success)
        assert outcome.outputs["selected"] == "a"
        assert outcome.outputs["interactionCompleted"] is True

    @pytest.mark.asyncio
    async def test_resume_invalid_selection(self):
        node = make_node(NodeType.USER_SELECT, {"options": ["a", "b"]})
        outcome = await InteractiveDispatcher(InteractionKind.USER_SELECT).dispatch(
            node, {SYS_RESUMING: True, SYS_INTERACTION_RESPONSE: "c"}
        )

        assert isinstance(outcome, Error)
        assert outcome.message == "Invalid selection: c"

    @pytest.mark.asyncio
    async def test_resume_form_missing_required(self):
        node = make_node(NodeType.FORM_INPUT, {
            "fields": [
                {"key": "name", "required": True},
                {"key": "email", "required": True},
            ],
        })
        outcome = await InteractiveDispatcher(InteractionKind.FORM_INPUT).dispatch(
            node, {SYS_RESUMING: True, SYS_INTERACTION_RESPONSE: {"name": "Ada"}}
        )

        assert isinstance(outcome, Error)
        assert outcome.message == "Missing required fields: email"

    @pytest.mark.asyncio
    async def test_resume_form(self):
        node = make_node(NodeType.FORM_INPUT, {"fields": [{"key": "name", "required": True}]})
        outcome = await InteractiveDispatcher(InteractionKind.FORM_INPUT).dispatch(
            node, {SYS_RESUMING: True, SYS_INTERACTION_RESPONSE: {"name": "Ada"}}
        )

        assert outcome.outputs["formData"] == {"name": "Ada"}
        assert outcome.outputs["name"] == "Ada"

    @pytest.mark.asyncio
    async def test_resume_confirmation(self):
        dispatcher = InteractiveDispatcher(InteractionKind.CONFIRMATION)
        node = make_node(NodeType.CONFIRMATION)

        yes = await dispatcher.dispatch(node, {SYS_RESUMING: True, SYS_INTERACTION_RESPONSE: "Yes"})
        no = await dispatcher.dispatch(node, {SYS_RESUMING: True, SYS_INTERACTION_RESPONSE: False})

        assert yes.outputs["confirmed"] is True
        assert no.outputs["confirmed"] is False

    @pytest.mark.asyncio
    async def test_resume_file_upload(self):
        outcome = await InteractiveDispatcher(InteractionKind.FILE_UPLOAD).dispatch(
            make_node(NodeType.FILE_UPLOAD),
            {SYS_RESUMING: True, SYS_INTERACTION_RESPONSE: {"files": "report.pdf"}},
        )
        assert outcome.outputs["files"] == ["report.pdf"]


# =============================================================================
# Content Tests
# =============================================================================


class FakeChatClient(ChatModelClient):
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    async def stream_chat(self, messages, *, model, temperature, max_tokens=None):
        self.calls.append({"messages": messages, "model": model})
        yield ChatChunk(text="Hello ")
        yield ChatChunk(text="there", usage=ChatUsage(input_tokens=10, output_tokens=5, cost=0.002))


class FakeRetriever(DatasetRetriever):
    async def search(self, query, *, dataset_ids, limit, similarity):
        return [{"q": query, "dataset": dataset_ids[0], "score": 0.9}][:limit]


class TestChat:
    """Tests for ChatDispatcher."""

    @pytest.mark.asyncio
    async def test_streams_and_reports_usage(self):
        client = FakeChatClient()
        chunks: List[Any] = []
        session = StreamSession(lambda text, is_last: chunks.append(text))
        node = make_node(NodeType.CHAT, {"model": "m1", "systemPrompt": "Be brief"})

        with bind_stream(session):
            outcome = await ChatDispatcher(client).dispatch(node, {"userChatInput": "Hi"})

        assert outcome.outputs["answerText"] == "Hello there"
        assert outcome.outputs["history"][-1] == {"role": "assistant", "content": "Hello there"}
        assert outcome.metadata["total_tokens"] == 15
        assert outcome.metadata["cost"] == 0.002
        assert chunks == ["Hello ", "there"]
        assert client.calls[0]["messages"][0] == {"role": "system", "content": "Be brief"}

    @pytest.mark.asyncio
    async def test_empty_prompt(self):
        outcome = await ChatDispatcher(FakeChatClient()).dispatch(make_node(NodeType.CHAT), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "No prompt provided"


class TestDatasetSearch:
    """Tests for DatasetSearchDispatcher."""

    @pytest.mark.asyncio
    async def test_search(self):
        node = make_node(NodeType.DATASET_SEARCH, {"datasetIds": ["kb1"], "limit": 3})
        outcome = await DatasetSearchDispatcher(FakeRetriever()).dispatch(node, {"userChatInput": "refunds"})

        assert outcome.outputs["isEmpty"] is False
        assert outcome.outputs["quoteList"][0]["q"] == "refunds"

    @pytest.mark.asyncio
    async def test_no_datasets(self):
        node = make_node(NodeType.DATASET_SEARCH)
        outcome = await DatasetSearchDispatcher(FakeRetriever()).dispatch(node, {"userChatInput": "x"})

        assert outcome.outputs == {"quoteList": [], "isEmpty": True}

    @pytest.mark.asyncio
    async def test_no_query(self):
        outcome = await DatasetSearchDispatcher(FakeRetriever()).dispatch(make_node(NodeType.DATASET_SEARCH), {})

        assert isinstance(outcome, Error)
        assert outcome.message == "No search query"


class TestDatasetConcat:
    """Tests for DatasetConcatDispatcher."""

    @pytest.mark.asyncio
    async def test_merges_and_deduplicates(self):
        first = [{"id": "1", "text": "alpha"}, {"id": "2", "text": "beta"}]
        second = [{"id": "2", "text": "beta again"}, {"text": "gamma"}]

        outcome = await DatasetConcatDispatcher().dispatch(
            make_node(NodeType.DATASET_CONCAT), {"searchResults": [first, second]}
        )

        assert [result["text"] for result in outcome.outputs["searchResults"]] == ["alpha", "beta", "gamma"]
        assert outcome.outputs["context"] == "alpha\n\nbeta\n\ngamma"
        assert outcome.outputs["isEmpty"] is False
        assert outcome.metadata["input_count"] == 4

    @pytest.mark.asyncio
    async def test_single_list_and_limit(self):
        results = [{"id": str(i), "text": f"t{i}"} for i in range(5)]
        node = make_node(NodeType.DATASET_CONCAT, {"limit": 2})

        outcome = await DatasetConcatDispatcher().dispatch(node, {"searchResults": results})

        assert outcome.outputs["context"] == "t0\n\nt1"

    @pytest.mark.asyncio
    async def test_nothing_to_merge(self):
        outcome = await DatasetConcatDispatcher().dispatch(make_node(NodeType.DATASET_CONCAT), {"searchResults": "x"})

        assert outcome.outputs == {"searchResults": [], "context": "", "isEmpty": True}
