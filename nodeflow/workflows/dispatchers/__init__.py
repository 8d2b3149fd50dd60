"""
Built-in Node Dispatchers

One dispatcher per built-in node type. Content dispatchers take their
external collaborator (model client, retriever) in the constructor.
"""

from .base import NodeDispatcher
from .passthrough import AnswerDispatcher, PassThroughDispatcher, WorkflowStartDispatcher
from .condition import IfElseDispatcher
from .loop import LoopEndDispatcher, LoopStartDispatcher
from .http import HttpRequestDispatcher
from .code import CodeDispatcher
from .interactive import InteractiveDispatcher
from .text import DocumentSplitterDispatcher, TextEditorDispatcher, VariableUpdateDispatcher
from .content import (
    ChatChunk,
    ChatDispatcher,
    ChatModelClient,
    ChatUsage,
    DatasetConcatDispatcher,
    DatasetRetriever,
    DatasetSearchDispatcher,
)

__all__ = [
    # Contract
    "NodeDispatcher",
    # Flow
    "WorkflowStartDispatcher",
    "PassThroughDispatcher",
    "AnswerDispatcher",
    "IfElseDispatcher",
    "LoopStartDispatcher",
    "LoopEndDispatcher",
    # Integration
    "HttpRequestDispatcher",
    "CodeDispatcher",
    "InteractiveDispatcher",
    # Utilities
    "TextEditorDispatcher",
    "DocumentSplitterDispatcher",
    "VariableUpdateDispatcher",
    # Content
    "ChatDispatcher",
    "ChatModelClient",
    "ChatChunk",
    "ChatUsage",
    "DatasetSearchDispatcher",
    "DatasetConcatDispatcher",
    "DatasetRetriever",
]
