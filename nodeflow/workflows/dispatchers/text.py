"""
Text and Variable Dispatchers

- TextEditorDispatcher: string transformations on a single text input
- DocumentSplitterDispatcher: cuts long text into indexed chunks
- VariableUpdateDispatcher: writes resolved values into the run's
  user variables
"""

import logging
import re
from typing import Any, Dict, List

from ..nodes import DocumentSplitterConfig, Node, NodeType, TextEditorConfig, VariableUpdateConfig
from ..outcome import Error, NodeOutcome, Success
from ..state import is_system_key
from ..template import build_scope, render, render_text
from .base import NodeDispatcher

logger = logging.getLogger(__name__)


INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
FLOAT_PATTERN = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")

PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
SENTENCE_END = re.compile(r"(?<=[.!?。？！])\s*")

# Rough characters-per-token ratio for the token splitter
CHARS_PER_TOKEN = 4


def coerce_scalar(value: Any) -> Any:
    """Convert numeric and boolean strings to their native types."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if INTEGER_PATTERN.match(text):
        return int(text)
    if FLOAT_PATTERN.match(text):
        return float(text)
    return value


class TextEditorDispatcher(NodeDispatcher):
    """
    Dispatcher for ``textEditor``.

    Steps are applied in a fixed order: trim, regex replace, literal
    replacements, case, substring, split/join, prefix/suffix. When
    ``splitDelimiter`` is set the pieces are also output as ``parts`` and
    the text becomes the pieces joined by ``joinDelimiter``.
    """

    node_type = NodeType.TEXT_EDITOR.value
    config_model = TextEditorConfig

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: TextEditorConfig = node.config
        scope = build_scope(inputs)

        if config.text:
            text = render_text(config.text, scope)
        else:
            value = inputs.get("text", inputs.get("input"))
            text = "" if value is None else str(value)

        if not text:
            return Error(message="No input text")

        outputs: Dict[str, Any] = {}

        if config.trim:
            text = text.strip()

        if config.regex:
            try:
                text = re.sub(config.regex, config.regex_replacement, text)
            except re.error as e:
                return Error(message=f"Invalid regular expression: {e}")

        for rule in config.replace:
            if rule.pattern:
                text = text.replace(rule.pattern, render_text(rule.replacement, scope))

        if config.case == "upper":
            text = text.upper()
        elif config.case == "lower":
            text = text.lower()
        elif config.case == "title":
            text = text.title()

        if config.substring_start is not None or config.substring_end is not None:
            text = text[config.substring_start:config.substring_end]

        if config.split_delimiter:
            parts = text.split(config.split_delimiter)
            outputs["parts"] = parts
            text = config.join_delimiter.join(parts)

        text = f"{render_text(config.prefix, scope)}{text}{render_text(config.suffix, scope)}"

        outputs["text"] = text
        outputs["length"] = len(text)
        return Success(outputs=outputs)


def sliding_windows(text: str, size: int, overlap: int) -> List[str]:
    """Fixed-size windows; the last one ends at the end of the text."""
    windows = []
    step = size - overlap
    for start in range(0, len(text), step):
        windows.append(text[start:start + size])
        if start + size >= len(text):
            break
    return windows


def split_text(text: str, split_by: str, chunk_size: int, chunk_overlap: int) -> List[str]:
    if split_by == "sentence":
        pieces = SENTENCE_END.split(text)
    elif split_by == "character":
        return sliding_windows(text, chunk_size, chunk_overlap)
    elif split_by == "token":
        return sliding_windows(text, chunk_size * CHARS_PER_TOKEN, chunk_overlap * CHARS_PER_TOKEN)
    else:
        pieces = PARAGRAPH_BREAK.split(text)
    return [piece.strip() for piece in pieces if piece.strip()]


class DocumentSplitterDispatcher(NodeDispatcher):
    """
    Dispatcher for ``documentSplitter``.

    ``paragraph`` splits on blank lines and ``sentence`` after sentence
    punctuation; both ignore the size settings. ``character`` and
    ``token`` cut overlapping windows of ``chunkSize`` characters or
    estimated tokens.
    """

    node_type = NodeType.DOCUMENT_SPLITTER.value
    config_model = DocumentSplitterConfig

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: DocumentSplitterConfig = node.config

        if config.text:
            text = render_text(config.text, build_scope(inputs))
        else:
            value = inputs.get("text", inputs.get("input"))
            text = "" if value is None else str(value)

        pieces = split_text(text, config.split_by, config.chunk_size, config.chunk_overlap) if text else []
        chunks = [
            {"text": piece, "index": index, "length": len(piece)}
            for index, piece in enumerate(pieces)
        ]

        logger.debug(f"Document splitter node {node.id} produced {len(chunks)} chunks by {config.split_by}")

        return Success(
            outputs={"chunks": chunks, "chunkCount": len(chunks), "totalLength": len(text)},
            metadata={
                "split_by": config.split_by,
                "chunk_size": config.chunk_size,
                "chunk_overlap": config.chunk_overlap,
            },
        )


class VariableUpdateDispatcher(NodeDispatcher):
    """
    Dispatcher for ``variableUpdate``.

    Each entry of ``updates`` is resolved against the input scope
    (``{{var}}`` references keep the referenced value's type) and string
    results that look numeric or boolean are coerced.
    """

    node_type = NodeType.VARIABLE_UPDATE.value
    config_model = VariableUpdateConfig

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: VariableUpdateConfig = node.config
        scope = build_scope(inputs)

        updated: Dict[str, Any] = {}
        for name, raw in config.updates.items():
            if is_system_key(name):
                return Error(message=f"Variable name is reserved: {name}")
            updated[name] = coerce_scalar(render(raw, scope))

        logger.debug(f"Variable update node {node.id} set {sorted(updated)}")

        return Success(
            outputs={"success": True, "updatedVariables": updated},
            new_variables=updated,
        )
