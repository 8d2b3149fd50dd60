"""
Interactive Dispatchers

Human-in-the-loop nodes. The first dispatch suspends the run with an
InteractionRequest; when the run is resumed the same node is dispatched
again with the user's response under ``__interaction_response`` and
turns it into regular outputs.
"""

import logging
from typing import Any, Dict, List

from ..nodes import InteractionConfig, Node
from ..outcome import Error, InteractionKind, InteractionRequest, NodeOutcome, Success, Suspended
from ..state import SYS_INTERACTION_RESPONSE, SYS_RESUMING
from ..template import build_scope, render, render_text
from .base import NodeDispatcher

logger = logging.getLogger(__name__)


DEFAULT_PROMPTS = {
    InteractionKind.USER_SELECT: "Please select an option:",
    InteractionKind.FORM_INPUT: "Please fill in the form:",
    InteractionKind.TEXT_INPUT: "Please enter text:",
    InteractionKind.CONFIRMATION: "Please confirm:",
    InteractionKind.FILE_UPLOAD: "Please upload files:",
    InteractionKind.CUSTOM_FEEDBACK: "Please provide feedback:",
}

TRUTHY_STRINGS = {"true", "yes", "y", "1", "ok", "confirm", "confirmed"}


def _option_value(option: Any) -> Any:
    if isinstance(option, dict):
        return option.get("value", option.get("label"))
    return option


class InteractiveDispatcher(NodeDispatcher):
    """
    Dispatcher for one interaction kind.

    Registered once per kind: userSelect, formInput, textInput,
    confirmation, fileUpload and customFeedback.
    """

    config_model = InteractionConfig

    def __init__(self, kind: InteractionKind):
        self.kind = InteractionKind(kind)
        self.node_type = self.kind.value

    async def dispatch(self, node: Node, inputs: Dict[str, Any]) -> NodeOutcome:
        config: InteractionConfig = node.config

        if inputs.get(SYS_RESUMING):
            return self._complete(node, config, inputs.get(SYS_INTERACTION_RESPONSE))

        scope = build_scope(inputs)
        prompt = render_text(config.prompt, scope) if config.prompt else DEFAULT_PROMPTS[self.kind]
        options = render(config.options, scope)

        request = InteractionRequest(
            kind=self.kind,
            prompt=prompt,
            options=options,
            fields=[field.model_dump() for field in config.fields],
            validation_rules=config.validation_rules,
            default_value=config.default_value,
        )

        logger.info(f"Node {node.id} waiting for {self.kind.value} interaction")

        return Suspended(
            interaction=request,
            partial_outputs={
                "waitingForInteraction": True,
                "interactionType": self.kind.value,
                "interactionPrompt": prompt,
                "interactionOptions": options,
            },
        )

    def _complete(self, node: Node, config: InteractionConfig, response: Any) -> NodeOutcome:
        if response is None:
            response = config.default_value

        outputs: Dict[str, Any] = {"userResponse": response, "interactionCompleted": True}

        if self.kind == InteractionKind.USER_SELECT:
            selected = response.get("selected", response.get("value")) if isinstance(response, dict) else response
            allowed = [_option_value(option) for option in config.options]
            values = selected if isinstance(selected, list) else [selected]
            if allowed and any(value not in allowed for value in values):
                return Error(message=f"Invalid selection: {selected}")
            outputs["selected"] = selected

        elif self.kind == InteractionKind.FORM_INPUT:
            form_data = response if isinstance(response, dict) else {}
            missing = [
                field.key for field in config.fields
                if field.required and form_data.get(field.key) in (None, "")
            ]
            if missing:
                return Error(message=f"Missing required fields: {', '.join(missing)}")
            outputs["formData"] = form_data
            for key, value in form_data.items():
                outputs.setdefault(key, value)

        elif self.kind == InteractionKind.TEXT_INPUT:
            text = response.get("text", "") if isinstance(response, dict) else response
            outputs["text"] = "" if text is None else str(text)

        elif self.kind == InteractionKind.CONFIRMATION:
            outputs["confirmed"] = self._to_bool(response)

        elif self.kind == InteractionKind.FILE_UPLOAD:
            files = response.get("files", []) if isinstance(response, dict) else response
            outputs["files"] = self._to_list(files)

        elif self.kind == InteractionKind.CUSTOM_FEEDBACK:
            feedback = response.get("feedback", response) if isinstance(response, dict) else response
            outputs["feedback"] = feedback

        logger.info(f"Node {node.id} completed {self.kind.value} interaction")
        return Success(outputs=outputs)

    @staticmethod
    def _to_bool(response: Any) -> bool:
        if isinstance(response, dict):
            response = response.get("confirmed", response.get("value"))
        if isinstance(response, str):
            return response.strip().lower() in TRUTHY_STRINGS
        return bool(response)

    @staticmethod
    def _to_list(value: Any) -> List[Any]:
        if value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]
