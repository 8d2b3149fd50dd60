"""
Workflow Node Types

Defines the node definitions a workflow is built from:
- NodeType: identifiers of the built-in node kinds
- Node: a single typed step (immutable once a run starts)
- Typed configuration models for each built-in kind

Node kinds not listed in NodeType are accepted as plain strings so new
dispatchers can be registered at startup; their configuration stays a
generic key-value bag.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic.alias_generators import to_camel


class NodeType(str, Enum):
    """Types of workflow nodes."""
    WORKFLOW_START = "workflowStart"
    PLUGIN_OUTPUT = "pluginOutput"
    EMPTY = "emptyNode"
    ANSWER = "answerNode"
    CHAT = "chatNode"
    DATASET_SEARCH = "datasetSearchNode"
    HTTP_REQUEST = "httpRequest468"
    CODE = "code"
    IF_ELSE = "ifElseNode"
    LOOP_START = "loopStart"
    LOOP_END = "loopEnd"
    VARIABLE_UPDATE = "variableUpdate"
    TEXT_EDITOR = "textEditor"
    DOCUMENT_SPLITTER = "documentSplitter"
    DATASET_CONCAT = "datasetConcatNode"
    USER_SELECT = "userSelect"
    FORM_INPUT = "formInput"
    TEXT_INPUT = "textInput"
    CONFIRMATION = "confirmation"
    FILE_UPLOAD = "fileUpload"
    CUSTOM_FEEDBACK = "customFeedback"


class NodeStatus(str, Enum):
    """Execution status of a node."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WAITING = "waiting"  # Suspended for an interaction


# =============================================================================
# Node Configuration
# =============================================================================


class NodeConfig(BaseModel):
    """
    Base configuration model.

    Keys are camelCase on the wire and snake_case in Python. Unknown keys
    are kept so dynamic extension points survive parsing.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class AnswerConfig(NodeConfig):
    text: str = ""


class ConditionClause(NodeConfig):
    """Single structured comparison: ``{field, operator, value}``."""
    field: str
    operator: str = "=="
    value: Any = None


class IfElseConfig(NodeConfig):
    condition: str = ""
    conditions: List[ConditionClause] = Field(default_factory=list)
    logic: Literal["and", "or"] = "and"


class LoopStartConfig(NodeConfig):
    loop_type: Literal["forEach", "while"] = "forEach"
    list_key: str = "items"
    loop_variable: str = "item"
    max_iterations: Optional[int] = None
    condition: str = ""

    @field_validator("max_iterations")
    @classmethod
    def validate_max_iterations(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("maxIterations must be at least 1")
        return v


class LoopEndConfig(NodeConfig):
    loop_start_id: str


class HttpRequestConfig(NodeConfig):
    url: str = ""
    method: str = "GET"
    headers: Dict[str, Any] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    content_type: str = "application/json"
    timeout: Optional[int] = None  # milliseconds


class CodeConfig(NodeConfig):
    code: str = ""
    code_type: str = "python"
    timeout: Optional[int] = None  # milliseconds
    variables: Optional[List[str]] = None  # Allow-list of context variables


class FormField(NodeConfig):
    key: str
    label: str = ""
    type: str = "string"
    required: bool = False


class InteractionConfig(NodeConfig):
    prompt: Optional[str] = None
    options: List[Any] = Field(default_factory=list)
    fields: List[FormField] = Field(default_factory=list)
    validation_rules: Dict[str, Any] = Field(default_factory=dict)
    default_value: Any = None


class VariableUpdateConfig(NodeConfig):
    updates: Dict[str, Any] = Field(default_factory=dict)


class ReplaceRule(NodeConfig):
    pattern: str = ""
    replacement: str = ""


class TextEditorConfig(NodeConfig):
    text: str = ""
    trim: bool = False
    case: Optional[Literal["upper", "lower", "title"]] = None
    replace: List[ReplaceRule] = Field(default_factory=list)
    prefix: str = ""
    suffix: str = ""
    split_delimiter: str = ""
    join_delimiter: str = ""
    regex: str = ""
    regex_replacement: str = ""
    substring_start: Optional[int] = None
    substring_end: Optional[int] = None


class DocumentSplitterConfig(NodeConfig):
    text: str = ""
    split_by: Literal["paragraph", "sentence", "character", "token"] = "paragraph"
    chunk_size: int = Field(default=500, ge=1)
    chunk_overlap: int = Field(default=50, ge=0)

    @model_validator(mode="after")
    def validate_overlap(self) -> "DocumentSplitterConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunkOverlap must be smaller than chunkSize")
        return self


class ChatConfig(NodeConfig):
    model: str = ""
    system_prompt: str = ""
    prompt: str = "{{userChatInput}}"
    temperature: float = 0.7
    max_tokens: Optional[int] = None


class DatasetSearchConfig(NodeConfig):
    dataset_ids: List[str] = Field(default_factory=list)
    query: str = "{{userChatInput}}"
    limit: int = 5
    similarity: float = 0.0


class DatasetConcatConfig(NodeConfig):
    limit: Optional[int] = Field(default=None, ge=1)


CONFIG_MODELS: Dict[str, Type[NodeConfig]] = {
    NodeType.ANSWER.value: AnswerConfig,
    NodeType.IF_ELSE.value: IfElseConfig,
    NodeType.LOOP_START.value: LoopStartConfig,
    NodeType.LOOP_END.value: LoopEndConfig,
    NodeType.HTTP_REQUEST.value: HttpRequestConfig,
    NodeType.CODE.value: CodeConfig,
    NodeType.USER_SELECT.value: InteractionConfig,
    NodeType.FORM_INPUT.value: InteractionConfig,
    NodeType.TEXT_INPUT.value: InteractionConfig,
    NodeType.CONFIRMATION.value: InteractionConfig,
    NodeType.FILE_UPLOAD.value: InteractionConfig,
    NodeType.CUSTOM_FEEDBACK.value: InteractionConfig,
    NodeType.VARIABLE_UPDATE.value: VariableUpdateConfig,
    NodeType.TEXT_EDITOR.value: TextEditorConfig,
    NodeType.DOCUMENT_SPLITTER.value: DocumentSplitterConfig,
    NodeType.DATASET_CONCAT.value: DatasetConcatConfig,
    NodeType.CHAT.value: ChatConfig,
    NodeType.DATASET_SEARCH.value: DatasetSearchConfig,
}


def parse_node_config(node_type: str, data: Dict[str, Any]) -> NodeConfig:
    """
    Parse a node's raw data into its typed configuration model.

    Raises:
        pydantic.ValidationError: If the data does not fit the model
    """
    model = CONFIG_MODELS.get(node_type, NodeConfig)
    return model.model_validate(data)


# =============================================================================
# Node
# =============================================================================


class Node(BaseModel):
    """
    A single typed step in a workflow graph.

    Flags:
    - is_entry: valid starting point of a run
    - is_required: an error fails the whole run (False = continue on error)
    - is_output: outputs are part of the run result
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    id: str
    type: str
    name: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    is_entry: bool = False
    is_required: bool = True
    is_output: bool = False

    # Execution limits
    timeout: Optional[float] = None  # seconds
    max_retries: int = 0
    retry_delay: float = 1.0

    _config: NodeConfig = PrivateAttr()

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, Enum):
            return v.value
        return v

    def model_post_init(self, __context: Any) -> None:
        self._config = parse_node_config(self.type, self.data)

    @property
    def config(self) -> NodeConfig:
        """Typed configuration for built-in kinds, generic bag otherwise."""
        return self._config
