"""
Flow Models — the node graph a conversation is walked through.

A FlowDefinition is a directed graph of typed nodes:
  - start            entry point, no side effects
  - message          send a templated text
  - question         ask (text / buttons / list) and pause for the reply
  - condition        branch on a predicate over the variable store
  - external_call    HTTP request whose outcome is stored as data
  - calendar_lookup  availability slots from the calendar collaborator
  - form             dispatch an interactive form and pause until submitted

Nodes are a closed tagged union on `kind`; each variant carries its own
config model. Edges connect nodes and may carry a `sourceHandle` that
disambiguates branches (button id, list row id, "true"/"false", ...).
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from models.schemas import OutboundMessage, UserInput

DEFAULT_HANDLE = "default"


class NodeKind(str, Enum):
    START = "start"
    MESSAGE = "message"
    QUESTION = "question"
    CONDITION = "condition"
    EXTERNAL_CALL = "external_call"
    CALENDAR_LOOKUP = "calendar_lookup"
    FORM = "form"


class _Config(BaseModel):
    """Node configs accept both snake_case and the editor's camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ──────────────────────────────────────────────────────────────
#  Per-kind configuration
# ──────────────────────────────────────────────────────────────

class StartConfig(_Config):
    pass


class MessageConfig(_Config):
    text: str = Field("", validation_alias=AliasChoices("text", "message", "content"))


class ButtonOption(_Config):
    id: str = ""
    title: str = ""


class ListOption(_Config):
    id: str = ""
    title: str = ""
    description: str = ""


class QuestionConfig(_Config):
    text: str = Field("", validation_alias=AliasChoices("text", "question", "prompt"))
    variable: str = ""                             # where the reply is stored
    question_type: Literal["text", "buttons", "list"] = "text"
    buttons: list[ButtonOption] = Field(default_factory=list)
    list_items: list[ListOption] = Field(default_factory=list)
    list_button_text: str = "Select"
    header: str = ""
    footer: str = ""
    dynamic_source: str = ""                       # variable path holding an array of options
    dynamic_id_field: str = "id"
    dynamic_label_field: str = ""
    dynamic_description_field: str = ""


class ConditionConfig(_Config):
    variable: str = Field("", validation_alias=AliasChoices("variable", "conditionVar", "condition_var"))
    operator: str = Field("eq", validation_alias=AliasChoices("operator", "conditionOp", "condition_op"))
    value: Any = Field(None, validation_alias=AliasChoices("value", "conditionVal", "condition_val"))

    @model_validator(mode="before")
    @classmethod
    def _flatten_predicate(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("predicate"), dict):
            merged = dict(data)
            merged.update(data["predicate"])
            merged.pop("predicate")
            return merged
        return data


class ExternalCallConfig(_Config):
    url: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: Optional[float] = None                # milliseconds; engine default when unset
    response_path: str = ""                        # dotted path selecting part of the JSON body
    output_variable: str = ""
    error_variable: str = ""


class CalendarLookupConfig(_Config):
    source_type: Literal["owner", "static", "variable"] = "owner"
    user_id: str = ""                              # static source
    user_variable: str = ""                        # template for the variable source
    date: str = ""                                 # template, ISO date; today when empty
    work_start: str = ""
    work_end: str = ""
    slot_duration: Optional[int] = Field(None, gt=0)   # minutes
    output_variable: str = ""


class FormConfig(_Config):
    form_id: str = Field(..., validation_alias=AliasChoices("formId", "form_id", "flowId", "flow_id"))
    mode: Literal["draft", "published"] = "published"
    cta: str = "Start"
    body: str = ""
    header: str = ""
    footer: str = ""
    initial_screen: str = ""
    initial_data: dict[str, Any] = Field(default_factory=dict)
    output_variable: str = ""


# ──────────────────────────────────────────────────────────────
#  Nodes - tagged union on `kind`
# ──────────────────────────────────────────────────────────────

class _NodeBase(BaseModel):
    id: str
    label: str = ""


class StartNode(_NodeBase):
    kind: Literal["start"] = "start"
    config: StartConfig = Field(default_factory=StartConfig)


class MessageNode(_NodeBase):
    kind: Literal["message"] = "message"
    config: MessageConfig


class QuestionNode(_NodeBase):
    kind: Literal["question"] = "question"
    config: QuestionConfig


class ConditionNode(_NodeBase):
    kind: Literal["condition"] = "condition"
    config: ConditionConfig


class ExternalCallNode(_NodeBase):
    kind: Literal["external_call"] = "external_call"
    config: ExternalCallConfig


class CalendarLookupNode(_NodeBase):
    kind: Literal["calendar_lookup"] = "calendar_lookup"
    config: CalendarLookupConfig = Field(default_factory=CalendarLookupConfig)


class FormNode(_NodeBase):
    kind: Literal["form"] = "form"
    config: FormConfig


FlowNode = Annotated[
    Union[StartNode, MessageNode, QuestionNode, ConditionNode,
          ExternalCallNode, CalendarLookupNode, FormNode],
    Field(discriminator="kind"),
]


class FlowEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = Field(None, alias="sourceHandle")


# ──────────────────────────────────────────────────────────────
#  Flow Definition
# ──────────────────────────────────────────────────────────────

class FlowDefinition(BaseModel):
    """A versioned node graph. Treat as immutable once saved."""
    id: str
    name: str = ""
    version: int = 1
    owner_id: str = ""                             # identity used by owner-sourced calendar lookups
    is_active: bool = False
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)

    def get_node(self, node_id: Optional[str]):
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def start_node(self):
        for node in self.nodes:
            if node.kind == NodeKind.START:
                return node
        return None

    def out_edges(self, source: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == source]

    def find_next(self, source: str, handle: Optional[str] = None, strict: bool = False) -> Optional[str]:
        """
        Pick the target of the edge leaving `source` for `handle`.

        Exact handle match first; then, unless `strict`, the unlabeled
        (or "default") edge; with no handle asked for, a sole outgoing
        edge is taken whatever its label.
        """
        edges = self.out_edges(source)
        if handle is not None:
            for edge in edges:
                if edge.source_handle == handle:
                    return edge.target
            if strict:
                return None
        for edge in edges:
            if edge.source_handle in (None, "", DEFAULT_HANDLE):
                return edge.target
        if handle is None and len(edges) == 1:
            return edges[0].target
        return None


# ──────────────────────────────────────────────────────────────
#  Executor I/O
# ──────────────────────────────────────────────────────────────

class NodeContext(BaseModel):
    """Everything an executor may look at besides its config and the variables."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    flow: FlowDefinition
    node_id: str
    state_key: str                                 # conversation id or test session id
    output_name: str = ""                          # auto-generated output variable (question_1, ...)
    user_input: Optional[UserInput] = None         # set only on resumption
    is_test_session: bool = False
    customer_phone: str = ""


class _Result(BaseModel):
    sends: list[OutboundMessage] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)   # updates merged into the store


class Advance(_Result):
    next_node_id: Optional[str] = None             # None: nothing follows, flow completes


class Pause(_Result):
    input_spec: dict[str, Any] = Field(default_factory=dict)


class Fail(_Result):
    reason: str


StepResult = Union[Advance, Pause, Fail]
