# /convoflow/models/flow.py

import json
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PrivateAttr, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from convoflow.flows.errors import FlowDefinitionError

# Flow definitions as produced by the visual flow editor. The persisted JSON is
# {"nodes": [...], "edges": [...]}; every node's "data" blob is parsed into the
# payload model of its node type when the definition is loaded.


class NodeType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    BUTTONS = "buttons"
    CAROUSEL = "carousel"
    USER_INPUT = "userInput"
    CONDITION = "condition"
    ACTION = "action"


class ActionType(str, Enum):
    API_CALL = "api_call"
    SET_VARIABLE = "set_variable"
    CREATE_LEAD = "create_lead"


def _editor_text(value: Any) -> Optional[str]:
    """Scalar editor fields arrive as whatever JSON type the browser produced."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return None


def _editor_number(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def _editor_items(value: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(value, list):
        return None
    return [item for item in value if isinstance(item, dict)]


# A wrong JSON type in one node must not reject the whole definition.
EditorText = Annotated[Optional[str], BeforeValidator(_editor_text)]
RequiredText = Annotated[str, BeforeValidator(lambda value: _editor_text(value) or "")]
EditorNumber = Annotated[float, BeforeValidator(_editor_number)]
EditorItems = Annotated[Optional[List[Dict[str, Any]]], BeforeValidator(_editor_items)]


class EditorModel(BaseModel):
    """camelCase on the wire, snake_case in Python; unknown editor keys are kept."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


# ---------------- Node payloads ---------------- #

class NodeData(EditorModel):
    label: EditorText = None


class TextNodeData(NodeData):
    message_text: EditorText = None


class ImageNodeData(NodeData):
    image_url: EditorText = None
    alt_text: EditorText = None


class ButtonSpec(EditorModel):
    id: RequiredText = ""
    label: RequiredText = ""
    payload: EditorText = None


class ButtonsNodeData(NodeData):
    message_text: EditorText = None
    buttons: Annotated[Optional[List[ButtonSpec]], BeforeValidator(_editor_items)] = None


class CarouselNodeData(NodeData):
    carousel_config_text: EditorText = None


class UserInputNodeData(NodeData):
    prompt_text: EditorText = None
    variable_name: EditorText = None


class ConditionNodeData(NodeData):
    variable: EditorText = None
    operator: EditorText = None
    value: EditorText = None


class ApiCallAction(BaseModel):
    kind: Literal["api_call"] = "api_call"
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None


class SetVariableAction(BaseModel):
    kind: Literal["set_variable"] = "set_variable"
    name: str
    value: Any = None


class CreateLeadAction(BaseModel):
    kind: Literal["create_lead"] = "create_lead"


ActionSpec = Union[ApiCallAction, SetVariableAction, CreateLeadAction]


def parse_action(action_type: Optional[str], action_params: Optional[str]) -> Tuple[Optional[ActionSpec], Optional[str]]:
    """
    Turns the editor's (actionType, actionParams) pair into a typed action.

    Returns (action, None) on success and (None, reason) when the node should
    degrade to a no-op.
    """
    if not action_type:
        return None, "missing actionType"
    try:
        kind = ActionType(action_type)
    except ValueError:
        return None, f"action type '{action_type}' is not supported"

    if kind == ActionType.CREATE_LEAD:
        return CreateLeadAction(), None

    if not action_params:
        return None, f"{kind.value} requires actionParams"
    try:
        params = json.loads(action_params)
    except json.JSONDecodeError as e:
        return None, f"actionParams is not valid JSON: {e}"
    if not isinstance(params, dict):
        return None, "actionParams must be a JSON object"

    try:
        if kind == ActionType.API_CALL:
            return ApiCallAction(**params), None
        return SetVariableAction(**params), None
    except (ValidationError, TypeError) as e:
        return None, f"invalid {kind.value} parameters: {e}"


class ActionNodeData(NodeData):
    action_type: EditorText = None
    action_params: EditorText = None

    _action: Optional[ActionSpec] = PrivateAttr(default=None)
    _parse_error: Optional[str] = PrivateAttr(default=None)

    def model_post_init(self, __context: Any) -> None:
        self._action, self._parse_error = parse_action(self.action_type, self.action_params)

    @property
    def action(self) -> Optional[ActionSpec]:
        return self._action

    @property
    def parse_error(self) -> Optional[str]:
        return self._parse_error


# ---------------- Nodes & edges ---------------- #

class Position(BaseModel):
    x: EditorNumber = 0
    y: EditorNumber = 0


class BaseFlowNode(BaseModel):
    id: str
    position: Optional[Position] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_malformed_data(cls, values: Any) -> Any:
        if isinstance(values, dict) and not isinstance(values.get("data", {}), dict):
            return {key: value for key, value in values.items() if key != "data"}
        return values

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)


class TextNode(BaseFlowNode):
    type: Literal["text"]
    data: TextNodeData = Field(default_factory=TextNodeData)


class ImageNode(BaseFlowNode):
    type: Literal["image"]
    data: ImageNodeData = Field(default_factory=ImageNodeData)


class ButtonsNode(BaseFlowNode):
    type: Literal["buttons"]
    data: ButtonsNodeData = Field(default_factory=ButtonsNodeData)


class CarouselNode(BaseFlowNode):
    type: Literal["carousel"]
    data: CarouselNodeData = Field(default_factory=CarouselNodeData)


class UserInputNode(BaseFlowNode):
    type: Literal["userInput"]
    data: UserInputNodeData = Field(default_factory=UserInputNodeData)


class ConditionNode(BaseFlowNode):
    type: Literal["condition"]
    data: ConditionNodeData = Field(default_factory=ConditionNodeData)


class ActionNode(BaseFlowNode):
    type: Literal["action"]
    data: ActionNodeData = Field(default_factory=ActionNodeData)


FlowNode = Annotated[
    Union[TextNode, ImageNode, ButtonsNode, CarouselNode, UserInputNode, ConditionNode, ActionNode],
    Field(discriminator="type"),
]


class FlowEdge(BaseModel):
    id: str
    source: str
    target: str
    animated: Optional[bool] = None


class FlowDefinition(BaseModel):
    """Read-only conversation graph."""
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)

    _by_id: Dict[str, BaseFlowNode] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._by_id = {node.id: node for node in self.nodes}

    @classmethod
    def parse(cls, raw: Any) -> "FlowDefinition":
        """Parses a stored definition (dict or JSON text)."""
        try:
            if isinstance(raw, (str, bytes)):
                return cls.model_validate_json(raw)
            return cls.model_validate(raw or {})
        except ValidationError as e:
            raise FlowDefinitionError(f"Invalid flow definition: {e.error_count()} error(s): {e}") from e

    def get_node(self, node_id: str) -> Optional[BaseFlowNode]:
        return self._by_id.get(node_id)

    def outgoing_edges(self, node_id: str) -> List[FlowEdge]:
        """Outgoing edges of a node in definition order."""
        return [edge for edge in self.edges if edge.source == node_id]

    def root_nodes(self) -> List[BaseFlowNode]:
        """Nodes without incoming edges, in definition order."""
        targets = {edge.target for edge in self.edges}
        return [node for node in self.nodes if node.id not in targets]

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------- Carousel ---------------- #

class CarouselItem(EditorModel):
    title: EditorText = None
    description: EditorText = None
    image_url: EditorText = None
    buttons: EditorItems = None


def parse_carousel_items(config_text: Optional[str]) -> List[CarouselItem]:
    """
    Parses a carousel configuration (JSON array of items).

    Raises FlowDefinitionError when the text is missing, not valid JSON, not a
    non-empty array, or holds a malformed item.
    """
    if not config_text:
        raise FlowDefinitionError("carousel configuration is empty")
    try:
        raw_items = json.loads(config_text)
    except json.JSONDecodeError as e:
        raise FlowDefinitionError(f"carousel configuration is not valid JSON: {e}") from e
    if not isinstance(raw_items, list) or not raw_items:
        raise FlowDefinitionError("carousel configuration must be a non-empty array")
    try:
        return [CarouselItem.model_validate(item) for item in raw_items]
    except ValidationError as e:
        raise FlowDefinitionError(f"invalid carousel item: {e}") from e
