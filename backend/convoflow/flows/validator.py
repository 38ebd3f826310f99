# /convoflow/flows/validator.py

"""
Pure validation functions for flow definitions.

Used before a flow is published so that structural problems surface in the
editor rather than as silent no-ops while a conversation is running.

All functions are:
- Pure (no side effects)
- Deterministic (same input = same output)
- No database access
- No logging
"""

from collections import Counter
from typing import Any, List, Optional, TypedDict

from convoflow.flows.conditions import OPERATORS
from convoflow.flows.errors import FlowDefinitionError
from convoflow.models.flow import (
    ActionNode,
    ButtonsNode,
    CarouselNode,
    ConditionNode,
    FlowDefinition,
    ImageNode,
    TextNode,
    UserInputNode,
)

# WhatsApp accepts at most three reply buttons per message.
MAX_REPLY_BUTTONS = 3


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


class StartNodeResult(ValidationResult):
    node_id: Optional[str]


def _valid() -> ValidationResult:
    return {
        "is_valid": True,
        "error_code": None,
        "message": None
    }


def _invalid(error_code: str, message: str) -> ValidationResult:
    return {
        "is_valid": False,
        "error_code": error_code,
        "message": message
    }


def find_start_node(definition: FlowDefinition) -> StartNodeResult:
    """
    Locate the start node: the unique node without incoming edges.

    Args:
        definition: Parsed flow definition

    Returns:
        StartNodeResult with node_id set when exactly one candidate exists
    """
    roots = definition.root_nodes()
    if not roots:
        return {
            "is_valid": False,
            "error_code": "NO_START_NODE",
            "message": "Every node has an incoming edge; the flow has no start node",
            "node_id": None
        }
    if len(roots) > 1:
        return {
            "is_valid": False,
            "error_code": "AMBIGUOUS_START_NODE",
            "message": f"Several nodes have no incoming edge: {', '.join(node.id for node in roots)}",
            "node_id": None
        }
    return {
        "is_valid": True,
        "error_code": None,
        "message": None,
        "node_id": roots[0].id
    }


def validate_flow_definition(raw: Any) -> ValidationResult:
    """
    Validate the structure of a stored flow definition.

    Args:
        raw: Definition as a dict or JSON text

    Returns:
        ValidationResult with is_valid=True if the flow can be executed
    """
    if not raw:
        return _invalid("EMPTY_DEFINITION", "Flow definition cannot be empty")

    try:
        definition = FlowDefinition.parse(raw)
    except FlowDefinitionError as e:
        return _invalid("INVALID_DEFINITION", str(e))

    if not definition.nodes:
        return _invalid("NO_NODES", "Flow must contain at least one node")

    duplicates = [node_id for node_id, count in Counter(node.id for node in definition.nodes).items() if count > 1]
    if duplicates:
        return _invalid("DUPLICATE_NODE_ID", f"Duplicate node ids: {', '.join(sorted(duplicates))}")

    node_ids = {node.id for node in definition.nodes}
    for edge in definition.edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            return _invalid(
                "UNKNOWN_EDGE_ENDPOINT",
                f"Edge '{edge.id}' connects '{edge.source}' to '{edge.target}', which is not a node of this flow"
            )

    start = find_start_node(definition)
    if not start["is_valid"]:
        return _invalid(start["error_code"], start["message"])

    return _valid()


def validate_node_payloads(definition: FlowDefinition) -> List[str]:
    """
    Check per-type payload fields.

    Missing fields do not stop execution (the engine degrades to an empty
    message or a no-op), so problems are reported as warnings.

    Args:
        definition: Parsed flow definition

    Returns:
        Human-readable warnings, empty when every node is complete
    """
    warnings = []
    for node in definition.nodes:
        data = node.data
        prefix = f"Node '{node.id}' ({node.type})"

        if isinstance(node, TextNode) and not data.message_text:
            warnings.append(f"{prefix} has no message text")
        elif isinstance(node, ImageNode) and not data.image_url:
            warnings.append(f"{prefix} has no image URL; nothing will be sent")
        elif isinstance(node, ButtonsNode):
            if not data.buttons:
                warnings.append(f"{prefix} has no buttons")
            elif len(data.buttons) > MAX_REPLY_BUTTONS:
                warnings.append(f"{prefix} has {len(data.buttons)} buttons; WhatsApp shows at most {MAX_REPLY_BUTTONS}")
        elif isinstance(node, CarouselNode) and not data.carousel_config_text:
            warnings.append(f"{prefix} has no carousel configuration; it will be skipped")
        elif isinstance(node, UserInputNode) and not data.variable_name:
            warnings.append(f"{prefix} has no variable name; the reply will not be stored")
        elif isinstance(node, ConditionNode):
            if not data.variable:
                warnings.append(f"{prefix} has no variable to compare")
            if data.operator and data.operator not in OPERATORS:
                warnings.append(f"{prefix} uses unknown operator '{data.operator}'; it always evaluates to false")
            if len(definition.outgoing_edges(node.id)) > 2:
                warnings.append(f"{prefix} has more than two outgoing edges; only the first two are used")
        elif isinstance(node, ActionNode) and data.action is None:
            warnings.append(f"{prefix} will be skipped: {data.parse_error}")

    return warnings
