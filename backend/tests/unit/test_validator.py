# backend/tests/unit/test_validator.py
import json

import pytest

from conftest import edge, node
from convoflow.flows.validator import (
    find_start_node,
    validate_flow_definition,
    validate_node_payloads,
)
from convoflow.models.flow import FlowDefinition


def definition(nodes, edges=()):
    return {"nodes": list(nodes), "edges": list(edges)}


class TestValidateFlowDefinition:
    def test_linear_flow_is_valid(self):
        raw = definition([node("n1", "text", messageText="Hi"), node("n2", "text", messageText="Bye")], [edge("n1", "n2")])
        result = validate_flow_definition(raw)
        assert result["is_valid"] is True
        assert result["error_code"] is None

    def test_accepts_json_text(self):
        raw = json.dumps(definition([node("n1", "text", messageText="Hi")]))
        assert validate_flow_definition(raw)["is_valid"] is True

    @pytest.mark.parametrize("raw, error_code", [
        (None, "EMPTY_DEFINITION"),
        ({}, "EMPTY_DEFINITION"),
        ({"nodes": []}, "NO_NODES"),
        ({"nodes": [{"id": "n1", "type": "video", "data": {}}]}, "INVALID_DEFINITION"),
        ("{broken", "INVALID_DEFINITION"),
    ])
    def test_rejects_unusable_definitions(self, raw, error_code):
        result = validate_flow_definition(raw)
        assert result["is_valid"] is False
        assert result["error_code"] == error_code

    def test_duplicate_node_ids(self):
        raw = definition([node("n1", "text"), node("n1", "image")])
        result = validate_flow_definition(raw)
        assert result["error_code"] == "DUPLICATE_NODE_ID"
        assert "n1" in result["message"]

    def test_edge_to_unknown_node(self):
        raw = definition([node("n1", "text")], [edge("n1", "ghost")])
        result = validate_flow_definition(raw)
        assert result["error_code"] == "UNKNOWN_EDGE_ENDPOINT"
        assert "ghost" in result["message"]

    def test_two_roots_are_ambiguous(self):
        raw = definition([node("n1", "text"), node("n2", "text")])
        result = validate_flow_definition(raw)
        assert result["error_code"] == "AMBIGUOUS_START_NODE"
        assert "n1, n2" in result["message"]

    def test_cycle_without_root_has_no_start_node(self):
        raw = definition([node("a", "text"), node("b", "text")], [edge("a", "b"), edge("b", "a")])
        assert validate_flow_definition(raw)["error_code"] == "NO_START_NODE"


def test_find_start_node_returns_the_root():
    parsed = FlowDefinition.parse(definition([node("n1", "text"), node("n2", "text")], [edge("n2", "n1")]))
    result = find_start_node(parsed)
    assert result["is_valid"] is True
    assert result["node_id"] == "n2"


class TestValidateNodePayloads:
    def test_complete_flow_has_no_warnings(self):
        parsed = FlowDefinition.parse(definition(
            [
                node("n1", "buttons", messageText="Pick", buttons=[{"id": "a", "label": "A"}]),
                node("n2", "userInput", promptText="Age?", variableName="age"),
                node("n3", "condition", variable="age", operator="greater_than", value="18"),
                node("n4", "action", actionType="create_lead"),
            ],
            [edge("n1", "n2"), edge("n2", "n3"), edge("n3", "n4")],
        ))
        assert validate_node_payloads(parsed) == []

    def test_reports_incomplete_nodes(self):
        buttons = [{"id": f"b{i}", "label": f"B{i}"} for i in range(4)]
        parsed = FlowDefinition.parse(definition([
            node("t", "text"),
            node("i", "image"),
            node("b0", "buttons", messageText="none"),
            node("b4", "buttons", messageText="many", buttons=buttons),
            node("c", "carousel"),
            node("u", "userInput", promptText="?"),
            node("cond", "condition", operator="between"),
            node("a", "action", actionType="send_sms"),
        ]))

        warnings = validate_node_payloads(parsed)

        assert "Node 't' (text) has no message text" in warnings
        assert "Node 'i' (image) has no image URL; nothing will be sent" in warnings
        assert "Node 'b0' (buttons) has no buttons" in warnings
        assert "Node 'b4' (buttons) has 4 buttons; WhatsApp shows at most 3" in warnings
        assert "Node 'c' (carousel) has no carousel configuration; it will be skipped" in warnings
        assert "Node 'u' (userInput) has no variable name; the reply will not be stored" in warnings
        assert "Node 'cond' (condition) has no variable to compare" in warnings
        assert any("unknown operator 'between'" in warning for warning in warnings)
        assert any(warning.startswith("Node 'a' (action) will be skipped") for warning in warnings)

    def test_condition_with_three_edges(self):
        parsed = FlowDefinition.parse(definition(
            [node("c", "condition", variable="x", value="1"), node("a", "text"), node("b", "text"), node("d", "text")],
            [edge("c", "a"), edge("c", "b"), edge("c", "d")],
        ))
        warnings = validate_node_payloads(parsed)
        assert warnings[0] == "Node 'c' (condition) has more than two outgoing edges; only the first two are used"
