# backend/tests/integration/test_flow_routes.py
from unittest.mock import AsyncMock, MagicMock

from jose import jwt

from conftest import TENANT_ID, edge, make_flow, node
from convoflow.config.settings import settings
from convoflow.models.conversation import FlowStatus

API_PREFIX = f"/api/{settings.api_version}"

VALID_DEFINITION = {
    "nodes": [node("n1", "text", messageText="Hi"), node("n2", "userInput", promptText="Name?", variableName="name")],
    "edges": [edge("n1", "n2")],
}


def auth_headers(claims=None):
    token = jwt.encode(claims or {"tenant_id": TENANT_ID}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_validate_valid_flow(test_client):
    response = test_client.post(
        f"{API_PREFIX}/flows/validate", json={"definition": VALID_DEFINITION}, headers=auth_headers()
    )

    assert response.status_code == 200
    body = response.json()
    assert body["is_valid"] is True
    assert body["warnings"] == []


def test_validate_reports_errors_and_warnings(test_client):
    ambiguous = {"nodes": [node("a", "text"), node("b", "text", messageText="x")], "edges": []}
    response = test_client.post(f"{API_PREFIX}/flows/validate", json={"definition": ambiguous}, headers=auth_headers())
    assert response.json()["error_code"] == "AMBIGUOUS_START_NODE"

    incomplete = {"nodes": [node("a", "text")], "edges": []}
    response = test_client.post(f"{API_PREFIX}/flows/validate", json={"definition": incomplete}, headers=auth_headers())
    assert response.json()["is_valid"] is True
    assert response.json()["warnings"] == ["Node 'a' (text) has no message text"]


def test_flow_routes_require_a_token(test_client):
    response = test_client.post(f"{API_PREFIX}/flows/validate", json={"definition": VALID_DEFINITION})
    assert response.status_code == 401


def test_invalid_token_is_unauthorized(test_client):
    response = test_client.post(
        f"{API_PREFIX}/flows/validate", json={"definition": VALID_DEFINITION}, headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401


def test_token_without_tenant_is_forbidden(test_client):
    response = test_client.post(
        f"{API_PREFIX}/flows/validate", json={"definition": VALID_DEFINITION}, headers=auth_headers({"sub": "user-1"})
    )
    assert response.status_code == 403
    assert response.json()["detail"] == "Tenant context missing"


def test_publish_valid_flow(test_client, mocker):
    flow = make_flow(VALID_DEFINITION, status=FlowStatus.DRAFT)
    mock_get = mocker.patch("convoflow.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=flow)
    mock_publish = mocker.patch("convoflow.routes.flows.db_service.publish_flow", new_callable=AsyncMock, return_value=True)

    response = test_client.post(f"{API_PREFIX}/flows/flow-1/publish", headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["data"]["flow_id"] == "flow-1"
    mock_get.assert_awaited_once_with(TENANT_ID, "flow-1")
    mock_publish.assert_awaited_once_with(TENANT_ID, "flow-1")


def test_publish_rejects_invalid_flow(test_client, mocker):
    flow = make_flow({"nodes": [node("a", "text"), node("b", "text")], "edges": []}, status=FlowStatus.DRAFT)
    mocker.patch("convoflow.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=flow)
    mock_publish = mocker.patch("convoflow.routes.flows.db_service.publish_flow", new_callable=AsyncMock)

    response = test_client.post(f"{API_PREFIX}/flows/flow-1/publish", headers=auth_headers())

    assert response.status_code == 422
    assert response.json()["detail"]["error_code"] == "AMBIGUOUS_START_NODE"
    mock_publish.assert_not_awaited()


def test_publish_unknown_flow(test_client, mocker):
    mocker.patch("convoflow.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=None)

    response = test_client.post(f"{API_PREFIX}/flows/missing/publish", headers=auth_headers())

    assert response.status_code == 404


def test_execute_flow_runs_engine_for_tenant(test_client, mocker):
    mocker.patch("convoflow.routes.flows.db_service.get_active_channel", new_callable=AsyncMock, return_value=None)
    engine = MagicMock()
    engine.execute_flow = AsyncMock(return_value="paused")
    mock_build = mocker.patch("convoflow.routes.flows.build_engine", return_value=engine)

    response = test_client.post(
        f"{API_PREFIX}/flows/flow-1/execute",
        json={"conversation_id": "conv-9", "message": "hi"},
        headers=auth_headers(),
    )

    assert response.status_code == 200
    mock_build.assert_called_once_with(TENANT_ID, None)
    assert response.json()["data"]["outcome"] == "paused"
    engine.execute_flow.assert_awaited_once_with("conv-9", "flow-1", "hi")


def test_reset_conversation_flow(test_client, mocker):
    mock_reset = mocker.patch(
        "convoflow.routes.flows.db_service.reset_flow_state", new_callable=AsyncMock, return_value=True
    )

    response = test_client.post(f"{API_PREFIX}/flows/conversations/conv-1/reset", headers=auth_headers())

    assert response.status_code == 200
    mock_reset.assert_awaited_once_with(TENANT_ID, "conv-1")

    mock_reset.return_value = False
    response = test_client.post(f"{API_PREFIX}/flows/conversations/conv-1/reset", headers=auth_headers())
    assert response.status_code == 404


def test_list_flows(test_client, mocker):
    flows = [make_flow(VALID_DEFINITION, flow_id="flow-1"), make_flow(VALID_DEFINITION, flow_id="flow-2")]
    mock_list = mocker.patch("convoflow.routes.flows.db_service.list_flows", new_callable=AsyncMock, return_value=flows)

    response = test_client.get(f"{API_PREFIX}/flows", headers=auth_headers())

    assert response.status_code == 200
    assert [flow["id"] for flow in response.json()["data"]["flows"]] == ["flow-1", "flow-2"]
    mock_list.assert_awaited_once_with(TENANT_ID)


def test_get_flow(test_client, mocker):
    mocker.patch("convoflow.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=make_flow(VALID_DEFINITION))

    response = test_client.get(f"{API_PREFIX}/flows/flow-1", headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["data"]["definition"] == VALID_DEFINITION

    mocker.patch("convoflow.routes.flows.db_service.get_flow", new_callable=AsyncMock, return_value=None)
    assert test_client.get(f"{API_PREFIX}/flows/missing", headers=auth_headers()).status_code == 404


def test_create_flow_stores_a_draft(test_client, mocker):
    created = make_flow(VALID_DEFINITION, flow_id="new-flow", status=FlowStatus.DRAFT)
    mock_create = mocker.patch("convoflow.routes.flows.db_service.create_flow", new_callable=AsyncMock, return_value=created)
    body = {"name": "Welcome", "definition": VALID_DEFINITION, "trigger_type": "keyword_detected", "trigger_keywords": ["hi"]}

    response = test_client.post(f"{API_PREFIX}/flows", json=body, headers=auth_headers())

    assert response.status_code == 201
    assert response.json()["data"]["id"] == "new-flow"
    assert response.json()["data"]["status"] == "DRAFT"
    tenant_id, fields = mock_create.await_args.args
    assert tenant_id == TENANT_ID
    assert fields["name"] == "Welcome"
    assert fields["trigger_keywords"] == ["hi"]


def test_create_flow_accepts_unfinished_graph_but_rejects_unparseable_nodes(test_client, mocker):
    mock_create = mocker.patch(
        "convoflow.routes.flows.db_service.create_flow", new_callable=AsyncMock, return_value=make_flow({})
    )
    unfinished = {"nodes": [node("a", "text"), node("b", "text")], "edges": []}

    response = test_client.post(f"{API_PREFIX}/flows", json={"name": "Draft", "definition": unfinished}, headers=auth_headers())
    assert response.status_code == 201

    unknown_type = {"nodes": [{"id": "n1", "type": "video", "data": {}}], "edges": []}
    response = test_client.post(f"{API_PREFIX}/flows", json={"name": "Bad", "definition": unknown_type}, headers=auth_headers())
    assert response.status_code == 422
    assert mock_create.await_count == 1


def test_update_flow_writes_only_given_fields(test_client, mocker):
    updated = make_flow(VALID_DEFINITION)
    mock_update = mocker.patch("convoflow.routes.flows.db_service.update_flow", new_callable=AsyncMock, return_value=updated)

    response = test_client.patch(
        f"{API_PREFIX}/flows/flow-1", json={"name": "Renamed", "description": None}, headers=auth_headers()
    )

    assert response.status_code == 200
    mock_update.assert_awaited_once_with(TENANT_ID, "flow-1", {"name": "Renamed", "description": None})


def test_update_unknown_flow(test_client, mocker):
    mocker.patch("convoflow.routes.flows.db_service.update_flow", new_callable=AsyncMock, return_value=None)

    response = test_client.patch(f"{API_PREFIX}/flows/missing", json={"name": "x"}, headers=auth_headers())

    assert response.status_code == 404


def test_delete_flow(test_client, mocker):
    mock_delete = mocker.patch("convoflow.routes.flows.db_service.delete_flow", new_callable=AsyncMock, return_value=True)

    response = test_client.delete(f"{API_PREFIX}/flows/flow-1", headers=auth_headers())

    assert response.status_code == 200
    mock_delete.assert_awaited_once_with(TENANT_ID, "flow-1")

    mock_delete.return_value = False
    assert test_client.delete(f"{API_PREFIX}/flows/flow-1", headers=auth_headers()).status_code == 404
