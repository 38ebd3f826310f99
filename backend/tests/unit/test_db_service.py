# backend/tests/unit/test_db_service.py
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import CONVERSATION_ID, TENANT_ID
from convoflow.models.conversation import FlowStatus, TriggerType
from convoflow.services.db_service import CONVERSATIONS, FLOWS, db_service


def collection(**methods):
    mock = MagicMock()
    for name, value in methods.items():
        setattr(mock, name, AsyncMock(return_value=value))
    return mock


@pytest.fixture
def conversations_collection(mocker):
    mock = collection(find_one=None, update_one=MagicMock(matched_count=1))
    mocker.patch.object(db_service, "db", {CONVERSATIONS: mock})
    return mock


@pytest.fixture
def flows_collection(mocker):
    mock = collection(find_one=None, update_one=MagicMock(matched_count=1), insert_one=None)
    mocker.patch.object(db_service, "db", {FLOWS: mock})
    return mock


@pytest.mark.asyncio
async def test_reset_writes_whole_state_when_none_is_stored(conversations_collection):
    conversations_collection.find_one.return_value = {"_id": CONVERSATION_ID, "flow_state": None}

    assert await db_service.reset_flow_state(TENANT_ID, CONVERSATION_ID) is True

    query, update = conversations_collection.update_one.await_args.args
    assert query == {"_id": CONVERSATION_ID, "tenant_id": TENANT_ID}
    state = update["$set"]["flow_state"]
    assert state["currentNodeId"] == ""
    assert state["waitingForInput"] is False
    assert state["variables"] == {}
    assert state["version"] == 1


@pytest.mark.asyncio
async def test_reset_keeps_variables_and_bumps_version(conversations_collection):
    conversations_collection.find_one.return_value = {
        "_id": CONVERSATION_ID,
        "flow_state": {
            "currentNodeId": "n2", "waitingForInput": True, "inputType": "text", "variableName": "name",
            "currentFlowId": "flow-1", "variables": {"name": "Ana"}, "version": 4,
        },
    }

    await db_service.reset_flow_state(TENANT_ID, CONVERSATION_ID)

    state = conversations_collection.update_one.await_args.args[1]["$set"]["flow_state"]
    assert state["currentNodeId"] == ""
    assert state["waitingForInput"] is False
    assert state["inputType"] is None
    assert state["variables"] == {"name": "Ana"}
    assert state["version"] == 5


@pytest.mark.asyncio
async def test_reset_unknown_conversation(conversations_collection):
    conversations_collection.find_one.return_value = None

    assert await db_service.reset_flow_state(TENANT_ID, "missing") is False
    conversations_collection.update_one.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_flow_inserts_a_version_one_draft(flows_collection):
    flow = await db_service.create_flow(TENANT_ID, {
        "name": "Welcome", "definition": {"nodes": [], "edges": []},
        "trigger_type": TriggerType.KEYWORD_DETECTED, "trigger_keywords": ["hi"],
    })

    document = flows_collection.insert_one.await_args.args[0]
    assert document["_id"] == flow.id
    assert document["tenant_id"] == TENANT_ID
    assert document["status"] == FlowStatus.DRAFT
    assert document["version"] == 1
    assert document["deleted_at"] is None
    assert document["created_at"] == document["updated_at"]


@pytest.mark.asyncio
async def test_deleted_flows_are_hidden_from_lookups(flows_collection):
    flows_collection.find_one.return_value = None

    assert await db_service.delete_flow(TENANT_ID, "flow-1") is True
    query, update = flows_collection.update_one.await_args.args
    assert query == {"_id": "flow-1", "tenant_id": TENANT_ID, "deleted_at": None}
    assert update["$set"]["status"] == FlowStatus.ARCHIVED.value
    assert update["$set"]["deleted_at"] is not None

    assert await db_service.get_flow(TENANT_ID, "flow-1") is None
    assert flows_collection.find_one.await_args.args[0]["deleted_at"] is None
