# backend/tests/conftest.py

import copy
import itertools
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

# Load environment variables FIRST, before any convoflow imports, so that the
# module-level Settings instance picks them up.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test")

from convoflow.flows.actions import ActionExecutor  # noqa: E402
from convoflow.flows.engine import FlowEngine  # noqa: E402
from convoflow.flows.errors import ChannelGatewayError  # noqa: E402
from convoflow.flows.interfaces import (  # noqa: E402
    ChannelGateway,
    ConversationStore,
    FlowRepository,
    LeadRepository,
    MessageStore,
)
from convoflow.main import app  # noqa: E402
from convoflow.models.conversation import (  # noqa: E402
    ChannelType,
    ChatbotFlow,
    Conversation,
    FlowStatus,
    TriggerType,
)
from convoflow.models.state import ConversationState  # noqa: E402
from convoflow.utils.locks import ConversationLockManager  # noqa: E402

TENANT_ID = "tenant-1"
CONVERSATION_ID = "conv-1"
CUSTOMER_PHONE = "+15551234567"


# ==================== In-memory collaborators ====================

class InMemoryConversationStore(ConversationStore):
    def __init__(self):
        self.conversations: Dict[str, Conversation] = {}
        self.saved_states: List[ConversationState] = []
        self.touched: List[str] = []
        self.fail_saves = False

    def add(self, conversation: Conversation) -> Conversation:
        self.conversations[conversation.id] = conversation
        return conversation

    def state_of(self, conversation_id: str) -> Optional[ConversationState]:
        return self.conversations[conversation_id].flow_state

    async def get(self, conversation_id):
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def save_flow_state(self, conversation_id, state):
        if self.fail_saves:
            raise RuntimeError("database unavailable")
        stored = state.model_copy(deep=True)
        self.conversations[conversation_id].flow_state = stored
        self.saved_states.append(stored)

    async def touch(self, conversation_id, at):
        self.touched.append(conversation_id)
        self.conversations[conversation_id].last_message_at = at


class InMemoryMessageStore(MessageStore):
    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    async def record(self, conversation_id, content, message_type, sender, metadata=None, channel_message_id=None):
        self.records.append({
            "conversation_id": conversation_id,
            "content": content,
            "message_type": message_type,
            "sender": sender,
            "metadata": metadata,
            "channel_message_id": channel_message_id,
        })

    @property
    def contents(self) -> List[str]:
        return [record["content"] for record in self.records]


class InMemoryFlowRepository(FlowRepository):
    def __init__(self):
        self.flows: List[ChatbotFlow] = []

    def add(self, flow: ChatbotFlow) -> ChatbotFlow:
        self.flows.append(flow)
        return flow

    async def get_published(self, flow_id):
        for flow in self.flows:
            if flow.id == flow_id and flow.is_published:
                return flow
        return None

    async def list_published(self, trigger_type):
        return [flow for flow in self.flows if flow.is_published and flow.trigger_type == trigger_type]


class InMemoryLeadRepository(LeadRepository):
    def __init__(self):
        self.leads: List[Dict[str, Any]] = []

    async def create(self, attributes):
        self.leads.append(copy.deepcopy(attributes))
        return f"lead-{len(self.leads)}"


class RecordingGateway(ChannelGateway):
    """Keeps every outbound call; fails every call while `fail` is set."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail = False
        self._ids = itertools.count(1)

    def _sent(self, kind: str, **kwargs) -> str:
        if self.fail:
            raise ChannelGatewayError("WhatsApp API returned 500: boom", status_code=500)
        self.calls.append({"kind": kind, **kwargs})
        return f"wamid.{next(self._ids)}"

    async def send_text(self, address, text):
        return self._sent("text", address=address, text=text)

    async def send_image(self, address, url, caption=None):
        return self._sent("image", address=address, url=url, caption=caption)

    async def send_buttons(self, address, text, buttons, header=None, footer=None):
        return self._sent("buttons", address=address, text=text, buttons=buttons, header=header, footer=footer)

    async def send_interactive_list(self, address, header, body, footer, sections):
        return self._sent("list", address=address, header=header, body=body, footer=footer, sections=sections)

    @property
    def texts(self) -> List[str]:
        return [call["text"] for call in self.calls if call["kind"] == "text"]


# ==================== Builders ====================

def node(node_id: str, node_type: str, **data) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": data}


def edge(source: str, target: str) -> Dict[str, Any]:
    return {"id": f"e-{source}-{target}", "source": source, "target": target}


def make_flow(
    definition: Dict[str, Any],
    flow_id: str = "flow-1",
    status: FlowStatus = FlowStatus.PUBLISHED,
    trigger_type: Optional[TriggerType] = None,
    trigger_keywords: Optional[List[str]] = None,
) -> ChatbotFlow:
    return ChatbotFlow(
        id=flow_id,
        tenant_id=TENANT_ID,
        name=f"Flow {flow_id}",
        status=status,
        trigger_type=trigger_type,
        trigger_keywords=trigger_keywords or [],
        definition=definition,
    )


def make_conversation(
    conversation_id: str = CONVERSATION_ID,
    channel: ChannelType = ChannelType.WHATSAPP,
    flow_state: Optional[ConversationState] = None,
) -> Conversation:
    return Conversation(
        id=conversation_id,
        tenant_id=TENANT_ID,
        channel=channel,
        channel_address=CUSTOMER_PHONE,
        flow_state=flow_state,
    )


# ==================== Fixtures ====================

@pytest.fixture
def conversations():
    store = InMemoryConversationStore()
    store.add(make_conversation())
    return store


@pytest.fixture
def messages():
    return InMemoryMessageStore()


@pytest.fixture
def flows():
    return InMemoryFlowRepository()


@pytest.fixture
def leads():
    return InMemoryLeadRepository()


@pytest.fixture
def gateway():
    return RecordingGateway()


class RecordingTransport:
    """httpx.MockTransport handler answering every request with `payload`."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.payload: Any = {"ok": True}
        self.error: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.payload)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def http_client(transport):
    """Outbound HTTP for action nodes, answered by `transport`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(transport))


@pytest.fixture
def engine(conversations, messages, flows, leads, gateway, http_client):
    return FlowEngine(
        TENANT_ID,
        flows=flows,
        conversations=conversations,
        messages=messages,
        leads=leads,
        gateway=gateway,
        locks=ConversationLockManager(wait_seconds=5),
        actions=ActionExecutor(TENANT_ID, leads, http_client),
    )


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests.
    Startup and shutdown do not touch MongoDB or close the shared clients.
    """
    mocker.patch("convoflow.utils.lifecycle.setup_logging")
    mocker.patch("convoflow.utils.lifecycle.db_service.create_indexes", new_callable=AsyncMock)
    mocker.patch("convoflow.utils.lifecycle.db_service.close")
    mocker.patch("convoflow.utils.lifecycle.close_clients", new_callable=AsyncMock)

    with TestClient(app) as client:
        yield client
