# /convoflow/flows/interfaces.py

"""
Collaborators consumed by the flow engine.

The engine only talks to these abstractions; MongoDB and the WhatsApp Cloud
API implement them in convoflow.services, tests use in-memory fakes.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from convoflow.models.conversation import (
    ChatbotFlow,
    Conversation,
    MessageSender,
    MessageType,
    TriggerType,
)
from convoflow.models.state import ConversationState


class ChannelGateway(ABC):
    """Outbound messaging channel. Every send returns the channel message id."""

    @abstractmethod
    async def send_text(self, address: str, text: str) -> Optional[str]:
        pass

    @abstractmethod
    async def send_image(self, address: str, url: str, caption: Optional[str] = None) -> Optional[str]:
        pass

    @abstractmethod
    async def send_buttons(
        self,
        address: str,
        text: str,
        buttons: List[Dict[str, str]],
        header: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> Optional[str]:
        pass

    @abstractmethod
    async def send_interactive_list(
        self,
        address: str,
        header: str,
        body: str,
        footer: Optional[str],
        sections: List[Dict[str, Any]],
    ) -> Optional[str]:
        pass


class ConversationStore(ABC):

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        """Conversation scoped to the store's tenant, or None."""

    @abstractmethod
    async def save_flow_state(self, conversation_id: str, state: ConversationState) -> None:
        """Overwrites the stored state; raises on failure."""

    @abstractmethod
    async def touch(self, conversation_id: str, at: datetime) -> None:
        """Updates last_message_at."""


class MessageStore(ABC):

    @abstractmethod
    async def record(
        self,
        conversation_id: str,
        content: str,
        message_type: MessageType,
        sender: MessageSender,
        metadata: Optional[Dict[str, Any]] = None,
        channel_message_id: Optional[str] = None,
    ) -> None:
        pass


class FlowRepository(ABC):

    @abstractmethod
    async def get_published(self, flow_id: str) -> Optional[ChatbotFlow]:
        """Published flow of the tenant with this id, or None."""

    @abstractmethod
    async def list_published(self, trigger_type: TriggerType) -> List[ChatbotFlow]:
        """Published flows of the tenant for a trigger, in storage order."""


class LeadRepository(ABC):

    @abstractmethod
    async def create(self, attributes: Dict[str, Any]) -> str:
        """Creates a lead and returns its id."""
