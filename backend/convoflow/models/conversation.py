# /convoflow/models/conversation.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from convoflow.models.state import ConversationState, utc_now

# Records owned by the surrounding CRM that the flow engine reads or writes.


class ChannelType(str, Enum):
    WHATSAPP = "WHATSAPP"
    WEB = "WEB"
    INSTAGRAM = "INSTAGRAM"
    MESSENGER = "MESSENGER"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    INTERACTIVE = "INTERACTIVE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    FILE = "FILE"
    LOCATION = "LOCATION"
    CONTACT = "CONTACT"


class MessageSender(str, Enum):
    USER = "USER"
    AGENT = "AGENT"


class FlowStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class TriggerType(str, Enum):
    CONVERSATION_STARTED = "conversation_started"
    MESSAGE_RECEIVED = "message_received"
    KEYWORD_DETECTED = "keyword_detected"


class Conversation(BaseModel):
    """Conversation record as seen by the flow engine."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id", description="Conversation identifier")
    tenant_id: str = Field(..., description="Tenant identifier")
    channel: ChannelType = Field(default=ChannelType.WHATSAPP, description="Communication channel")
    channel_address: Optional[str] = Field(default=None, description="Channel-specific recipient id (phone number for WhatsApp)")
    lead_id: Optional[str] = Field(default=None, description="Linked CRM lead")
    title: Optional[str] = None
    profile_name: Optional[str] = None
    status: str = Field(default="ACTIVE")
    unread_count: int = 0
    flow_state: Optional[ConversationState] = Field(default=None, description="Flow execution state")
    last_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    def get_or_init_flow_state(self) -> ConversationState:
        """
        Returns flow_state, initializing it in memory when absent.
        Nothing is persisted here.
        """
        if self.flow_state is None:
            self.flow_state = ConversationState()
        return self.flow_state


class MessageRecord(BaseModel):
    """A message stored on the conversation timeline."""
    conversation_id: str
    tenant_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    sender: MessageSender = MessageSender.AGENT
    channel_message_id: Optional[str] = None
    channel_status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class Lead(BaseModel):
    tenant_id: str
    first_name: str = "Unknown"
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    source: str = "CHATBOT"
    status: str = "NEW"
    created_at: datetime = Field(default_factory=utc_now)


class ChatbotFlow(BaseModel):
    """A stored flow; `definition` is the editor JSON."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., alias="_id")
    tenant_id: str
    name: str
    description: Optional[str] = None
    status: FlowStatus = FlowStatus.DRAFT
    trigger_type: Optional[TriggerType] = None
    trigger_keywords: List[str] = Field(default_factory=list)
    definition: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    last_published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_published(self) -> bool:
        return self.status == FlowStatus.PUBLISHED


class ChannelConfig(BaseModel):
    """Credentials of a tenant's messaging channel."""
    tenant_id: str
    channel_type: ChannelType = ChannelType.WHATSAPP
    phone_number_id: str
    access_token: str
    verify_token: Optional[str] = None
    is_active: bool = True
