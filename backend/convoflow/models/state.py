# /convoflow/models/state.py

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Variable keys with a meaning shared between the webhook intake and the engine.
# The webhook hands the structured interactive selection to the engine, which
# stores it under SELECTED_OPTION_KEY; a raw reply only fills it when empty.
SELECTED_OPTION_KEY = "selected_option"
API_RESPONSE_KEY = "api_response"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InputType(str, Enum):
    TEXT = "text"
    BUTTON = "button"
    CAROUSEL_SELECTION = "carousel_selection"


class ConversationState(BaseModel):
    """
    Execution state of a flow inside one conversation.

    Stored on the conversation record (camelCase keys) and overwritten after
    every engine transition.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=False)

    current_node_id: str = Field(default="", description="Node being executed or awaiting input")
    variables: Dict[str, Any] = Field(default_factory=dict, description="Values collected during the flow")
    waiting_for_input: bool = Field(default=False, description="Paused until the next inbound message")
    input_type: Optional[InputType] = Field(default=None, description="Kind of input the pause expects")
    variable_name: Optional[str] = Field(default=None, description="Variable receiving the next text input")
    current_flow_id: Optional[str] = Field(default=None, description="Flow this state belongs to")
    last_message_id: Optional[str] = Field(default=None, description="Channel id of the last outbound message")
    completed: bool = Field(default=False, description="Flow reached a terminal node")
    version: int = Field(default=0, description="Incremented on every save")
    last_updated: Optional[datetime] = Field(default=None, description="Timestamp of the last save")

    @classmethod
    def from_document(cls, raw: Optional[Dict[str, Any]]) -> "ConversationState":
        if not raw:
            return cls()
        return cls.model_validate(raw)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    def restart(self) -> None:
        """Forget the position in the flow; collected variables are kept."""
        self.current_node_id = ""
        self.waiting_for_input = False
        self.input_type = None
        self.variable_name = None
        self.completed = False

    def clear_wait(self) -> None:
        self.waiting_for_input = False
        self.input_type = None

    def is_expired(self, ttl_seconds: Optional[int], now: Optional[datetime] = None) -> bool:
        """True when a pause has outlived ttl_seconds (None disables expiry)."""
        if not ttl_seconds or not self.waiting_for_input or self.last_updated is None:
            return False
        now = now or utc_now()
        last_updated = self.last_updated
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        return (now - last_updated).total_seconds() > ttl_seconds
