# /convoflow/models/api.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from convoflow.models.conversation import TriggerType
from convoflow.models.state import utc_now

# Request and response bodies of the flow API.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=utc_now)
    version: str


class ValidateFlowRequest(BaseModel):
    definition: Dict[str, Any] = Field(..., description="Flow definition as saved by the editor")


class FlowValidationResponse(BaseModel):
    is_valid: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class CreateFlowRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    definition: Dict[str, Any] = Field(default_factory=dict)
    trigger_type: Optional[TriggerType] = None
    trigger_keywords: List[str] = Field(default_factory=list)


class UpdateFlowRequest(BaseModel):
    """Partial update; only the fields present in the body are written."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    definition: Optional[Dict[str, Any]] = None
    trigger_type: Optional[TriggerType] = None
    trigger_keywords: Optional[List[str]] = None


class ExecuteFlowRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1)
    message: Optional[str] = None
