# /app/models/api.py

from pydantic import BaseModel, Field
from typing import Any, List, Dict, Optional
from datetime import datetime

from app.models.session import utcnow

# This file contains Pydantic models that define the structure of data for
# API requests and responses, ensuring type safety and validation.


class AgentMessageRequest(BaseModel):
    conversation_id: Optional[str] = Field(default=None, max_length=64, description="Omit to start a new conversation")
    message: str = Field(..., min_length=1, max_length=4000)
    channel: str = Field(default="web", pattern="^(web|whatsapp|sms|api)$")


class AgentMessageData(BaseModel):
    conversation_id: str
    reply: str
    flow: Optional[str] = None
    stage: Optional[str] = None
    error_kind: Optional[str] = None


class ConversationState(BaseModel):
    conversation_id: str
    user_id: Optional[str] = None
    flow: Optional[str] = None
    stage: Optional[str] = None
    user_data: Dict[str, Any] = Field(default_factory=dict)
    invalid_fields: Dict[str, Any] = Field(default_factory=dict)
    last_action_error: Optional[Dict[str, Any]] = None
    history: List[Dict[str, Any]] = Field(default_factory=list)


class FlowSummary(BaseModel):
    slug: str
    name: str
    description: str = ""
    version: int
    initial_stage: str
    default_for_new_users: bool
    stages: List[str]


class FlowValidationResponse(BaseModel):
    is_valid: bool
    errors: List[str]


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=utcnow)
    version: str
