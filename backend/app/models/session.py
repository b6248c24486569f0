# /app/models/session.py

import uuid
from datetime import datetime, timezone
from typing import Annotated, Optional, Dict, Any, List
from pydantic import AfterValidator, BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


# Stores may hand back naive datetimes; they are always UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Conversation(BaseModel):
    """A chat thread. The user is attached lazily on the first processed message."""
    id: str = Field(default_factory=new_id, description="Conversation identifier")
    user_id: Optional[str] = Field(default=None, description="Owner, created on first message")
    channel: str = Field(default="web", description="Communication channel")
    created_at: UtcDatetime = Field(default_factory=utcnow)


class UserFlowState(BaseModel):
    """The single live session row of a user: which flow and stage they are in."""
    id: str = Field(default_factory=new_id, description="Session identifier")
    user_id: str
    flow_slug: str
    stage: str
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)


class FlowHistoryEntry(BaseModel):
    """Append-only record of a completed stage."""
    user_id: str
    flow_slug: str
    stage: str
    session_id: Optional[str] = None
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class LastActionError(BaseModel):
    stage: str
    tool_name: str
    message: Optional[str] = None
    error_code: Optional[str] = None
    at: UtcDatetime = Field(default_factory=utcnow)


class InvalidFieldMarker(BaseModel):
    reason: Optional[str] = None
    suggestion: Optional[str] = None
    at: UtcDatetime = Field(default_factory=utcnow)


class SessionDiagnostics(BaseModel):
    """
    Engine bookkeeping kept next to (never inside) a user's field data for one flow.
    """
    last_action_error: Optional[LastActionError] = None
    invalid_fields: Dict[str, InvalidFieldMarker] = Field(default_factory=dict)

    def fresh_invalid_fields(self, window_minutes: int, now: Optional[datetime] = None) -> Dict[str, InvalidFieldMarker]:
        now = now or utcnow()
        return {
            slug: marker
            for slug, marker in self.invalid_fields.items()
            if (now - marker.at).total_seconds() <= window_minutes * 60
        }


class FieldPrompt(BaseModel):
    slug: str
    description: str = ""


class InvalidFieldHint(BaseModel):
    slug: str
    description: str = ""
    reason: Optional[str] = None
    suggestion: Optional[str] = None


class ComposeRequest(BaseModel):
    """Everything the response composer is allowed to see for one reply."""
    conversation_id: str
    message: str
    flow_slug: Optional[str] = None
    stage_slug: Optional[str] = None
    stage_description: str = ""
    stage_prompt: Optional[str] = None
    missing_fields: List[FieldPrompt] = Field(default_factory=list)
    invalid_fields: List[InvalidFieldHint] = Field(default_factory=list)
    collected: Dict[str, Any] = Field(default_factory=dict)
    error_context: Optional[str] = None
