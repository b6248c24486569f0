# /app/models/tool.py

from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class ToolExecutionContext(BaseModel):
    """Conversation context handed to every tool call."""
    conversation_id: str
    user_id: Optional[str] = None
    flow_slug: Optional[str] = None
    stage: Optional[str] = None


class ToolResult(BaseModel):
    """
    Result of a tool invocation. The only channel through which a tool can
    mutate user data (``save_results``) or request a handoff
    (``data.targetFlowSlug`` / ``data.targetStage``).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    status: Optional[int] = Field(default=None, description="Upstream HTTP status, when relevant")
    save_results: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def error_matches_success(self):
        if self.success and self.error:
            raise ValueError("A successful tool result must not carry an error")
        # a failure may carry only an errorCode
        if not self.success and not self.error:
            self.error = f"Tool failed ({self.error_code or 'unknown'})"
        return self

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None, save_results: Optional[Dict[str, Any]] = None) -> "ToolResult":
        return cls(success=True, data=data, save_results=save_results)

    @classmethod
    def fail(cls, error: str, error_code: Optional[str] = None, status: Optional[int] = None) -> "ToolResult":
        return cls(success=False, error=error, error_code=error_code, status=status)

    @property
    def target_flow_slug(self) -> Optional[str]:
        return (self.data or {}).get("targetFlowSlug")

    @property
    def target_stage(self) -> Optional[str]:
        return (self.data or {}).get("targetStage")
