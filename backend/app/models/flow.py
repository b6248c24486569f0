# /app/models/flow.py

from enum import Enum
from typing import Optional, List, Dict, Any, Literal, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class FlowModel(BaseModel):
    """
    Base for flow schema models.

    Flow definitions are persisted as camelCase JSON; models accept either the
    camelCase alias or the snake_case field name and dump back to camelCase.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ErrorBehavior(str, Enum):
    PAUSE = "pause"
    NEW_STAGE = "newStage"
    CONTINUE = "continue"
    END_FLOW = "endFlow"


class FieldDefinition(FlowModel):
    type: Literal["string", "number", "boolean"] = Field(default="string", description="Value type")
    description: str = Field(default="", description="What the field holds; also shown to the extractor")
    sensitive: bool = Field(default=False, description="Masked before leaving the engine")
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=0)
    pattern: Optional[str] = Field(default=None, description="Regular expression the value must match")
    enum: Optional[List[str]] = Field(default=None, description="Allowed values")
    prohibited_words_list: Optional[str] = Field(
        default=None,
        pattern=r"^[A-Za-z0-9_]+$",
        description="Id of a prohibited word list the value must not contain",
    )


class ErrorHandlingConfig(FlowModel):
    behavior: ErrorBehavior = Field(..., description="How to react to the failure")
    next_stage: Optional[str] = Field(default=None, description="Target stage for newStage")
    message: Optional[str] = Field(default=None, description="Template with {error}, {stage} and {conversationId}")


class ErrorCodeHandler(ErrorHandlingConfig):
    update_user_data: Dict[str, str] = Field(
        default_factory=dict,
        description="Field -> expression evaluated against {userData, errorCode, res}",
    )


class ActionConfig(FlowModel):
    tool_name: str = Field(..., description="Registered tool to invoke")
    condition: Optional[str] = Field(default=None, description="Guard expression; absent means always run")
    allow_re_execution_on_error: bool = False
    params: Dict[str, Any] = Field(default_factory=dict, description="Static payload merged over user data")
    on_error_code: Dict[str, ErrorCodeHandler] = Field(default_factory=dict)
    on_error: Optional[ErrorHandlingConfig] = None


class CustomCompletionCheck(FlowModel):
    condition: str
    required_fields: Optional[List[str]] = None


class StageIncompleteLog(FlowModel):
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    message: str
    extra_data: Dict[str, Any] = Field(default_factory=dict)


class StageOrchestration(FlowModel):
    custom_completion_check: Optional[CustomCompletionCheck] = None
    on_stage_incomplete: Optional[StageIncompleteLog] = None


class ConditionalTransition(FlowModel):
    condition: str
    if_true: str
    if_false: Optional[str] = None


class ConditionalNextStage(FlowModel):
    conditional: List[ConditionalTransition] = Field(default_factory=list)
    fallback: Optional[str] = None


class StageDefinition(FlowModel):
    name: Optional[str] = None
    description: str = ""
    prompt: Optional[str] = Field(default=None, description="Instructions for the response composer")
    fields_to_collect: List[str] = Field(default_factory=list)
    completion_condition: Optional[str] = None
    orchestration: Optional[StageOrchestration] = None
    action: Optional[ActionConfig] = None
    on_error: Optional[ErrorHandlingConfig] = None
    next_stage: Union[str, ConditionalNextStage, None] = None


class OnCompleteConfig(FlowModel):
    start_flow_slug: str
    mode: Literal["seamless", "ask"] = "seamless"
    preserve_fields: List[str] = Field(default_factory=list)


class ErrorHandlingStrategy(FlowModel):
    on_unhandled_error: Literal["killFlow", "skip"] = "skip"


class FlowConfig(FlowModel):
    initial_stage: str
    default_for_new_users: bool = False
    on_complete: Optional[OnCompleteConfig] = None
    is_router_flow: bool = False
    error_handling_strategy: ErrorHandlingStrategy = Field(default_factory=ErrorHandlingStrategy)


class FlowBody(FlowModel):
    stages: Dict[str, StageDefinition]
    field_definitions: Dict[str, FieldDefinition] = Field(default_factory=dict, alias="fields")
    config: FlowConfig


class FlowDefinition(FlowModel):
    """A named, versioned graph of stages plus its field definitions and flow-level config."""
    name: str
    slug: str = Field(..., min_length=1)
    description: str = ""
    version: int = 1
    definition: FlowBody

    @property
    def stages(self) -> Dict[str, StageDefinition]:
        return self.definition.stages

    @property
    def field_definitions(self) -> Dict[str, FieldDefinition]:
        return self.definition.field_definitions

    @property
    def config(self) -> FlowConfig:
        return self.definition.config

    @property
    def initial_stage(self) -> str:
        return self.definition.config.initial_stage

    def get_stage(self, slug: Optional[str]) -> Optional[StageDefinition]:
        if not slug:
            return None
        return self.definition.stages.get(slug)
