from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, Field, model_validator


Role = Literal["system", "user", "assistant"]
StepType = Literal["create_marker", "update_marker", "create_chain", "search_place"]
PlanStatus = Literal["pending", "running", "paused", "completed", "failed", "rejected", "cancelled"]
MarkerIconType = Literal[
    "landmark",
    "culture",
    "natural",
    "food",
    "shopping",
    "activity",
    "location",
    "hotel",
    "park",
]
ICON_TYPES = set(get_args(MarkerIconType))


class ChatMessage(BaseModel):
    role: Role
    content: str


class ToolCall(BaseModel):
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    uuid: Optional[str] = None


class ToolResult(BaseModel):
    """Outcome of one tool call; exactly one of result/error is set."""

    tool: str
    result: Optional[Any] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @model_validator(mode="after")
    def _one_outcome(self) -> "ToolResult":
        if self.error is not None and self.result is not None:
            raise ValueError("ToolResult carries either result or error, not both")
        return self


class ExecutionState(BaseModel):
    has_pending_tool_call: bool = False
    current_tool_response: str = ""
    tool_call_index: int = 0


class ExecutionStep(BaseModel):
    step_id: str
    type: StepType
    params: Dict[str, Any] = Field(default_factory=dict)
    # Indices into ExecutionPlan.steps.
    depends_on: List[int] = Field(default_factory=list)
    description: str = ""


class ExecutionPlan(BaseModel):
    plan_id: str
    title: str
    description: str = ""
    steps: List[ExecutionStep] = Field(default_factory=list)
    created_at: Optional[str] = None
    # Problems found while compiling the model payload (e.g. unknown dependency ids).
    compile_errors: List[str] = Field(default_factory=list)

    def index_of(self, step_id: str) -> Optional[int]:
        for idx, step in enumerate(self.steps):
            if step.step_id == step_id:
                return idx
        return None


class ExecutionResult(BaseModel):
    step_index: int
    step_id: str
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    executed_at: str
    duration_ms: int = 0


class ChatStreamRequest(BaseModel):
    message: str
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    clear_history: bool = Field(default=False, alias="clearHistory")

    model_config = {"populate_by_name": True}


class ClearHistoryRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    model_config = {"populate_by_name": True}


class ToolCallRequest(BaseModel):
    tool_name: Optional[str] = Field(default=None, alias="toolName")
    arguments: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class PlanRequest(BaseModel):
    message: str
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")

    model_config = {"populate_by_name": True}


class PlanExecuteRequest(BaseModel):
    plan: ExecutionPlan
    pause_on_error: bool = Field(default=False, alias="pauseOnError")

    model_config = {"populate_by_name": True}


class StatsAction(BaseModel):
    action: str
    data: Dict[str, Any] = Field(default_factory=dict)
