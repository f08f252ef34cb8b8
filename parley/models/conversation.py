"""HTTP request and response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from parley.models.llm import TurnEvent


class ConversationRequest(BaseModel):
    """Request model for the conversation endpoints."""

    message: str
    user_id: str
    world_id: str = "default"
    role: str = "player"


class UsageSummary(BaseModel):
    """Token usage of one turn."""

    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_hit_rate: float = 0.0


class ConversationResponse(BaseModel):
    """Response model for the conversation endpoint."""

    response: str
    display: str
    session_id: str
    tool_limit_reached: bool = False
    end_task: bool = False
    cancelled: bool = False
    events: list[TurnEvent] = Field(default_factory=list)
    usage: UsageSummary = Field(default_factory=UsageSummary)


class CancelRequest(BaseModel):
    """Request model for cancelling an in-flight turn."""

    user_id: str
    world_id: str = "default"


class CancelResponse(BaseModel):
    cancelled: bool


class HistoryMessage(BaseModel):
    role: str
    content: str


class HistoryResponse(BaseModel):
    """Visible history of a conversation."""

    session_id: str
    messages: list[HistoryMessage]
    session_tokens: int
    rolling_summary: str = ""


class ToolInfo(BaseModel):
    """Registry metadata for one tool."""

    name: str
    description: str
    category: str
    enabled: bool
    execution_count: int
    success_count: int
    failure_count: int
    tags: list[str] = Field(default_factory=list)

    class Config:
        extra = "ignore"


class ToolListResponse(BaseModel):
    tools: list[ToolInfo]
    stats: dict[str, Any]


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
