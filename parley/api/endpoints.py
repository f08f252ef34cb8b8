"""API endpoints for the conversation service."""

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from parley import __version__
from parley.clients.factory import create_model_client
from parley.config import Settings
from parley.models.conversation import (
    CancelRequest,
    CancelResponse,
    ConversationRequest,
    ConversationResponse,
    HealthResponse,
    HistoryMessage,
    HistoryResponse,
    ToolInfo,
    ToolListResponse,
    UsageSummary,
)
from parley.models.llm import TurnEvent
from parley.services.conversation import ConversationService, TurnOutcome
from parley.services.llm import LLMService
from parley.services.session_manager import ConversationSessionManager
from parley.tools import create_default_registry
from parley.tools.documents import load_sample_index
from parley.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

_conversation_service: ConversationService | None = None


def get_conversation_service() -> ConversationService:
    """Get or create the conversation service configured from the environment."""
    global _conversation_service
    if _conversation_service is None:
        settings = Settings.from_env()
        registry = create_default_registry(load_sample_index())
        llm = LLMService(create_model_client(settings), registry, settings.system_prompt)
        sessions = ConversationSessionManager(
            max_tokens=settings.context_tokens, session_timeout_minutes=settings.session_timeout_minutes
        )
        _conversation_service = ConversationService(llm, registry, sessions)
    return _conversation_service


def _to_response(outcome: TurnOutcome) -> ConversationResponse:
    usage = outcome.usage
    return ConversationResponse(
        response=outcome.response.content,
        display=outcome.response.display or outcome.response.content,
        session_id=outcome.session_id,
        tool_limit_reached=outcome.response.tool_limit_reached_error,
        end_task=outcome.response.end_task,
        cancelled=outcome.cancelled,
        events=outcome.events,
        usage=UsageSummary(
            requests=usage.requests,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            cache_read_input_tokens=usage.cache_read_input_tokens,
            cache_hit_rate=usage.cache_hit_rate,
        ),
    )


@router.post("/conversation", response_model=ConversationResponse, tags=["Conversation"])
async def handle_conversation(
    request: ConversationRequest, service: ConversationService = Depends(get_conversation_service)
) -> ConversationResponse:
    """Run one turn and return the final response with the events it produced."""
    try:
        outcome = await service.process_message(request.user_id, request.world_id, request.message, request.role)
    except ValueError as e:
        logger.warning(f"Message validation error for {request.user_id}/{request.world_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e

    logger.info(f"Generated response for {request.user_id}/{request.world_id}: {outcome.response.content[:50]}...")
    return _to_response(outcome)


@router.post("/conversation/stream", tags=["Conversation"])
async def stream_conversation(
    request: ConversationRequest, service: ConversationService = Depends(get_conversation_service)
) -> StreamingResponse:
    """Run one turn, streaming events as NDJSON lines followed by a final record."""
    try:
        service.validate_message(request.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    async def lines() -> AsyncIterator[str]:
        async for item in service.stream_message(request.user_id, request.world_id, request.message, request.role):
            if isinstance(item, TurnEvent):
                yield json.dumps({"type": "event", **item.model_dump(mode="json")}) + "\n"
            else:
                final = _to_response(item).model_dump(mode="json", exclude={"events"})
                yield json.dumps({"type": "final", **final}) + "\n"

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@router.post("/conversation/cancel", response_model=CancelResponse, tags=["Conversation"])
async def cancel_conversation(
    request: CancelRequest, service: ConversationService = Depends(get_conversation_service)
) -> CancelResponse:
    """Cancel the in-flight turn of a conversation."""
    return CancelResponse(cancelled=service.cancel_turn(request.user_id, request.world_id))


@router.get("/conversation/{user_id}/{world_id}", response_model=HistoryResponse, tags=["Conversation"])
async def get_conversation(
    user_id: str, world_id: str, service: ConversationService = Depends(get_conversation_service)
) -> HistoryResponse:
    """Return the visible history of a conversation."""
    session = service.get_session(user_id, world_id)
    conversation = session.conversation
    return HistoryResponse(
        session_id=session.session_id,
        messages=[HistoryMessage(role=m.role, content=m.content) for m in conversation.get_display_history()],
        session_tokens=conversation.session_tokens,
        rolling_summary=conversation.rolling_summary,
    )


@router.delete("/conversation/{user_id}/{world_id}", tags=["Conversation"])
async def delete_conversation(
    user_id: str, world_id: str, service: ConversationService = Depends(get_conversation_service)
) -> dict[str, bool]:
    """Cancel any running turn and delete the conversation."""
    return {"deleted": service.clear_conversation(user_id, world_id)}


@router.get("/tools", response_model=ToolListResponse, tags=["Tools"])
async def list_tools(service: ConversationService = Depends(get_conversation_service)) -> ToolListResponse:
    """List registered tools with their execution counters."""
    registry = service.registry
    return ToolListResponse(
        tools=[ToolInfo.model_validate(info) for info in registry.list_tools()],
        stats=registry.get_stats(),
    )


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
