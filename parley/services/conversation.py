"""Conversation service: the outer boundary of a user turn."""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from parley.config import EngineConfig
from parley.errors import ModelEndpointError, TurnCancelledError
from parley.models.llm import Message, NormalizedResponse, TurnEvent, TurnUsage
from parley.models.session import ConversationSession
from parley.services.context import ConversationManager
from parley.services.engine import ConversationEngine
from parley.services.events import TurnEventChannel
from parley.services.llm import LLMService
from parley.services.session_manager import ConversationSessionManager
from parley.tools.base import ExecutionContext
from parley.tools.registry import ToolRegistry
from parley.utils.logging import get_logger, truncate_for_log

logger = get_logger(__name__)

CANCELLED_CONTENT = "Process cancelled by user"
CANCELLED_DISPLAY = "🛑 Process cancelled by user"
TECHNICAL_DIFFICULTIES = "I apologize, but I'm experiencing technical difficulties. Please try again."
MAX_MESSAGE_CHARS = 8000


@dataclass
class TurnOutcome:
    """Everything a caller gets back from one turn."""

    response: NormalizedResponse
    session_id: str
    events: list[TurnEvent] = field(default_factory=list)
    cancelled: bool = False
    failed: bool = False
    usage: TurnUsage = field(default_factory=TurnUsage)


class ConversationService:
    """Runs turns for (user, world) conversations.

    A new message cancels the conversation's in-flight turn and waits for
    it to unwind before starting. Nothing raised inside a turn escapes
    except message validation errors.
    """

    def __init__(
        self,
        llm: LLMService,
        registry: ToolRegistry,
        sessions: ConversationSessionManager,
        config: EngineConfig | None = None,
        max_message_chars: int = MAX_MESSAGE_CHARS,
    ):
        self.llm = llm
        self.registry = registry
        self.sessions = sessions
        self.config = config or EngineConfig()
        self.max_message_chars = max_message_chars

        logger.info(f"ConversationService initialized with {len(registry.get_tool_names())} tools")

    async def process_message(
        self,
        user_id: str,
        world_id: str,
        message: str,
        role: str = "player",
        events: TurnEventChannel | None = None,
    ) -> TurnOutcome:
        """Process a user message and return the turn outcome.

        Args:
            user_id: Conversation owner
            world_id: Scope of the conversation
            message: User's message
            role: Caller role used for tool permissions
            events: Channel receiving turn events as they happen

        Returns:
            TurnOutcome with the final response

        Raises:
            ValueError: If the message is too long
        """
        self.validate_message(message)

        session = self.sessions.get_or_create_session(user_id, world_id)
        signal = session.begin_turn()
        events = events or TurnEventChannel()

        async with session.lock:
            conversation = session.conversation
            conversation.add_message("user", message)
            logger.info(f"Processing message for {user_id}/{world_id}: {truncate_for_log(message, 50)}")

            engine = ConversationEngine(
                conversation,
                self.llm,
                self.registry,
                config=self.config,
                context=ExecutionContext(user_id=user_id, world_id=world_id, role=role, conversation=conversation),
            )
            cancelled = failed = False
            try:
                signal.raise_if_cancelled()
                response = await engine.process_turn(signal, events)
            except TurnCancelledError as e:
                logger.info(f"Turn cancelled for {user_id}/{world_id}: {e.message}")
                conversation.sanitize()
                response = NormalizedResponse(content=CANCELLED_CONTENT, display=CANCELLED_DISPLAY)
                events.emit(TurnEvent(kind="status", content=CANCELLED_CONTENT, display=CANCELLED_DISPLAY))
                cancelled = True
            except ModelEndpointError as e:
                logger.error(f"Model endpoint failed for {user_id}/{world_id}: {e.message}")
                response = self._failure_response(conversation, e)
                events.emit(TurnEvent(kind="assistant_message", content=response.content, display=response.display))
                failed = True
            except Exception as e:
                logger.error(f"Conversation processing error for {user_id}/{world_id}: {e}", exc_info=True)
                response = self._failure_response(conversation, e)
                events.emit(TurnEvent(kind="assistant_message", content=response.content, display=response.display))
                failed = True
            finally:
                session.end_turn(signal)

        if response.tool_limit_reached_error:
            logger.warning(f"Tool limit reached for {user_id}/{world_id}")
        usage = engine.last_usage
        logger.info(
            f"Turn finished for {user_id}/{world_id}: {usage.requests} model requests, "
            f"{usage.total_tokens} tokens, {conversation.session_tokens} tokens in context"
        )
        return TurnOutcome(
            response=response,
            session_id=session.session_id,
            events=list(events.history),
            cancelled=cancelled,
            failed=failed,
            usage=usage,
        )

    async def stream_message(
        self, user_id: str, world_id: str, message: str, role: str = "player"
    ) -> AsyncIterator[TurnEvent | TurnOutcome]:
        """Yield turn events as they happen, then the TurnOutcome.

        Raises:
            ValueError: If the message is too long
        """
        self.validate_message(message)

        channel = TurnEventChannel()
        task = asyncio.create_task(self.process_message(user_id, world_id, message, role, events=channel))
        task.add_done_callback(lambda _: channel.close())
        try:
            async for event in channel:
                yield event
            yield await task
        finally:
            if not task.done():
                self.cancel_turn(user_id, world_id)

    def cancel_turn(self, user_id: str, world_id: str) -> bool:
        """Cancel the in-flight turn, if any."""
        session = self.sessions.get_session(user_id, world_id)
        if session is None or session.current_signal is None:
            return False
        session.current_signal.cancel()
        return True

    def clear_conversation(self, user_id: str, world_id: str) -> bool:
        return self.sessions.delete_session(user_id, world_id)

    def get_session(self, user_id: str, world_id: str) -> ConversationSession:
        return self.sessions.get_or_create_session(user_id, world_id)

    def get_history(self, user_id: str, world_id: str) -> list[Message]:
        return self.get_session(user_id, world_id).conversation.get_display_history()

    def _failure_response(self, conversation: ConversationManager, error: Exception) -> NormalizedResponse:
        conversation.sanitize()
        return NormalizedResponse(
            content=TECHNICAL_DIFFICULTIES,
            display=TECHNICAL_DIFFICULTIES,
            error_metadata={"error": type(error).__name__, "message": str(error)},
        )

    def validate_message(self, message: str) -> None:
        """Validate message length in characters and model tokens.

        Raises:
            ValueError: If message exceeds the character or token limit
        """
        if len(message) > self.max_message_chars:
            raise ValueError(
                f"Your message is too long. Please keep messages under {self.max_message_chars} characters."
            )
        self.llm.validate_message(message)
