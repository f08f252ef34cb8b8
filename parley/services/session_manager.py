"""Session management for live conversations."""

from datetime import UTC, datetime, timedelta

from cuid2 import cuid_wrapper

from parley.models.session import ConversationSession
from parley.services.context import DEFAULT_MAX_TOKENS, ConversationManager
from parley.services.store import ConversationStore, InMemoryConversationStore
from parley.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


class ConversationSessionManager:
    """Keeps one live session per (user, world), loading state from the store on first use."""

    def __init__(
        self,
        store: ConversationStore | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        session_timeout_minutes: int = 60,
    ):
        """Initialize session manager.

        Args:
            store: Persistence for conversation state
            max_tokens: Context budget for each conversation
            session_timeout_minutes: Idle minutes before a session is evicted from memory
        """
        self.store = store if store is not None else InMemoryConversationStore()
        self.max_tokens = max_tokens
        self.sessions: dict[tuple[str, str], ConversationSession] = {}
        self.session_timeout = timedelta(minutes=session_timeout_minutes)

    def get_or_create_session(self, user_id: str, world_id: str) -> ConversationSession:
        """Get the live session, or resume it from the store, or start a new one."""
        self._cleanup_expired_sessions()

        key = (user_id, world_id)
        session = self.sessions.get(key)
        if session:
            session.update_activity()
            return session

        conversation = ConversationManager(user_id, world_id, max_tokens=self.max_tokens, store=self.store)
        resumed = conversation.load()
        session = ConversationSession(session_id=cuid(), user_id=user_id, world_id=world_id, conversation=conversation)
        self.sessions[key] = session
        logger.info(f"{'Resumed' if resumed else 'Created'} session {session.session_id} for {user_id}/{world_id}")
        return session

    def get_session(self, user_id: str, world_id: str) -> ConversationSession | None:
        self._cleanup_expired_sessions()

        session = self.sessions.get((user_id, world_id))
        if session:
            session.update_activity()
        return session

    def delete_session(self, user_id: str, world_id: str, purge: bool = True) -> bool:
        """Drop the live session, cancelling its turn, and optionally its stored state.

        Returns:
            True if a live session or stored state was removed
        """
        session = self.sessions.pop((user_id, world_id), None)
        if session and purge:
            # The cancelled turn still unwinds and must not write the state back
            session.conversation.detach()
        if session and session.current_signal:
            session.current_signal.cancel("Session closed")
        purged = self.store.delete(user_id, world_id) if purge else False
        return session is not None or purged

    def _cleanup_expired_sessions(self) -> None:
        """Evict idle sessions; their state stays in the store."""
        current_time = datetime.now(UTC)
        expired = [
            key
            for key, session in self.sessions.items()
            if not session.busy and current_time - session.last_activity > self.session_timeout
        ]
        for key in expired:
            logger.debug(f"Evicting idle session for {key[0]}/{key[1]}")
            del self.sessions[key]

    def get_session_count(self) -> int:
        """Get current number of live sessions."""
        self._cleanup_expired_sessions()
        return len(self.sessions)
