"""Per-conversation session state."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from parley.services.context import ConversationManager
from parley.utils.cancellation import CancellationToken
from parley.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ConversationSession:
    """A live (user, world) conversation and its in-flight turn."""

    session_id: str
    user_id: str
    world_id: str
    conversation: ConversationManager
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    turn_count: int = 0
    current_signal: CancellationToken | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def busy(self) -> bool:
        return self.current_signal is not None

    def as_dict(self) -> dict[str, Any]:
        """Return the session as a dictionary."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "world_id": self.world_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "turn_count": self.turn_count,
            "busy": self.busy,
            "session_tokens": self.conversation.session_tokens,
        }

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    def begin_turn(self) -> CancellationToken:
        """Install a token for a new turn, cancelling whichever turn was current."""
        previous = self.current_signal
        self.current_signal = CancellationToken()
        if previous is not None:
            logger.info(f"Cancelling in-flight turn for session {self.session_id}")
            previous.cancel("Superseded by a new message")
        self.update_activity()
        return self.current_signal

    def end_turn(self, signal: CancellationToken) -> None:
        if self.current_signal is signal:
            self.current_signal = None
        self.turn_count += 1
        self.update_activity()
