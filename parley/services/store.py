"""Key-value persistence for conversation state, scoped by user and world."""

import json
from typing import Any, Protocol

from parley.utils.logging import get_logger

logger = get_logger(__name__)


class ConversationStore(Protocol):
    """Persistence boundary used by ConversationManager.save/load."""

    def get(self, user_id: str, world_id: str) -> dict[str, Any] | None: ...

    def set(self, user_id: str, world_id: str, data: dict[str, Any]) -> None: ...

    def delete(self, user_id: str, world_id: str) -> bool: ...


class InMemoryConversationStore:
    """In-memory store that keeps JSON snapshots, so stored state never aliases live objects."""

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], str] = {}

    def get(self, user_id: str, world_id: str) -> dict[str, Any] | None:
        raw = self._data.get((user_id, world_id))
        return json.loads(raw) if raw is not None else None

    def set(self, user_id: str, world_id: str, data: dict[str, Any]) -> None:
        self._data[(user_id, world_id)] = json.dumps(data, default=str)

    def delete(self, user_id: str, world_id: str) -> bool:
        if (user_id, world_id) in self._data:
            del self._data[(user_id, world_id)]
            logger.info(f"Deleted stored conversation for {user_id}/{world_id}")
            return True
        return False
