"""Bounded conversation history handed to the language model on every turn."""

from typing import Dict, List, Tuple

from ..logging_config import get_logger
from .models import ConversationTurn, Role

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 20


class ConversationState:
    """Append-only sliding window of (user, assistant) exchanges.

    Pairs are appended only after a language-model response completes; when
    the window overflows, the oldest entries are dropped from the front.
    """

    def __init__(self, max_entries: int = DEFAULT_HISTORY_LIMIT):
        if max_entries < 2:
            raise ValueError("max_entries must hold at least one exchange")
        self._max_entries = max_entries
        self._turns: List[ConversationTurn] = []

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def turns(self) -> Tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def append_exchange(self, user_text: str, assistant_text: str) -> None:
        self._turns.append(ConversationTurn(Role.USER, user_text))
        self._turns.append(ConversationTurn(Role.ASSISTANT, assistant_text))
        overflow = len(self._turns) - self._max_entries
        if overflow > 0:
            del self._turns[:overflow]
            logger.debug("Conversation history trimmed", dropped=overflow, retained=len(self._turns))

    def messages(self) -> List[Dict[str, str]]:
        """Chat-completions style messages, oldest first."""
        return [turn.to_message() for turn in self._turns]
