"""Registry of live call handlers keyed by transport connection id."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Dict, List, Optional

from prometheus_client import Gauge

from ..logging_config import get_logger

if TYPE_CHECKING:
    from .call_handler import CallHandler

logger = get_logger(__name__)

_ACTIVE_CALLS = Gauge(
    "voice_agent_active_calls",
    "Number of media streams with a live call handler",
)


class SessionStore:
    def __init__(self):
        self._handlers: Dict[str, "CallHandler"] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._handlers)

    async def register(self, connection_id: str, handler: "CallHandler") -> None:
        async with self._lock:
            if connection_id in self._handlers:
                raise KeyError(f"connection already registered: {connection_id}")
            self._handlers[connection_id] = handler
            _ACTIVE_CALLS.set(len(self._handlers))
        logger.debug("Call handler registered", connection_id=connection_id, active_calls=len(self._handlers))

    async def remove(self, connection_id: str) -> Optional["CallHandler"]:
        async with self._lock:
            handler = self._handlers.pop(connection_id, None)
            _ACTIVE_CALLS.set(len(self._handlers))
        if handler is not None:
            logger.debug("Call handler removed", connection_id=connection_id, active_calls=len(self._handlers))
        return handler

    async def close_all(self) -> None:
        """Clean up every live call (server shutdown)."""
        async with self._lock:
            handlers: List["CallHandler"] = list(self._handlers.values())
            self._handlers.clear()
            _ACTIVE_CALLS.set(0)
        if handlers:
            logger.info("Closing active calls", count=len(handlers))
        await asyncio.gather(*(handler.cleanup() for handler in handlers), return_exceptions=True)

    def stats(self) -> Dict[str, object]:
        """Snapshot served by the /sessions/stats route."""
        return {
            "active_calls": len(self._handlers),
            "calls": [
                {
                    "call_id": handler.session.call_id,
                    "status": handler.session.status.value,
                    "phase": handler.session.phase.value,
                    "turns": len(handler.conversation) // 2,
                }
                for handler in self._handlers.values()
            ],
        }
