"""
Turn detection over streaming transcripts.

The recognizer emits partial results, finals and end-of-speech markers.
The detector buffers the latest text and decides when the caller's turn is
complete (silence after a final) and when a caller's end-of-speech while the
agent is talking should interrupt playback (barge-in).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from prometheus_client import Counter

from ..logging_config import get_logger
from .models import TranscriptEvent

logger = get_logger(__name__)

_TURNS_DISPATCHED_TOTAL = Counter(
    "voice_agent_turns_dispatched_total",
    "User turns dispatched for a response",
    labelnames=("trigger",),
)
_TURNS_DROPPED_TOTAL = Counter(
    "voice_agent_turns_dropped_total",
    "Completed user turns dropped because a response was already in flight",
)

TRIGGER_SILENCE = "silence"
TRIGGER_INTERRUPT = "interrupt"


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_SILENCE = "awaiting_silence"
    DISPATCHED = "dispatched"


@dataclass(frozen=True)
class TurnPolicy:
    silence_timeout_ms: int = 500
    interrupt_grace_ms: int = 300


class TurnDetector:
    """Per-call turn detector.

    ``handle_event`` must be called with ``lock`` held; timer expiry acquires
    the same lock before dispatching, so dispatch never interleaves with
    transcript handling. ``on_turn`` is invoked with the lock held and must
    not block on the response itself.
    """

    def __init__(
        self,
        *,
        on_turn: Callable[[str], Awaitable[None]],
        on_interrupt: Callable[[], Awaitable[None]],
        barge_in_filter: Callable[[str], bool],
        is_busy: Callable[[], bool],
        lock: asyncio.Lock,
        policy: Optional[TurnPolicy] = None,
        call_id: str = "",
    ):
        self._on_turn = on_turn
        self._on_interrupt = on_interrupt
        self._barge_in_filter = barge_in_filter
        self._is_busy = is_busy
        self._lock = lock
        self.policy = policy or TurnPolicy()
        self.call_id = call_id

        self.state = TurnState.IDLE
        self.buffer = ""
        self._timer: Optional[asyncio.Task] = None
        self._timer_trigger: Optional[str] = None

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def handle_event(self, event: TranscriptEvent, *, agent_speaking: bool) -> None:
        # Last text wins, whatever the event kind.
        self.buffer = event.text

        if agent_speaking:
            if not event.is_end_of_speech:
                return
            if not self._barge_in_filter(event.text):
                return
            logger.info("Smart interrupt triggered", call_id=self.call_id)
            self._cancel_timer()
            # Audio egress is fully stopped before the replacement turn is scheduled.
            await self._on_interrupt()
            self.buffer = event.text
            self._schedule(self.policy.interrupt_grace_ms, TRIGGER_INTERRUPT)
            return

        self._cancel_timer()
        if event.is_final and event.stripped:
            logger.debug(
                "Final transcript, awaiting silence",
                call_id=self.call_id,
                delay_ms=self.policy.silence_timeout_ms,
            )
            self._schedule(self.policy.silence_timeout_ms, TRIGGER_SILENCE)
        else:
            self.state = TurnState.IDLE

    def cancel(self) -> None:
        """Cancel any pending dispatch and forget the buffered text."""
        self._cancel_timer()
        self.buffer = ""
        self.state = TurnState.IDLE

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._timer_trigger = None

    def _schedule(self, delay_ms: int, trigger: str) -> None:
        self._cancel_timer()
        self.state = TurnState.AWAITING_SILENCE
        self._timer_trigger = trigger
        self._timer = asyncio.create_task(self._dispatch_after(delay_ms / 1000.0, trigger))

    async def _dispatch_after(self, delay_s: float, trigger: str) -> None:
        await asyncio.sleep(delay_s)
        async with self._lock:
            # Superseded while waiting for the lock.
            if self._timer is not asyncio.current_task():
                return
            self._timer = None
            self._timer_trigger = None

            text = self.buffer
            self.buffer = ""
            if not text.strip():
                self.state = TurnState.IDLE
                return
            if self._is_busy():
                self.state = TurnState.IDLE
                _TURNS_DROPPED_TOTAL.inc()
                logger.info(
                    "Turn dropped; response already in flight",
                    call_id=self.call_id,
                    transcript_preview=text[:40],
                )
                return

            self.state = TurnState.DISPATCHED
            _TURNS_DISPATCHED_TOTAL.labels(trigger=trigger).inc()
            logger.debug("Dispatching turn", call_id=self.call_id, trigger=trigger)
            await self._on_turn(text)
