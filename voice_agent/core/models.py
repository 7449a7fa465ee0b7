"""
Core data models for a live call.

Everything here is owned by exactly one CallHandler; nothing is shared
between calls.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionStatus(str, Enum):
    """Lifecycle of a call session; CLOSED is terminal."""
    IDLE = "idle"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class ConversationPhase(str, Enum):
    """Turn-taking phase of an active call."""
    IDLE = "idle"
    LISTENING = "listening_for_turn"
    PENDING_RESPONSE = "pending_response"
    SPEAKING = "speaking"


@dataclass(frozen=True)
class ConversationTurn:
    role: Role
    text: str

    def to_message(self) -> dict:
        return {"role": self.role.value, "content": self.text}


@dataclass(frozen=True)
class TranscriptEvent:
    """One recognizer result. Partials update the buffer but never dispatch."""
    text: str
    is_final: bool = False
    is_end_of_speech: bool = False

    @property
    def stripped(self) -> str:
        return self.text.strip()


@dataclass(frozen=True)
class AudioFrame:
    """PCM16 mono audio tagged with its sample rate. bytes keeps it immutable once queued."""
    data: bytes
    sample_rate: int

    @property
    def duration_ms(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return (len(self.data) // 2) * 1000.0 / self.sample_rate


@dataclass
class CallSession:
    """Complete session state for a call."""
    # Identifiers: assigned once by the start event
    call_id: str = ""
    stream_id: str = ""
    called_number: str = ""

    status: SessionStatus = SessionStatus.IDLE
    phase: ConversationPhase = ConversationPhase.IDLE
    pending_turn_text: Optional[str] = None
    pending_transcript: str = ""
    last_agent_text: str = ""

    # Incremented on every dispatched turn and every barge-in; LLM results
    # issued under an older value are stale.
    turn_seq: int = 0

    # Monotonic timestamps (seconds) for heuristics and latency readings
    last_audio_sent_at: Optional[float] = None
    last_user_speech_end_at: Optional[float] = None
    response_started_at: Optional[float] = None

    created_at: float = field(default_factory=time.time)

    def bind_identifiers(self, call_id: str, stream_id: str) -> bool:
        """Set call/stream ids once. Returns False if they were already bound."""
        if self.call_id or self.stream_id:
            return False
        self.call_id = call_id
        self.stream_id = stream_id
        return True

    @property
    def is_busy(self) -> bool:
        return self.phase in (ConversationPhase.PENDING_RESPONSE, ConversationPhase.SPEAKING)

    @property
    def agent_speaking(self) -> bool:
        return self.phase is ConversationPhase.SPEAKING

    @property
    def is_open(self) -> bool:
        return self.status in (SessionStatus.IDLE, SessionStatus.ACTIVE)
