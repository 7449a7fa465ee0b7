"""
Echo Guard for transcript gating.

Handsets loop the agent's own voice back into the microphone, so the
recognizer keeps producing transcripts of what the agent just said. The guard
drops those transcripts before they reach the Turn Detector, using two
heuristics:

* timing: anything recognized shortly after outbound audio was sent;
* content: transcripts that are a substring of (or share their opening words
  with) the text the agent is speaking or has just spoken.

The guard is a pass-through until the agent has spoken at least once.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from prometheus_client import Counter

from ..logging_config import get_logger

logger = get_logger(__name__)

_ECHO_DECISIONS_TOTAL = Counter(
    "voice_agent_echo_guard_decisions_total",
    "Transcript events evaluated by the echo guard",
    labelnames=("decision",),
)

_WHITESPACE = re.compile(r"\s+")

REASON_TIMING = "timing"
REASON_SIMILARITY = "similarity"


@dataclass(frozen=True)
class EchoPolicy:
    """Tunable echo / barge-in heuristics.

    Attributes:
        echo_window_ms: Transcripts arriving within this window after the last
            outbound send are treated as echo.
        similarity_enabled: Enable the content-similarity gate.
        similarity_hold_ms: How long after the last send the agent text is
            still considered "just spoken" for the similarity gate.
        prefix_words: Number of leading words matched against the agent text.
        min_interrupt_chars: Minimum trimmed length for a barge-in.
    """
    echo_window_ms: int = 4000
    similarity_enabled: bool = True
    similarity_hold_ms: int = 8000
    prefix_words: int = 3
    min_interrupt_chars: int = 3


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", (text or "").strip().lower())


@dataclass
class EchoGuardStats:
    total_passed: int = 0
    dropped_timing: int = 0
    dropped_similarity: int = 0


class EchoGuard:
    """Per-call echo suppression and barge-in filter."""

    def __init__(
        self,
        call_id: str = "",
        policy: Optional[EchoPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.call_id = call_id
        self.policy = policy or EchoPolicy()
        self._clock = clock
        self._last_audio_sent_at: Optional[float] = None
        self._agent_text = ""
        self._agent_speaking = False
        self.stats = EchoGuardStats()

    @property
    def last_audio_sent_at(self) -> Optional[float]:
        return self._last_audio_sent_at

    def note_audio_sent(self, at: Optional[float] = None) -> float:
        """Record an outbound send; returns the timestamp used."""
        sent_at = self._clock() if at is None else at
        self._last_audio_sent_at = sent_at
        return sent_at

    def note_agent_speech(self, text: str) -> None:
        """The agent started speaking ``text``."""
        self._agent_text = normalize_text(text)
        self._agent_speaking = True

    def note_agent_finished(self) -> None:
        self._agent_speaking = False

    def _agent_text_is_fresh(self, now: float) -> bool:
        if not self._agent_text:
            return False
        if self._agent_speaking:
            return True
        if self._last_audio_sent_at is None:
            return False
        return (now - self._last_audio_sent_at) * 1000.0 < self.policy.similarity_hold_ms

    def resembles_agent_speech(self, text: str) -> bool:
        """Content-similarity gate against the current/just-finished agent text."""
        candidate = normalize_text(text)
        if not candidate or not self._agent_text:
            return False
        if candidate in self._agent_text:
            return True
        prefix = " ".join(candidate.split(" ")[: self.policy.prefix_words])
        return bool(prefix) and prefix in self._agent_text

    def echo_reason(self, text: str, now: Optional[float] = None) -> Optional[str]:
        """Return why ``text`` looks like echo, or None if it should pass."""
        now = self._clock() if now is None else now
        if self._last_audio_sent_at is not None:
            since_ms = (now - self._last_audio_sent_at) * 1000.0
            if since_ms < self.policy.echo_window_ms:
                return REASON_TIMING
        if self.policy.similarity_enabled and self._agent_text_is_fresh(now) and self.resembles_agent_speech(text):
            return REASON_SIMILARITY
        return None

    def admit(self, text: str, now: Optional[float] = None) -> bool:
        """Gate a transcript event; False means it was discarded as echo."""
        now = self._clock() if now is None else now
        reason = self.echo_reason(text, now)
        if reason is None:
            self.stats.total_passed += 1
            _ECHO_DECISIONS_TOTAL.labels(decision="passed").inc()
            return True

        if reason == REASON_TIMING:
            self.stats.dropped_timing += 1
        else:
            self.stats.dropped_similarity += 1
        _ECHO_DECISIONS_TOTAL.labels(decision=f"dropped_{reason}").inc()
        logger.info(
            "Ignoring likely echo",
            call_id=self.call_id,
            reason=reason,
            ms_since_audio=None if self._last_audio_sent_at is None else round((now - self._last_audio_sent_at) * 1000.0),
            transcript_preview=text[:40],
        )
        return False

    def should_interrupt(self, text: str) -> bool:
        """Barge-in filter applied to end-of-speech transcripts while the agent speaks."""
        trimmed = (text or "").strip()
        if len(trimmed) < self.policy.min_interrupt_chars:
            logger.debug("Transcript too short for interrupt", call_id=self.call_id, length=len(trimmed))
            return False
        if self.policy.similarity_enabled and self.resembles_agent_speech(trimmed):
            logger.debug("Interrupt candidate matches agent speech", call_id=self.call_id)
            return False
        logger.info("Valid interrupt", call_id=self.call_id, transcript_preview=trimmed[:40])
        return True

    def get_stats(self) -> Dict[str, int]:
        return {
            "total_passed": self.stats.total_passed,
            "dropped_timing": self.stats.dropped_timing,
            "dropped_similarity": self.stats.dropped_similarity,
        }
