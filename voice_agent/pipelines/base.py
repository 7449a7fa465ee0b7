"""
Capability interfaces for the per-call pipeline.

A call talks to three external capabilities: a streaming recognizer, a
language model and a streaming synthesizer. Concrete adapters live beside
this module; the CallHandler only ever sees these abstract types, which keeps
it testable with in-memory fakes.
"""

from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Dict, List

import websockets

from ..core.models import TranscriptEvent


class Component(abc.ABC):
    """Common lifecycle for capability adapters."""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the underlying connection. Must be safe to call twice."""


class STTComponent(Component):
    """Streaming speech recognizer."""

    @abc.abstractmethod
    async def connect(self, call_id: str) -> None:
        ...

    @abc.abstractmethod
    async def send_audio(self, audio_pcm16: bytes) -> None:
        """Forward caller audio; a no-op once the stream is closed."""

    @abc.abstractmethod
    def iter_events(self) -> AsyncIterator[TranscriptEvent]:
        """Transcript events in arrival order; ends when the stream closes."""


class LLMComponent(Component):
    """Chat-completion style language model."""

    @property
    def is_open(self) -> bool:
        return True

    @abc.abstractmethod
    async def generate(
        self,
        call_id: str,
        history: List[Dict[str, str]],
        user_text: str,
    ) -> str:
        ...


class TTSComponent(Component):
    """Streaming synthesizer producing PCM16 mono at ``sample_rate_hz``."""

    sample_rate_hz: int = 16000
    provider_name: str = "tts"

    @abc.abstractmethod
    async def open(self, call_id: str) -> None:
        ...

    @abc.abstractmethod
    def synthesize(self, text: str) -> AsyncIterator[bytes]:
        """Yield raw audio chunks until the provider signals completion.

        Raises SynthesisError when the provider reports a failure.
        """


async def discard_websocket(websocket: Any) -> None:
    """Close a provider socket, ignoring errors from one that is already gone."""
    try:
        await websocket.close()
    except (OSError, websockets.WebSocketException):
        pass
