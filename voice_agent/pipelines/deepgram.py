"""
Deepgram live speech-to-text adapter.

Streams the caller's 8 kHz linear16 audio over Deepgram's ``/v1/listen``
WebSocket and turns ``Results`` messages into TranscriptEvents.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import websockets

from ..config import DeepgramConfig
from ..core.models import TranscriptEvent
from ..errors import CapabilityConnectionError, MalformedMessageError
from ..logging_config import get_logger
from .base import STTComponent

logger = get_logger(__name__)

_CLOSE_STREAM = json.dumps({"type": "CloseStream"})


def _bool_param(value: bool) -> str:
    return "true" if value else "false"


def build_listen_url(config: DeepgramConfig, sample_rate_hz: int) -> str:
    query = {
        "model": config.model,
        "language": config.language,
        "encoding": config.encoding,
        "sample_rate": str(sample_rate_hz),
        "channels": "1",
        "punctuate": _bool_param(config.punctuate),
        "interim_results": _bool_param(config.interim_results),
        "endpointing": str(config.endpointing_ms),
        "utterance_end_ms": str(config.utterance_end_ms),
    }
    return f"{config.base_url}?{urlencode(query)}"


def parse_results_message(raw: Any) -> Optional[TranscriptEvent]:
    """Decode one Deepgram message.

    Returns None for anything that is not a ``Results`` message with a
    non-empty transcript (metadata, UtteranceEnd, SpeechStarted, silence).

    Raises:
        MalformedMessageError: The payload is not a JSON object.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedMessageError(f"Deepgram message is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedMessageError("Deepgram message is not an object")

    if data.get("type") != "Results":
        return None
    try:
        transcript = data["channel"]["alternatives"][0].get("transcript") or ""
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    if not transcript.strip():
        return None
    return TranscriptEvent(
        text=transcript,
        is_final=bool(data.get("is_final", False)),
        is_end_of_speech=bool(data.get("speech_final", False)),
    )


class DeepgramSTTAdapter(STTComponent):
    """One Deepgram live-transcription socket per call."""

    def __init__(
        self,
        config: DeepgramConfig,
        sample_rate_hz: int = 8000,
        *,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self._config = config
        self._sample_rate_hz = sample_rate_hz
        self._connector = connector or websockets.connect
        self._websocket: Optional[Any] = None
        self._events: "asyncio.Queue[Optional[TranscriptEvent]]" = asyncio.Queue()
        self._receiver_task: Optional[asyncio.Task] = None
        self._active = False
        self._closed = False
        self.call_id = ""

    @property
    def is_open(self) -> bool:
        return self._active and not self._closed

    async def connect(self, call_id: str) -> None:
        self.call_id = call_id
        if not self._config.api_key:
            raise CapabilityConnectionError("deepgram", "API key not configured")

        url = build_listen_url(self._config, self._sample_rate_hz)
        headers = [("Authorization", f"Token {self._config.api_key}")]
        logger.info(
            "Deepgram STT opening streaming session",
            call_id=call_id,
            model=self._config.model,
            language=self._config.language,
            sample_rate=self._sample_rate_hz,
        )
        try:
            self._websocket = await self._connector(
                url,
                additional_headers=headers,
                max_size=16 * 1024 * 1024,
                ping_interval=20,
                ping_timeout=10,
            )
        except (OSError, websockets.WebSocketException) as exc:
            logger.error("Failed to connect to Deepgram streaming", call_id=call_id, error=str(exc))
            raise CapabilityConnectionError("deepgram", f"connection failed: {exc}") from exc

        self._active = True
        self._receiver_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT streaming session opened", call_id=call_id)

    async def send_audio(self, audio_pcm16: bytes) -> None:
        if not self.is_open or self._websocket is None or not audio_pcm16:
            return
        try:
            await self._websocket.send(audio_pcm16)
        except websockets.ConnectionClosed as exc:
            logger.warning(
                "Deepgram streaming websocket closed while sending audio",
                call_id=self.call_id,
                error=str(exc),
            )
            self._active = False

    async def iter_events(self) -> AsyncIterator[TranscriptEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                break
            yield event

    async def _receive_loop(self) -> None:
        try:
            async for message in self._websocket:
                try:
                    event = parse_results_message(message)
                except MalformedMessageError as exc:
                    logger.debug("Discarding malformed Deepgram message", call_id=self.call_id, error=str(exc))
                    continue
                if event is None:
                    continue
                logger.debug(
                    "Deepgram transcript received",
                    call_id=self.call_id,
                    transcript_preview=event.text[:50],
                    is_final=event.is_final,
                    speech_final=event.is_end_of_speech,
                )
                self._events.put_nowait(event)
        except websockets.ConnectionClosed:
            logger.info("Deepgram streaming websocket closed", call_id=self.call_id)
        except Exception as exc:
            logger.error(
                "Deepgram streaming receive loop error",
                call_id=self.call_id,
                error=str(exc),
                exc_info=True,
            )
        finally:
            self._active = False
            self._events.put_nowait(None)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            try:
                await websocket.send(_CLOSE_STREAM)
            except websockets.WebSocketException:
                pass
            await websocket.close()
        if self._receiver_task is not None and not self._receiver_task.done():
            self._receiver_task.cancel()
            try:
                await self._receiver_task
            except asyncio.CancelledError:
                pass
        self._active = False
        logger.info("Deepgram STT session closed", call_id=self.call_id)
