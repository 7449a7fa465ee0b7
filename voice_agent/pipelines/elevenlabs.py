"""
ElevenLabs stream-input TTS adapter.

Each utterance uses its own ``stream-input`` WebSocket: BOS (voice settings),
the text with ``flush``, then EOS. Audio arrives as base64 PCM16 at 16 kHz;
``isFinal`` marks the end of the utterance, after which the server closes the
socket, so the next turn reconnects.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets

from ..config import ElevenLabsConfig
from ..errors import CapabilityConnectionError, MalformedMessageError, SynthesisError
from ..logging_config import get_logger
from .base import TTSComponent, discard_websocket

logger = get_logger(__name__)


@dataclass(frozen=True)
class StreamMessage:
    audio: bytes = b""
    is_final: bool = False
    error: Optional[str] = None


def build_stream_url(config: ElevenLabsConfig) -> str:
    query = urlencode({"model_id": config.model_id, "output_format": config.output_format})
    return f"{config.base_url.rstrip('/')}/{config.voice_id}/stream-input?{query}"


def build_bos_message(config: ElevenLabsConfig) -> str:
    return json.dumps(
        {
            "text": " ",
            "voice_settings": config.voice_settings.model_dump(),
            "generation_config": {"chunk_length_schedule": list(config.chunk_length_schedule)},
        }
    )


def parse_stream_message(raw: Any) -> StreamMessage:
    """Decode one server message into audio / completion / error parts.

    Raises:
        MalformedMessageError: The payload is not JSON or the audio is not base64.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedMessageError(f"ElevenLabs message is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedMessageError("ElevenLabs message is not an object")

    audio = b""
    if data.get("audio"):
        try:
            audio = base64.b64decode(data["audio"], validate=True)
        except (binascii.Error, TypeError, ValueError) as exc:
            raise MalformedMessageError(f"ElevenLabs audio is not base64: {exc}") from exc
    error = data.get("error")
    return StreamMessage(
        audio=audio,
        is_final=bool(data.get("isFinal")),
        error=str(error) if error else None,
    )


class ElevenLabsTTSAdapter(TTSComponent):
    provider_name = "elevenlabs"

    def __init__(
        self,
        config: ElevenLabsConfig,
        *,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self._config = config
        self._connector = connector or websockets.connect
        self._websocket: Optional[Any] = None
        self.sample_rate_hz = config.sample_rate_hz
        self.call_id = ""

    @property
    def is_open(self) -> bool:
        return self._websocket is not None

    async def open(self, call_id: str) -> None:
        self.call_id = call_id
        if self._websocket is not None:
            return
        if not self._config.api_key:
            raise CapabilityConnectionError("elevenlabs", "API key not configured")

        url = build_stream_url(self._config)
        logger.info("ElevenLabs connecting", call_id=call_id, voice_id=self._config.voice_id, model_id=self._config.model_id)
        try:
            websocket = await self._connector(url, additional_headers=[("xi-api-key", self._config.api_key)])
        except (OSError, websockets.WebSocketException) as exc:
            raise self._connection_failed(exc) from exc
        try:
            await websocket.send(build_bos_message(self._config))
        except (OSError, websockets.WebSocketException) as exc:
            await discard_websocket(websocket)
            raise self._connection_failed(exc) from exc
        except BaseException:
            await discard_websocket(websocket)
            raise
        self._websocket = websocket

    def _connection_failed(self, exc: Exception) -> CapabilityConnectionError:
        logger.error("ElevenLabs connection failed", call_id=self.call_id, error=str(exc))
        return CapabilityConnectionError("elevenlabs", f"connection failed: {exc}")

    async def synthesize(self, text: str) -> AsyncIterator[bytes]:
        websocket = self._websocket
        if websocket is None:
            raise CapabilityConnectionError("elevenlabs", "not connected")

        logger.debug("ElevenLabs synthesizing", call_id=self.call_id, text_preview=text[:60])
        try:
            await websocket.send(json.dumps({"text": text + " ", "flush": True}))
            await websocket.send(json.dumps({"text": ""}))
            while True:
                raw = await websocket.recv()
                try:
                    message = parse_stream_message(raw)
                except MalformedMessageError as exc:
                    logger.warning("Discarding malformed ElevenLabs message", call_id=self.call_id, error=str(exc))
                    continue
                if message.audio:
                    yield message.audio
                if message.error:
                    raise SynthesisError(f"ElevenLabs: {message.error}")
                if message.is_final:
                    logger.debug("ElevenLabs synthesis done", call_id=self.call_id)
                    break
        except websockets.ConnectionClosed as exc:
            self._websocket = None
            raise CapabilityConnectionError("elevenlabs", f"socket closed during synthesis: {exc}") from exc
        # The server ends the stream after EOS
        await self.close()

    async def close(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is None:
            return
        await discard_websocket(websocket)
        logger.debug("ElevenLabs connection closed", call_id=self.call_id)
