"""Plivo bidirectional audio stream codec and outbound sender.

Inbound frames from Plivo are either binary (raw PCM16) or JSON text events:

    {"event": "start", "start": {"callId": ..., "streamId": ...}}
    {"event": "media", "media": {"track": "inbound", "payload": <base64 PCM16>}}
    {"event": "stop"}

Outbound we send ``playAudio`` (base64 L16 at 8 or 16 kHz) and ``clearAudio``
to flush whatever Plivo has buffered for playback.
"""

from __future__ import annotations

import abc
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from aiohttp import web
from prometheus_client import Counter

from ..audio.resampler import base64_to_pcm16, pcm16_to_base64
from ..core.models import AudioFrame
from ..errors import MalformedMessageError, TransportNotOpenError
from ..logging_config import get_logger

logger = get_logger(__name__)

EVENT_START = "start"
EVENT_MEDIA = "media"
EVENT_STOP = "stop"
EVENT_AUDIO = "audio"  # binary frame, not a Plivo event name
EVENT_PLAY_AUDIO = "playAudio"
EVENT_CLEAR_AUDIO = "clearAudio"

TRACK_INBOUND = "inbound"

_TX_MESSAGES_TOTAL = Counter(
    "voice_agent_transport_tx_messages_total",
    "Messages sent to the telephony stream",
    labelnames=("event",),
)
_TX_SKIPPED_TOTAL = Counter(
    "voice_agent_transport_tx_skipped_total",
    "Outbound messages skipped because the telephony socket was not open",
    labelnames=("event",),
)
_TX_BYTES_TOTAL = Counter(
    "voice_agent_transport_tx_audio_bytes_total",
    "PCM bytes sent to the telephony stream",
)


@dataclass(frozen=True)
class InboundMessage:
    event: str
    call_id: str = ""
    stream_id: str = ""
    track: str = ""
    audio: bytes = b""

    @property
    def is_caller_audio(self) -> bool:
        if self.event == EVENT_AUDIO:
            return True
        return self.event == EVENT_MEDIA and self.track == TRACK_INBOUND and bool(self.audio)


def parse_inbound(data: Union[str, bytes, bytearray]) -> InboundMessage:
    """Decode one frame from Plivo.

    Raises:
        MalformedMessageError: text that is not a JSON object, a start event
            without identifiers, or a media payload that is not base64.
    """
    if isinstance(data, (bytes, bytearray)):
        return InboundMessage(event=EVENT_AUDIO, audio=bytes(data))

    if not data or not data.strip():
        raise MalformedMessageError("empty text frame")
    try:
        message = json.loads(data)
    except json.JSONDecodeError as exc:
        raise MalformedMessageError(f"text frame is not JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise MalformedMessageError("text frame is not a JSON object")

    event = message.get("event")
    if event == EVENT_START:
        start = message.get("start") or {}
        call_id = start.get("callId")
        stream_id = start.get("streamId") or message.get("streamId")
        if not call_id or not stream_id:
            raise MalformedMessageError("start event without callId/streamId")
        return InboundMessage(event=EVENT_START, call_id=str(call_id), stream_id=str(stream_id))

    if event == EVENT_MEDIA:
        media = message.get("media") or {}
        track = media.get("track") or ""
        payload = media.get("payload") or ""
        audio = base64_to_pcm16(payload) if track == TRACK_INBOUND and payload else b""
        return InboundMessage(event=EVENT_MEDIA, track=track, audio=audio, stream_id=message.get("streamId") or "")

    if event == EVENT_STOP:
        return InboundMessage(event=EVENT_STOP, stream_id=message.get("streamId") or "")

    return InboundMessage(event=str(event or "unknown"))


def build_play_audio(pcm16: bytes, sample_rate_hz: int, content_type: str = "audio/x-l16") -> Dict[str, Any]:
    return {
        "event": EVENT_PLAY_AUDIO,
        "media": {
            "contentType": content_type,
            "sampleRate": sample_rate_hz,
            "payload": pcm16_to_base64(pcm16),
        },
    }


def build_clear_audio(stream_id: Optional[str] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"event": EVENT_CLEAR_AUDIO}
    if stream_id:
        message["streamId"] = stream_id
    return message


class TelephonyTransport(abc.ABC):
    """Text-frame sink for one telephony WebSocket."""

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        ...

    @abc.abstractmethod
    async def send_text(self, text: str) -> None:
        ...


class AiohttpWebSocketTransport(TelephonyTransport):
    def __init__(self, ws: web.WebSocketResponse):
        self._ws = ws

    @property
    def is_open(self) -> bool:
        return not self._ws.closed

    async def send_text(self, text: str) -> None:
        await self._ws.send_str(text)


class PlivoMediaStream:
    """Outbound half of a Plivo stream.

    Sends are skipped (and counted) once the socket has closed; they never
    raise, so a caller hanging up mid-utterance cannot fail the session.
    """

    def __init__(
        self,
        transport: TelephonyTransport,
        *,
        sample_rate_hz: int = 8000,
        content_type: str = "audio/x-l16",
    ):
        self._transport = transport
        self.sample_rate_hz = sample_rate_hz
        self.content_type = content_type
        self.stream_id: Optional[str] = None
        self.call_id = ""

    @property
    def is_open(self) -> bool:
        return self._transport.is_open

    async def play_audio(self, frame: AudioFrame) -> bool:
        sent = await self._send(build_play_audio(frame.data, frame.sample_rate, self.content_type))
        if sent:
            _TX_BYTES_TOTAL.inc(len(frame.data))
        return sent

    async def clear_audio(self) -> bool:
        return await self._send(build_clear_audio(self.stream_id))

    async def send_or_raise(self, message: Dict[str, Any]) -> None:
        if not self._transport.is_open:
            raise TransportNotOpenError(f"cannot send {message.get('event')}: telephony socket closed")
        await self._transport.send_text(json.dumps(message))
        _TX_MESSAGES_TOTAL.labels(event=message.get("event", "unknown")).inc()

    async def _send(self, message: Dict[str, Any]) -> bool:
        event = message.get("event", "unknown")
        try:
            await self.send_or_raise(message)
        except TransportNotOpenError:
            _TX_SKIPPED_TOTAL.labels(event=event).inc()
            logger.debug("Telephony socket not open; send skipped", call_id=self.call_id, event_type=event)
            return False
        except ConnectionResetError as exc:
            _TX_SKIPPED_TOTAL.labels(event=event).inc()
            logger.info("Telephony socket closed during send", call_id=self.call_id, event_type=event, error=str(exc))
            return False
        return True
