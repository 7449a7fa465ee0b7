"""
HeyPixa TTS adapter.

The endpoint is picked by the active model checkpoint (V1/V2/V3). A connection
is configured once (voice and sampling parameters, acknowledged with
``config_updated``) and then reused for every utterance of the call. Audio
arrives as binary PCM16 frames at 32 kHz; a ``done`` status ends an utterance.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import websockets

from ..config import HeyPixaConfig
from ..errors import CapabilityConnectionError, ConfigurationError, MalformedMessageError, SynthesisError
from ..logging_config import get_logger
from .base import TTSComponent, discard_websocket

logger = get_logger(__name__)

STATUS_CONFIG_UPDATED = "config_updated"
STATUS_DONE = "done"
STATUS_ERROR = "error"


def resolve_endpoint(config: HeyPixaConfig) -> str:
    endpoint = config.active_endpoint
    if not endpoint:
        raise ConfigurationError(f"HeyPixa endpoint not configured for checkpoint: {config.active_checkpoint}")
    return endpoint


def build_config_message(config: HeyPixaConfig) -> str:
    return json.dumps(
        {
            "type": "config",
            "voice": config.voice,
            "top_p": config.top_p,
            "repetition_penalty": config.repetition_penalty,
        }
    )


def build_text_message(text: str) -> str:
    return json.dumps({"type": "text", "content": text, "is_final": True}, ensure_ascii=False)


def parse_status_message(raw: str) -> dict:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedMessageError(f"HeyPixa status is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedMessageError("HeyPixa status is not an object")
    return data


class HeyPixaTTSAdapter(TTSComponent):
    provider_name = "heypixa"

    def __init__(
        self,
        config: HeyPixaConfig,
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

        endpoint = resolve_endpoint(self._config)
        logger.info(
            "HeyPixa connecting",
            call_id=call_id,
            checkpoint=self._config.active_checkpoint,
            voice=self._config.voice,
        )
        try:
            websocket = await self._connector(endpoint)
        except (OSError, websockets.WebSocketException) as exc:
            raise self._connection_failed(exc) from exc
        try:
            await websocket.send(build_config_message(self._config))
            await self._await_configured(websocket)
        except (OSError, websockets.WebSocketException) as exc:
            await discard_websocket(websocket)
            raise self._connection_failed(exc) from exc
        except BaseException:
            # Rejected, timed out or cancelled before config_updated: never kept.
            await discard_websocket(websocket)
            raise
        self._websocket = websocket
        logger.info("HeyPixa configured", call_id=call_id)

    def _connection_failed(self, exc: Exception) -> CapabilityConnectionError:
        logger.error("HeyPixa connection failed", call_id=self.call_id, error=str(exc))
        return CapabilityConnectionError("heypixa", f"connection failed: {exc}")

    async def _await_configured(self, websocket: Any) -> None:
        while True:
            raw = await websocket.recv()
            if isinstance(raw, (bytes, bytearray)):
                continue
            try:
                status = parse_status_message(raw)
            except MalformedMessageError:
                continue
            if status.get("status") == STATUS_CONFIG_UPDATED:
                return
            if status.get("status") == STATUS_ERROR:
                raise CapabilityConnectionError("heypixa", status.get("message") or "configuration rejected")

    async def synthesize(self, text: str) -> AsyncIterator[bytes]:
        websocket = self._websocket
        if websocket is None:
            raise CapabilityConnectionError("heypixa", "not connected")

        logger.debug("HeyPixa synthesizing", call_id=self.call_id, text_preview=text[:60])
        try:
            await websocket.send(build_text_message(text))
            while True:
                raw = await websocket.recv()
                if isinstance(raw, (bytes, bytearray)):
                    yield bytes(raw)
                    continue
                try:
                    status = parse_status_message(raw)
                except MalformedMessageError as exc:
                    logger.warning("Discarding malformed HeyPixa message", call_id=self.call_id, error=str(exc))
                    continue
                state = status.get("status")
                if state == STATUS_DONE:
                    logger.debug("HeyPixa synthesis done", call_id=self.call_id)
                    return
                if state == STATUS_ERROR:
                    raise SynthesisError(f"HeyPixa: {status.get('message') or 'synthesis failed'}")
        except websockets.ConnectionClosed as exc:
            self._websocket = None
            raise CapabilityConnectionError("heypixa", f"socket closed during synthesis: {exc}") from exc

    async def close(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is None:
            return
        await discard_websocket(websocket)
        logger.debug("HeyPixa connection closed", call_id=self.call_id)
