"""
HTTP and WebSocket front door.

Plivo calls ``POST /incoming-call`` when a call arrives; we answer with XML
that opens a bidirectional audio stream back to ``/media-stream``. Each
media-stream WebSocket gets its own CallHandler for the life of the call.
"""

from __future__ import annotations

import uuid
from typing import Optional
from urllib.parse import quote
from xml.sax.saxutils import escape, quoteattr

from aiohttp import WSMsgType, web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .config import AppConfig
from .core.call_handler import CallHandler
from .core.session_store import SessionStore
from .errors import CapabilityConnectionError, ConfigurationError
from .logging_config import get_logger
from .pipelines.orchestrator import PipelineOrchestrator
from .transport.plivo import AiohttpWebSocketTransport

logger = get_logger(__name__)

MEDIA_STREAM_PATH = "/media-stream"


def _is_local_host(host: str) -> bool:
    return "localhost" in host or host.startswith("127.")


def build_stream_url(host: str, to_number: str) -> str:
    scheme = "ws" if _is_local_host(host) else "wss"
    return f"{scheme}://{host}{MEDIA_STREAM_PATH}?to={quote(to_number or '', safe='')}"


def build_stream_xml(config: AppConfig, to_number: str) -> str:
    """Plivo XML answering a call with a bidirectional L16 stream.

    The contentType attribute is derived from the same telephony settings the
    outbound playAudio messages use, so both ends agree on format and rate.
    """
    url = build_stream_url(config.server.host, to_number)
    content_type = quoteattr(config.telephony.stream_content_type)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<Response>\n"
        f'  <Stream bidirectional="true" keepCallAlive="true" contentType={content_type}>{escape(url)}</Stream>\n'
        "</Response>"
    )


class VoiceAgentServer:
    def __init__(
        self,
        config: AppConfig,
        *,
        orchestrator: Optional[PipelineOrchestrator] = None,
        store: Optional[SessionStore] = None,
    ):
        self.config = config
        self.orchestrator = orchestrator or PipelineOrchestrator(config)
        self.store = store or SessionStore()
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/incoming-call", self._incoming_call_handler)
        app.router.add_post("/call-status", self._call_status_handler)
        app.router.add_post("/stream-status", self._stream_status_handler)
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        app.router.add_get("/sessions/stats", self._sessions_stats_handler)
        app.router.add_get(MEDIA_STREAM_PATH, self._media_stream_handler)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, self.config.server.bind_host, self.config.server.port)
        await site.start()
        self._runner = runner
        logger.info(
            "Voice agent listening",
            host=self.config.server.bind_host,
            port=self.config.server.port,
            public_host=self.config.server.host,
            tts_provider=self.config.tts.provider,
        )

    async def stop(self) -> None:
        await self.store.close_all()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def _on_shutdown(self, app: web.Application) -> None:
        await self.store.close_all()

    # ------------------------------------------------------------------
    # Plivo webhooks
    # ------------------------------------------------------------------
    async def _incoming_call_handler(self, request: web.Request) -> web.Response:
        form = await request.post()
        to_number = str(form.get("To", "") or "")
        logger.info(
            "Incoming call",
            from_number=form.get("From"),
            to_number=to_number,
            call_uuid=form.get("CallUUID"),
        )
        xml = build_stream_xml(self.config, to_number)
        return web.Response(text=xml, content_type="application/xml")

    async def _call_status_handler(self, request: web.Request) -> web.Response:
        form = await request.post()
        logger.info(
            "Call status update",
            call_uuid=form.get("CallUUID"),
            status=form.get("Status") or form.get("CallStatus"),
            duration=form.get("Duration"),
        )
        return web.Response(status=200)

    async def _stream_status_handler(self, request: web.Request) -> web.Response:
        form = await request.post()
        logger.info("Stream status update", **{str(k): str(v) for k, v in form.items()})
        return web.Response(status=200)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "active_calls": len(self.store),
                "ttsProvider": self.config.tts.provider,
                "llmProvider": self.config.llm.provider,
                "heypixa": {
                    "checkpoint": self.config.heypixa.active_checkpoint,
                    "voice": self.config.heypixa.voice,
                },
                "elevenlabs": {
                    "voiceId": self.config.elevenlabs.voice_id,
                    "modelId": self.config.elevenlabs.model_id,
                },
            }
        )

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        """Expose Prometheus metrics."""
        data = generate_latest()
        # aiohttp forbids 'charset=' inside content_type arg; pass full header via headers.
        return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def _sessions_stats_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.store.stats())

    # ------------------------------------------------------------------
    # Media stream
    # ------------------------------------------------------------------
    async def _media_stream_handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        called_number = request.query.get("to", "")
        connection_id = uuid.uuid4().hex
        logger.info("Media stream connected", connection_id=connection_id, called_number=called_number, remote=request.remote)

        try:
            components = self.orchestrator.create_components(called_number)
        except ConfigurationError as exc:
            logger.error("Cannot assemble call components", connection_id=connection_id, error=str(exc))
            await ws.close()
            return ws

        handler = CallHandler(AiohttpWebSocketTransport(ws), self.config, components, called_number=called_number)
        try:
            await handler.initialize()
        except (CapabilityConnectionError, ConfigurationError) as exc:
            logger.error("Failed to initialize call handler", connection_id=connection_id, error=str(exc))
            await handler.cleanup()
            await ws.close()
            return ws

        await self.store.register(connection_id, handler)
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await handler.handle_transport_message(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.error("Media stream error", connection_id=connection_id, error=str(ws.exception()))
                    break
                if not handler.session.is_open:
                    break
        finally:
            await self.store.remove(connection_id)
            await handler.cleanup()
            if not ws.closed:
                await ws.close()
            logger.info("Media stream closed", connection_id=connection_id, call_id=handler.call_id)
        return ws
