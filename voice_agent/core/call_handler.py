"""
Per-call orchestration.

A CallHandler owns everything about one Plivo media stream: the recognizer
connection, the turn detector and echo guard, the conversation history, the
language-model request and the synthesis stream. All transcript handling,
timer dispatch, interrupts and phase changes run under one asyncio.Lock, so
the session moves through its phases in a single, well-defined order.

Phases: listening_for_turn -> pending_response -> speaking -> listening_for_turn.
Every dispatched turn and every barge-in bumps ``turn_seq``; work started
under an older sequence number is stale and its output is discarded.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Callable, Optional, Union

from prometheus_client import Counter, Histogram

from ..audio.resampler import prepare_outbound_audio
from ..config import AppConfig
from ..errors import CapabilityConnectionError, ConfigurationError, MalformedMessageError, SynthesisError
from ..logging_config import bind_call_id, get_logger
from ..pipelines.orchestrator import CallComponents
from ..transport.plivo import EVENT_START, EVENT_STOP, PlivoMediaStream, TelephonyTransport, parse_inbound
from .conversation import ConversationState
from .echo_guard import EchoGuard, EchoPolicy
from .models import AudioFrame, CallSession, ConversationPhase, SessionStatus, TranscriptEvent
from .turn_detector import TurnDetector, TurnPolicy

logger = get_logger(__name__)

_LATENCY_BUCKETS = (0.1, 0.25, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 5.0, 8.0, 13.0)

_STT_SILENCE_LATENCY = Histogram(
    "voice_agent_stt_silence_latency_seconds",
    "User speech end (final transcript) to turn dispatch",
    buckets=_LATENCY_BUCKETS,
)
_TTS_TTFB_SECONDS = Histogram(
    "voice_agent_tts_ttfb_seconds",
    "Synthesis start to first audio chunk",
    labelnames=("provider",),
    buckets=_LATENCY_BUCKETS,
)
_TURN_TOTAL_SECONDS = Histogram(
    "voice_agent_turn_total_seconds",
    "User speech end to synthesis complete",
    buckets=_LATENCY_BUCKETS,
)
_BARGE_INS_TOTAL = Counter(
    "voice_agent_barge_ins_total",
    "Agent speech interrupted by the caller",
)
_STALE_RESPONSES_TOTAL = Counter(
    "voice_agent_stale_responses_total",
    "Language model results discarded because the turn had moved on",
)
_MALFORMED_MESSAGES_TOTAL = Counter(
    "voice_agent_malformed_messages_total",
    "Inbound telephony frames discarded as malformed",
)
_SYNTHESIS_FAILURES_TOTAL = Counter(
    "voice_agent_synthesis_failures_total",
    "Utterances abandoned because synthesis failed",
    labelnames=("provider",),
)


class CallHandler:
    def __init__(
        self,
        transport: TelephonyTransport,
        config: AppConfig,
        components: CallComponents,
        *,
        called_number: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._clock = clock
        self.session = CallSession(called_number=called_number or "")
        self.stream = PlivoMediaStream(
            transport,
            sample_rate_hz=config.telephony.outbound_sample_rate_hz,
            content_type=config.telephony.content_type,
        )
        self.stt = components.stt
        self.llm = components.llm
        self.tts = components.tts

        self.conversation = ConversationState(config.session.history_limit)
        self.echo_guard = EchoGuard(policy=EchoPolicy(**config.echo.model_dump()), clock=clock)
        self._lock = asyncio.Lock()
        self.turn_detector = TurnDetector(
            on_turn=self._dispatch_turn,
            on_interrupt=self._interrupt,
            barge_in_filter=self.echo_guard.should_interrupt,
            is_busy=lambda: self.session.is_busy,
            lock=self._lock,
            policy=TurnPolicy(
                silence_timeout_ms=config.turn.silence_timeout_ms,
                interrupt_grace_ms=config.turn.interrupt_grace_ms,
            ),
        )

        self._transcript_task: Optional[asyncio.Task] = None
        self._response_task: Optional[asyncio.Task] = None
        self._speech_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def call_id(self) -> str:
        return self.session.call_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        """Connect the recognizer and start consuming transcripts.

        Raises:
            CapabilityConnectionError: the recognizer did not connect in time.
        """
        timeout = self.config.session.connect_timeout_sec
        try:
            await asyncio.wait_for(self.stt.connect(self.call_id), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self.stt.close()
            raise CapabilityConnectionError("stt", f"connection timed out after {timeout}s") from exc

        self.session.phase = ConversationPhase.LISTENING
        self._transcript_task = asyncio.create_task(self._consume_transcripts())
        logger.info("Call handler ready", called_number=self.session.called_number)

    async def start_call(self, call_id: str, stream_id: str) -> None:
        if not self.session.bind_identifiers(call_id, stream_id):
            logger.warning(
                "Duplicate start event ignored",
                call_id=self.session.call_id,
                ignored_call_id=call_id,
                ignored_stream_id=stream_id,
            )
            return

        bind_call_id(call_id)
        self.stream.stream_id = stream_id
        self.stream.call_id = call_id
        self.echo_guard.call_id = call_id
        self.turn_detector.call_id = call_id
        self.session.status = SessionStatus.ACTIVE
        self.session.phase = ConversationPhase.LISTENING
        logger.info("Call started", call_id=call_id, stream_id=stream_id, called_number=self.session.called_number)

        greeting = (self.config.session.greeting or "").strip()
        if greeting:
            self._response_task = asyncio.create_task(self._deliver(greeting, self.session.turn_seq))

    async def cleanup(self) -> None:
        """Tear the session down. Idempotent; every exit path ends here."""
        if self.session.status in (SessionStatus.CLOSING, SessionStatus.CLOSED):
            return
        self.session.status = SessionStatus.CLOSING
        logger.info("Cleaning up call", call_id=self.call_id)

        self.turn_detector.cancel()
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._speech_task, self._response_task, self._transcript_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        # The recognizer goes first: its end of stream also ends the transcript consumer.
        await self._close_component("stt", self.stt)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._speech_task = None
        self._response_task = None
        self.turn_detector.cancel()

        await self._close_component("tts", self.tts)
        await self._close_component("llm", self.llm)

        self.session.phase = ConversationPhase.IDLE
        self.session.status = SessionStatus.CLOSED
        logger.info(
            "Call closed",
            call_id=self.call_id,
            turns=len(self.conversation) // 2,
            echo=self.echo_guard.get_stats(),
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    async def handle_transport_message(self, data: Union[str, bytes]) -> None:
        if not self.session.is_open:
            return
        try:
            message = parse_inbound(data)
        except MalformedMessageError as exc:
            _MALFORMED_MESSAGES_TOTAL.inc()
            logger.debug("Discarding malformed telephony frame", call_id=self.call_id, error=str(exc))
            return

        if message.is_caller_audio:
            await self.stt.send_audio(message.audio)
        elif message.event == EVENT_START:
            await self.start_call(message.call_id, message.stream_id)
        elif message.event == EVENT_STOP:
            logger.info("Call ended by telephony", call_id=self.call_id)
            await self.cleanup()

    async def _consume_transcripts(self) -> None:
        async for event in self.stt.iter_events():
            if not self.session.is_open:
                break
            try:
                await self._handle_transcript(event)
            except Exception:
                logger.error("Transcript handling failed", call_id=self.call_id, exc_info=True)

        if self.session.is_open:
            logger.warning("Recognizer stream ended; closing call", call_id=self.call_id)
            self._cleanup_task = asyncio.create_task(self.cleanup())

    async def _handle_transcript(self, event: TranscriptEvent) -> None:
        async with self._lock:
            if not self.session.is_open:
                return
            logger.debug(
                "Transcript",
                call_id=self.call_id,
                transcript_preview=event.text[:60],
                is_final=event.is_final,
                speech_final=event.is_end_of_speech,
                phase=self.session.phase.value,
            )
            if not self.echo_guard.admit(event.text):
                return
            if event.is_final and event.stripped:
                self.session.last_user_speech_end_at = self._clock()
            await self.turn_detector.handle_event(event, agent_speaking=self.session.agent_speaking)
            self.session.pending_transcript = self.turn_detector.buffer

    # ------------------------------------------------------------------
    # Turn handling (lock held unless noted)
    # ------------------------------------------------------------------
    async def _dispatch_turn(self, text: str) -> None:
        if not self.session.is_open:
            return
        self.session.turn_seq += 1
        seq = self.session.turn_seq
        now = self._clock()
        self.session.phase = ConversationPhase.PENDING_RESPONSE
        self.session.pending_turn_text = text
        self.session.pending_transcript = ""
        self.session.response_started_at = now
        if self.session.last_user_speech_end_at is not None:
            _STT_SILENCE_LATENCY.observe(max(0.0, now - self.session.last_user_speech_end_at))
        logger.info("User turn", call_id=self.call_id, turn_seq=seq, text=text)
        self._response_task = asyncio.create_task(self._respond(text, seq))

    async def _respond(self, text: str, seq: int) -> None:
        # Runs outside the lock until the result is in.
        try:
            reply = await self.llm.generate(self.call_id, self.conversation.messages(), text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Language model request failed", call_id=self.call_id, error=str(exc), exc_info=True)
            async with self._lock:
                if self._is_current(seq):
                    self._finish_turn()
            return

        async with self._lock:
            if not self._is_current(seq):
                _STALE_RESPONSES_TOTAL.inc()
                logger.info(
                    "Discarding stale response",
                    call_id=self.call_id,
                    turn_seq=seq,
                    current_seq=self.session.turn_seq,
                )
                return
            self.conversation.append_exchange(text, reply)
            self.session.pending_turn_text = None
            logger.info("Agent reply", call_id=self.call_id, turn_seq=seq, text=reply)
            if not reply.strip():
                self._finish_turn()
                return

        await self._deliver(reply, seq)

    async def _deliver(self, text: str, seq: int) -> None:
        """Speak ``text`` and return to listening once synthesis ends."""
        async with self._lock:
            if not self._is_current(seq):
                return
            self.session.phase = ConversationPhase.SPEAKING
            self.session.last_agent_text = text
            self.echo_guard.note_agent_speech(text)
            speech_task = asyncio.create_task(self._speak(text, seq))
            self._speech_task = speech_task

        await asyncio.wait({speech_task})

        async with self._lock:
            if not self._is_current(seq):
                return
            self._finish_turn()
            if self.session.last_user_speech_end_at is not None:
                _TURN_TOTAL_SECONDS.observe(max(0.0, self._clock() - self.session.last_user_speech_end_at))

    async def _speak(self, text: str, seq: int) -> None:
        tts = self.tts
        audio_cfg = self.config.audio
        started = self._clock()
        first_chunk = True
        played_ms = 0.0
        try:
            await asyncio.wait_for(tts.open(self.call_id), timeout=self.config.session.connect_timeout_sec)
            async with contextlib.aclosing(tts.synthesize(text)) as chunks:
                async for chunk in chunks:
                    if first_chunk:
                        first_chunk = False
                        _TTS_TTFB_SECONDS.labels(provider=tts.provider_name).observe(max(0.0, self._clock() - started))
                    frame = prepare_outbound_audio(
                        AudioFrame(chunk, tts.sample_rate_hz),
                        self.stream.sample_rate_hz,
                        quality=audio_cfg.resample_quality,
                        lanczos_a=audio_cfg.lanczos_a,
                        pad_ms=audio_cfg.silence_pad_ms,
                    )
                    # Interrupted or closed: drop chunks already received.
                    if not self._is_current(seq):
                        break
                    if await self.stream.play_audio(frame):
                        self.session.last_audio_sent_at = self.echo_guard.note_audio_sent()
                        played_ms += frame.duration_ms
        except asyncio.TimeoutError:
            _SYNTHESIS_FAILURES_TOTAL.labels(provider=tts.provider_name).inc()
            logger.error("Synthesis connection timed out", call_id=self.call_id, provider=tts.provider_name)
            await self._drop_tts()
        except (SynthesisError, CapabilityConnectionError, ConfigurationError) as exc:
            _SYNTHESIS_FAILURES_TOTAL.labels(provider=tts.provider_name).inc()
            logger.error("Synthesis failed", call_id=self.call_id, provider=tts.provider_name, error=str(exc))
            await self._drop_tts()
        else:
            logger.debug(
                "Synthesis complete",
                call_id=self.call_id,
                provider=tts.provider_name,
                duration_ms=round((self._clock() - started) * 1000),
                played_ms=round(played_ms),
            )

    async def _interrupt(self) -> None:
        """Barge-in: stop all audio egress before the caller's turn is dispatched."""
        self.session.turn_seq += 1
        _BARGE_INS_TOTAL.inc()

        speech_task, self._speech_task = self._speech_task, None
        response_task, self._response_task = self._response_task, None
        if response_task is not None and not response_task.done():
            response_task.cancel()
        if speech_task is not None and not speech_task.done():
            speech_task.cancel()
            # asyncio.wait leaves a cancellation of this task itself free to propagate.
            await asyncio.wait({speech_task})
        if not self.session.is_open:
            return

        await self.stream.clear_audio()
        await self._drop_tts()
        self._finish_turn()
        logger.info("Agent speech interrupted", call_id=self.call_id, turn_seq=self.session.turn_seq)

    def _finish_turn(self) -> None:
        self.session.phase = ConversationPhase.LISTENING
        self.session.pending_turn_text = None
        self.echo_guard.note_agent_finished()

    def _is_current(self, seq: int) -> bool:
        return seq == self.session.turn_seq and self.session.is_open

    async def _close_component(self, name: str, component) -> None:
        try:
            await component.close()
        except Exception as exc:
            logger.warning("Error closing component", call_id=self.call_id, component=name, error=str(exc))

    async def _drop_tts(self) -> None:
        # Reconnected lazily by the next utterance.
        try:
            await self.tts.close()
        except Exception as exc:
            logger.warning("Error closing synthesis connection", call_id=self.call_id, error=str(exc))
