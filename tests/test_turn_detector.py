import asyncio

import pytest

from voice_agent.core.models import TranscriptEvent
from voice_agent.core.turn_detector import TurnDetector, TurnPolicy, TurnState


class _Recorder:
    def __init__(self, busy: bool = False, accept_interrupt: bool = True):
        self.lock = asyncio.Lock()
        self.turns = []
        self.interrupts = 0
        self.busy = busy
        self.accept_interrupt = accept_interrupt
        self.log = []

    async def on_turn(self, text):
        self.turns.append(text)
        self.log.append(("turn", text))

    async def on_interrupt(self):
        self.interrupts += 1
        self.log.append(("interrupt", None))

    def barge_in_filter(self, text):
        return self.accept_interrupt and len(text.strip()) >= 3

    def detector(self, **policy) -> TurnDetector:
        return TurnDetector(
            on_turn=self.on_turn,
            on_interrupt=self.on_interrupt,
            barge_in_filter=self.barge_in_filter,
            is_busy=lambda: self.busy,
            lock=self.lock,
            policy=TurnPolicy(**policy),
        )


async def _feed(rec: _Recorder, detector: TurnDetector, event: TranscriptEvent, speaking: bool = False):
    async with rec.lock:
        await detector.handle_event(event, agent_speaking=speaking)


@pytest.mark.asyncio
async def test_final_transcript_dispatches_after_default_silence():
    rec = _Recorder()
    detector = rec.detector()
    assert detector.policy.silence_timeout_ms == 500

    await _feed(rec, detector, TranscriptEvent("नमस्ते", is_final=True))
    assert detector.state is TurnState.AWAITING_SILENCE

    await asyncio.sleep(0.4)
    assert rec.turns == []

    await asyncio.sleep(0.25)
    assert rec.turns == ["नमस्ते"]
    assert detector.state is TurnState.DISPATCHED
    assert detector.buffer == ""


@pytest.mark.asyncio
async def test_partials_never_dispatch():
    rec = _Recorder()
    detector = rec.detector(silence_timeout_ms=50)

    await _feed(rec, detector, TranscriptEvent("नम"))
    await _feed(rec, detector, TranscriptEvent("नमस्ते आप"))
    await asyncio.sleep(0.12)

    assert rec.turns == []
    assert detector.buffer == "नमस्ते आप"
    assert detector.state is TurnState.IDLE


@pytest.mark.asyncio
async def test_superseding_event_cancels_pending_dispatch():
    rec = _Recorder()
    detector = rec.detector(silence_timeout_ms=100)

    await _feed(rec, detector, TranscriptEvent("पहला", is_final=True))
    await asyncio.sleep(0.05)
    # A new partial arrives before the silence timer fires: nothing is dispatched.
    await _feed(rec, detector, TranscriptEvent("पहला दूसरा"))
    await asyncio.sleep(0.15)
    assert rec.turns == []

    await _feed(rec, detector, TranscriptEvent("पहला दूसरा तीसरा", is_final=True))
    await asyncio.sleep(0.15)
    assert rec.turns == ["पहला दूसरा तीसरा"]


@pytest.mark.asyncio
async def test_second_final_restarts_timer_and_dispatches_once():
    rec = _Recorder()
    detector = rec.detector(silence_timeout_ms=100)

    await _feed(rec, detector, TranscriptEvent("मुझे टिकट", is_final=True))
    await asyncio.sleep(0.06)
    await _feed(rec, detector, TranscriptEvent("मुझे टिकट बुक करनी है", is_final=True))

    # Past the first timer's deadline, short of the second's.
    await asyncio.sleep(0.07)
    assert rec.turns == []
    assert detector.timer_pending

    await asyncio.sleep(0.1)
    assert rec.turns == ["मुझे टिकट बुक करनी है"]
    assert not detector.timer_pending


@pytest.mark.asyncio
async def test_whitespace_final_is_not_dispatched():
    rec = _Recorder()
    detector = rec.detector(silence_timeout_ms=20)

    await _feed(rec, detector, TranscriptEvent("   ", is_final=True))
    await asyncio.sleep(0.06)

    assert rec.turns == []
    assert not detector.timer_pending


@pytest.mark.asyncio
async def test_turn_dropped_while_response_in_flight():
    rec = _Recorder(busy=True)
    detector = rec.detector(silence_timeout_ms=20)

    await _feed(rec, detector, TranscriptEvent("क्या हाल है", is_final=True))
    await asyncio.sleep(0.06)

    assert rec.turns == []
    assert detector.state is TurnState.IDLE
    assert detector.buffer == ""


@pytest.mark.asyncio
async def test_only_end_of_speech_can_interrupt_while_speaking():
    rec = _Recorder()
    detector = rec.detector(silence_timeout_ms=20, interrupt_grace_ms=20)

    await _feed(rec, detector, TranscriptEvent("रुको रुको", is_final=True), speaking=True)
    await asyncio.sleep(0.06)
    assert rec.interrupts == 0
    assert rec.turns == []

    await _feed(rec, detector, TranscriptEvent("रुको रुको", is_final=True, is_end_of_speech=True), speaking=True)
    assert rec.interrupts == 1
    await asyncio.sleep(0.06)
    assert rec.log == [("interrupt", None), ("turn", "रुको रुको")]


@pytest.mark.asyncio
async def test_barge_in_rejected_by_filter():
    rec = _Recorder(accept_interrupt=False)
    detector = rec.detector(interrupt_grace_ms=20)

    await _feed(rec, detector, TranscriptEvent("हाँ जी", is_final=True, is_end_of_speech=True), speaking=True)
    await asyncio.sleep(0.06)

    assert rec.interrupts == 0
    assert rec.turns == []


@pytest.mark.asyncio
async def test_interrupt_uses_grace_delay_not_silence_timeout():
    rec = _Recorder()
    detector = rec.detector(silence_timeout_ms=1000, interrupt_grace_ms=300)

    await _feed(rec, detector, TranscriptEvent("एक मिनट", is_final=True, is_end_of_speech=True), speaking=True)
    await asyncio.sleep(0.2)
    assert rec.turns == []
    await asyncio.sleep(0.2)
    assert rec.turns == ["एक मिनट"]


@pytest.mark.asyncio
async def test_cancel_stops_pending_timer():
    rec = _Recorder()
    detector = rec.detector(silence_timeout_ms=30)

    await _feed(rec, detector, TranscriptEvent("ठीक है", is_final=True))
    detector.cancel()
    await asyncio.sleep(0.08)

    assert rec.turns == []
    assert not detector.timer_pending
    assert detector.state is TurnState.IDLE
