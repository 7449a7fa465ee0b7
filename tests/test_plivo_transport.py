import base64
import json

import pytest

from voice_agent.core.models import AudioFrame
from voice_agent.errors import MalformedMessageError, TransportNotOpenError
from voice_agent.transport.plivo import (
    EVENT_AUDIO,
    EVENT_MEDIA,
    EVENT_START,
    EVENT_STOP,
    PlivoMediaStream,
    TelephonyTransport,
    build_clear_audio,
    build_play_audio,
    parse_inbound,
)


class _FakeTransport(TelephonyTransport):
    def __init__(self, open_=True, reset=False):
        self.open = open_
        self.reset = reset
        self.sent = []

    @property
    def is_open(self):
        return self.open

    async def send_text(self, text):
        if self.reset:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(json.loads(text))


class TestParseInbound:
    def test_start(self):
        message = parse_inbound(json.dumps({"event": "start", "start": {"callId": "c-1", "streamId": "s-1"}}))
        assert message.event == EVENT_START
        assert (message.call_id, message.stream_id) == ("c-1", "s-1")

    def test_start_stream_id_at_top_level(self):
        message = parse_inbound(json.dumps({"event": "start", "streamId": "s-2", "start": {"callId": "c-2"}}))
        assert message.stream_id == "s-2"

    def test_inbound_media(self):
        payload = base64.b64encode(b"\x10\x00\x20\x00").decode()
        message = parse_inbound(json.dumps({"event": "media", "media": {"track": "inbound", "payload": payload}}))
        assert message.event == EVENT_MEDIA
        assert message.audio == b"\x10\x00\x20\x00"
        assert message.is_caller_audio

    def test_outbound_track_is_not_caller_audio(self):
        payload = base64.b64encode(b"\x10\x00").decode()
        message = parse_inbound(json.dumps({"event": "media", "media": {"track": "outbound", "payload": payload}}))
        assert not message.is_caller_audio

    def test_binary_frame_is_caller_audio(self):
        message = parse_inbound(b"\x01\x02\x03\x04")
        assert message.event == EVENT_AUDIO
        assert message.audio == b"\x01\x02\x03\x04"
        assert message.is_caller_audio

    def test_stop_and_unknown(self):
        assert parse_inbound(json.dumps({"event": "stop"})).event == EVENT_STOP
        assert parse_inbound(json.dumps({"event": "dtmf", "dtmf": {"digit": "1"}})).event == "dtmf"

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "   ",
            "not json",
            "[1, 2]",
            json.dumps({"event": "start", "start": {"callId": "c-1"}}),
            json.dumps({"event": "media", "media": {"track": "inbound", "payload": "%%%"}}),
        ],
    )
    def test_malformed(self, raw):
        with pytest.raises(MalformedMessageError):
            parse_inbound(raw)


def test_play_audio_message():
    message = build_play_audio(b"\x01\x00\x02\x00", 8000)
    assert message == {
        "event": "playAudio",
        "media": {
            "contentType": "audio/x-l16",
            "sampleRate": 8000,
            "payload": base64.b64encode(b"\x01\x00\x02\x00").decode(),
        },
    }


def test_clear_audio_message():
    assert build_clear_audio("s-1") == {"event": "clearAudio", "streamId": "s-1"}
    assert build_clear_audio(None) == {"event": "clearAudio"}


@pytest.mark.asyncio
async def test_stream_sends_play_and_clear():
    transport = _FakeTransport()
    stream = PlivoMediaStream(transport, sample_rate_hz=16000)
    stream.stream_id = "s-1"

    assert await stream.play_audio(AudioFrame(b"\x00\x00" * 10, 16000))
    assert await stream.clear_audio()

    assert transport.sent[0]["media"]["sampleRate"] == 16000
    assert transport.sent[1] == {"event": "clearAudio", "streamId": "s-1"}


@pytest.mark.asyncio
async def test_closed_transport_skips_sends():
    transport = _FakeTransport(open_=False)
    stream = PlivoMediaStream(transport)

    assert await stream.play_audio(AudioFrame(b"\x00\x00", 8000)) is False
    assert await stream.clear_audio() is False
    assert transport.sent == []

    with pytest.raises(TransportNotOpenError):
        await stream.send_or_raise({"event": "clearAudio"})


@pytest.mark.asyncio
async def test_reset_during_send_is_skipped():
    stream = PlivoMediaStream(_FakeTransport(reset=True))
    assert await stream.play_audio(AudioFrame(b"\x00\x00", 8000)) is False
