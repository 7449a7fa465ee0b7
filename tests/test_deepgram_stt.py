import asyncio
import json
from urllib.parse import parse_qs, urlparse

import pytest

from voice_agent.config import DeepgramConfig
from voice_agent.errors import CapabilityConnectionError, MalformedMessageError
from voice_agent.pipelines.deepgram import DeepgramSTTAdapter, build_listen_url, parse_results_message

_CLOSED = object()


class _MockWebSocket:
    def __init__(self):
        self.sent = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        self._queue.put_nowait(_CLOSED)

    def feed(self, payload):
        self._queue.put_nowait(json.dumps(payload) if isinstance(payload, dict) else payload)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._queue.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message


def _results(transcript, is_final=False, speech_final=False):
    return {
        "type": "Results",
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {"alternatives": [{"transcript": transcript, "confidence": 0.9}]},
    }


def _adapter(api_key="dg-key"):
    ws = _MockWebSocket()
    calls = []

    async def connector(url, **kwargs):
        calls.append((url, kwargs))
        return ws

    adapter = DeepgramSTTAdapter(DeepgramConfig(api_key=api_key), 8000, connector=connector)
    return adapter, ws, calls


def test_listen_url_carries_recognizer_settings():
    url = build_listen_url(DeepgramConfig(), 8000)
    parsed = urlparse(url)
    query = {k: v[0] for k, v in parse_qs(parsed.query).items()}

    assert parsed.scheme == "wss"
    assert parsed.path == "/v1/listen"
    assert query == {
        "model": "nova-2",
        "language": "hi",
        "encoding": "linear16",
        "sample_rate": "8000",
        "channels": "1",
        "punctuate": "true",
        "interim_results": "true",
        "endpointing": "300",
        "utterance_end_ms": "1000",
    }


class TestParseResultsMessage:
    def test_final_with_speech_final(self):
        event = parse_results_message(json.dumps(_results("नमस्ते", is_final=True, speech_final=True)))
        assert event.text == "नमस्ते"
        assert event.is_final
        assert event.is_end_of_speech

    def test_interim(self):
        event = parse_results_message(json.dumps(_results("नम")))
        assert not event.is_final
        assert not event.is_end_of_speech

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "Metadata", "request_id": "abc"},
            {"type": "UtteranceEnd", "last_word_end": 1.2},
            _results("   ", is_final=True),
            {"type": "Results", "channel": {"alternatives": []}},
        ],
    )
    def test_ignored_messages(self, payload):
        assert parse_results_message(json.dumps(payload)) is None

    def test_bytes_are_decoded(self):
        assert parse_results_message(json.dumps(_results("हाँ")).encode()).text == "हाँ"

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
    def test_malformed(self, raw):
        with pytest.raises(MalformedMessageError):
            parse_results_message(raw)


@pytest.mark.asyncio
async def test_connect_requires_api_key():
    adapter, _, calls = _adapter(api_key=None)
    with pytest.raises(CapabilityConnectionError) as excinfo:
        await adapter.connect("call-1")
    assert excinfo.value.capability == "deepgram"
    assert calls == []


@pytest.mark.asyncio
async def test_connect_failure_is_reported():
    async def connector(url, **kwargs):
        raise OSError("network unreachable")

    adapter = DeepgramSTTAdapter(DeepgramConfig(api_key="k"), connector=connector)
    with pytest.raises(CapabilityConnectionError):
        await adapter.connect("call-1")
    assert not adapter.is_open


@pytest.mark.asyncio
async def test_streams_audio_and_yields_transcripts_in_order():
    adapter, ws, calls = _adapter()
    await adapter.connect("call-1")

    url, kwargs = calls[0]
    assert "sample_rate=8000" in url
    assert ("Authorization", "Token dg-key") in kwargs["additional_headers"]
    assert adapter.is_open

    await adapter.send_audio(b"\x00\x01" * 160)
    await adapter.send_audio(b"")
    assert ws.sent == [b"\x00\x01" * 160]

    ws.feed({"type": "Metadata"})
    ws.feed(_results("नम"))
    ws.feed("garbage")
    ws.feed(_results("नमस्ते", is_final=True, speech_final=True))
    await ws.close()

    events = [event async for event in adapter.iter_events()]
    assert [(e.text, e.is_final, e.is_end_of_speech) for e in events] == [
        ("नम", False, False),
        ("नमस्ते", True, True),
    ]
    assert not adapter.is_open


@pytest.mark.asyncio
async def test_close_sends_close_stream_and_is_idempotent():
    adapter, ws, _ = _adapter()
    await adapter.connect("call-1")

    await adapter.close()
    await adapter.close()

    assert ws.sent == [json.dumps({"type": "CloseStream"})]
    assert ws.closed
    assert not adapter.is_open
    # Event stream terminates after close.
    assert [event async for event in adapter.iter_events()] == []

    await adapter.send_audio(b"\x00\x00")
    assert len(ws.sent) == 1
