from __future__ import annotations

import asyncio
import base64
import json

from agents.errors import TranscriptionError
from agents.schemas import CallState
from conftest import FakeLLM, FakeRecognizer, FakeSynthesizer, InMemoryCallRepository, make_call
from telephony.media_session import APOLOGY, MediaStreamSession, StreamingSession, StreamState
from telephony.transcoder import PassthroughTranscoder


def _run(coro):
    return asyncio.run(coro)


class SlowSynthesizer(FakeSynthesizer):
    """Delays audio for texts starting with one of ``slow_prefixes``."""

    def __init__(self, *slow_prefixes: str, delay: float = 0.05) -> None:
        super().__init__()
        self.slow_prefixes = slow_prefixes
        self.delay = delay

    async def stream_synthesize(self, text: str):
        async for chunk in super().stream_synthesize(text):
            if text.startswith(self.slow_prefixes):
                await asyncio.sleep(self.delay)
            yield chunk


class GatedLLM(FakeLLM):
    """The first stream waits on ``gate``, then fails or yields ``first_tokens``."""

    def __init__(self, *, tokens: list[str], first_tokens: list[str] | None = None) -> None:
        super().__init__(tokens=tokens)
        self.first_tokens = first_tokens
        self.gate: asyncio.Event | None = None

    async def stream_chat(self, messages, *, temperature: float = 0.1):
        self.prompts.append(list(messages)[-1]["content"])
        if len(self.prompts) == 1:
            await self.gate.wait()
            if self.first_tokens is None:
                raise RuntimeError("stream down")
            for token in self.first_tokens:
                yield token
            return
        for token in self.tokens:
            yield token


class SlowHistoryRepository(InMemoryCallRepository):
    async def append_history(self, call_id, entry) -> None:
        await asyncio.sleep(0.05)
        await super().append_history(call_id, entry)


class Harness:
    def __init__(self, *, llm=None, synthesizer=None, repo=None) -> None:
        self.sent: list[dict] = []
        self.repo = repo or InMemoryCallRepository(make_call())
        self.recognizer = FakeRecognizer()
        self.synthesizer = synthesizer or FakeSynthesizer()
        self.media = MediaStreamSession(
            "call-1",
            self.send,
            repository=self.repo,
            recognizer=self.recognizer,
            llm=llm or FakeLLM(),
            synthesizer=self.synthesizer,
            transcoder=PassthroughTranscoder(),
            chunk_min_length=30,
        )
        self.media.session.stream_sid = "MZ1"

    async def send(self, text: str) -> None:
        self.sent.append(json.loads(text))

    def media_markers(self) -> list[bytes]:
        """First byte of each outbound media frame (FakeSynthesizer repeats the chunk's first letter)."""

        return [base64.b64decode(m["media"]["payload"])[:1] for m in self.sent if m["event"] == "media"]

    def marks(self) -> list[str]:
        return [m["mark"]["name"] for m in self.sent if m["event"] == "mark"]

    async def ack_marks(self) -> None:
        for name in self.marks():
            await self.media.handle_message({"event": "mark", "streamSid": "MZ1", "mark": {"name": name}})


def test_new_epoch_supersedes_all_earlier_epochs() -> None:
    session = StreamingSession(call_id="call-1", epoch=2, active_epochs={1, 2}, pending_marks={"stream-1-complete"})

    current = session.new_epoch()

    assert current == 3
    assert session.active_epochs == {3}
    assert session.pending_marks == set()
    assert not session.is_active(1) and not session.is_active(2)
    assert session.next_segment_id() == "stream-1"


def test_superseded_chunks_emit_no_media() -> None:
    harness = Harness()
    s = harness.media.session
    s.epoch = 2
    s.active_epochs = {1, 2}

    async def scenario():
        s.new_epoch()
        await harness.media._play_chunk("Hello there.", 1, "stream-1", None)
        await harness.media._play_chunk("Hello there.", 2, "stream-2", None)

    _run(scenario())

    assert harness.sent == []


def test_start_plays_greeting_and_listens_after_marks() -> None:
    harness = Harness()

    async def scenario():
        await harness.media.handle_message({"event": "start", "start": {"streamSid": "MZ9"}})
        await harness.media.drain()
        assert harness.media.session.state is StreamState.RESPONDING
        await harness.ack_marks()

        harness.media.session.stream_sid = "MZ9"
        payload = base64.b64encode(b"\xff" * 160).decode("ascii")
        await harness.media.handle_message({"event": "media", "media": {"payload": payload, "track": "inbound"}})
        await harness.media.handle_message({"event": "media", "media": {"payload": payload, "track": "outbound"}})

    _run(scenario())

    call = harness.repo.calls["call-1"]
    assert call.state is CallState.GATHERING_TIME
    assert call.last_call_status == "in-progress"
    assert "Jane Doe" in call.transcript[0].text
    assert all(m["streamSid"] == "MZ9" for m in harness.sent)
    assert harness.marks() and all(name.endswith("-complete") for name in harness.marks())
    assert harness.media.session.state is StreamState.LISTENING
    assert harness.recognizer.current.frames == [b"\xff" * 160]


def test_media_is_ignored_while_responding() -> None:
    harness = Harness()

    async def scenario():
        harness.media._open_recognition()
        payload = base64.b64encode(b"\x7f" * 160).decode("ascii")
        await harness.media.handle_message({"event": "media", "media": {"payload": payload}})

    _run(scenario())

    assert harness.recognizer.current.frames == []


def test_chunks_are_emitted_in_order_even_when_later_ones_finish_first() -> None:
    harness = Harness(synthesizer=SlowSynthesizer("First"))

    async def scenario():
        await harness.media.speak("First sentence here. Second one.")
        await harness.media.drain()

    _run(scenario())

    assert harness.synthesizer.requests == ["First sentence here.", "Second one."]
    assert harness.media_markers() == [b"F", b"F", b"S", b"S"]
    assert harness.marks() == ["stream-1-complete", "stream-2-complete"]


def test_turn_streams_reply_and_records_history() -> None:
    llm = FakeLLM(tokens=["Tuesday at two", " works. ", "See you", " then."])
    harness = Harness(llm=llm)

    async def scenario():
        await harness.media.respond("Can we do Tuesday at two?")
        await harness.media.drain()
        await harness.ack_marks()

    _run(scenario())

    assert harness.synthesizer.requests == ["Tuesday at two works.", "See you then."]
    transcript = harness.repo.calls["call-1"].transcript
    assert [(e.speaker, e.text) for e in transcript] == [
        ("caller", "Can we do Tuesday at two?"),
        ("assistant", "Tuesday at two works. See you then."),
    ]
    assert "Can we do Tuesday at two?" in llm.prompts[0]
    assert harness.media.session.state is StreamState.LISTENING


def test_new_turn_discards_audio_of_previous_turn() -> None:
    harness = Harness(llm=FakeLLM(tokens=["New reply."]), synthesizer=SlowSynthesizer("Old"))

    async def scenario():
        await harness.media.speak("Old news here.")
        await harness.media.respond("Actually, wait")
        await harness.media.drain()

    _run(scenario())

    assert b"O" not in harness.media_markers()
    assert harness.media_markers() == [b"N", b"N"]
    assert harness.marks() == ["stream-2-complete"]


def test_superseded_turn_failing_late_leaves_current_turn_alone() -> None:
    llm = GatedLLM(tokens=["New reply for you."])
    harness = Harness(llm=llm)

    async def scenario():
        llm.gate = asyncio.Event()
        first = asyncio.create_task(harness.media.respond("first"))
        await asyncio.sleep(0.01)
        await harness.media.respond("second")
        llm.gate.set()
        await first
        await harness.media.drain()
        await harness.ack_marks()

    _run(scenario())

    assert harness.synthesizer.requests == ["New reply for you."]
    assert set(harness.media_markers()) == {b"N"}
    assert harness.marks() == ["stream-1-complete"]
    texts = [entry.text for entry in harness.repo.calls["call-1"].transcript]
    assert texts == ["first", "second", "New reply for you."]
    assert APOLOGY not in texts
    assert harness.media.session.state is StreamState.LISTENING


def test_superseded_turn_finishing_late_is_discarded() -> None:
    llm = GatedLLM(tokens=["New reply for you."], first_tokens=["Old reply that is far too late."])
    harness = Harness(llm=llm)

    async def scenario():
        llm.gate = asyncio.Event()
        first = asyncio.create_task(harness.media.respond("first"))
        await asyncio.sleep(0.01)
        await harness.media.respond("second")
        llm.gate.set()
        await first
        await harness.media.drain()

    _run(scenario())

    assert harness.synthesizer.requests == ["New reply for you."]
    texts = [entry.text for entry in harness.repo.calls["call-1"].transcript]
    assert not any(text.startswith("Old reply") for text in texts)
    assert harness.media.session.generating is False


def test_final_transcript_mutes_recognition_before_history_is_saved() -> None:
    harness = Harness(llm=FakeLLM(tokens=["Sure."]), repo=SlowHistoryRepository(make_call()))
    s = harness.media.session

    async def scenario():
        harness.media._open_recognition()
        s.state = StreamState.LISTENING
        stream = harness.recognizer.current
        await stream.on_final_transcript("book me tuesday")
        assert s.state is StreamState.RESPONDING

        payload = base64.b64encode(b"\xff" * 160).decode("ascii")
        await harness.media.handle_message({"event": "media", "media": {"payload": payload}})
        await harness.media.drain()
        return stream

    stream = _run(scenario())

    assert stream.frames == []
    assert harness.synthesizer.requests == ["Sure."]
    assert harness.repo.calls["call-1"].transcript[0].text == "book me tuesday"


def test_generation_failure_before_any_chunk_apologises() -> None:
    harness = Harness(llm=FakeLLM(fail_stream=True))

    async def scenario():
        await harness.media.respond("Hello?")
        await harness.media.drain()

    _run(scenario())

    assert harness.synthesizer.requests == ["I apologize for the delay.", "Could you please repeat your question?"]
    assert harness.repo.calls["call-1"].transcript[-1].text == APOLOGY
    assert harness.media.session.generating is False


def test_synthesis_failure_sends_error_mark_and_stops_turn() -> None:
    harness = Harness(synthesizer=FakeSynthesizer(fail_on={"Hello there."}))

    async def scenario():
        await harness.media.speak("Hello there. Nice to speak with you today, really.")
        await harness.media.drain()

    _run(scenario())

    assert harness.marks() == ["stream-1-error"]
    assert harness.media_markers() == []
    assert harness.media.session.active_epochs == set()


def test_recognition_error_mutes_until_mark_returns() -> None:
    harness = Harness()

    async def scenario():
        harness.media._open_recognition()
        harness.media.session.state = StreamState.LISTENING
        stream = harness.recognizer.current
        await stream.on_error(TranscriptionError("quota exceeded"))
        assert stream.closed is True
        await harness.ack_marks()

    _run(scenario())

    assert harness.marks() == ["stream-1-error"]
    assert harness.media.session.state is StreamState.LISTENING
    assert len(harness.recognizer.streams) == 2


def test_send_failure_closes_output() -> None:
    harness = Harness()

    async def broken_send(text: str) -> None:
        raise ConnectionError("socket gone")

    harness.media._send_text = broken_send

    async def scenario():
        await harness.media.speak("Hello there.")
        await harness.media.drain()

    _run(scenario())

    assert harness.media.is_open is False


def test_close_cancels_background_work() -> None:
    harness = Harness(synthesizer=SlowSynthesizer("Slow", delay=5))

    async def scenario():
        await harness.media.speak("Slow reply that never finishes.")
        await harness.media.close()

    _run(scenario())

    assert harness.sent == []
    assert harness.media.is_open is False
