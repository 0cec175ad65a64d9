"""Full-duplex Twilio Media Streams session.

One ``MediaStreamSession`` serves one WebSocket connection. Caller audio is fed
to recognition while the session is LISTENING; each finalized utterance starts
a turn that streams model tokens, cuts them into speakable chunks and plays
each chunk through synthesis and transcoding back onto the socket.

Turns are tagged with an epoch. Starting a turn clears ``active_epochs``, so
audio still being produced for an older turn is silently discarded at delivery
time instead of being aborted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agents.errors import AssistantError, CallNotFoundError, PersistenceError, TranscriptionError
from agents.schemas import CallSession, CallState, TranscriptEntry
from db.repository import CallRepository
from integrations.twilio_streaming import StreamEvent, mark_message, media_message, parse_stream_event
from llm.base import BaseLLMClient
from prompts.loader import render_history, render_prompt
from speech.recognition import RecognitionStream, SpeechRecognizer
from speech.tts import BaseSynthesizer
from telephony.chunking import DEFAULT_MIN_LENGTH, chunk_text, flush_remainder
from telephony.transcoder import BaseTranscoder, iter_frames

LOGGER = logging.getLogger(__name__)

APOLOGY = "I apologize for the delay. Could you please repeat your question?"

SendText = Callable[[str], Awaitable[None]]

_END = object()


class StreamState(str, Enum):
    LISTENING = "LISTENING"
    RESPONDING = "RESPONDING"


@dataclass
class StreamingSession:
    """Per-connection state, owned by exactly one ``MediaStreamSession``."""

    call_id: str
    stream_sid: str | None = None
    state: StreamState = StreamState.RESPONDING
    epoch: int = 0
    active_epochs: set[int] = field(default_factory=set)
    segment_counter: int = 0
    pending_marks: set[str] = field(default_factory=set)
    inflight_chunks: int = 0
    generating: bool = False

    @property
    def listening(self) -> bool:
        return self.state is StreamState.LISTENING

    def new_epoch(self) -> int:
        """Supersede every earlier epoch and return the new current one."""

        self.epoch += 1
        self.active_epochs.clear()
        self.active_epochs.add(self.epoch)
        self.pending_marks.clear()
        self.inflight_chunks = 0
        return self.epoch

    def is_active(self, epoch: int) -> bool:
        return epoch in self.active_epochs

    def drop(self, epoch: int) -> None:
        self.active_epochs.discard(epoch)

    def next_segment_id(self) -> str:
        self.segment_counter += 1
        return f"stream-{self.segment_counter}"


class MediaStreamSession:
    """Drives recognition, generation and synthesis for one media socket."""

    def __init__(
        self,
        call_id: str,
        send_text: SendText,
        *,
        repository: CallRepository,
        recognizer: SpeechRecognizer,
        llm: BaseLLMClient,
        synthesizer: BaseSynthesizer,
        transcoder: BaseTranscoder,
        chunk_min_length: int = DEFAULT_MIN_LENGTH,
        assistant_name: str = "Sarah",
        practice_name: str = "Aiva Health",
    ) -> None:
        self.session = StreamingSession(call_id=call_id)
        self._send_text = send_text
        self._repo = repository
        self._recognizer = recognizer
        self._llm = llm
        self._synthesizer = synthesizer
        self._transcoder = transcoder
        self._min_length = chunk_min_length
        self._assistant_name = assistant_name
        self._practice_name = practice_name

        self._call = CallSession(id=call_id)
        self._recognition: RecognitionStream | None = None
        self._tasks: set[asyncio.Task] = set()
        self._open = True

    @property
    def call_id(self) -> str:
        return self.session.call_id

    @property
    def is_open(self) -> bool:
        return self._open

    # Inbound events

    async def handle_message(self, message: dict[str, Any]) -> None:
        """Dispatch one decoded media-socket message; never blocks on gateways."""

        event = parse_stream_event(message)
        if event.event == "start":
            self.session.stream_sid = event.stream_sid
            self._spawn(self._on_start())
        elif event.event == "media":
            self._on_media(event)
        elif event.event == "mark":
            self._on_mark(event.mark_name)
        elif event.event == "stop":
            LOGGER.info("Media stream stopped for call %s", self.call_id)
            self._close_recognition()
        elif event.event != "connected":
            LOGGER.debug("Ignoring media stream event %r", event.event)

    async def _on_start(self) -> None:
        LOGGER.info("Media stream %s started for call %s", self.session.stream_sid, self.call_id)
        try:
            self._call = await self._repo.get(self.call_id)
        except (CallNotFoundError, PersistenceError) as exc:
            LOGGER.error("Call context unavailable for %s: %s", self.call_id, exc.detail)

        try:
            await self._repo.update_if_active(
                self.call_id, {"state": CallState.GATHERING_TIME, "last_call_status": "in-progress"}
            )
        except (CallNotFoundError, PersistenceError) as exc:
            LOGGER.error("Could not mark call %s in progress: %s", self.call_id, exc.detail)

        self._open_recognition()
        await self.speak(self.greeting())

    def _on_media(self, event: StreamEvent) -> None:
        if event.track and event.track != "inbound":
            return
        if not self.session.listening or self._recognition is None or not event.payload:
            return
        self._recognition.write(event.payload)

    def _on_mark(self, name: str | None) -> None:
        LOGGER.debug("Playback mark %s acknowledged for call %s", name, self.call_id)
        if name:
            self.session.pending_marks.discard(name)
        self._resume_if_idle()

    def _resume_if_idle(self) -> None:
        s = self.session
        if s.generating or s.inflight_chunks or s.pending_marks:
            return
        if not s.listening:
            LOGGER.debug("Call %s back to listening", self.call_id)
        s.state = StreamState.LISTENING
        if self._recognition is None or self._recognition.closed:
            self._open_recognition()

    # Recognition

    def _open_recognition(self) -> None:
        if not self._open:
            return
        self._recognition = self._recognizer.open_stream(
            on_final_transcript=self._on_final_transcript,
            on_error=self._on_recognition_error,
        )

    def _close_recognition(self) -> None:
        if self._recognition is not None:
            self._recognition.close()
            self._recognition = None

    async def _on_final_transcript(self, text: str) -> None:
        # Claim the turn before yielding so no further caller audio reaches recognition.
        epoch = self._begin_turn()
        self._spawn(self._run_turn(text, epoch))

    async def _on_recognition_error(self, exc: Exception) -> None:
        detail = exc.detail if isinstance(exc, TranscriptionError) else str(exc)
        LOGGER.error("Recognition failed for call %s: %s", self.call_id, detail)
        self._close_recognition()
        self.session.drop(self.session.epoch)
        # Muted until the provider echoes this mark back (or a new start).
        await self._send_mark(f"{self.session.next_segment_id()}-error")

    # Turns

    def greeting(self) -> str:
        if self._call.user_name or self._call.reason:
            return (
                f"Hi! This is {self._assistant_name} from {self._practice_name}. "
                f"I'm calling on behalf of {self._call.display_name} to schedule an appointment "
                f"for {self._call.appointment_reason}. What time works best for you?"
            )
        return (
            f"Hi! This is {self._assistant_name} from {self._practice_name}. "
            "I'm calling to schedule an appointment. What time works best for you?"
        )

    def build_prompt(self, utterance: str) -> str:
        return render_prompt(
            "streaming_reply.txt",
            assistant_name=self._assistant_name,
            practice_name=self._practice_name,
            user_name=self._call.display_name,
            reason=self._call.appointment_reason,
            contact=self._call.contact_info,
            history=render_history(self._call.transcript, limit=6),
            utterance=utterance,
        )

    def _begin_turn(self) -> int:
        s = self.session
        s.state = StreamState.RESPONDING
        s.generating = True
        return s.new_epoch()

    async def respond(self, utterance: str) -> None:
        """Run one turn for a finalized caller utterance."""

        await self._run_turn(utterance, self._begin_turn())

    async def _run_turn(self, utterance: str, epoch: int) -> None:
        s = self.session
        LOGGER.info("Call %s turn epoch %d: %s", self.call_id, epoch, utterance)
        prompt = self.build_prompt(utterance)
        await self._record("caller", utterance)
        if s.epoch != epoch:
            LOGGER.debug("Epoch %d superseded before generation for call %s", epoch, self.call_id)
            return

        spoken: list[str] = []
        previous: asyncio.Task | None = None
        buffer = ""
        try:
            async for token in self._llm.stream_generate(prompt):
                if not s.is_active(epoch):
                    LOGGER.debug("Epoch %d superseded; no longer consuming tokens", epoch)
                    break
                buffer += token
                chunks, buffer = chunk_text(buffer, self._min_length)
                for chunk in chunks:
                    previous = self._dispatch_chunk(chunk, epoch, previous)
                    spoken.append(chunk)
            else:
                for chunk in flush_remainder(buffer):
                    previous = self._dispatch_chunk(chunk, epoch, previous)
                    spoken.append(chunk)
        except Exception as exc:
            if s.epoch != epoch:
                LOGGER.debug("Superseded epoch %d failed for call %s: %s", epoch, self.call_id, exc)
                return
            LOGGER.error("Generation failed for call %s (epoch %d): %s", self.call_id, epoch, exc)
            s.drop(epoch)
            s.generating = False
            if not spoken:
                await self.speak(APOLOGY)
            else:
                await self._send_mark(f"{s.next_segment_id()}-failed")
            return

        if s.epoch != epoch:
            LOGGER.debug("Epoch %d superseded; reply not recorded for call %s", epoch, self.call_id)
            return
        s.generating = False
        if spoken:
            await self._record("assistant", " ".join(spoken))
        self._resume_if_idle()

    async def speak(self, text: str) -> None:
        """Say fixed text under a fresh epoch through the same chunk pipeline."""

        s = self.session
        s.state = StreamState.RESPONDING
        s.generating = False
        epoch = s.new_epoch()
        chunks, remainder = chunk_text(text, self._min_length)
        previous: asyncio.Task | None = None
        for chunk in [*chunks, *flush_remainder(remainder)]:
            previous = self._dispatch_chunk(chunk, epoch, previous)
        await self._record("assistant", text)
        self._resume_if_idle()

    def _dispatch_chunk(self, text: str, epoch: int, previous: asyncio.Task | None) -> asyncio.Task:
        segment_id = self.session.next_segment_id()
        self.session.inflight_chunks += 1
        return self._spawn(self._play_chunk(text, epoch, segment_id, previous))

    async def _play_chunk(self, text: str, epoch: int, segment_id: str, previous: asyncio.Task | None) -> None:
        """Synthesize immediately; emit only after ``previous`` finished emitting."""

        s = self.session
        frames: asyncio.Queue = asyncio.Queue()

        async def produce() -> None:
            try:
                audio = self._transcoder.transcode(self._synthesizer.stream_synthesize(text))
                async for frame in iter_frames(audio):
                    await frames.put(frame)
            except Exception as exc:
                await frames.put(exc)
            else:
                await frames.put(_END)

        producer = asyncio.create_task(produce())
        try:
            if previous is not None:
                await asyncio.wait([previous])

            while True:
                item = await frames.get()
                if item is _END:
                    break
                if isinstance(item, Exception):
                    raise item
                if not (s.is_active(epoch) and self._open):
                    # Superseded: stop producing, nothing more is sent for this chunk.
                    return
                await self._send(media_message(s.stream_sid, item))

            if s.is_active(epoch):
                await self._send_mark(f"{segment_id}-complete")
        except Exception as exc:
            detail = exc.detail if isinstance(exc, AssistantError) else str(exc)
            LOGGER.error("Chunk %s failed for call %s: %s", segment_id, self.call_id, detail)
            if s.is_active(epoch):
                s.drop(epoch)
                await self._send_mark(f"{segment_id}-error")
        finally:
            if not producer.done():
                producer.cancel()
            if s.epoch == epoch and s.inflight_chunks:
                s.inflight_chunks -= 1
            self._resume_if_idle()

    # Outbound

    async def _send(self, text: str) -> None:
        if not self._open:
            return
        try:
            await self._send_text(text)
        except Exception as exc:
            LOGGER.warning("Media socket send failed for call %s: %s", self.call_id, exc)
            self._open = False

    async def _send_mark(self, name: str) -> None:
        if not self._open:
            return
        self.session.pending_marks.add(name)
        await self._send(mark_message(self.session.stream_sid, name))

    async def _record(self, speaker: str, text: str) -> None:
        entry = TranscriptEntry(speaker=speaker, text=text)
        self._call.transcript.append(entry)
        try:
            await self._repo.append_history(self.call_id, entry)
        except PersistenceError as exc:
            LOGGER.error("Transcript line lost for call %s: %s", self.call_id, exc.detail)

    # Lifecycle

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for all background work; used by tests and graceful shutdown."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Tear down after the socket disconnected."""

        self._open = False
        self.session.active_epochs.clear()
        self._close_recognition()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        LOGGER.info("Media session closed for call %s", self.call_id)
