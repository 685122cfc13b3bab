"""Per-interaction state machine for the command pipeline."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .audio import CapturedAudio
from .config import SessionConfig
from .errors import (
    EmptyCaptureError,
    ErrorKind,
    MicrophonePermissionError,
    SynthesisError,
    TranscriptionError,
    UnsupportedError,
)
from .models import ActionResult, ClassificationResult, Utterance
from .publisher import SessionPublisher
from .stop_phrases import STOP_RESPONSE, is_stop_phrase
from .wake_listener import SpeechSource, WakeWordListener, check_source
from .wyoming import Transcript

LOGGER = logging.getLogger("lara-assistant.session")

TRANSCRIPTION_APOLOGY = "Sorry, I didn't catch that. Please try again."
GENERIC_APOLOGY = "Sorry, something went wrong."


class SessionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CAPTURING = "capturing"
    TRANSCRIBING = "transcribing"
    CLASSIFYING = "classifying"
    DISPATCHING = "dispatching"
    SPEAKING = "speaking"
    ERROR = "error"


class Capture(Protocol):
    async def record(self) -> CapturedAudio: ...


class Transcriber(Protocol):
    async def transcribe(self, captured: CapturedAudio) -> Transcript: ...


class Classifier(Protocol):
    async def classify(self, text: str) -> ClassificationResult: ...


class Dispatcher(Protocol):
    async def dispatch(self, result: ClassificationResult, *, user_id: str, session_id: str) -> ActionResult: ...


class Synthesizer(Protocol):
    async def speak(self, text: str) -> None: ...


@dataclass
class AssistRunTracker:
    cycle: int
    trigger: str
    start: float = field(default_factory=time.monotonic)
    stage_start: float = field(default_factory=time.monotonic)
    current_stage: str | None = None
    stage_durations: dict[str, int] = field(default_factory=dict)

    def begin_stage(self, stage: str) -> None:
        now = time.monotonic()
        if self.current_stage:
            self.stage_durations[self.current_stage] = int((now - self.stage_start) * 1000)
        self.current_stage = stage
        self.stage_start = now

    def finalize(self, status: str) -> dict[str, object]:
        now = time.monotonic()
        if self.current_stage:
            self.stage_durations[self.current_stage] = int((now - self.stage_start) * 1000)
            self.current_stage = None
        return {
            "cycle": self.cycle,
            "trigger": self.trigger,
            "status": status,
            "total_ms": int((now - self.start) * 1000),
            "stages": self.stage_durations,
        }


class _CycleSuperseded(Exception):
    """Raised inside a cycle that was stopped or replaced by a newer one."""


class ConversationSession:
    """Drive wake, capture, transcription, classification, dispatch and speech.

    Each command runs as one asyncio task (a *cycle*). Only the most recent
    cycle may change session fields; results that arrive for an older cycle
    are dropped.
    """

    def __init__(
        self,
        config: SessionConfig,
        *,
        capture: Capture,
        transcriber: Transcriber,
        classifier: Classifier,
        dispatcher: Dispatcher,
        synthesizer: Synthesizer,
        listener: WakeWordListener | None = None,
        publisher: SessionPublisher | None = None,
        session_id: str | None = None,
        log_transcripts: bool = False,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.capture = capture
        self.transcriber = transcriber
        self.classifier = classifier
        self.dispatcher = dispatcher
        self.synthesizer = synthesizer
        self.listener = listener or WakeWordListener(config.wake_phrases, barge_in=config.barge_in)
        self.publisher = publisher
        self.session_id = session_id or uuid.uuid4().hex
        self.log_transcripts = log_transcripts
        self._clock = clock
        self._logger = logger or LOGGER

        self.state = SessionState.IDLE
        self.current_utterance: Utterance | None = None
        self.last_classification: ClassificationResult | None = None
        self.last_result: ActionResult | None = None
        self.created_at = clock()
        self.last_activity_at = self.created_at
        self.cycle = 0

        self._active_cycle: int | None = None
        self._task: asyncio.Task[None] | None = None
        self._source_task: asyncio.Task[None] | None = None
        self._microphone_released = asyncio.Event()
        self._microphone_released.set()
        self._closed = asyncio.Event()
        self._fatal = asyncio.Event()
        self._fatal_error: BaseException | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def resting_state(self) -> SessionState:
        return SessionState.LISTENING if self.config.wake_mode else SessionState.IDLE

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        self._closed.clear()
        self._fatal.clear()
        self._fatal_error = None
        self.listener.rearm()
        self._set_state(self.resting_state)

    def trigger(self, reason: str = "manual", *, wake_word: bool = False) -> asyncio.Task[None]:
        """Start a new command cycle, cancelling any cycle already in flight.

        Wake word cycles open with the spoken acknowledgement. Any other
        trigger makes a microphone-sharing wake source let go of the device
        so the capture does not wait behind it.
        """
        if self.closed:
            raise RuntimeError("session is closed")
        previous = self._task
        if previous is not None and not previous.done():
            self._logger.info("[session] Barge-in during %s; cancelling cycle %d", self.state.value, self.cycle)
            previous.cancel()
        self.cycle += 1
        cycle = self.cycle
        self._active_cycle = cycle
        self._microphone_released.clear()
        self._touch()
        if not self.config.barge_in:
            self.listener.suspend()
        if not wake_word:
            self._interrupt_source()
        self._task = asyncio.create_task(
            self._run_cycle(cycle, reason, acknowledge=wake_word),
            name=f"lara-cycle-{cycle}",
        )
        return self._task

    async def stop(self) -> None:
        """Cancel the in-flight cycle and return to the resting state."""
        task = self._task
        self._task = None
        self._active_cycle = None
        if task is not None and not task.done():
            self._logger.info("[session] Cancelling cycle %d during %s", self.cycle, self.state.value)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._microphone_released.set()
        if not self.closed:
            self.listener.rearm()
            self._set_state(self.resting_state)

    async def close(self) -> None:
        await self.stop()
        if not self.closed:
            self._closed.set()
            self._set_state(SessionState.IDLE)
            self._logger.info("[session] Session %s closed", self.session_id)

    async def run(self, source: SpeechSource | None = None) -> None:
        """Listen until closed, idle for ``idle_timeout`` or a capability error occurs."""
        if source is not None and self.config.wake_mode:
            check_source(source)
        self.start()
        waiters: set[asyncio.Task[Any]] = {
            asyncio.create_task(self._closed.wait()),
            asyncio.create_task(self._fatal.wait()),
        }
        consumer: asyncio.Task[None] | None = None
        if source is not None and self.config.wake_mode:
            consumer = asyncio.create_task(self._consume(source))
            waiters.add(consumer)
        if self.config.idle_timeout > 0:
            waiters.add(asyncio.create_task(self._idle_watchdog()))
        try:
            done, _pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if consumer is not None and consumer in done:
                consumer.result()
                if self._task is not None and self._fatal_error is None:
                    with contextlib.suppress(asyncio.CancelledError):
                        await self._task
            if self._fatal_error is not None:
                raise self._fatal_error
        finally:
            for waiter in waiters:
                waiter.cancel()
            for waiter in waiters:
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter
            await self.close()

    async def _consume(self, source: SpeechSource) -> None:
        shares_microphone = bool(getattr(source, "shares_microphone", False))
        while True:
            listening = asyncio.create_task(self._listen(source, shares_microphone))
            if shares_microphone:
                self._source_task = listening
            try:
                await asyncio.wait({listening})
            finally:
                self._source_task = None
                if not listening.done():
                    listening.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await listening
            if not listening.cancelled():
                listening.result()
                return
            # Interrupted by a trigger from elsewhere; resume once capture is done.
            await self._microphone_released.wait()
            self._logger.debug("[wake] Resuming wake source after cycle %d capture", self.cycle)

    async def _listen(self, source: SpeechSource, shares_microphone: bool) -> None:
        async with contextlib.aclosing(source.fragments()) as fragments:
            async for fragment in fragments:
                self._touch()
                event = self.listener.feed(fragment)
                if event is None:
                    continue
                self._logger.info("[wake] Wake phrase '%s' heard", event.phrase)
                self.trigger(event.phrase, wake_word=True)
                if shares_microphone:
                    await self._microphone_released.wait()

    def _interrupt_source(self) -> None:
        task = self._source_task
        if task is not None and not task.done():
            self._logger.debug("[wake] Pausing wake source to free the microphone")
            task.cancel()

    async def _idle_watchdog(self) -> None:
        timeout = self.config.idle_timeout
        while True:
            remaining = timeout - (self._clock() - self.last_activity_at)
            if remaining <= 0 and not self.busy:
                self._logger.info("[session] No activity for %.0fs; closing session", timeout)
                return
            await asyncio.sleep(max(remaining, 0.05))

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, cycle: int, reason: str, *, acknowledge: bool = False) -> None:
        tracker = AssistRunTracker(cycle=cycle, trigger=reason)
        status = "error"
        try:
            status = await self._process(cycle, tracker, acknowledge=acknowledge)
        except asyncio.CancelledError:
            status = "cancelled"
            raise
        except _CycleSuperseded:
            status = "cancelled"
        except (UnsupportedError, MicrophonePermissionError) as exc:
            self._logger.error("[session] Microphone unavailable: %s", exc)
            self._fatal_error = exc
            self._fatal.set()
        except Exception as exc:
            self._logger.exception("[session] Cycle %d failed: %s", cycle, exc)
            with contextlib.suppress(_CycleSuperseded):
                await self._apologize(cycle, GENERIC_APOLOGY)
        finally:
            self._release_microphone(cycle)
            self._finish_cycle(cycle, tracker, status)

    async def _process(self, cycle: int, tracker: AssistRunTracker, *, acknowledge: bool = False) -> str:
        self._transition(cycle, SessionState.CAPTURING, tracker, {"trigger": tracker.trigger})
        if acknowledge and self.config.acknowledgement:
            await self._say(self.config.acknowledgement)
            self._require_active(cycle)
        try:
            captured = await asyncio.wait_for(self.capture.record(), timeout=self.config.capture_timeout)
        except EmptyCaptureError as exc:
            self._logger.debug("[capture] Nothing to transcribe: %s", exc)
            return "no_audio"
        except TimeoutError:
            self._logger.warning("[capture] Capture exceeded %.1fs", self.config.capture_timeout)
            return "no_audio"
        finally:
            self._release_microphone(cycle)

        self._transition(cycle, SessionState.TRANSCRIBING, tracker)
        try:
            transcript = await asyncio.wait_for(
                self.transcriber.transcribe(captured),
                timeout=self.config.transcribe_timeout * 2,
            )
        except (TranscriptionError, TimeoutError) as exc:
            self._logger.warning("[stt] Transcription failed: %s", exc or "timed out")
            await self._apologize(cycle, TRANSCRIPTION_APOLOGY)
            return "error"
        self._require_active(cycle)

        text = transcript.text.strip()
        self.current_utterance = Utterance(text=text, session_id=self.session_id)
        if self.log_transcripts:
            self._logger.info("[stt] Transcript: %s", text)
        if self.publisher:
            self.publisher.publish_transcript(text, cycle)

        if is_stop_phrase(text, self.config.wake_phrases):
            self._logger.info("[session] Stop phrase heard; ending cycle %d", cycle)
            self.last_result = ActionResult(success=True, message=STOP_RESPONSE)
            await self._speak(cycle, tracker, STOP_RESPONSE, success=True)
            return "cancelled"

        self._transition(cycle, SessionState.CLASSIFYING, tracker)
        classification = await self.classifier.classify(text)
        self._require_active(cycle)
        self.last_classification = classification
        self._logger.info(
            "[classifier] %s (%.2f, %s)",
            classification.intent.value,
            classification.confidence,
            classification.source.value,
        )
        if self.publisher:
            self.publisher.publish_classification(classification, cycle)

        self._transition(cycle, SessionState.DISPATCHING, tracker, {"intent": classification.intent.value})
        result = await self.dispatcher.dispatch(
            classification,
            user_id=self.config.user_id,
            session_id=self.session_id,
        )
        self._require_active(cycle)
        self.last_result = result

        error = result.error.value if result.error else None
        if result.error is ErrorKind.UNKNOWN_INTENT:
            await self._apologize(cycle, result.message, error=error)
            return "error"
        await self._speak(cycle, tracker, result.message, success=result.success, error=error)
        if result.error in (ErrorKind.LOW_CONFIDENCE, ErrorKind.MISSING_ENTITY):
            return "clarify"
        if not result.success:
            return "error"
        return "success"

    async def _speak(
        self,
        cycle: int,
        tracker: AssistRunTracker,
        text: str,
        *,
        success: bool,
        error: str | None = None,
    ) -> None:
        self._transition(cycle, SessionState.SPEAKING, tracker)
        if self.publisher:
            self.publisher.publish_response(text, cycle, success=success, error=error)
        await self._say(text)

    async def _apologize(self, cycle: int, text: str, *, error: str | None = None) -> None:
        self._transition(cycle, SessionState.ERROR)
        if self.publisher:
            self.publisher.publish_response(text, cycle, success=False, error=error)
        await self._say(text)

    async def _say(self, text: str) -> None:
        try:
            await asyncio.wait_for(self.synthesizer.speak(text), timeout=self.config.synthesis_timeout)
        except TimeoutError:
            self._logger.warning("[tts] Speech exceeded %.1fs; giving up", self.config.synthesis_timeout)
        except SynthesisError as exc:
            self._logger.warning("[tts] Unable to speak response: %s", exc)

    def _finish_cycle(self, cycle: int, tracker: AssistRunTracker, status: str) -> None:
        metrics = tracker.finalize(status)
        self._logger.debug("[session] Cycle %d finished: %s", cycle, metrics)
        if self.publisher:
            self.publisher.publish_metrics(metrics)
        if self._active_cycle != cycle:
            return
        self._active_cycle = None
        self._task = None
        if self.closed:
            return
        self.listener.rearm()
        self._set_state(self.resting_state, {"status": status})

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _release_microphone(self, cycle: int) -> None:
        if self._active_cycle == cycle:
            self._microphone_released.set()

    def _require_active(self, cycle: int) -> None:
        if self._active_cycle != cycle:
            raise _CycleSuperseded

    def _transition(
        self,
        cycle: int,
        state: SessionState,
        tracker: AssistRunTracker | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self._require_active(cycle)
        if tracker is not None:
            tracker.begin_stage(state.value)
        self._set_state(state, extra)

    def _set_state(self, state: SessionState, extra: dict[str, Any] | None = None) -> None:
        previous = self.state
        self.state = state
        self._touch()
        if previous is not state:
            self._logger.debug("[session] %s -> %s (cycle %d)", previous.value, state.value, self.cycle)
        if self.publisher:
            self.publisher.publish_state(state.value, self.cycle, extra)

    def _touch(self) -> None:
        self.last_activity_at = self._clock()
