"""Wake phrase detection over a stream of transcript fragments.

A ``SpeechSource`` yields ``TranscriptFragment`` objects (interim and final).
``WakeWordListener`` normalizes each fragment and emits a ``WakeEvent`` the
first time one contains a configured trigger phrase. After a trigger the
listener stays suspended until ``rearm()`` is called; with barge-in enabled
the final fragment of the triggering utterance re-arms it as well.

``OpenWakeWordSource`` adapts a Wyoming openWakeWord service to this
interface by turning each detection into a final fragment carrying the
trigger phrase.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from wyoming.audio import AudioChunk, AudioStart, AudioStop
from wyoming.client import AsyncTcpClient
from wyoming.wake import Detect, Detection, NotDetected

from .audio import Microphone
from .config import MicConfig, WyomingEndpoint
from .errors import MicrophonePermissionError, UnsupportedError

LOGGER = logging.getLogger("lara-assistant.wake")


@dataclass(frozen=True)
class TranscriptFragment:
    text: str
    final: bool = False


@dataclass(frozen=True)
class WakeEvent:
    phrase: str
    text: str
    timestamp: float = field(default_factory=time.time)


class SpeechSource(Protocol):
    @property
    def supported(self) -> bool: ...

    @property
    def permission_granted(self) -> bool: ...

    def fragments(self) -> AsyncIterator[TranscriptFragment]: ...


def normalize_fragment(text: str) -> str:
    """Lowercase, turn punctuation into spaces and collapse whitespace."""
    lowered = (text or "").lower()
    lowered = re.sub(r"[^\w\s]|_", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def check_source(source: SpeechSource) -> None:
    """Raise when the source cannot be used at all."""
    if not source.supported:
        raise UnsupportedError("Speech recognition is not supported on this device")
    if not source.permission_granted:
        raise MicrophonePermissionError("Microphone permission was denied")


class WakeWordListener:
    def __init__(
        self,
        phrases: Sequence[str],
        *,
        barge_in: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        normalized = [normalize_fragment(phrase) for phrase in phrases]
        self.phrases: tuple[str, ...] = tuple(dict.fromkeys(phrase for phrase in normalized if phrase))
        if not self.phrases:
            raise ValueError("at least one wake phrase is required")
        self.barge_in = barge_in
        self._armed = True
        self._in_trigger_utterance = False
        self._logger = logger or LOGGER

    @property
    def armed(self) -> bool:
        return self._armed

    def rearm(self) -> None:
        self._armed = True

    def suspend(self) -> None:
        self._armed = False

    def match(self, text: str) -> str | None:
        padded = f" {normalize_fragment(text)} "
        for phrase in self.phrases:
            if f" {phrase} " in padded:
                return phrase
        return None

    def feed(self, fragment: TranscriptFragment) -> WakeEvent | None:
        event: WakeEvent | None = None
        if self._armed:
            phrase = self.match(fragment.text)
            if phrase is not None:
                self._armed = False
                self._in_trigger_utterance = True
                event = WakeEvent(phrase=phrase, text=fragment.text)
                self._logger.debug("[wake] Trigger phrase '%s' detected", phrase)
        if fragment.final and self._in_trigger_utterance:
            self._in_trigger_utterance = False
            if self.barge_in:
                self._armed = True
        return event

    async def listen(self, source: SpeechSource) -> AsyncIterator[WakeEvent]:
        check_source(source)
        async for fragment in source.fragments():
            event = self.feed(fragment)
            if event is not None:
                yield event


class OpenWakeWordSource:
    """Stream microphone audio to openWakeWord and report detections as fragments.

    The microphone is held only while waiting for a detection, so capture can
    take it over as soon as a fragment has been yielded.
    """

    shares_microphone = True

    def __init__(
        self,
        microphone: Microphone,
        endpoint: WyomingEndpoint,
        models: Sequence[str],
        mic: MicConfig,
        phrase: str,
        logger: logging.Logger | None = None,
    ) -> None:
        self.microphone = microphone
        self.endpoint = endpoint
        self.models = list(models)
        self.mic = mic
        self.phrase = phrase
        self._permission_denied = False
        self._logger = logger or LOGGER

    @property
    def supported(self) -> bool:
        return bool(self.models) and self.microphone.supported

    @property
    def permission_granted(self) -> bool:
        return not self._permission_denied

    async def fragments(self) -> AsyncIterator[TranscriptFragment]:
        while True:
            try:
                detected = await self._detect_once()
            except MicrophonePermissionError:
                self._permission_denied = True
                raise
            except OSError as exc:
                self._logger.warning("[wake] openWakeWord unavailable (%s); retrying", exc)
                await asyncio.sleep(2.0)
                continue
            if detected:
                self._logger.info("[wake] Detected wake word %s", detected)
                yield TranscriptFragment(text=self.phrase, final=True)

    async def _detect_once(self) -> str | None:
        """Run one detection session; one stream per model since openWakeWord loads only the first name."""
        clients: list[AsyncTcpClient] = []
        readers: list[asyncio.Task[str | None]] = []
        timestamp = 0
        try:
            async with self.microphone.session() as stream:
                for model in self.models:
                    client = AsyncTcpClient(self.endpoint.host, self.endpoint.port)
                    await client.connect()
                    clients.append(client)
                    await client.write_event(Detect(names=[model]).event())
                    await client.write_event(
                        AudioStart(
                            rate=self.mic.rate,
                            width=self.mic.width,
                            channels=self.mic.channels,
                            timestamp=0,
                        ).event()
                    )
                    readers.append(asyncio.create_task(self._read_wake_events(client, model)))
                while readers:
                    chunk = await stream.read_chunk()
                    chunk_event = AudioChunk(
                        rate=self.mic.rate,
                        width=self.mic.width,
                        channels=self.mic.channels,
                        audio=chunk,
                        timestamp=timestamp,
                    ).event()
                    for client in clients:
                        await client.write_event(chunk_event)
                    timestamp += self.mic.chunk_ms
                    for task in [task for task in readers if task.done()]:
                        readers.remove(task)
                        try:
                            detection = task.result()
                        except OSError:
                            self._logger.warning("[wake] Wake detector stream failed", exc_info=True)
                            continue
                        if detection:
                            return detection
                return None
        finally:
            for client in clients:
                with contextlib.suppress(OSError):
                    await client.write_event(AudioStop(timestamp=timestamp).event())
            for task in readers:
                task.cancel()
            for task in readers:
                with contextlib.suppress(asyncio.CancelledError, OSError):
                    await task
            for client in clients:
                with contextlib.suppress(OSError):
                    await client.disconnect()

    async def _read_wake_events(self, client: AsyncTcpClient, model: str) -> str | None:
        while True:
            event = await client.read_event()
            if event is None:
                return None
            if Detection.is_type(event.type):
                return Detection.from_event(event).name or model
            if NotDetected.is_type(event.type):
                self._logger.debug("[wake] openWakeWord reported NotDetected for %s", model)
                return None
