"""Wyoming STT/TTS clients used by the command pipeline."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from wyoming.asr import Transcribe
from wyoming.asr import Transcript as WyomingTranscript
from wyoming.audio import AudioChunk, AudioStart, AudioStop
from wyoming.client import AsyncTcpClient
from wyoming.event import Event
from wyoming.tts import Synthesize, SynthesizeVoice

from lara.utils import await_with_timeout, chunk_bytes

from .audio import CapturedAudio
from .config import WyomingEndpoint
from .errors import SynthesisError, TranscriptionError

LOGGER = logging.getLogger("lara-assistant.wyoming")

# 100ms of audio per AudioChunk event
_CHUNKS_PER_SECOND = 10


@dataclass(frozen=True)
class Transcript:
    text: str
    confidence: float | None = None


class AudioSink(Protocol):
    async def start(self, rate: int, width: int, channels: int) -> None: ...

    async def write(self, chunk: bytes) -> None: ...

    async def stop(self) -> None: ...

    async def abort(self) -> None: ...


class WyomingTranscriber:
    """Send captured PCM audio to a Wyoming STT service (faster-whisper)."""

    def __init__(
        self,
        endpoint: WyomingEndpoint,
        *,
        timeout: float,
        max_audio_bytes: int,
        language: str | None = None,
        retries: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_audio_bytes = max_audio_bytes
        self.language = language
        self.retries = max(0, retries)
        self._logger = logger or LOGGER

    async def transcribe(self, captured: CapturedAudio) -> Transcript:
        if not captured.audio:
            raise TranscriptionError("No audio to transcribe")
        if len(captured.audio) > self.max_audio_bytes:
            raise TranscriptionError(
                f"Audio too large to transcribe ({len(captured.audio)} > {self.max_audio_bytes} bytes)"
            )

        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                text = await asyncio.wait_for(self._transcribe_once(captured), timeout=self.timeout)
            except (TimeoutError, OSError, TranscriptionError) as exc:
                if attempt >= attempts:
                    raise TranscriptionError(f"Transcription failed after {attempts} attempts: {exc}") from exc
                self._logger.warning("[stt] Transcription attempt %d failed (%s); retrying", attempt, exc)
                continue
            text = (text or "").strip()
            if not text:
                raise TranscriptionError("Transcription returned no text")
            return Transcript(text=text)
        raise TranscriptionError("Transcription failed")

    async def _transcribe_once(self, captured: CapturedAudio) -> str:
        client = AsyncTcpClient(self.endpoint.host, self.endpoint.port)
        await client.connect()
        try:
            await client.write_event(Transcribe(name=self.endpoint.model, language=self.language).event())
            await client.write_event(
                AudioStart(rate=captured.rate, width=captured.width, channels=captured.channels).event()
            )
            chunk_size = max(
                captured.width * captured.channels,
                (captured.rate // _CHUNKS_PER_SECOND) * captured.width * captured.channels,
            )
            for chunk in chunk_bytes(captured.audio, chunk_size):
                await client.write_event(
                    AudioChunk(
                        rate=captured.rate,
                        width=captured.width,
                        channels=captured.channels,
                        audio=chunk,
                    ).event()
                )
            await client.write_event(AudioStop().event())
            while True:
                event = await client.read_event()
                if event is None:
                    raise TranscriptionError("STT connection closed before transcript returned")
                if WyomingTranscript.is_type(event.type):
                    return WyomingTranscript.from_event(event).text
        finally:
            await client.disconnect()


class WyomingSynthesizer:
    """Synthesize speech via Wyoming TTS (Piper) and stream it to a sink.

    Cancelling the awaiting task stops playback; the sink is always stopped.
    """

    def __init__(
        self,
        endpoint: WyomingEndpoint,
        sink: AudioSink,
        *,
        voice: str | None = None,
        timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.sink = sink
        self.voice = voice
        self.timeout = timeout
        self._logger = logger or LOGGER

    async def speak(self, text: str) -> None:
        if not text.strip():
            return
        started = False
        try:
            async with contextlib.aclosing(self._tts_event_stream(text)) as events:
                async for event in events:
                    if AudioStart.is_type(event.type):
                        audio_start = AudioStart.from_event(event)
                        await self.sink.start(audio_start.rate, audio_start.width, audio_start.channels)
                        started = True
                    elif AudioChunk.is_type(event.type):
                        if not started:
                            continue
                        await self.sink.write(AudioChunk.from_event(event).audio)
                    elif AudioStop.is_type(event.type):
                        break
        except asyncio.CancelledError:
            if started:
                started = False
                await self.sink.abort()
            raise
        except SynthesisError:
            raise
        except TimeoutError as exc:
            raise SynthesisError(f"TTS timed out after {self.timeout}s") from exc
        except (OSError, RuntimeError) as exc:
            raise SynthesisError(f"TTS playback failed: {exc}") from exc
        finally:
            if started:
                await self.sink.stop()

    async def _tts_event_stream(self, text: str) -> AsyncIterator[Event]:
        client = AsyncTcpClient(self.endpoint.host, self.endpoint.port)
        await await_with_timeout(client.connect(), self.timeout)
        try:
            voice = SynthesizeVoice(name=self.voice) if self.voice else None
            await await_with_timeout(client.write_event(Synthesize(text=text, voice=voice).event()), self.timeout)
            while True:
                event = await await_with_timeout(client.read_event(), self.timeout)
                if event is None:
                    break
                yield event
                if AudioStop.is_type(event.type):
                    break
        finally:
            await client.disconnect()
