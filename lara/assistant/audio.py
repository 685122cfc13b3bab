"""Audio input/output helpers for the assistant."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import shutil
import sys
from array import array
from asyncio.subprocess import Process
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from .config import CaptureConfig, MicConfig
from .errors import AssistantError, EmptyCaptureError, MicrophonePermissionError, UnsupportedError

LOGGER = logging.getLogger("lara-assistant.audio")


def compute_rms(chunk: bytes, sample_width: int) -> int:
    """Compute RMS (Root Mean Square) for an audio chunk."""
    if not chunk or sample_width <= 0:
        return 0
    frames = len(chunk) // sample_width
    if frames <= 0:
        return 0
    trimmed = chunk[: frames * sample_width]
    typecode = {1: "b", 2: "h", 4: "i"}.get(sample_width)
    if typecode:
        samples = array(typecode)
        samples.frombytes(trimmed)
        if sample_width > 1 and sys.byteorder != "little":
            samples.byteswap()
        total = math.fsum(value * value for value in samples)
    else:
        total = 0.0
        for i in range(0, len(trimmed), sample_width):
            sample = int.from_bytes(trimmed[i : i + sample_width], "little", signed=True)
            total += sample * sample
    return int(math.sqrt(total / frames))


class ChunkReader(Protocol):
    async def read_chunk(self) -> bytes: ...


class MicrophoneSource(Protocol):
    def session(self) -> contextlib.AbstractAsyncContextManager[ChunkReader]: ...


class Microphone:
    """Capture PCM audio by shelling out to ``arecord`` (ALSA).

    Only one consumer may hold the microphone at a time; ``session()`` waits
    for the current holder to finish and always stops the subprocess on exit.
    """

    def __init__(self, config: MicConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self.command = list(config.command)
        self.bytes_per_chunk = config.bytes_per_chunk
        self._proc: Process | None = None
        self._lock = asyncio.Lock()
        self._logger = logger or LOGGER

    @property
    def supported(self) -> bool:
        if not self.command:
            return False
        binary = self.command[0]
        if os.path.isabs(binary):
            return os.path.exists(binary)
        return shutil.which(binary) is not None

    @property
    def in_use(self) -> bool:
        return self._lock.locked()

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[Microphone]:
        async with self._lock:
            await self._start()
            try:
                yield self
            finally:
                await self._stop()

    async def _start(self) -> None:
        if not self.command:
            raise UnsupportedError("No microphone command configured")
        self._logger.debug("[audio] Starting microphone capture: %s", " ".join(self.command))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise UnsupportedError(f"Microphone command not found: {self.command[0]}") from exc
        except PermissionError as exc:
            raise MicrophonePermissionError(f"Microphone access denied: {exc}") from exc

    async def read_chunk(self) -> bytes:
        if not self._proc or not self._proc.stdout:
            raise AssistantError("Microphone stream is not running")
        try:
            return await self._proc.stdout.readexactly(self.bytes_per_chunk)
        except asyncio.IncompleteReadError as exc:
            stderr = ""
            if self._proc.stderr:
                with contextlib.suppress(OSError, ValueError):
                    stderr = (await self._proc.stderr.read()).decode("utf-8", errors="ignore").strip()
            if "permission denied" in stderr.lower():
                raise MicrophonePermissionError(f"Microphone access denied ({stderr})") from exc
            message = "Microphone stream ended unexpectedly"
            if stderr:
                message = f"{message} ({stderr})"
            raise AssistantError(message) from exc

    async def _stop(self) -> None:
        proc = self._proc
        self._proc = None
        if not proc:
            return
        self._logger.debug("[audio] Stopping microphone capture")
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=2)


@dataclass(frozen=True)
class CapturedAudio:
    audio: bytes
    rate: int
    width: int
    channels: int

    @property
    def duration_ms(self) -> int:
        frame_bytes = self.width * self.channels
        if frame_bytes <= 0 or self.rate <= 0:
            return 0
        return int(len(self.audio) / frame_bytes / self.rate * 1000)


class AudioCapture:
    """Record one utterance, ending on max duration or a run of silence."""

    def __init__(
        self,
        microphone: MicrophoneSource,
        mic: MicConfig,
        capture: CaptureConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.microphone = microphone
        self.mic = mic
        self.capture = capture
        self._logger = logger or LOGGER

    async def record(self) -> CapturedAudio:
        chunk_ms = self.mic.chunk_ms
        min_chunks = int(max(1, (self.capture.min_seconds * 1000) / chunk_ms))
        max_chunks = int(max(1, (self.capture.max_seconds * 1000) / chunk_ms))
        silence_chunks = int(max(1, self.capture.silence_ms / chunk_ms))
        buffer = bytearray()
        silence_run = 0
        chunks = 0
        voiced = False
        async with self.microphone.session() as stream:
            while chunks < max_chunks:
                chunk = await stream.read_chunk()
                buffer.extend(chunk)
                chunks += 1
                rms = compute_rms(chunk, self.mic.width)
                if rms >= self.capture.rms_floor:
                    voiced = True
                    silence_run = 0
                elif chunks >= min_chunks:
                    silence_run += 1
                    if silence_run >= silence_chunks:
                        break

        captured = CapturedAudio(
            audio=bytes(buffer),
            rate=self.mic.rate,
            width=self.mic.width,
            channels=self.mic.channels,
        )
        if not captured.audio:
            raise EmptyCaptureError("No audio captured")
        if captured.duration_ms < self.capture.min_capture_ms:
            raise EmptyCaptureError(f"Capture too short ({captured.duration_ms}ms)")
        if not voiced:
            raise EmptyCaptureError("No speech above the RMS floor")
        self._logger.debug("[capture] Captured %d bytes (%dms)", len(captured.audio), captured.duration_ms)
        return captured


class AplaySink:
    """Play PCM audio via ``aplay``/``pw-play``/``paplay``."""

    def __init__(self, binary: str | None = None, logger: logging.Logger | None = None) -> None:
        env_override = os.environ.get("LARA_AUDIO_PLAYER")
        if binary is None and env_override:
            binary = env_override
        self.binary = binary or "auto"
        self._proc: Process | None = None
        self._logger = logger or LOGGER

    async def start(self, rate: int, width: int, channels: int) -> None:
        await self.stop()
        player = _determine_player(self.binary, self._logger)
        try:
            cmd = _build_command_for_player(player, rate, width, channels)
        except ValueError as exc:
            self._logger.warning(
                "[audio] Player %s cannot handle width=%s (%s); falling back to aplay", player, width, exc
            )
            player = "aplay"
            cmd = _build_aplay_command(rate, width, channels)
        self._logger.debug("[audio] Starting playback (%s): %s", player, " ".join(cmd))
        self._proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )

    async def write(self, chunk: bytes) -> None:
        if not self._proc or not self._proc.stdin:
            raise AssistantError("Playback is not active")
        try:
            self._proc.stdin.write(chunk)
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            stderr = await self._drain_stderr()
            await self.stop()
            detail = f" ({stderr})" if stderr else ""
            raise AssistantError(f"Playback process exited unexpectedly{detail}") from exc

    async def stop(self) -> None:
        proc = self._proc
        self._proc = None
        if not proc:
            return
        self._logger.debug("[audio] Stopping playback")
        if proc.stdin:
            proc.stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await proc.stdin.wait_closed()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=2)
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    async def abort(self) -> None:
        """Stop playback immediately, discarding buffered audio."""
        proc = self._proc
        if proc and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
        await self.stop()

    async def _drain_stderr(self) -> str:
        if not self._proc or not self._proc.stderr:
            return ""
        try:
            data = await asyncio.wait_for(self._proc.stderr.read(), timeout=0.05)
        except (TimeoutError, RuntimeError):
            return ""
        return data.decode("utf-8", errors="ignore").strip()


def _alsa_format(width: int) -> str:
    return {
        1: "U8",
        2: "S16_LE",
        3: "S24_LE",
        4: "S32_LE",
    }.get(width, "S16_LE")


def _pw_format(width: int) -> str | None:
    return {
        1: "s8",
        2: "s16",
        4: "s32",
    }.get(width)


def _supported_player(binary: str) -> bool:
    if os.path.isabs(binary):
        return os.access(binary, os.X_OK)
    return shutil.which(binary) is not None


def _build_aplay_command(rate: int, width: int, channels: int) -> list[str]:
    return ["aplay", "-q", "-t", "raw", "-f", _alsa_format(width), "-c", str(channels), "-r", str(rate), "-"]


def _build_command_for_player(player: str, rate: int, width: int, channels: int) -> list[str]:
    if player == "pw-play":
        fmt = _pw_format(width)
        if not fmt:
            raise ValueError(f"pw-play has no format for width={width}")
        return ["pw-play", "--raw", "--rate", str(rate), "--channels", str(channels), "--format", fmt, "-"]
    if player == "paplay":
        fmt = {1: "s8", 2: "s16le", 3: "s24le", 4: "s32le"}.get(width, "s16le")
        return ["paplay", "--raw", "--rate", str(rate), "--channels", str(channels), f"--format={fmt}", "-"]
    return _build_aplay_command(rate, width, channels)


def _determine_player(preferred: str, logger: logging.Logger) -> str:
    if preferred != "auto":
        if _supported_player(preferred):
            return preferred
        logger.warning("[audio] Requested audio player '%s' not found; falling back to auto-detection", preferred)
    for candidate in ("pw-play", "paplay", "aplay"):
        if _supported_player(candidate):
            return candidate
    return "aplay"
