"""Tests for the Wyoming STT/TTS clients (lara/assistant/wyoming.py)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from lara.assistant.audio import CapturedAudio
from lara.assistant.config import WyomingEndpoint
from lara.assistant.errors import AssistantError, SynthesisError, TranscriptionError
from lara.assistant.wyoming import Transcript, WyomingSynthesizer, WyomingTranscriber
from wyoming.asr import Transcribe
from wyoming.asr import Transcript as WyomingTranscript
from wyoming.audio import AudioChunk, AudioStart, AudioStop
from wyoming.tts import Synthesize

pytestmark = pytest.mark.anyio


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def stt_endpoint():
    return WyomingEndpoint(host="localhost", port=10300, model="whisper-base")


@pytest.fixture
def tts_endpoint():
    return WyomingEndpoint(host="localhost", port=10200)


@pytest.fixture
def one_second():
    """One second of 16kHz mono 16-bit audio."""
    return CapturedAudio(audio=b"\x01\x00" * 16000, rate=16000, width=2, channels=1)


@pytest.fixture
def mock_client():
    client = AsyncMock()
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.write_event = AsyncMock()
    client.read_event = AsyncMock(return_value=None)
    return client


@pytest.fixture
def patch_tcp_client(mock_client):
    with patch("lara.assistant.wyoming.AsyncTcpClient") as ctor:
        ctor.return_value = mock_client
        yield ctor, mock_client


@pytest.fixture
def mock_sink():
    sink = AsyncMock()
    sink.start = AsyncMock()
    sink.write = AsyncMock()
    sink.stop = AsyncMock()
    sink.abort = AsyncMock()
    return sink


def _written_types(client) -> list[str]:
    return [call.args[0].type for call in client.write_event.await_args_list]


# ============================================================================
# WyomingTranscriber
# ============================================================================


class TestWyomingTranscriber:
    async def test_streams_audio_and_returns_transcript(self, stt_endpoint, one_second, patch_tcp_client):
        ctor, client = patch_tcp_client
        client.read_event.return_value = WyomingTranscript(text="  show my tasks ").event()
        transcriber = WyomingTranscriber(stt_endpoint, timeout=1.0, max_audio_bytes=1024 * 1024, language="en")

        transcript = await transcriber.transcribe(one_second)

        assert transcript == Transcript(text="show my tasks")
        ctor.assert_called_once_with("localhost", 10300)
        types = _written_types(client)
        assert types[0] == Transcribe().event().type
        assert types[1] == AudioStart(rate=16000, width=2, channels=1).event().type
        assert types[-1] == AudioStop().event().type
        chunk_type = AudioChunk(rate=16000, width=2, channels=1, audio=b"").event().type
        assert types.count(chunk_type) == 10
        first = Transcribe.from_event(client.write_event.await_args_list[0].args[0])
        assert first.name == "whisper-base"
        assert first.language == "en"
        client.disconnect.assert_awaited_once()

    async def test_empty_audio_rejected_without_connecting(self, stt_endpoint, patch_tcp_client):
        ctor, _ = patch_tcp_client
        transcriber = WyomingTranscriber(stt_endpoint, timeout=1.0, max_audio_bytes=1024)

        with pytest.raises(TranscriptionError):
            await transcriber.transcribe(CapturedAudio(audio=b"", rate=16000, width=2, channels=1))

        ctor.assert_not_called()

    async def test_oversized_audio_rejected(self, stt_endpoint, one_second, patch_tcp_client):
        ctor, _ = patch_tcp_client
        transcriber = WyomingTranscriber(stt_endpoint, timeout=1.0, max_audio_bytes=1000)

        with pytest.raises(TranscriptionError, match="too large"):
            await transcriber.transcribe(one_second)

        ctor.assert_not_called()

    async def test_retries_once_after_connection_failure(self, stt_endpoint, one_second, patch_tcp_client, mock_logger):
        ctor, client = patch_tcp_client
        client.connect.side_effect = [ConnectionRefusedError("refused"), None]
        client.read_event.return_value = WyomingTranscript(text="play jazz").event()
        transcriber = WyomingTranscriber(stt_endpoint, timeout=1.0, max_audio_bytes=1024 * 1024, logger=mock_logger)

        transcript = await transcriber.transcribe(one_second)

        assert transcript.text == "play jazz"
        assert ctor.call_count == 2
        mock_logger.warning.assert_called_once()

    async def test_gives_up_after_retries(self, stt_endpoint, one_second, patch_tcp_client):
        ctor, client = patch_tcp_client
        client.connect.side_effect = OSError("unreachable")
        transcriber = WyomingTranscriber(stt_endpoint, timeout=1.0, max_audio_bytes=1024 * 1024, retries=1)

        with pytest.raises(TranscriptionError, match="2 attempts"):
            await transcriber.transcribe(one_second)

        assert ctor.call_count == 2

    async def test_closed_connection_is_an_error(self, stt_endpoint, one_second, patch_tcp_client):
        _, client = patch_tcp_client
        client.read_event.return_value = None
        transcriber = WyomingTranscriber(stt_endpoint, timeout=1.0, max_audio_bytes=1024 * 1024, retries=0)

        with pytest.raises(TranscriptionError):
            await transcriber.transcribe(one_second)

        client.disconnect.assert_awaited_once()

    async def test_blank_transcript_is_an_error(self, stt_endpoint, one_second, patch_tcp_client):
        _, client = patch_tcp_client
        client.read_event.return_value = WyomingTranscript(text="   ").event()
        transcriber = WyomingTranscriber(stt_endpoint, timeout=1.0, max_audio_bytes=1024 * 1024)

        with pytest.raises(TranscriptionError, match="no text"):
            await transcriber.transcribe(one_second)

    async def test_slow_service_times_out(self, stt_endpoint, one_second, patch_tcp_client):
        _, client = patch_tcp_client

        async def _never(*args, **kwargs):
            await asyncio.sleep(5)

        client.read_event.side_effect = _never
        transcriber = WyomingTranscriber(stt_endpoint, timeout=0.05, max_audio_bytes=1024 * 1024, retries=0)

        with pytest.raises(TranscriptionError):
            await transcriber.transcribe(one_second)


# ============================================================================
# WyomingSynthesizer
# ============================================================================


class TestWyomingSynthesizer:
    async def test_streams_audio_to_sink(self, tts_endpoint, patch_tcp_client, mock_sink):
        _, client = patch_tcp_client
        client.read_event.side_effect = [
            AudioStart(rate=22050, width=2, channels=1).event(),
            AudioChunk(rate=22050, width=2, channels=1, audio=b"\x00\x01" * 10).event(),
            AudioChunk(rate=22050, width=2, channels=1, audio=b"\x02\x03" * 10).event(),
            AudioStop().event(),
        ]
        synthesizer = WyomingSynthesizer(tts_endpoint, mock_sink, voice="en_US-amy-low", timeout=1.0)

        await synthesizer.speak("Here are your tasks.")

        mock_sink.start.assert_awaited_once_with(22050, 2, 1)
        assert mock_sink.write.await_count == 2
        mock_sink.stop.assert_awaited_once()
        request = Synthesize.from_event(client.write_event.await_args.args[0])
        assert request.text == "Here are your tasks."
        assert request.voice.name == "en_US-amy-low"
        client.disconnect.assert_awaited_once()

    async def test_blank_text_is_skipped(self, tts_endpoint, patch_tcp_client, mock_sink):
        ctor, _ = patch_tcp_client
        synthesizer = WyomingSynthesizer(tts_endpoint, mock_sink)

        await synthesizer.speak("   ")

        ctor.assert_not_called()
        mock_sink.start.assert_not_called()

    async def test_connection_failure_raises_synthesis_error(self, tts_endpoint, patch_tcp_client, mock_sink):
        _, client = patch_tcp_client
        client.connect.side_effect = ConnectionRefusedError("piper down")
        synthesizer = WyomingSynthesizer(tts_endpoint, mock_sink, timeout=1.0)

        with pytest.raises(SynthesisError):
            await synthesizer.speak("Okay.")

        mock_sink.stop.assert_not_called()

    async def test_sink_failure_stops_playback(self, tts_endpoint, patch_tcp_client, mock_sink):
        _, client = patch_tcp_client
        client.read_event.side_effect = [
            AudioStart(rate=22050, width=2, channels=1).event(),
            AudioChunk(rate=22050, width=2, channels=1, audio=b"\x00" * 4).event(),
            AudioStop().event(),
        ]
        mock_sink.write.side_effect = AssistantError("Playback process exited unexpectedly")
        synthesizer = WyomingSynthesizer(tts_endpoint, mock_sink, timeout=1.0)

        with pytest.raises(SynthesisError):
            await synthesizer.speak("Okay.")

        mock_sink.stop.assert_awaited_once()
        client.disconnect.assert_awaited_once()

    async def test_cancellation_aborts_playback(self, tts_endpoint, patch_tcp_client, mock_sink):
        _, client = patch_tcp_client
        playing = asyncio.Event()
        events = [AudioStart(rate=22050, width=2, channels=1).event()]

        async def _read_event():
            if events:
                return events.pop(0)
            playing.set()
            await asyncio.sleep(5)

        client.read_event.side_effect = _read_event
        synthesizer = WyomingSynthesizer(tts_endpoint, mock_sink)

        task = asyncio.create_task(synthesizer.speak("A long answer."))
        await playing.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        mock_sink.abort.assert_awaited_once()
        mock_sink.stop.assert_not_called()
        client.disconnect.assert_awaited_once()
