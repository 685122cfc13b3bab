"""
Voice command pipeline for Lara

This package turns a spoken command into a classified action and speaks the
outcome back:

- Wake word: trigger phrase detection over transcript fragments, with an
  openWakeWord (Wyoming) adapter for hands-free activation
- Capture: exclusive microphone ownership and RMS silence detection
- Speech recognition: Wyoming protocol (faster-whisper) with a single retry
- Intent classification: remote model (OpenAI or Gemini) with a deterministic
  rule-based fallback
- Dispatch: confidence gate, required entities, handler timeouts
- Speech synthesis: Piper TTS streamed to the local audio player
- Telemetry: MQTT session state, transcripts, responses and stage metrics

Key modules:
- config: Configuration management from environment variables
- session: The per-interaction state machine
- classifier / fallback: Primary and fallback classification
- dispatcher / handlers: Action routing and handler adapters
"""

from __future__ import annotations

__all__ = [
    "audio",
    "classifier",
    "config",
    "dispatcher",
    "errors",
    "fallback",
    "handlers",
    "models",
    "mqtt",
    "publisher",
    "session",
    "stop_phrases",
    "wake_listener",
    "wyoming",
]
