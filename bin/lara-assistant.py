#!/usr/bin/env python3
"""Lara voice command daemon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from lara.assistant.audio import AplaySink, AudioCapture, Microphone
from lara.assistant.classifier import IntentClassifier, build_primary_classifier
from lara.assistant.config import AssistantConfig
from lara.assistant.dispatcher import ActionDispatcher
from lara.assistant.errors import MicrophonePermissionError, UnsupportedError
from lara.assistant.handlers import build_mqtt_handlers
from lara.assistant.models import ACTIONABLE_INTENTS
from lara.assistant.mqtt import AssistantMqtt
from lara.assistant.publisher import SessionPublisher
from lara.assistant.session import ConversationSession
from lara.assistant.wake_listener import OpenWakeWordSource, WakeWordListener
from lara.assistant.wyoming import WyomingSynthesizer, WyomingTranscriber

LOGGER = logging.getLogger("lara-assistant")


class LaraAssistant:
    """Wire the pipeline together from configuration and run one session."""

    def __init__(self, config: AssistantConfig) -> None:
        self.config = config
        self.mqtt = AssistantMqtt(config.mqtt)
        self.publisher = SessionPublisher(self.mqtt, config.mqtt.topic_base)
        self.microphone = Microphone(config.mic)
        self.classifier = IntentClassifier(
            build_primary_classifier(config.classifier),
            timeout=config.classifier.timeout,
        )
        handlers = build_mqtt_handlers(self.mqtt, config.action_topics, ACTIONABLE_INTENTS) if self.mqtt.enabled else {}
        self.dispatcher = ActionDispatcher(handlers, config.dispatch)
        session_config = config.session
        self.session = ConversationSession(
            session_config,
            capture=AudioCapture(self.microphone, config.mic, config.capture),
            transcriber=WyomingTranscriber(
                config.stt_endpoint,
                timeout=session_config.transcribe_timeout,
                max_audio_bytes=session_config.max_audio_bytes,
                language=session_config.language,
            ),
            classifier=self.classifier,
            dispatcher=self.dispatcher,
            synthesizer=WyomingSynthesizer(
                config.tts_endpoint,
                AplaySink(),
                voice=session_config.tts_voice,
                timeout=session_config.synthesis_timeout,
            ),
            listener=WakeWordListener(session_config.wake_phrases, barge_in=session_config.barge_in),
            publisher=self.publisher,
            log_transcripts=config.log_transcripts,
        )
        self.source: OpenWakeWordSource | None = None
        if session_config.wake_mode:
            self.source = OpenWakeWordSource(
                self.microphone,
                config.wake_endpoint,
                config.wake_models,
                config.mic,
                phrase=session_config.wake_phrases[0],
            )
        self._loop: asyncio.AbstractEventLoop | None = None

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.mqtt.connect()
        missing = self.dispatcher.missing_intents()
        if missing:
            LOGGER.warning(
                "[dispatch] No handler for %s; these commands will be refused",
                ", ".join(intent.value for intent in missing),
            )
        if self.mqtt.is_connected():
            self.mqtt.subscribe(f"{self.config.mqtt.topic_base}/command", self._handle_command_message)
        LOGGER.info(
            "Lara assistant ready (wake=%s, classifier=%s)",
            ", ".join(self.config.session.wake_phrases) if self.config.session.wake_mode else "off",
            self.config.classifier.provider,
        )
        await self.session.run(self.source)

    async def shutdown(self) -> None:
        await self.session.close()
        await self.classifier.close()
        self.mqtt.disconnect()

    def _handle_command_message(self, payload: str) -> None:
        command = payload.strip().lower()
        loop = self._loop
        if loop is None:
            return
        if command == "trigger":
            loop.call_soon_threadsafe(self._trigger_from_remote)
        elif command == "stop":
            loop.call_soon_threadsafe(lambda: asyncio.ensure_future(self.session.stop()))
        else:
            LOGGER.debug("[mqtt] Ignoring unknown command payload: %s", payload)

    def _trigger_from_remote(self) -> None:
        if self.session.closed:
            return
        self.session.trigger("remote")


async def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = AssistantConfig.from_env()
    assistant = LaraAssistant(config)

    loop = asyncio.get_running_loop()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        asyncio.ensure_future(assistant.session.close())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    exit_code = 0
    try:
        await assistant.run()
    except (UnsupportedError, MicrophonePermissionError) as exc:
        LOGGER.error("Speech input unavailable: %s", exc)
        exit_code = 1
    finally:
        await assistant.shutdown()
    return exit_code


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass
