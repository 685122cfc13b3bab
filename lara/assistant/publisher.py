"""Session telemetry published over MQTT.

Topics live under the configured topic base:

- ``state``: JSON ``{"state": ..., "cycle": ..., ...}`` on every transition (retained)
- ``stage``: bare state name (retained)
- ``in_progress``: ``ON`` while a command cycle is running (retained)
- ``transcript`` / ``response``: JSON with the text and cycle number
- ``classification``: the ``ClassificationResult`` as JSON
- ``metrics``: per-cycle stage timings from ``AssistRunTracker``
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol

from .models import ClassificationResult

LOGGER = logging.getLogger("lara-assistant.publisher")

IDLE_STATES = {"idle", "listening"}


class MqttPublisher(Protocol):
    def publish(self, topic: str, payload: str, retain: bool = False, qos: int = 0) -> None: ...


class SessionPublisher:
    def __init__(self, mqtt: MqttPublisher, topic_base: str, logger: logging.Logger | None = None) -> None:
        self.mqtt = mqtt
        self.logger = logger or LOGGER
        base = topic_base.rstrip("/")
        self.state_topic = f"{base}/state"
        self.stage_topic = f"{base}/stage"
        self.in_progress_topic = f"{base}/in_progress"
        self.transcript_topic = f"{base}/transcript"
        self.response_topic = f"{base}/response"
        self.classification_topic = f"{base}/classification"
        self.metrics_topic = f"{base}/metrics"

    def _publish(self, topic: str, payload: str, *, retain: bool = False) -> None:
        try:
            self.mqtt.publish(topic, payload, retain=retain)
        except Exception as exc:
            self.logger.debug("[publisher] Failed to publish %s: %s", topic, exc)

    def _publish_json(self, topic: str, payload: dict[str, Any], *, retain: bool = False) -> None:
        self._publish(topic, json.dumps(payload), retain=retain)

    def publish_state(self, state: str, cycle: int, extra: dict[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"state": state, "cycle": cycle, "timestamp": time.time()}
        if extra:
            payload.update(extra)
        self._publish_json(self.state_topic, payload, retain=True)
        self._publish(self.stage_topic, state, retain=True)
        self._publish(self.in_progress_topic, "OFF" if state in IDLE_STATES else "ON", retain=True)

    def publish_transcript(self, text: str, cycle: int) -> None:
        self._publish_json(self.transcript_topic, {"text": text, "cycle": cycle})

    def publish_response(self, text: str, cycle: int, *, success: bool, error: str | None = None) -> None:
        self._publish_json(
            self.response_topic,
            {"text": text, "cycle": cycle, "success": success, "error": error},
        )

    def publish_classification(self, result: ClassificationResult, cycle: int) -> None:
        payload = result.as_dict()
        payload["cycle"] = cycle
        self._publish_json(self.classification_topic, payload)

    def publish_metrics(self, metrics: dict[str, Any]) -> None:
        self._publish_json(self.metrics_topic, metrics)
