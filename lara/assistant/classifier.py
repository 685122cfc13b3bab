"""Two-stage intent classification.

The primary stage asks a remote model for a JSON object that must match
``INTENT_RESPONSE_SCHEMA``. Transport failures, timeouts and schema mismatches
all discard the primary answer and the local rule table in
``lara.assistant.fallback`` classifies the text instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from collections.abc import Mapping
from typing import Any

import httpx

from .config import ClassifierConfig
from .errors import ClassificationProviderError, SchemaValidationError
from .fallback import classify_fallback
from .models import INTENT_ENTITY_KEYS, ClassificationResult, ClassificationSource, Intent

LOGGER = logging.getLogger("lara-assistant.classifier")

ENTITY_FIELDS = ("musicQuery", "artist", "taskText", "reminderText", "time", "navigationTarget")

INTENT_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "intent": {"type": "string", "enum": [intent.value for intent in Intent]},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "query": {"type": "string"},
        **{name: {"type": "string"} for name in ENTITY_FIELDS},
    },
    "required": ["intent", "confidence", "query"],
    "additionalProperties": False,
}


def strict_response_schema(schema: Mapping[str, Any] = INTENT_RESPONSE_SCHEMA) -> dict[str, Any]:
    """Return ``schema`` in the form OpenAI strict structured outputs accept.

    Strict mode requires every property to be listed in ``required``, so the
    optional entity slots become nullable instead. Numeric bounds are dropped
    and left to ``parse_primary_response``.
    """
    required = set(schema["required"])
    properties: dict[str, Any] = {}
    for name, spec in schema["properties"].items():
        field = {key: value for key, value in spec.items() if key not in {"minimum", "maximum"}}
        if name not in required:
            field["type"] = [field["type"], "null"]
        properties[name] = field
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties),
        "additionalProperties": False,
    }


OPENAI_RESPONSE_SCHEMA = strict_response_schema()

DEFAULT_CLASSIFIER_PROMPT = """You classify voice commands for a personal assistant called Lara.
Pick exactly one intent:
- play_music: the user wants music played ("play romantic songs"). Set musicQuery, and artist when named.
- add_task: add something to the task list. Set taskText, and time if a due time is given.
- show_tasks: the user wants to see their tasks.
- add_reminder: set a reminder ("remind me at 5 PM"). Set reminderText and time if mentioned.
- show_reminders: the user wants to see reminders.
- navigate: open an app section (tasks, reminders, health, professional, personal growth, home).
  Set navigationTarget.
- general_query: any other question or request.
- unknown: the text is not a command at all.
Always set query to the original command and confidence to a number between 0 and 1.
Use null for entity fields that do not apply.
Respond only with JSON."""


def _coerce_confidence(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaValidationError(f"confidence must be a number, got {type(value).__name__}")
    confidence = float(value)
    if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
        raise SchemaValidationError(f"confidence out of range: {value!r}")
    return confidence


def parse_primary_response(content: str | Mapping[str, Any]) -> ClassificationResult:
    """Validate a primary classifier payload and convert it into a result.

    Any deviation from the schema raises ``SchemaValidationError``; nothing is
    passed through partially.
    """
    if isinstance(content, Mapping):
        parsed: object = content
    else:
        try:
            parsed = json.loads(content)
        except (TypeError, json.JSONDecodeError) as exc:
            raise SchemaValidationError("classifier response is not JSON") from exc
    if not isinstance(parsed, Mapping):
        raise SchemaValidationError("classifier response must be a JSON object")

    allowed_keys = set(INTENT_RESPONSE_SCHEMA["properties"])
    unexpected = set(parsed) - allowed_keys
    if unexpected:
        raise SchemaValidationError(f"unexpected fields: {sorted(unexpected)}")

    intent = Intent.parse(parsed.get("intent"))
    if intent is None:
        raise SchemaValidationError(f"intent outside closed set: {parsed.get('intent')!r}")
    confidence = _coerce_confidence(parsed.get("confidence"))
    query = parsed.get("query")
    if not isinstance(query, str):
        raise SchemaValidationError("query must be a string")

    entities: dict[str, str] = {}
    for name in ENTITY_FIELDS:
        value = parsed.get(name)
        if value is None:
            continue
        if not isinstance(value, str):
            raise SchemaValidationError(f"{name} must be a string")
        if value.strip() and name in INTENT_ENTITY_KEYS[intent]:
            entities[name] = value.strip()
    if intent is Intent.GENERAL_QUERY and query.strip():
        entities["query"] = query.strip()

    return ClassificationResult.create(intent, confidence, entities, ClassificationSource.PRIMARY)


class PrimaryClassifier:
    name = "primary"

    async def classify(self, text: str) -> ClassificationResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class _HttpClassifier(PrimaryClassifier):
    def __init__(
        self,
        config: ClassifierConfig,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._logger = logger or LOGGER
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout, trust_env=False)

    @property
    def system_prompt(self) -> str:
        return self.config.system_prompt or DEFAULT_CLASSIFIER_PROMPT

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, url: str, payload: dict, headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise ClassificationProviderError(f"{self.name} request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ClassificationProviderError(f"{self.name} HTTP error: {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise SchemaValidationError(f"{self.name} returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise SchemaValidationError(f"{self.name} returned an unexpected body")
        return body


class OpenAIClassifier(_HttpClassifier):
    """Call OpenAI-compatible chat completion endpoints with a strict JSON schema."""

    name = "openai"

    async def classify(self, text: str) -> ClassificationResult:
        if not self.config.openai_api_key:
            raise ClassificationProviderError("OPENAI_API_KEY is not set")
        body = await self._post(
            f"{self.config.openai_base_url.rstrip('/')}/chat/completions",
            self._build_payload(text),
            {
                "Authorization": f"Bearer {self.config.openai_api_key}",
                "Content-Type": "application/json",
            },
        )
        choices = body.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise SchemaValidationError("classifier response missing choices")
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not content:
            raise SchemaValidationError("classifier response missing content")
        return parse_primary_response(str(content))

    def _build_payload(self, text: str) -> dict:
        return {
            "model": self.config.openai_model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": f"Classify this command: {text.strip()}"},
            ],
            "temperature": 0.2,
            "max_tokens": 200,
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "voice_intent",
                    "strict": True,
                    "schema": OPENAI_RESPONSE_SCHEMA,
                },
            },
        }


class GeminiClassifier(_HttpClassifier):
    """Call Google Gemini (Generative Language) models with a response schema."""

    name = "gemini"

    async def classify(self, text: str) -> ClassificationResult:
        if not self.config.gemini_api_key:
            raise ClassificationProviderError("GEMINI_API_KEY is not set")
        model = (self.config.gemini_model or "").strip()
        if not model:
            raise ClassificationProviderError("GEMINI_MODEL is not set")
        base_url = self.config.gemini_base_url.rstrip("/")
        body = await self._post(
            f"{base_url}/models/{model}:generateContent",
            self._build_payload(text),
            {
                "Content-Type": "application/json",
                "x-goog-api-key": self.config.gemini_api_key,
            },
        )
        for candidate in body.get("candidates") or []:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            if not isinstance(content, dict):
                continue
            for part in content.get("parts") or []:
                if isinstance(part, dict):
                    part_text = part.get("text")
                    if isinstance(part_text, str) and part_text.strip():
                        return parse_primary_response(part_text)
        prompt_feedback = body.get("promptFeedback")
        if isinstance(prompt_feedback, dict) and prompt_feedback.get("blockReason"):
            raise ClassificationProviderError(f"Gemini blocked prompt: {prompt_feedback['blockReason']}")
        raise SchemaValidationError("classifier response missing content")

    def _build_payload(self, text: str) -> dict:
        schema = {key: value for key, value in INTENT_RESPONSE_SCHEMA.items() if key != "additionalProperties"}
        schema["properties"] = {
            name: {k: v for k, v in spec.items() if k not in {"minimum", "maximum"}}
            for name, spec in INTENT_RESPONSE_SCHEMA["properties"].items()
        }
        return {
            "system_instruction": {"parts": [{"text": self.system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": text.strip()}]}],
            "generationConfig": {
                "temperature": 0.2,
                "maxOutputTokens": 200,
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }


def build_primary_classifier(
    config: ClassifierConfig,
    client: httpx.AsyncClient | None = None,
    logger: logging.Logger | None = None,
) -> PrimaryClassifier | None:
    provider = (config.provider or "").strip().lower()
    if provider == "none":
        return None
    if provider == "gemini":
        return GeminiClassifier(config, client, logger)
    return OpenAIClassifier(config, client, logger)


class IntentClassifier:
    """Primary remote classification with a deterministic local fallback."""

    def __init__(
        self,
        primary: PrimaryClassifier | None,
        *,
        timeout: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self.primary = primary
        self.timeout = timeout
        self._logger = logger or LOGGER

    async def classify(self, text: str) -> ClassificationResult:
        if self.primary is not None and text.strip():
            try:
                return await asyncio.wait_for(self.primary.classify(text), timeout=self.timeout)
            except TimeoutError:
                self._logger.warning("[classifier] Primary classifier timed out after %.1fs", self.timeout)
            except SchemaValidationError as exc:
                self._logger.warning("[classifier] Primary response rejected: %s", exc)
            except ClassificationProviderError as exc:
                self._logger.warning("[classifier] Primary classifier unavailable: %s", exc)
            except Exception as exc:
                self._logger.exception("[classifier] Primary classifier failed: %s", exc)
        result = classify_fallback(text)
        self._logger.debug(
            "[classifier] Fallback classified as %s (%.2f)",
            result.intent.value,
            result.confidence,
        )
        return result

    async def close(self) -> None:
        if self.primary is not None:
            await self.primary.close()
