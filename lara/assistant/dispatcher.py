"""Confidence-gated action dispatch."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping

from .config import DispatchConfig
from .errors import ErrorKind
from .handlers import ActionHandler
from .models import ACTIONABLE_INTENTS, REQUIRED_ENTITIES, ActionRequest, ActionResult, ClassificationResult, Intent

LOGGER = logging.getLogger("lara-assistant.dispatch")
DEFECT_LOGGER = logging.getLogger("lara-assistant.defects")

CLARIFY_MESSAGE = "Sorry, I'm not sure what you meant. Could you say that again?"
UNKNOWN_INTENT_MESSAGE = "Sorry, I can't do that right now."
ACTION_FAILED_MESSAGE = "Sorry, I couldn't complete that."

MISSING_ENTITY_MESSAGES: dict[Intent, str] = {
    Intent.PLAY_MUSIC: "What would you like me to play?",
    Intent.ADD_TASK: "What task should I add?",
    Intent.ADD_REMINDER: "What should I remind you about?",
    Intent.NAVIGATE: "Which section should I open?",
    Intent.GENERAL_QUERY: "What would you like to know?",
}


class ActionDispatcher:
    """Route classified intents to their registered handlers."""

    def __init__(
        self,
        handlers: Mapping[Intent, ActionHandler],
        config: DispatchConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self._handlers: dict[Intent, ActionHandler] = {}
        for intent, handler in handlers.items():
            self.register(intent, handler)
        self.config = config
        self._logger = logger or LOGGER

    def register(self, intent: Intent, handler: ActionHandler) -> None:
        if intent is Intent.UNKNOWN:
            raise ValueError("the unknown intent cannot have a handler")
        if intent in self._handlers:
            raise ValueError(f"handler already registered for {intent.value}")
        self._handlers[intent] = handler

    def missing_intents(self) -> list[Intent]:
        return [intent for intent in ACTIONABLE_INTENTS if intent not in self._handlers]

    def decide(self, result: ClassificationResult) -> ActionResult | None:
        """Return the outcome that stops dispatch before the handler, or None to proceed.

        ``unknown`` is something the user said, so it is treated like low
        confidence. ``UNKNOWN_INTENT`` is kept for actionable intents with no
        registered handler, which is a wiring defect.
        """
        if result.intent is Intent.UNKNOWN:
            return ActionResult.failure(CLARIFY_MESSAGE, ErrorKind.LOW_CONFIDENCE)
        if result.intent not in self._handlers:
            return ActionResult.failure(UNKNOWN_INTENT_MESSAGE, ErrorKind.UNKNOWN_INTENT)
        if result.confidence < self.config.threshold_for(result.intent):
            return ActionResult.failure(CLARIFY_MESSAGE, ErrorKind.LOW_CONFIDENCE)
        missing = [name for name in REQUIRED_ENTITIES.get(result.intent, ()) if not result.entity(name)]
        if missing:
            message = MISSING_ENTITY_MESSAGES.get(result.intent, CLARIFY_MESSAGE)
            return ActionResult.failure(message, ErrorKind.MISSING_ENTITY, data={"missing": missing})
        return None

    async def dispatch(self, result: ClassificationResult, *, user_id: str, session_id: str) -> ActionResult:
        outcome = self.decide(result)
        if outcome is not None:
            self._log_outcome(result, outcome)
            return outcome

        handler = self._handlers[result.intent]
        request = ActionRequest(
            intent=result.intent,
            entities=dict(result.entities),
            user_id=user_id,
            session_id=session_id,
        )
        try:
            action_result = await asyncio.wait_for(handler.handle(request), timeout=self.config.handler_timeout)
        except TimeoutError:
            self._logger.warning(
                "[dispatch] Handler for %s timed out after %.1fs",
                result.intent.value,
                self.config.handler_timeout,
            )
            return ActionResult.failure(ACTION_FAILED_MESSAGE, ErrorKind.ACTION_EXECUTION)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.exception("[dispatch] Handler for %s raised: %s", result.intent.value, exc)
            return ActionResult.failure(ACTION_FAILED_MESSAGE, ErrorKind.ACTION_EXECUTION)

        if not isinstance(action_result, ActionResult):
            self._logger.error(
                "[dispatch] Handler for %s returned %s instead of an ActionResult",
                result.intent.value,
                type(action_result).__name__,
            )
            return ActionResult.failure(ACTION_FAILED_MESSAGE, ErrorKind.ACTION_EXECUTION)
        if not action_result.success:
            self._logger.info("[dispatch] Handler for %s reported failure", result.intent.value)
            if action_result.error is None:
                return ActionResult.failure(
                    action_result.message or ACTION_FAILED_MESSAGE,
                    ErrorKind.ACTION_EXECUTION,
                    data=action_result.data,
                )
        elif not action_result.message:
            return ActionResult(success=True, message="Done.", data=action_result.data)
        return action_result

    def _log_outcome(self, result: ClassificationResult, outcome: ActionResult) -> None:
        if outcome.error is ErrorKind.UNKNOWN_INTENT:
            DEFECT_LOGGER.error(
                "[dispatch] No handler registered for intent %s (source=%s)",
                result.intent.value,
                result.source.value,
            )
        elif result.intent is Intent.UNKNOWN:
            self._logger.info("[dispatch] Not a command (source=%s); asking to clarify", result.source.value)
        elif outcome.error is ErrorKind.LOW_CONFIDENCE:
            self._logger.info(
                "[dispatch] Low confidence %.2f for %s from %s; asking to clarify",
                result.confidence,
                result.intent.value,
                result.source.value,
            )
        elif outcome.error is ErrorKind.MISSING_ENTITY:
            self._logger.info(
                "[dispatch] Missing entities %s for %s; asking to clarify",
                (outcome.data or {}).get("missing"),
                result.intent.value,
            )
