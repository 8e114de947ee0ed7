from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from .canvas import CANVAS_RESPONSE_SCHEMA, CanvasResult, validate_canvas
from .config import settings
from .errors import (
    BudgetExhausted,
    CanvasError,
    CanvasGenerationFailed,
    EmptyResponse,
    ParseFailure,
    RecoverableResponseError,
    SchemaViolation,
    TruncatedResponse,
    UpstreamRejected,
)
from .ledger import TokenLedger, TokenSnapshot
from .llm import GenerationOptions, ModelClient
from .payloads import ModelResponse, extract_model_payload
from .prompts import build_canvas_prompt, condense_report_text
from .sanitizer import is_likely_truncated, sanitize_json_text

logger = logging.getLogger(__name__)

BUDGET_EXHAUSTED_MESSAGE = "Token allowance exhausted. Regenerate allowance before making new requests."
BUDGET_EXHAUSTED_MIDWAY_MESSAGE = (
    "Token allowance exhausted while generating the Business Model Canvas. "
    "Please refresh your allowance and try again."
)
GENERATION_FAILED_MESSAGE = "Business Model Canvas generation failed. Please try again later."
RETRY_SUFFIX = " Retrying with a more concise prompt."


class PipelineState(str, Enum):
    idle = "idle"
    attempting = "attempting"
    success = "success"
    exhausted = "exhausted"
    budget_zero = "budget_zero"
    rejected = "rejected"


@dataclass(frozen=True)
class AttemptConfig:
    label: str
    is_compact: bool
    max_output_tokens: int

    def __post_init__(self) -> None:
        if self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be positive")


def default_attempts() -> tuple[AttemptConfig, ...]:
    return (
        AttemptConfig("primary", False, settings.canvas_primary_max_output_tokens),
        AttemptConfig("compact", True, settings.canvas_compact_max_output_tokens),
    )


@dataclass(frozen=True)
class CanvasGeneration:
    canvas: CanvasResult
    tokens_used: int
    snapshot: TokenSnapshot
    attempt: str


def _failure_message(kind: str, final: bool) -> str:
    messages = {
        "empty": (
            "The AI returned an empty response.",
            "The AI returned an empty response. Please try generating the Business Model Canvas again.",
        ),
        "truncated": (
            "The AI response looked incomplete.",
            "The AI response was incomplete even after retrying. Please try again.",
        ),
        "parse": (
            "The AI response was not valid JSON.",
            "The AI response was still invalid JSON after retrying. Please try again.",
        ),
        "schema": (
            "The AI response was missing required Business Model Canvas fields.",
            "The AI response was missing required Business Model Canvas fields even after retrying. "
            "Please try again.",
        ),
    }
    first, last = messages[kind]
    return last if final else first + RETRY_SUFFIX


class CanvasPipeline:
    """
    Acquire a validated Business Model Canvas from the model under the token allowance.

    Attempts run in order (primary, then compact) and are never repeated.
    Every token the model reports is billed to the ledger, whether the
    response turned out usable or not.
    """

    def __init__(
        self,
        client: ModelClient,
        ledger: TokenLedger,
        attempts: Optional[Sequence[AttemptConfig]] = None,
        temperature: Optional[float] = None,
    ) -> None:
        self.client = client
        self.ledger = ledger
        self.attempts = tuple(attempts) if attempts is not None else default_attempts()
        self.temperature = settings.canvas_temperature if temperature is None else temperature
        self.state = PipelineState.idle

    def interpret(self, response: ModelResponse, final: bool) -> CanvasResult:
        """Turn one model response into a canvas or raise a recoverable error."""
        payload = extract_model_payload(response)
        if payload is None:
            raise EmptyResponse(_failure_message("empty", final))

        if isinstance(payload, str):
            sanitized = sanitize_json_text(payload)
            if is_likely_truncated(sanitized):
                raise TruncatedResponse(_failure_message("truncated", final))
            try:
                decoded = json.loads(sanitized)
            except json.JSONDecodeError as exc:
                raise ParseFailure(_failure_message("parse", final)) from exc
        else:
            decoded = payload

        try:
            return validate_canvas(decoded)
        except SchemaViolation as exc:
            raise SchemaViolation(_failure_message("schema", final), exc.violations) from exc

    async def _commit(self, tokens: int, label: str) -> TokenSnapshot:
        return await asyncio.to_thread(self.ledger.record_usage, tokens, label)

    async def _fail(
        self,
        message: str,
        status_code: int,
        tokens: int,
        label: str,
        state: PipelineState,
    ) -> CanvasGenerationFailed:
        if tokens > 0:
            snapshot = await self._commit(tokens, label)
        else:
            snapshot = await asyncio.to_thread(self.ledger.snapshot)
        self.state = state
        return CanvasGenerationFailed(message, status_code, snapshot, state)

    async def run(self, topic: str, report_text: str) -> CanvasGeneration:
        self.state = PipelineState.idle
        snapshot = await asyncio.to_thread(self.ledger.snapshot)
        if snapshot.remaining <= 0:
            logger.warning("Token allowance exhausted before generating a canvas for %r", topic)
            self.state = PipelineState.budget_zero
            raise CanvasGenerationFailed(
                BUDGET_EXHAUSTED_MESSAGE,
                BudgetExhausted.status_code,
                snapshot,
                PipelineState.budget_zero,
            )

        condensed = condense_report_text(report_text)
        success_label = f"{topic} (Business Model Canvas)"
        failed_label = f"{topic} (Business Model Canvas - failed)"
        available = snapshot.remaining
        tokens_used = 0
        last_error: CanvasError = ParseFailure(_failure_message("parse", True))

        try:
            for index, attempt in enumerate(self.attempts):
                final = index == len(self.attempts) - 1
                if available <= 0:
                    logger.warning("Token allowance ran out before the %s attempt", attempt.label)
                    last_error = BudgetExhausted(BUDGET_EXHAUSTED_MIDWAY_MESSAGE)
                    break

                capped = min(attempt.max_output_tokens, available)
                if capped <= 0:
                    continue

                self.state = PipelineState.attempting
                prompt = build_canvas_prompt(topic, condensed, compact=attempt.is_compact)
                options = GenerationOptions(
                    temperature=self.temperature,
                    max_output_tokens=capped,
                    response_schema=CANVAS_RESPONSE_SCHEMA,
                    schema_name="business_model_canvas",
                )
                response = await self.client.generate(prompt, options)
                consumed = max(0, int(response.tokens_used or 0))
                tokens_used += consumed
                available = max(0, available - consumed)

                try:
                    canvas = self.interpret(response, final)
                except EmptyResponse as exc:
                    logger.warning("AI returned an empty payload (attempt=%s)", attempt.label)
                    last_error = exc
                    continue
                except TruncatedResponse as exc:
                    logger.warning(
                        "Detected truncated canvas response (attempt=%s, finish_reason=%s)",
                        attempt.label,
                        response.finish_reason,
                    )
                    last_error = exc
                    if final:
                        break
                    continue
                except SchemaViolation as exc:
                    logger.error(
                        "Invalid canvas schema (attempt=%s): %s",
                        attempt.label,
                        "; ".join(exc.violations),
                    )
                    last_error = exc
                    if final:
                        break
                    continue
                except RecoverableResponseError as exc:
                    logger.error("Failed to parse canvas JSON (attempt=%s): %s", attempt.label, exc.__cause__)
                    last_error = exc
                    if final:
                        break
                    continue

                snapshot_after = await self._commit(tokens_used, success_label)
                self.state = PipelineState.success
                return CanvasGeneration(
                    canvas=canvas,
                    tokens_used=tokens_used,
                    snapshot=snapshot_after,
                    attempt=attempt.label,
                )
        except UpstreamRejected as exc:
            raise await self._fail(
                exc.message, exc.status_code, tokens_used, failed_label, PipelineState.rejected
            ) from exc
        except Exception as exc:
            logger.exception("Business Model Canvas generation failed for %r", topic)
            raise await self._fail(
                GENERATION_FAILED_MESSAGE, 502, tokens_used, failed_label, PipelineState.exhausted
            ) from exc

        raise await self._fail(
            last_error.message, last_error.status_code, tokens_used, failed_label, PipelineState.exhausted
        )
