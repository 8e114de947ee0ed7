from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .config import settings
from .errors import BudgetExhausted, CanvasGenerationFailed, UpstreamRejected
from .ledger import TokenLedger, TokenSnapshot
from .llm import GenerationOptions, ModelClient
from .pipeline import BUDGET_EXHAUSTED_MESSAGE, PipelineState
from .prompts import CASE_STUDY_SECTIONS, PRESENTATION_SECTION, SectionTemplate

logger = logging.getLogger(__name__)

CASE_STUDY_FAILED_MESSAGE = "Generation failed. Please try again later."


@dataclass
class CaseStudy:
    topic: str
    sections: dict[str, str]
    presentation: Optional[str]
    tokens_used: int
    snapshot: TokenSnapshot = field(repr=False)


async def generate_case_study(
    topic: str,
    client: ModelClient,
    ledger: TokenLedger,
    sections: Sequence[SectionTemplate] = CASE_STUDY_SECTIONS,
) -> CaseStudy:
    """
    Generate every case study section concurrently and bill their tokens.

    Tokens from sections that completed are committed even if another
    section failed, then the failure is reported.
    """
    snapshot = await asyncio.to_thread(ledger.snapshot)
    if snapshot.remaining <= 0:
        logger.warning("Token allowance exhausted before generating a case study for %r", topic)
        raise CanvasGenerationFailed(
            BUDGET_EXHAUSTED_MESSAGE,
            BudgetExhausted.status_code,
            snapshot,
            PipelineState.budget_zero,
        )

    options = GenerationOptions(
        temperature=settings.case_study_temperature,
        max_output_tokens=min(settings.case_study_max_output_tokens, snapshot.remaining),
    )
    results = await asyncio.gather(
        *(client.generate(section.build_prompt(topic), options) for section in sections),
        return_exceptions=True,
    )

    texts: dict[str, str] = {}
    tokens_used = 0
    failures: list[BaseException] = []
    for section, result in zip(sections, results):
        if isinstance(result, BaseException):
            failures.append(result)
            continue
        tokens_used += max(0, int(result.tokens_used or 0))
        texts[section.section] = (result.text or "").strip()

    snapshot_after = await asyncio.to_thread(ledger.record_usage, tokens_used, topic)

    if failures:
        first = failures[0]
        if isinstance(first, UpstreamRejected):
            message, status_code, state = first.message, first.status_code, PipelineState.rejected
        else:
            logger.error("Case study generation failed for %r", topic, exc_info=first)
            message, status_code, state = CASE_STUDY_FAILED_MESSAGE, 502, PipelineState.exhausted
        raise CanvasGenerationFailed(message, status_code, snapshot_after, state) from first

    presentation = texts.pop(PRESENTATION_SECTION, None)
    return CaseStudy(
        topic=topic,
        sections=texts,
        presentation=presentation,
        tokens_used=tokens_used,
        snapshot=snapshot_after,
    )
