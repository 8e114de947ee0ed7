from __future__ import annotations

from typing import Callable

import pytest

from canvas_api.ledger import JsonFileLedgerStore, SqlLedgerStore, TokenLedger
from canvas_api.llm import GenerationOptions, ModelClient
from canvas_api.payloads import Candidate, ModelResponse, TextFragment


class ScriptedModelClient(ModelClient):
    """Replays queued responses (or raises queued exceptions) in call order."""

    name = "scripted"

    def __init__(self, responses: list) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, GenerationOptions]] = []

    async def generate(self, prompt: str, options: GenerationOptions) -> ModelResponse:
        self.calls.append((prompt, options))
        if not self.responses:
            raise AssertionError("model called more times than scripted")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def text_response(text: str, tokens: int, finish_reason: str = "stop") -> ModelResponse:
    return ModelResponse(
        text=text,
        candidates=[Candidate(fragments=[TextFragment(text)], finish_reason=finish_reason)],
        tokens_used=tokens,
    )


@pytest.fixture
def canvas_payload() -> dict[str, str]:
    return {
        "keyPartners": "Suppliers\nLogistics partners",
        "keyActivities": "Platform development",
        "valuePropositions": "Fast delivery",
        "customerRelationships": "Self-service",
        "customerSegments": "Urban households",
        "keyResources": "Delivery fleet",
        "channels": "Mobile app",
        "costStructure": "Fleet operations",
        "revenueModel": "Delivery fees",
    }


@pytest.fixture
def scripted_client() -> Callable[..., ScriptedModelClient]:
    return ScriptedModelClient


@pytest.fixture
def respond() -> Callable[..., ModelResponse]:
    return text_response


@pytest.fixture
def make_ledger(tmp_path) -> Callable[..., TokenLedger]:
    def factory(allowance: int = 50000, backend: str = "file", history_limit: int = 20) -> TokenLedger:
        if backend == "sql":
            store = SqlLedgerStore(tmp_path / "ledger.db", history_limit=history_limit)
        else:
            store = JsonFileLedgerStore(tmp_path / "token-usage.json", history_limit=history_limit)
        return TokenLedger(store, allowance)

    return factory


@pytest.fixture
def ledger(make_ledger) -> TokenLedger:
    return make_ledger()
