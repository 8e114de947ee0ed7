from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

RawPayload = Union[str, dict[str, Any]]


@dataclass(frozen=True)
class TextFragment:
    text: str


@dataclass(frozen=True)
class FunctionCallFragment:
    name: str
    args: Any = None


@dataclass(frozen=True)
class FunctionResponseFragment:
    name: str
    response: Any = None


Fragment = Union[TextFragment, FunctionCallFragment, FunctionResponseFragment]


@dataclass
class Candidate:
    fragments: list[Fragment] = field(default_factory=list)
    finish_reason: Optional[str] = None


@dataclass
class ModelResponse:
    """What a model client hands back for one generate call."""

    text: Optional[str] = None
    function_calls: list[FunctionCallFragment] = field(default_factory=list)
    candidates: list[Candidate] = field(default_factory=list)
    tokens_used: int = 0

    @property
    def finish_reason(self) -> Optional[str]:
        if not self.candidates:
            return None
        return self.candidates[0].finish_reason


def _trimmed_or_none(value: str) -> Optional[str]:
    trimmed = value.strip()
    return trimmed or None


def unwrap_arguments(value: Any) -> Optional[RawPayload]:
    if not value:
        return None
    if isinstance(value, str):
        return _trimmed_or_none(value)
    if isinstance(value, Mapping):
        if "json" in value:
            nested = value["json"]
            if isinstance(nested, str):
                return _trimmed_or_none(nested)
            if nested and isinstance(nested, Mapping):
                return dict(nested)
        return dict(value) if len(value) > 0 else None
    return None


def unwrap_fragment(fragment: Fragment) -> Optional[RawPayload]:
    if isinstance(fragment, TextFragment):
        return _trimmed_or_none(fragment.text or "")
    if isinstance(fragment, FunctionCallFragment):
        return unwrap_arguments(fragment.args)
    if isinstance(fragment, FunctionResponseFragment):
        return unwrap_arguments(fragment.response)
    return None


def extract_model_payload(response: ModelResponse) -> Optional[RawPayload]:
    """
    Pick the first usable payload from a model response.

    Looks at the consolidated text first, then the function-call arguments,
    then every fragment of every candidate in order. ``None`` means the model
    returned nothing usable.
    """
    if response.text:
        text = _trimmed_or_none(response.text)
        if text:
            return text

    for call in response.function_calls:
        extracted = unwrap_arguments(call.args)
        if extracted:
            return extracted

    for candidate in response.candidates:
        for fragment in candidate.fragments:
            extracted = unwrap_fragment(fragment)
            if extracted:
                return extracted

    return None
