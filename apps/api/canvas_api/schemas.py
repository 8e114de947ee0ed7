from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from .canvas import CanvasResult

TOPIC_MIN_LENGTH = 2
REPORT_MIN_LENGTH = 50


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_topic(value: str) -> str:
    if len(value) < TOPIC_MIN_LENGTH:
        raise PydanticCustomError(
            "too_short",
            "Topic must be at least {min_length} characters.",
            {"min_length": TOPIC_MIN_LENGTH},
        )
    return value


class CanvasGenerateRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    topic: str
    report_text: str

    @field_validator("topic")
    @classmethod
    def topic_long_enough(cls, value: str) -> str:
        return _check_topic(value)

    @field_validator("report_text")
    @classmethod
    def report_long_enough(cls, value: str) -> str:
        if len(value) < REPORT_MIN_LENGTH:
            raise PydanticCustomError(
                "too_short",
                "Report text must be at least {min_length} characters.",
                {"min_length": REPORT_MIN_LENGTH},
            )
        return value


class CaseStudyGenerateRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    topic: str

    @field_validator("topic")
    @classmethod
    def topic_long_enough(cls, value: str) -> str:
        return _check_topic(value)


class CanvasGenerateResponse(CamelModel):
    canvas: CanvasResult
    tokens_used: int
    allowance: int
    tokens_remaining: int


class CaseStudyGenerateResponse(CamelModel):
    topic: str
    case_study: dict[str, str]
    presentation: Optional[str] = None
    tokens_used: int
    allowance: int
    tokens_remaining: int


class UsageRecordRead(BaseModel):
    timestamp: str
    tokens: int
    label: str


class TokenStatus(BaseModel):
    allowance: int
    used: int
    remaining: int
    history: list[UsageRecordRead] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    allowance: int
    used: int
    remaining: int
