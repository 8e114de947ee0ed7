from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError
from pydantic.alias_generators import to_camel

from .errors import SchemaViolation

CANVAS_KEYS = (
    "keyPartners",
    "keyActivities",
    "valuePropositions",
    "customerRelationships",
    "customerSegments",
    "keyResources",
    "channels",
    "costStructure",
    "revenueModel",
)

SCHEMA_VIOLATION_MESSAGE = "The AI response was missing required Business Model Canvas fields."


class CanvasResult(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        str_strip_whitespace=True,
        extra="ignore",
        frozen=True,
    )

    key_partners: StrictStr
    key_activities: StrictStr
    value_propositions: StrictStr
    customer_relationships: StrictStr
    customer_segments: StrictStr
    key_resources: StrictStr
    channels: StrictStr
    cost_structure: StrictStr
    revenue_model: StrictStr

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True)


CANVAS_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {key: {"type": "string"} for key in CANVAS_KEYS},
    "required": list(CANVAS_KEYS),
    "additionalProperties": False,
}


def _describe(error: Mapping[str, Any]) -> str:
    loc = ".".join(str(part) for part in error.get("loc", ())) or "canvas"
    return f"{loc}: {error.get('msg', 'invalid')}"


def validate_canvas(data: Any) -> CanvasResult:
    """Validate a decoded model payload; every field is required and must be a string."""
    if not isinstance(data, Mapping):
        raise SchemaViolation(
            SCHEMA_VIOLATION_MESSAGE,
            [f"canvas: expected an object, got {type(data).__name__}"],
        )
    try:
        return CanvasResult.model_validate(dict(data))
    except ValidationError as exc:
        violations = [_describe(error) for error in exc.errors()]
        raise SchemaViolation(SCHEMA_VIOLATION_MESSAGE, violations) from exc
