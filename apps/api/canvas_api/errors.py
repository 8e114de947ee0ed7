from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .ledger import TokenSnapshot
    from .pipeline import PipelineState


class CanvasError(Exception):
    status_code: int = 502

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BudgetExhausted(CanvasError):
    status_code = 429


class UpstreamRejected(CanvasError):
    """The model provider refused the request itself (credentials, model access)."""

    status_code = 502


class RecoverableResponseError(CanvasError):
    """A response that a cheaper follow-up attempt may still fix."""


class EmptyResponse(RecoverableResponseError):
    pass


class TruncatedResponse(RecoverableResponseError):
    pass


class ParseFailure(RecoverableResponseError):
    pass


class SchemaViolation(RecoverableResponseError):
    def __init__(self, message: str, violations: list[str]) -> None:
        super().__init__(message)
        self.violations = violations


class CanvasGenerationFailed(CanvasError):
    """Terminal pipeline failure, after spent tokens were committed."""

    def __init__(
        self,
        message: str,
        status_code: int,
        snapshot: "TokenSnapshot",
        state: Optional["PipelineState"] = None,
    ) -> None:
        super().__init__(message, status_code)
        self.snapshot = snapshot
        self.state = state

    def to_payload(self) -> dict:
        return {
            "error": self.message,
            "allowance": self.snapshot.allowance,
            "used": self.snapshot.used,
            "remaining": self.snapshot.remaining,
        }
