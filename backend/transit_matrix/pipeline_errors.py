from __future__ import annotations

from dataclasses import dataclass
from typing import Any

REASON_CODES: frozenset[str] = frozenset(
    {
        "missing_credential",
        "no_zones",
        "no_successful_routes",
        "already_computed",
        "rate_limit_exceeded",
        "invalid_filter",
        "pipeline_error",
    }
)


@dataclass(eq=False)
class PipelineError(RuntimeError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class NoDataError(PipelineError):
    """Aggregation was requested but the store holds nothing to aggregate."""

    def __init__(self, message: str, *, reason_code: str = "no_successful_routes", **details: Any) -> None:
        super().__init__(reason_code=reason_code, message=message, details=details or None)


class AlreadyComputedError(PipelineError):
    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(reason_code="already_computed", message=message, details=details or None)


class MissingCredentialError(PipelineError):
    def __init__(self, message: str) -> None:
        super().__init__(reason_code="missing_credential", message=message)


class RateLimitExceeded(PipelineError):
    """The routing service kept answering 429 after the retry budget was spent."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(reason_code="rate_limit_exceeded", message=message, details={"attempts": attempts})
        self.attempts = attempts


def normalize_reason_code(reason_code: str, *, default: str = "pipeline_error") -> str:
    code = str(reason_code or "").strip()
    if code in REASON_CODES:
        return code
    return default
