"""Error taxonomy and result values for the settlement engine.

Services raise the typed errors below internally and convert them into a
``ServiceResult`` at their public boundary, so batch jobs can keep going
after one seller or payout fails. Routers turn the reason code into an
HTTP status with a plain-language message.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class ErrorCode:
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RETRY_EXHAUSTED = "retry_exhausted"
    TRANSIENT_EXTERNAL = "transient_external"


class EngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None, **context):
        super().__init__(message)
        self.message = message
        self.errors = errors or [message]
        self.context = context


class ValidationError(EngineError):
    """Malformed input: negative amounts, missing scope fields, bad date ranges."""
    code = ErrorCode.VALIDATION


class NotFoundError(EngineError):
    code = ErrorCode.NOT_FOUND


class ConflictError(EngineError):
    """A rule would shadow another rule of the same scope and effective date."""
    code = ErrorCode.CONFLICT

    def __init__(self, message: str, conflicts: Optional[list] = None, **context):
        super().__init__(message, **context)
        self.conflicts = conflicts or []


class RetryExhaustedError(EngineError):
    """Payout hit the retry ceiling and needs an operator."""
    code = ErrorCode.RETRY_EXHAUSTED


class TransientExternalError(EngineError):
    """Payment rail failed for a reason presumed recoverable."""
    code = ErrorCode.TRANSIENT_EXTERNAL


@dataclass
class ServiceResult(Generic[T]):
    succeeded: bool
    value: Optional[T] = None
    code: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    conflicts: list = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: Optional[T] = None, warnings: Optional[List[str]] = None,
                conflicts: Optional[list] = None) -> "ServiceResult[T]":
        return cls(
            succeeded=True,
            value=value,
            warnings=warnings or [],
            conflicts=conflicts or [],
        )

    @classmethod
    def failure(cls, error: EngineError) -> "ServiceResult[T]":
        return cls(
            succeeded=False,
            code=error.code,
            errors=list(error.errors),
            conflicts=list(getattr(error, "conflicts", [])),
            context=dict(error.context),
        )

    @property
    def message(self) -> str:
        return "; ".join(self.errors)


@dataclass
class BatchItemOutcome:
    key: str
    succeeded: bool
    code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class BatchResult:
    outcomes: List[BatchItemOutcome] = field(default_factory=list)

    def record(self, key: str, result: ServiceResult) -> None:
        self.outcomes.append(BatchItemOutcome(
            key=key,
            succeeded=result.succeeded,
            code=result.code,
            message=None if result.succeeded else result.message,
        ))

    @property
    def succeeded_count(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)
