"""Error taxonomy and the tagged result returned by every engine operation."""
import enum
import functools
import logging
from typing import Any

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    not_authenticated = "not_authenticated"
    not_found = "not_found"
    remote_failure = "remote_failure"
    validation_failure = "validation_failure"


class SubOperationFailure(BaseModel):
    """One failed step of a bulk operation (e.g. a single dose insert)."""

    key: str
    kind: ErrorKind
    message: str


class OperationResult(BaseModel):
    success: bool
    data: Any = None
    error: ErrorKind | None = None
    message: str | None = None
    failures: list[SubOperationFailure] = Field(default_factory=list)

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        data: Any = None,
        failures: list[SubOperationFailure] | None = None,
    ) -> "OperationResult":
        return cls(success=False, error=kind, message=message, data=data, failures=failures or [])

    def unwrap(self) -> Any:
        """Return data on success, otherwise raise the matching EngineError."""
        if self.success:
            return self.data
        exc_cls = _ERRORS_BY_KIND.get(self.error, RemoteFailure)
        raise exc_cls(self.message or "Operation failed", data=self.data, failures=self.failures)


class EngineError(Exception):
    kind: ErrorKind = ErrorKind.remote_failure

    def __init__(self, message: str, *, data: Any = None, failures: list[SubOperationFailure] | None = None):
        super().__init__(message)
        self.message = message
        self.data = data
        self.failures = failures or []

    def to_result(self) -> OperationResult:
        return OperationResult.fail(self.kind, self.message, data=self.data, failures=self.failures)


class NotAuthenticated(EngineError):
    kind = ErrorKind.not_authenticated


class NotFound(EngineError):
    """Target is absent or not owned by the caller. The two are never distinguished."""

    kind = ErrorKind.not_found


class RemoteFailure(EngineError):
    kind = ErrorKind.remote_failure


class ValidationFailure(EngineError):
    kind = ErrorKind.validation_failure


_ERRORS_BY_KIND = {cls.kind: cls for cls in (NotAuthenticated, NotFound, RemoteFailure, ValidationFailure)}


def returns_result(fn):
    """Wrap an async engine coroutine so it returns an OperationResult instead of raising."""

    @functools.wraps(fn)
    async def _wrapper(*args, **kwargs) -> OperationResult:
        try:
            value = await fn(*args, **kwargs)
        except EngineError as e:
            logger.warning(f"{fn.__qualname__} failed ({e.kind.value}): {e.message}")
            return e.to_result()
        return OperationResult.ok(value)

    return _wrapper
