from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class PipelineError(Exception):
    code: str
    message: str
    http_status: int = 500
    retryable: bool = False

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class ValidationError(PipelineError):
    http_status: int = 400


@dataclass(frozen=True)
class NotFoundError(PipelineError):
    http_status: int = 404


@dataclass(frozen=True)
class AccessDeniedError(PipelineError):
    http_status: int = 403


@dataclass(frozen=True)
class InvalidStateTransition(PipelineError):
    http_status: int = 400


@dataclass(frozen=True)
class ProviderError(PipelineError):
    provider: str = ""
    http_status: int = 502

    def __str__(self) -> str:
        return f"{self.code}({self.provider}): {self.message}"


@dataclass(frozen=True)
class GenerationTimeoutError(PipelineError):
    http_status: int = 504


@dataclass(frozen=True)
class PostProcessingError(PipelineError):
    http_status: int = 500


@dataclass(frozen=True)
class DataIntegrityError(PipelineError):
    http_status: int = 500


@dataclass(frozen=True)
class EnqueueError(PipelineError):
    http_status: int = 503
    retryable: bool = True


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a domain operation: a value or an expected rejection."""

    value: Any = None
    error: PipelineError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: PipelineError) -> "Result":
        return cls(error=error)

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value
