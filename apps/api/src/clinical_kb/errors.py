from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar, Union

if TYPE_CHECKING:
    from clinical_kb.validation.confidence import ConfidenceValidationResult

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def is_ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


@dataclass(frozen=True)
class NotMedicalContent:
    """The context extractor decided the request carries no medical content."""

    reason: str
    raw_response: str

    code = "not_medical_content"

    @property
    def message(self) -> str:
        return f"Request does not contain medical content: {self.reason}"


@dataclass(frozen=True)
class LowConfidence:
    """The model answered, but its token probabilities are too weak to trust."""

    validation: ConfidenceValidationResult
    raw_response: str

    code = "low_confidence"

    @property
    def message(self) -> str:
        return (
            f"Model confidence too low ({self.validation.level.name}, "
            f"score={self.validation.score:.3f})"
        )


@dataclass(frozen=True)
class ParsingFailure:
    file_name: str
    reason: str

    code = "parsing_failure"

    @property
    def message(self) -> str:
        return f"Could not parse {self.file_name}: {self.reason}"


DomainError = Union[NotMedicalContent, LowConfidence]


class OperationCancelled(RuntimeError):
    pass
