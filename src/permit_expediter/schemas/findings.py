"""Finding schemas shared by the validator and the missing-item engine."""

from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    """How strongly a finding blocks readiness."""

    ERROR = "error"  # Blocks readiness
    WARNING = "warning"  # Non-blocking concern
    INFO = "info"  # Informational only


class Finding(BaseModel):
    """A keyed finding with a severity and a human-readable message."""

    model_config = ConfigDict(frozen=True, use_enum_values=True, validate_default=True)

    key: str = Field(..., min_length=1, description="Stable dotted identifier")
    severity: Severity = Field(default=Severity.ERROR)
    message: str = Field(..., description="Human-readable explanation")


class MissingItem(Finding):
    """A domain-completeness gap detected independently of any template."""


class ValidationError(Finding):
    """A template-specific rule violation, including unmet required fields."""


def has_errors(findings: Iterable[Finding]) -> bool:
    """Return True if any finding has error severity."""
    return any(f.severity == Severity.ERROR.value for f in findings)
