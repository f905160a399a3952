"""Template validation: declarative ``is_empty`` rules plus required fields."""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from permit_expediter.runtime.expressions import lookup_path
from permit_expediter.runtime.resolver import ResolvedTemplate
from permit_expediter.schemas.context import CanonicalContext
from permit_expediter.schemas.findings import Severity, ValidationError
from permit_expediter.schemas.template import ConditionValue, PermitTemplate

logger = logging.getLogger(__name__)


@dataclass
class ValidationOutcome:
    errors: List[ValidationError] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(e.severity == Severity.ERROR.value for e in self.errors)


def is_empty_value(value: Any) -> bool:
    """``None`` and whitespace-only strings are empty; everything else is not."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def _operand(value: ConditionValue, data: Any) -> Any:
    if value.ref is not None:
        return lookup_path(data, value.ref)
    return value.literal


def validate(
    template: Optional[PermitTemplate],
    context: CanonicalContext,
    resolved: ResolvedTemplate,
) -> ValidationOutcome:
    """Run a template's validation rules and required-field checks.

    Rules without ``key`` or ``message`` never reach this point; they are
    dropped with a warning when the template is parsed.
    """
    outcome = ValidationOutcome()
    if template is None:
        return outcome

    data = context.as_lookup()

    for rule in template.validations:
        # is_empty is the only operator the template model admits
        if is_empty_value(_operand(rule.when.value, data)):
            outcome.errors.append(
                ValidationError(key=rule.key, severity=rule.severity, message=rule.message)
            )

    for tf in template.fields:
        if tf.required and is_empty_value(resolved.field_values.get(tf.key)):
            outcome.errors.append(
                ValidationError(
                    key=f"required.{tf.key}",
                    severity=Severity.ERROR,
                    message=f"{tf.display_name} is required",
                )
            )

    if outcome.errors:
        logger.info(f"Template {template.id} produced {len(outcome.errors)} validation findings")
    return outcome
