"""
Template Resolver - fills application fields from the canonical context.

Two passes over ``template.fields`` in declaration order:

1. every field with ``source.ref`` gets the value at that context path;
2. every field with ``calc.expr`` is evaluated and overwrites the value from
   pass 1 (a calc always wins over a source for the same key).

Expression failures never abort resolution. The failing field is set to
``None`` and its errors are collected in ``calc_errors`` tagged with the key.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from permit_expediter.runtime.expressions import EvalError, evaluate, lookup_path
from permit_expediter.schemas.context import CanonicalContext
from permit_expediter.schemas.template import PermitTemplate

logger = logging.getLogger(__name__)


@dataclass
class FieldCalcError:
    """Expression errors for a single calc field."""

    field_key: str
    expression: str
    errors: List[EvalError]

    @property
    def message(self) -> str:
        return "; ".join(e.message for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_key": self.field_key,
            "expression": self.expression,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class ResolvedTemplate:
    field_values: Dict[str, Any] = field(default_factory=dict)
    calc_results: Dict[str, Any] = field(default_factory=dict)
    calc_errors: List[FieldCalcError] = field(default_factory=list)


def resolve(template: Optional[PermitTemplate], context: CanonicalContext) -> ResolvedTemplate:
    """Resolve source and calc fields of a template against a context.

    Args:
        template: Parsed template, or None when no template is active.
        context: Canonical context for the permit case.

    Returns:
        ResolvedTemplate. Fields with neither ``source`` nor ``calc`` are absent.
    """
    resolved = ResolvedTemplate()
    if template is None:
        return resolved

    data = context.as_lookup()

    for tf in template.fields:
        if tf.source is not None:
            resolved.field_values[tf.key] = lookup_path(data, tf.source.ref)

    for tf in template.fields:
        if tf.calc is None:
            continue
        result = evaluate(tf.calc.expr, data)
        if result.errors:
            logger.warning(
                f"Calc field '{tf.key}' failed in template {template.id}: "
                f"{'; '.join(e.message for e in result.errors)}"
            )
            resolved.calc_errors.append(FieldCalcError(tf.key, tf.calc.expr, result.errors))
        resolved.field_values[tf.key] = result.value
        resolved.calc_results[tf.key] = result.value

    logger.debug(
        f"Resolved {len(resolved.field_values)} fields "
        f"({len(resolved.calc_results)} calculated, {len(resolved.calc_errors)} failed)"
    )
    return resolved
