"""
Template runtime: expression evaluation, field resolution and validation.

1. Expression Evaluator - expressions (safe, whitelisted, pure)
2. Template Resolver - resolver (source refs, then calc overrides)
3. Validator - validator (is_empty rules, required fields)
"""

from permit_expediter.runtime.expressions import (
    EvalError,
    EvalErrorCode,
    EvalResult,
    available_functions,
    evaluate,
    lookup_path,
    validate_expression,
)
from permit_expediter.runtime.resolver import FieldCalcError, ResolvedTemplate, resolve
from permit_expediter.runtime.validator import ValidationOutcome, is_empty_value, validate

__all__ = [
    "EvalError",
    "EvalErrorCode",
    "EvalResult",
    "available_functions",
    "evaluate",
    "lookup_path",
    "validate_expression",
    "FieldCalcError",
    "ResolvedTemplate",
    "resolve",
    "ValidationOutcome",
    "is_empty_value",
    "validate",
]
