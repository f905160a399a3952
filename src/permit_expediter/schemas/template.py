"""Permit application template schema.

Templates are authored by non-developers as JSON documents and stored per
(tenant, authority, permit type, version). They are parsed into this strict
model once, at the boundary, by :func:`parse_template`; the rest of the
pipeline only sees validated objects.

Parsing rules:
    - unknown ``when.op`` values and unknown ``calc`` forms are rejected
      (``TemplateParseError``);
    - validation rules lacking ``key`` or ``message`` are dropped with a
      warning instead of failing the whole template.
"""

import logging
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from permit_expediter.errors import TemplateParseError
from permit_expediter.schemas.findings import Severity

logger = logging.getLogger(__name__)


class SourceRef(BaseModel):
    """Direct reference to a dotted context path."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    ref: str = Field(..., min_length=1)


class CalcExpr(BaseModel):
    """Calculated value; only the ``expr`` form is supported."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    expr: str = Field(..., min_length=1)


class TemplateField(BaseModel):
    """A single application field."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    key: str = Field(..., min_length=1)
    label: Optional[str] = None
    type: str = "text"
    required: bool = False
    source: Optional[SourceRef] = None
    calc: Optional[CalcExpr] = None
    help_text: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.label or self.key


class ConditionValue(BaseModel):
    """Operand of a condition: a context reference or a literal."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    ref: Optional[str] = None
    literal: Union[str, int, float, bool, None] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "ConditionValue":
        if self.ref is not None and self.literal is not None:
            raise ValueError("condition value must set either 'ref' or 'literal', not both")
        return self


class IsEmptyCondition(BaseModel):
    """``{"op": "is_empty", "value": {"ref": "..."}}``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    op: Literal["is_empty"]
    value: ConditionValue


# Only one operator exists today; new operators become further variants here.
Condition = IsEmptyCondition


class TemplateValidation(BaseModel):
    """Declarative validation rule."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    key: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    severity: Severity = Severity.ERROR
    when: Condition

    @field_validator("severity", mode="before")
    @classmethod
    def _default_severity(cls, v: Any) -> Any:
        return Severity.ERROR if v is None else v


class RequiredSources(BaseModel):
    """Sources the template expects to be present in the context."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    job: bool = False
    contact_owner: bool = False
    measurements: Optional[str] = None
    property_parcel_cache: bool = False
    estimate: bool = False
    products: bool = False


class Attachments(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    required: List[str] = Field(default_factory=list)


class PacketOutput(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    include: List[str] = Field(default_factory=list)


class TemplateOutputs(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    packet_zip: Optional[PacketOutput] = None


class TemplateDocument(BaseModel):
    """Parsed ``template_json`` document."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    schema_version: int = 1
    template_key: Optional[str] = None
    permit_type: Optional[str] = None
    title: Optional[str] = None
    required_sources: RequiredSources = Field(default_factory=RequiredSources)
    attachments: Attachments = Field(default_factory=Attachments)
    fields: List[TemplateField] = Field(default_factory=list)
    validations: List[TemplateValidation] = Field(default_factory=list)
    outputs: TemplateOutputs = Field(default_factory=TemplateOutputs)

    @field_validator("fields")
    @classmethod
    def _unique_keys(cls, v: List[TemplateField]) -> List[TemplateField]:
        seen = set()
        for f in v:
            if f.key in seen:
                raise ValueError(f"duplicate field key '{f.key}'")
            seen.add(f.key)
        return v


class PermitTemplate(BaseModel):
    """Template row joined with its parsed document."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    authority_id: Optional[str] = None
    permit_type: Optional[str] = None
    version: int = 1
    template_pdf_bucket: Optional[str] = None
    template_pdf_path: Optional[str] = None
    document: TemplateDocument = Field(default_factory=TemplateDocument)

    @property
    def fields(self) -> List[TemplateField]:
        return self.document.fields

    @property
    def validations(self) -> List[TemplateValidation]:
        return self.document.validations


def _drop_incomplete_rules(raw_rules: Any, template_id: Optional[str]) -> Any:
    """Remove validation rules without a key or message."""
    if not isinstance(raw_rules, list):
        return raw_rules
    kept = []
    for rule in raw_rules:
        if isinstance(rule, dict) and (not rule.get("key") or not rule.get("message")):
            logger.warning(
                f"Skipping validation rule without key/message in template {template_id}: {rule}"
            )
            continue
        kept.append(rule)
    return kept


def parse_template_document(raw: Any, template_id: Optional[str] = None) -> TemplateDocument:
    """Parse a raw ``template_json`` value into a :class:`TemplateDocument`.

    Raises:
        TemplateParseError: If the document does not match the template model.
    """
    if raw is None:
        return TemplateDocument()
    if not isinstance(raw, dict):
        raise TemplateParseError(
            f"template document must be an object, got {type(raw).__name__}", template_id
        )

    data: Dict[str, Any] = dict(raw)
    data["validations"] = _drop_incomplete_rules(data.get("validations", []), template_id)
    display = data.get("display")
    if isinstance(display, dict) and "title" not in data:
        data["title"] = display.get("title")

    try:
        return TemplateDocument.model_validate(data)
    except ValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise TemplateParseError(f"invalid template document: {issues}", template_id) from e


def parse_template(row: Dict[str, Any]) -> PermitTemplate:
    """Build a :class:`PermitTemplate` from a ``permit_application_templates`` row."""
    template_id = row.get("id")
    document = parse_template_document(row.get("template_json"), template_id)
    return PermitTemplate(
        id=template_id,
        authority_id=row.get("authority_id"),
        permit_type=row.get("permit_type"),
        version=int(row.get("version") or 1),
        template_pdf_bucket=row.get("template_pdf_bucket"),
        template_pdf_path=row.get("template_pdf_path"),
        document=document,
    )
