"""Tests for strict parsing of permit application templates."""

import copy

import pytest

from permit_expediter.errors import TemplateParseError
from permit_expediter.schemas.findings import Severity
from permit_expediter.schemas.template import (
    TemplateDocument,
    parse_template,
    parse_template_document,
)
from permit_test_helpers import AUTHORITY_ID, ORANGE_TEMPLATE_JSON


def doc(**overrides):
    data = copy.deepcopy(ORANGE_TEMPLATE_JSON)
    data.update(overrides)
    return data


class TestParseTemplateDocument:
    def test_full_document(self):
        parsed = parse_template_document(doc())

        assert isinstance(parsed, TemplateDocument)
        assert [f.key for f in parsed.fields][:2] == ["site_address", "owner_name"]
        assert parsed.fields[0].source.ref == "job.address.full"
        assert parsed.fields[3].calc.expr.startswith("round(")
        assert parsed.required_sources.measurements == "required"
        assert parsed.attachments.required == ["MEASUREMENT_REPORT", "PRODUCT_APPROVAL"]
        assert parsed.outputs.packet_zip.include == ["PERMIT_APPLICATION", "MEASUREMENT_REPORT"]

    def test_display_title_is_lifted(self):
        assert parse_template_document(doc()).title == "Orange County Roofing Permit"

    def test_none_is_an_empty_document(self):
        parsed = parse_template_document(None)
        assert parsed.fields == []
        assert parsed.validations == []

    def test_non_object_rejected(self):
        with pytest.raises(TemplateParseError) as exc_info:
            parse_template_document(["not", "a", "document"], "tpl-1")
        assert exc_info.value.template_id == "tpl-1"

    def test_unknown_condition_operator_rejected(self):
        rules = [{"key": "v.area", "message": "Area too small",
                  "when": {"op": "lt", "value": {"ref": "measurements.squares"}}}]
        with pytest.raises(TemplateParseError) as exc_info:
            parse_template_document(doc(validations=rules))
        assert "validations" in exc_info.value.message

    def test_unknown_calc_form_rejected(self):
        fields = [{"key": "squares", "calc": {"jsonlogic": {"/": [{"var": "a"}, 100]}}}]
        with pytest.raises(TemplateParseError):
            parse_template_document(doc(fields=fields))

    def test_duplicate_field_keys_rejected(self):
        fields = [{"key": "owner_name"}, {"key": "owner_name"}]
        with pytest.raises(TemplateParseError) as exc_info:
            parse_template_document(doc(fields=fields))
        assert "duplicate field key" in exc_info.value.message

    def test_rule_without_key_or_message_dropped(self):
        rules = [
            {"message": "no key", "when": {"op": "is_empty", "value": {"ref": "a"}}},
            {"key": "v.no_message", "when": {"op": "is_empty", "value": {"ref": "a"}}},
            {"key": "v.kept", "message": "kept", "when": {"op": "is_empty", "value": {"ref": "a"}}},
        ]
        parsed = parse_template_document(doc(validations=rules))
        assert [r.key for r in parsed.validations] == ["v.kept"]

    def test_rule_severity_defaults_to_error(self):
        rules = [
            {"key": "v.a", "message": "a", "severity": None,
             "when": {"op": "is_empty", "value": {"ref": "a"}}},
            {"key": "v.b", "message": "b", "severity": "warning",
             "when": {"op": "is_empty", "value": {"literal": ""}}},
        ]
        parsed = parse_template_document(doc(validations=rules))
        assert parsed.validations[0].severity == Severity.ERROR
        assert parsed.validations[1].severity == Severity.WARNING
        assert parsed.validations[1].when.value.literal == ""

    def test_condition_value_cannot_be_both_ref_and_literal(self):
        rules = [{"key": "v.a", "message": "a",
                  "when": {"op": "is_empty", "value": {"ref": "a", "literal": "b"}}}]
        with pytest.raises(TemplateParseError):
            parse_template_document(doc(validations=rules))

    def test_field_display_name_falls_back_to_key(self):
        parsed = parse_template_document(doc(fields=[{"key": "folio"}]))
        assert parsed.fields[0].display_name == "folio"


class TestParseTemplate:
    def test_row_metadata(self):
        row = {
            "id": "tpl-9",
            "authority_id": AUTHORITY_ID,
            "permit_type": "ROOF_REPLACEMENT",
            "version": "3",
            "template_json": doc(),
        }
        template = parse_template(row)

        assert template.id == "tpl-9"
        assert template.version == 3
        assert template.authority_id == AUTHORITY_ID
        assert len(template.fields) == 6
        assert len(template.validations) == 1

    def test_parse_error_carries_row_id(self):
        row = {"id": "tpl-bad", "template_json": "not a dict"}
        with pytest.raises(TemplateParseError) as exc_info:
            parse_template(row)
        assert exc_info.value.template_id == "tpl-bad"
