from __future__ import annotations

import pytest

from firenoc.errors import ValidationError
from firenoc.record_kinds import APPLICATION, SAFETY_REVIEW
from firenoc.subject_fields import (
    FieldParseError,
    merge_subject_fields,
    parse_bool,
    parse_float,
    parse_int,
    parse_subject_fields,
)


def test_parse_bool_is_strict():
    assert parse_bool(True) is True
    assert parse_bool("YES") is True
    assert parse_bool("off") is False
    with pytest.raises(FieldParseError):
        parse_bool("maybe")
    with pytest.raises(FieldParseError):
        parse_bool(1)


def test_parse_int_never_accepts_booleans():
    assert parse_int("3") == 3
    assert parse_int("3.0") == 3
    with pytest.raises(FieldParseError):
        parse_int(True)
    with pytest.raises(FieldParseError):
        parse_int("3.5")


@pytest.mark.parametrize("value", ["nan", "inf", "-inf", " Infinity ", float("nan"), float("inf")])
def test_non_finite_numbers_are_rejected(value):
    with pytest.raises(FieldParseError, match="must be a number"):
        parse_float(value)
    with pytest.raises(FieldParseError):
        parse_int(value)


def test_non_finite_area_names_the_field(application_form):
    with pytest.raises(ValidationError) as exc_info:
        parse_subject_fields(APPLICATION.fields, {**application_form, "builtupArea": "nan"})
    assert exc_info.value.fields == ["builtupArea"]


def test_year_construction_boundaries(safety_review_form):
    year = 2026
    accepted = parse_subject_fields(
        SAFETY_REVIEW.fields,
        {**safety_review_form, "yearConstruction": str(year)},
        current_year=year,
    )
    assert accepted["yearConstruction"] == year

    with pytest.raises(ValidationError) as exc_info:
        parse_subject_fields(
            SAFETY_REVIEW.fields,
            {**safety_review_form, "yearConstruction": str(year + 1)},
            current_year=year,
        )
    assert exc_info.value.fields == ["yearConstruction"]


def test_floor_count_boundaries(safety_review_form):
    with pytest.raises(ValidationError) as exc_info:
        parse_subject_fields(SAFETY_REVIEW.fields, {**safety_review_form, "floors": "0"})
    assert exc_info.value.fields == ["floors"]
    assert "floors must be at least 1" in exc_info.value.message

    parsed = parse_subject_fields(SAFETY_REVIEW.fields, {**safety_review_form, "floors": "1"})
    assert parsed["floors"] == 1


def test_missing_required_fields_are_all_reported(application_form):
    raw = dict(application_form)
    raw.pop("email")
    raw["mobile"] = "   "

    with pytest.raises(ValidationError) as exc_info:
        parse_subject_fields(APPLICATION.fields, raw)

    assert exc_info.value.fields == ["mobile", "email"]
    assert exc_info.value.details == {"fields": ["mobile", "email"]}


def test_checklist_groups_accept_flat_and_nested_input(safety_review_form):
    flat = parse_subject_fields(SAFETY_REVIEW.fields, safety_review_form)
    assert flat["fireProtection"]["fireExtinguishers"] is True
    assert flat["fireProtection"]["hydrants"] is False
    assert flat["fireProtection"]["sprinklers"] is False
    assert flat["electricalSafety"]["wiringCondition"] == "average"
    assert flat["structuralSafety"] == {"escapeRoutes": False, "fireDoors": False, "staircaseWidth": False}

    nested_input = {k: v for k, v in safety_review_form.items() if k not in {"fireExtinguishers", "hydrants"}}
    nested_input["fireProtection"] = {"sprinklers": True}
    nested = parse_subject_fields(SAFETY_REVIEW.fields, nested_input)
    assert nested["fireProtection"]["sprinklers"] is True
    assert nested["fireProtection"]["fireExtinguishers"] is False


def test_invalid_checklist_value_names_the_field(safety_review_form):
    with pytest.raises(ValidationError) as exc_info:
        parse_subject_fields(SAFETY_REVIEW.fields, {**safety_review_form, "smokeDetectors": "sometimes"})
    assert exc_info.value.fields == ["smokeDetectors"]


def test_wiring_condition_defaults_to_good(safety_review_form):
    raw = dict(safety_review_form)
    raw.pop("wiringCondition")
    assert parse_subject_fields(SAFETY_REVIEW.fields, raw)["electricalSafety"]["wiringCondition"] == "good"


def test_numeric_fields_are_coerced(application_form):
    parsed = parse_subject_fields(APPLICATION.fields, application_form)
    assert parsed["floors"] == 3
    assert parsed["builtupArea"] == pytest.approx(1250.5)


def test_merge_keeps_current_values_and_revalidates(application_form):
    current = parse_subject_fields(APPLICATION.fields, application_form)

    merged = merge_subject_fields(APPLICATION.fields, current, {"floors": "5", "unknownField": "x"})
    assert merged["floors"] == 5
    assert merged["propertyName"] == "Lakeview Plaza"
    assert "unknownField" not in merged

    with pytest.raises(ValidationError):
        merge_subject_fields(APPLICATION.fields, current, {"builtupArea": "0"})
