from __future__ import annotations

from datetime import date

from services.field_compare import (
    KIND_DATE,
    KIND_ENUM,
    KIND_NAME,
    FieldSpec,
    compare_field,
    compare_record,
    dates_match,
    names_match,
)
from utils import parse_date_maybe


def test_names_match_ignores_case_whitespace_and_periods():
    assert names_match("s sathish", "S Sathish")
    assert names_match("  S   Sathish ", "S Sathish")
    assert names_match("S. Sathish", "S Sathish")
    assert names_match("SSathish", "S Sathish")
    assert not names_match("Sathish Kumar", "S Sathish")
    assert not names_match("", "S Sathish")


def test_dates_match_compares_calendar_dates():
    assert dates_match("2021-02-05", "2021-02-05")
    assert dates_match("2021-02-05T00:00:00.000Z", "2021-02-05")
    assert dates_match("2021/02/05", "2021-02-05")
    assert not dates_match("2021-02-06", "2021-02-05")
    assert not dates_match("", "2021-02-05")


def test_dates_match_rejects_partial_dates():
    today = date.today()
    ref = today.isoformat()

    assert not dates_match(str(today.day), ref)
    assert not dates_match(today.strftime("%b %d"), ref)
    assert not dates_match(today.strftime("%Y-%m"), ref)
    assert not dates_match(today.strftime("%B %Y"), today.replace(day=1).isoformat())
    assert dates_match(today.strftime("%d %b %Y"), ref)
    assert parse_date_maybe("19") is None


def test_compare_field_keeps_display_values_and_rejects_empty_reference():
    spec = FieldSpec("designation", "Designation", KIND_ENUM)

    res = compare_field(spec, "  executive ", "Executive")
    assert res.isMatch is True
    assert res.verifierValue == "executive"
    assert res.companyValue == "Executive"

    res = compare_field(spec, "", "")
    assert res.isMatch is False


def test_compare_record_preserves_field_order():
    fields = (
        FieldSpec("name", "Employee Name", KIND_NAME),
        FieldSpec("dateOfJoining", "Date of Joining", KIND_DATE),
    )
    out = compare_record(fields, {"name": "S Sathish", "dateOfJoining": "2020-01-01"}, {"name": "S Sathish", "dateOfJoining": "2021-02-05"})

    assert [c.field for c in out] == ["name", "dateOfJoining"]
    assert [c.isMatch for c in out] == [True, False]
    assert out[1].to_dict() == {
        "field": "dateOfJoining",
        "label": "Date of Joining",
        "verifierValue": "2020-01-01",
        "companyValue": "2021-02-05",
        "isMatch": False,
    }
