"""
Field-by-field comparison of verifier-submitted values against the HR record.

Comparison always runs on normalized copies; the values returned for display
keep their original form.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from utils import parse_date_maybe


KIND_NAME = "name"
KIND_DATE = "date"
KIND_ENUM = "enum"
KIND_TEXT = "text"


@dataclass(frozen=True)
class FieldSpec:
    key: str
    label: str
    kind: str = KIND_TEXT


@dataclass(frozen=True)
class FieldComparison:
    field: str
    label: str
    verifierValue: str
    companyValue: str
    isMatch: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def display_value(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_text(value: Any) -> str:
    return " ".join(str(value or "").split()).casefold()


def names_match(submitted: Any, reference: Any) -> bool:
    """Case/whitespace-insensitive, also tolerant of dropped periods and spacing ("S. Sathish" == "S Sathish")."""
    a = normalize_text(submitted)
    b = normalize_text(reference)
    if not a or not b:
        return False
    if a == b:
        return True
    if a.replace(".", "") == b.replace(".", ""):
        return True
    if a.replace(" ", "") == b.replace(" ", ""):
        return True
    return a.replace(".", "").replace(" ", "") == b.replace(".", "").replace(" ", "")


def dates_match(submitted: Any, reference: Any) -> bool:
    ref = parse_date_maybe(reference)
    sub = parse_date_maybe(submitted)
    if ref is not None and sub is not None:
        return ref == sub
    a, b = normalize_text(submitted), normalize_text(reference)
    return bool(a) and bool(b) and a == b


def exact_match(submitted: Any, reference: Any) -> bool:
    a, b = normalize_text(submitted), normalize_text(reference)
    return bool(b) and a == b


_MATCHERS = {
    KIND_NAME: names_match,
    KIND_DATE: dates_match,
    KIND_ENUM: exact_match,
    KIND_TEXT: exact_match,
}


def compare_field(spec: FieldSpec, submitted: Any, reference: Any) -> FieldComparison:
    matcher = _MATCHERS.get(spec.kind, exact_match)
    is_match = bool(display_value(reference)) and matcher(submitted, reference)
    return FieldComparison(
        field=spec.key,
        label=spec.label,
        verifierValue=display_value(submitted),
        companyValue=display_value(reference),
        isMatch=is_match,
    )


def compare_record(fields: tuple[FieldSpec, ...], submitted: dict[str, Any], reference: dict[str, Any]) -> list[FieldComparison]:
    return [compare_field(spec, (submitted or {}).get(spec.key), (reference or {}).get(spec.key)) for spec in fields]
