from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from firenoc.errors import ValidationError

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off"})


@dataclass(frozen=True)
class FieldSpec:
    """One subject field of a record kind.

    ``group`` nests the parsed value under ``fields[group][name]``; checklist
    items are grouped this way. ``max_current_year`` caps an int field at the
    year of the submission.
    """

    name: str
    type: str = "text"
    required: bool = True
    minimum: float | None = None
    maximum: float | None = None
    max_current_year: bool = False
    choices: tuple[str, ...] = ()
    default: Any = None
    group: str | None = None


class FieldParseError(ValueError):
    pass


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise FieldParseError("must be a boolean (true/false)")


def parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise FieldParseError("must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        raw = value.strip()
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            as_float = float(raw)
        except ValueError:
            raise FieldParseError("must be an integer") from None
        if as_float.is_integer():
            return int(as_float)
    raise FieldParseError("must be an integer")


def parse_float(value: Any) -> float:
    if isinstance(value, bool):
        raise FieldParseError("must be a number")
    number: float | None = None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            pass
    if number is None or not math.isfinite(number):
        raise FieldParseError("must be a number")
    return number


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _lookup(raw: Mapping[str, Any], spec: FieldSpec) -> tuple[bool, Any]:
    if spec.name in raw:
        return True, raw[spec.name]
    if spec.group:
        nested = raw.get(spec.group)
        if isinstance(nested, Mapping) and spec.name in nested:
            return True, nested[spec.name]
    return False, None


def _parse_one(spec: FieldSpec, value: Any, *, current_year: int) -> Any:
    if spec.type == "bool":
        return parse_bool(value)
    if spec.type in {"int", "float"}:
        number: int | float = parse_int(value) if spec.type == "int" else parse_float(value)
        if spec.minimum is not None and number < spec.minimum:
            raise FieldParseError(f"must be at least {spec.minimum:g}")
        maximum = spec.maximum
        if spec.max_current_year:
            maximum = current_year if maximum is None else min(maximum, current_year)
        if maximum is not None and number > maximum:
            raise FieldParseError(f"must be at most {maximum:g}")
        return number
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise FieldParseError("must be text")
    text = str(value).strip()
    if spec.type == "choice":
        for choice in spec.choices:
            if choice.lower() == text.lower():
                return choice
        raise FieldParseError(f"must be one of: {', '.join(spec.choices)}")
    return text


def parse_subject_fields(
    specs: Sequence[FieldSpec],
    raw: Mapping[str, Any],
    *,
    current_year: int | None = None,
) -> dict[str, Any]:
    year = current_year if current_year is not None else datetime.now(UTC).year
    parsed: dict[str, Any] = {}
    errors: list[tuple[str, str]] = []
    for spec in specs:
        found, value = _lookup(raw, spec)
        if not found or _is_blank(value):
            if spec.required:
                errors.append((spec.name, "is required"))
                continue
            result = spec.default
        else:
            try:
                result = _parse_one(spec, value, current_year=year)
            except FieldParseError as exc:
                errors.append((spec.name, str(exc)))
                continue
        if spec.group:
            parsed.setdefault(spec.group, {})[spec.name] = result
        else:
            parsed[spec.name] = result
    if errors:
        message = "; ".join(f"{name} {reason}" for name, reason in errors)
        raise ValidationError(message, fields=[name for name, _ in errors])
    return parsed


def flatten_subject_fields(specs: Sequence[FieldSpec], fields: Mapping[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for spec in specs:
        found, value = _lookup(fields, spec)
        if found:
            flat[spec.name] = value
    return flat


def merge_subject_fields(
    specs: Sequence[FieldSpec],
    current: Mapping[str, Any],
    changes: Mapping[str, Any],
    *,
    current_year: int | None = None,
) -> dict[str, Any]:
    merged = flatten_subject_fields(specs, current)
    merged.update(flatten_subject_fields(specs, changes))
    return parse_subject_fields(specs, merged, current_year=current_year)
