import re
from datetime import date, datetime, time
from typing import Any, NamedTuple, Optional, Union

NUMERIC_KINDS = {"number", "integer", "scale"}
TRUE_VALUES = {"true", "1", "yes"}
FALSE_VALUES = {"false", "0", "no"}
PAIR_PATTERN = re.compile(r"^\s*(\d{2,3})\s*/\s*(\d{2,3})\s*$")

RawValue = Union[float, int, str, bool]


class MetricValue(NamedTuple):
    value_numeric: Optional[float]
    value_text: Optional[str]
    value_bool: Optional[bool]


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _format_bound(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def parse_metric_value(
    input_kind: str,
    raw: RawValue,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
) -> MetricValue:
    """Coerce a raw value into the column that matches the metric's input kind.

    Raises ValueError with a human readable reason when the value does not fit.
    """
    if input_kind in NUMERIC_KINDS:
        if isinstance(raw, bool):
            raise ValueError(f"Invalid numeric value: {raw}")
        try:
            number = float(str(raw).strip()) if isinstance(raw, str) else float(raw)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid numeric value: {raw}")
        if number != number:
            raise ValueError(f"Invalid numeric value: {raw}")
        if input_kind in {"integer", "scale"}:
            number = float(round(number))
        if min_value is not None and number < min_value:
            raise ValueError(f"Value {raw} is below the minimum of {_format_bound(min_value)}")
        if max_value is not None and number > max_value:
            raise ValueError(f"Value {raw} is above the maximum of {_format_bound(max_value)}")
        return MetricValue(number, None, None)

    if input_kind == "boolean":
        if isinstance(raw, bool):
            return MetricValue(None, None, raw)
        lowered = str(raw).strip().lower()
        if lowered in TRUE_VALUES:
            return MetricValue(None, None, True)
        if lowered in FALSE_VALUES:
            return MetricValue(None, None, False)
        raise ValueError(f"Invalid boolean value: {raw}")

    if input_kind == "pair":
        match = PAIR_PATTERN.match(str(raw))
        if not match:
            raise ValueError(f"Invalid paired value (expected e.g. 120/80): {raw}")
        return MetricValue(None, f"{int(match.group(1))}/{int(match.group(2))}", None)

    text = str(raw).strip()
    if not text:
        raise ValueError("Text value cannot be empty")
    return MetricValue(None, text, None)


def measurement_value(row: Any) -> Optional[RawValue]:
    if row.value_numeric is not None:
        return row.value_numeric
    if row.value_text is not None:
        return row.value_text
    if row.value_bool is not None:
        return row.value_bool
    return None


def render_value(value: Optional[RawValue]) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
