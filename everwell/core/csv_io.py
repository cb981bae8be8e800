import csv
import io
import re
from datetime import date
from typing import Any, Iterable, NamedTuple, Optional

from everwell.core.metric_values import NUMERIC_KINDS, MetricValue, measurement_value, parse_metric_value, render_value

REQUIRED_COLUMNS = ("date", "metric_slug", "value")
EXPORT_COLUMNS = ["date", "metric_slug", "value"]
EXPORT_DETAIL_COLUMNS = ["metric_name", "unit"]
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class CsvImportError(ValueError):
    def __init__(self, message: str, details: Optional[list[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class ImportRow(NamedTuple):
    day: date
    metric: Any
    value: MetricValue


def _coerce_import_value(input_kind: str, raw: str) -> MetricValue:
    if input_kind in NUMERIC_KINDS or input_kind == "boolean":
        return parse_metric_value(input_kind, raw)
    # Paired and free-text values are stored as given.
    if not raw:
        raise ValueError("Value cannot be empty")
    return MetricValue(None, raw, None)


def parse_import_csv(csv_data: str, definitions: dict[str, Any]) -> list[ImportRow]:
    """Parse and validate a `date,metric_slug,value` upload.

    Every row is checked before anything is returned; any failure raises
    CsvImportError carrying one `Row N: ...` line per bad row.
    """
    # Quoted cells may span lines, so blank records are dropped after parsing.
    try:
        parsed = [
            record for record in csv.reader(io.StringIO(csv_data or "")) if any(cell.strip() for cell in record)
        ]
    except csv.Error as exc:
        raise CsvImportError("Invalid CSV format", [str(exc)]) from exc
    if not parsed:
        raise CsvImportError("No data rows found in CSV")

    header = [column.strip().lower() for column in parsed[0]]
    records = parsed[1:]

    if any(column not in header for column in REQUIRED_COLUMNS):
        raise CsvImportError("CSV must contain date, metric_slug, and value columns")
    if not records:
        raise CsvImportError("No data rows found in CSV")

    index = {column: header.index(column) for column in REQUIRED_COLUMNS}
    rows: list[ImportRow] = []
    errors: list[str] = []
    for number, record in enumerate(records, start=1):

        def cell(column: str) -> str:
            position = index[column]
            return record[position].strip() if position < len(record) else ""

        raw_date = cell("date")
        if not DATE_PATTERN.match(raw_date):
            errors.append(f"Row {number}: Invalid date format (expected YYYY-MM-DD): {raw_date}")
            continue
        try:
            day = date.fromisoformat(raw_date)
        except ValueError:
            errors.append(f"Row {number}: Invalid date format (expected YYYY-MM-DD): {raw_date}")
            continue

        slug = cell("metric_slug")
        metric = definitions.get(slug)
        if metric is None:
            errors.append(f"Row {number}: Unknown metric slug: {slug}")
            continue

        try:
            value = _coerce_import_value(metric.input_kind, cell("value"))
        except ValueError as exc:
            errors.append(f"Row {number}: {exc}")
            continue
        rows.append(ImportRow(day, metric, value))

    if errors:
        raise CsvImportError("Validation errors found", errors)
    return rows


def write_export_csv(measurements: Iterable[Any], include_details: bool = False) -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS + (EXPORT_DETAIL_COLUMNS if include_details else []))
    for row in measurements:
        line = [
            row.measured_at.date().isoformat(),
            row.metric.slug,
            render_value(measurement_value(row)),
        ]
        if include_details:
            line.extend([row.metric.name, row.metric.unit or ""])
        writer.writerow(line)
    return output.getvalue()
