import csv
import re
from dataclasses import dataclass
from decimal import Decimal
from io import StringIO
from typing import Iterable, Optional

from money import MAX_AMOUNT, normalize_note, round_money, to_number

DELIMITER = ";"
HEADER = ["category_id", "category_name", "month", "year", "planned_amount", "note"]


@dataclass(frozen=True)
class CsvProvisionRow:
    line: int
    category_id: Optional[int]
    category_name: Optional[str]
    month: int
    year: int
    planned_amount: Decimal
    note: Optional[str]


@dataclass(frozen=True)
class CsvExportRow:
    category_id: int
    category_name: str
    month: int
    year: int
    planned_amount: Decimal
    note: Optional[str]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_csv_amount(value: Optional[str]) -> Decimal:
    """Brazilian-style amount: dots are thousands separators, comma is decimal."""
    if not value:
        return Decimal("0")
    clean = value.strip().replace(".", "").replace(",", ".", 1)
    return to_number(clean)


def format_csv_amount(value: Decimal) -> str:
    return f"{round_money(value):.2f}".replace(".", ",")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def _parse_int(value: Optional[str]) -> Optional[int]:
    cleaned = _clean(value)
    if cleaned is None:
        return None
    try:
        return int(cleaned)
    except ValueError:
        return None


def parse_provisions_csv(content: str) -> tuple[list[CsvProvisionRow], list[str]]:
    """
    Parse a provisions CSV.

    Returns the parsed rows and a list of errors. A bad header yields no rows
    and a single error; callers reject the whole file when any error exists.
    """
    reader = csv.reader(StringIO(content.lstrip("\ufeff")), delimiter=DELIMITER)
    lines = [
        (idx, raw)
        for idx, raw in enumerate(reader, start=1)
        if any(cell.strip() for cell in raw)
    ]
    if len(lines) <= 1:
        return [], ["File is empty or has no data rows"]

    _, header_raw = lines[0]
    headers = [column.strip().lower() for column in header_raw]
    index = {name: headers.index(name) for name in HEADER if name in headers}
    missing = [name for name in ("month", "year", "planned_amount") if name not in index]
    if missing or ("category_id" not in index and "category_name" not in index):
        required = missing or ["category_id or category_name"]
        return [], [f"Invalid CSV header: missing {', '.join(required)}"]

    def cell(columns: list[str], name: str) -> Optional[str]:
        pos = index.get(name)
        if pos is None or pos >= len(columns):
            return None
        return columns[pos]

    rows: list[CsvProvisionRow] = []
    errors: list[str] = []
    for line, columns in lines[1:]:
        if len(columns) < len(headers):
            errors.append(
                f"Row {line}: expected {len(headers)} columns, got {len(columns)}"
            )
            continue

        raw_id = _clean(cell(columns, "category_id"))
        category_id = _parse_int(raw_id)
        category_name = _clean(cell(columns, "category_name"))
        if raw_id is not None and category_id is None:
            errors.append(f"Row {line}: invalid category_id '{raw_id}'")
            continue
        if category_id is None and category_name is None:
            errors.append(f"Row {line}: missing category_id and category_name")
            continue

        month = _parse_int(cell(columns, "month"))
        year = _parse_int(cell(columns, "year"))
        if month is None or not 0 <= month <= 11:
            errors.append(f"Row {line}: invalid month")
            continue
        if year is None or not 2000 <= year <= 2100:
            errors.append(f"Row {line}: invalid year")
            continue

        amount = max(parse_csv_amount(cell(columns, "planned_amount")), Decimal("0"))
        if amount > MAX_AMOUNT:
            errors.append(f"Row {line}: planned_amount exceeds {MAX_AMOUNT}")
            continue

        rows.append(
            CsvProvisionRow(
                line=line,
                category_id=category_id,
                category_name=category_name,
                month=month,
                year=year,
                planned_amount=amount,
                note=normalize_note(cell(columns, "note")),
            )
        )
    return rows, errors


def export_provisions_csv(rows: Iterable[CsvExportRow]) -> str:
    output = StringIO()
    writer = csv.writer(output, delimiter=DELIMITER, lineterminator="\n")
    writer.writerow(HEADER)
    for row in rows:
        writer.writerow(
            [
                row.category_id,
                sanitize_csv_value(row.category_name),
                row.month,
                row.year,
                format_csv_amount(row.planned_amount),
                sanitize_csv_value(row.note or ""),
            ]
        )
    return output.getvalue()
