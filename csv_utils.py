import csv
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Iterable, Mapping, Optional

from models import Transaction, TransactionType
from money import from_cents, to_cents
from schemas import CSVRow

HEADER = ["Date", "Description", "Amount", "Category", "Type", "Account"]
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y")

# cells a spreadsheet would evaluate or follow
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")
_RISKY_CELL = re.compile(r"^(cmd|powershell|bash|sh)\b|^\.|^https?://", re.IGNORECASE)


def sanitize_csv_value(value: Optional[str]) -> str:
    """Neutralize spreadsheet formula injection by prefixing a tab."""
    cell = (value or "").strip()
    if not cell:
        return ""
    if cell.startswith(_FORMULA_PREFIXES) or _RISKY_CELL.match(cell):
        return "\t" + cell
    return cell


def parse_date(value: str) -> date:
    text = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date '{text}'")


def parse_amount(value: str) -> int:
    """Amount cell to positive cents; currency symbols and thousands separators are dropped."""
    text = re.sub(r"[\s$€,]", "", value)
    try:
        cents = to_cents(Decimal(text))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{value.strip()}'") from exc
    if cents <= 0:
        raise ValueError("Amount must be positive")
    return cents


def _cell(record: Mapping[str, Optional[str]], column: str) -> str:
    return (record.get(column) or "").strip()


def _row_from_record(row: int, record: Mapping[str, Optional[str]]) -> CSVRow:
    category = _cell(record, "Category")
    if not category:
        raise ValueError("Category is required")
    return CSVRow(
        row=row,
        date=parse_date(_cell(record, "Date")),
        description=_cell(record, "Description"),
        amount_cents=parse_amount(_cell(record, "Amount") or "0"),
        type=TransactionType(_cell(record, "Type").lower()),
        category=category,
        account=_cell(record, "Account") or None,
    )


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    """Parse an export-format CSV; rows are numbered from 1, excluding the header."""
    parsed: list[CSVRow] = []
    problems: list[str] = []
    for number, record in enumerate(csv.DictReader(StringIO(content)), start=1):
        try:
            parsed.append(_row_from_record(number, record))
        except ValueError as exc:
            problems.append(f"Row {number}: {exc}")
    return parsed, problems


def _export_row(txn: Transaction) -> list[str]:
    return [
        txn.date.isoformat(),
        sanitize_csv_value(txn.description),
        str(from_cents(txn.amount_cents)),
        sanitize_csv_value(txn.category.name if txn.category else None),
        txn.type.value,
        sanitize_csv_value(txn.account.name if txn.account else None),
    ]


def export_transactions(transactions: Iterable[Transaction]) -> str:
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(HEADER)
    writer.writerows(_export_row(txn) for txn in transactions)
    return buffer.getvalue()
