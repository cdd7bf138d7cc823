"""
Bank statement export parser.

Parses delimited text into BankTransactions. Malformed rows never abort
the file: each becomes a RowError and parsing continues. Files are decoded
line by line, so an undecodable line is just another malformed row.

Columns: date, description, amount, optional reference. Files with a
header row may use other column names (see HEADER_ALIASES) and may split
the amount into separate debit/credit columns.

Date formats are tried in a fixed priority (ISO first, then US, then
day-first), so 03/04/2024 is read as March 4th.
"""

import codecs
import csv
import io
import logging
import re
from collections.abc import Iterable, Iterator
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from ..errors import ParseError
from ..schemas import BankTransaction, RowError, StatementParseResult, normalize_amount

logger = logging.getLogger(__name__)

DEFAULT_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y")

# Canonical column -> accepted header names (lowercase)
HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "date": (
        "date",
        "posted",
        "posted date",
        "posting date",
        "transaction date",
        "value date",
        "txn date",
    ),
    "description": ("description", "details", "memo", "payee", "narrative"),
    "amount": ("amount", "transaction amount", "value"),
    "debit": ("debit", "debit amount", "withdrawal", "withdrawals"),
    "credit": ("credit", "credit amount", "deposit", "deposits"),
    "reference": ("reference", "ref", "reference number", "transaction id"),
}

# Column order when the file has no header row
POSITIONAL_COLUMNS = ("date", "description", "amount", "reference")

_CURRENCY_SYMBOLS = "$€£¥₹"
_AMOUNT_RE = re.compile(r"^\d+(?:\.\d+)?$")
_GROUPED_AMOUNT_RE = re.compile(r"^\d{1,3}(?:,\d{3})+(?:\.\d+)?$")


def parse_statement_date(
    value: str, formats: tuple[str, ...] = DEFAULT_DATE_FORMATS
) -> date:
    """
    Parse a statement date using the first matching format.

    Raises:
        ParseError: If no format yields a valid calendar date
    """
    cleaned = (value or "").strip().strip('"')
    if not cleaned:
        raise ParseError("empty date")
    for fmt in formats:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    raise ParseError(f"invalid date: {value!r}")


def parse_statement_amount(value: str) -> Decimal:
    """
    Parse a signed statement amount into a two-decimal Decimal.

    Accepts surrounding whitespace, one currency symbol, thousands
    separators, a leading sign and accounting parentheses: "(1,234.50)"
    and "-$1,234.50" both give Decimal("-1234.50").

    Raises:
        ParseError: If the value is not a plain finite number
    """
    text = (value or "").strip().strip('"').strip()
    if not text:
        raise ParseError("empty amount")

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1].strip()

    if text[:1] in "+-":
        if text[0] == "-":
            if negative:
                raise ParseError(f"invalid amount: {value!r}")
            negative = True
        text = text[1:].strip()

    if text[:1] and text[0] in _CURRENCY_SYMBOLS:
        text = text[1:].strip()

    if _GROUPED_AMOUNT_RE.match(text):
        text = text.replace(",", "")
    elif not _AMOUNT_RE.match(text):
        raise ParseError(f"invalid amount: {value!r}")

    try:
        amount = normalize_amount(Decimal(text))
    except (InvalidOperation, ValueError) as e:
        raise ParseError(f"invalid amount: {value!r}") from e
    return -amount if negative else amount


def _map_header(cells: list[str]) -> Optional[dict[str, int]]:
    """Column positions by canonical name, or None if cells don't look like a header."""
    mapping: dict[str, int] = {}
    for position, cell in enumerate(cells):
        name = cell.strip().strip('"').lower()
        for column, aliases in HEADER_ALIASES.items():
            if name in aliases and column not in mapping:
                mapping[column] = position
                break
    has_amount = "amount" in mapping or "debit" in mapping or "credit" in mapping
    if "date" in mapping and "description" in mapping and has_amount:
        return mapping
    return None


def _decode_lines(data: bytes) -> Iterator[tuple[int, str, Optional[str]]]:
    """Yield (line_number, text, decode_error) for each line of raw bytes."""
    for line_number, raw in enumerate(data.splitlines(), start=1):
        try:
            yield line_number, raw.decode("utf-8"), None
        except UnicodeDecodeError as e:
            yield (
                line_number,
                raw.decode("utf-8", errors="replace"),
                f"line is not valid UTF-8 (byte 0x{raw[e.start]:02x} at offset {e.start})",
            )


class StatementParser:
    """Parser for delimited bank statement exports."""

    def __init__(
        self,
        delimiter: str = ",",
        date_formats: tuple[str, ...] = DEFAULT_DATE_FORMATS,
    ):
        self.delimiter = delimiter
        self.date_formats = tuple(date_formats)

    def parse_file(self, path: Path) -> StatementParseResult:
        """Parse a statement file (UTF-8, BOM tolerated, decoded line by line)."""
        return self.parse_bytes(Path(path).read_bytes())

    def parse_bytes(self, data: bytes) -> StatementParseResult:
        """
        Parse raw statement bytes.

        Each line is decoded as UTF-8 on its own. A line that does not
        decode (e.g. a cp1252 byte in an otherwise UTF-8 export) becomes a
        RowError and the remaining lines are still parsed.
        """
        if data.startswith(codecs.BOM_UTF8):
            data = data[len(codecs.BOM_UTF8) :]
        return self._parse_lines(_decode_lines(data))

    def parse(self, text: str) -> StatementParseResult:
        """
        Parse statement text.

        Returns:
            StatementParseResult with transactions in file order and one
            RowError per rejected row (row_index is the 1-based line number)
        """
        lines = text.lstrip("\ufeff").splitlines()
        return self._parse_lines(
            (line_number, line, None) for line_number, line in enumerate(lines, start=1)
        )

    def _parse_lines(
        self, lines: Iterable[tuple[int, str, Optional[str]]]
    ) -> StatementParseResult:
        result = StatementParseResult()
        mapping: Optional[dict[str, int]] = None
        first_row = True

        for line_number, line, decode_error in lines:
            if not line.strip():
                continue

            if decode_error is not None:
                first_row = False
                result.total_rows += 1
                result.errors.append(RowError(line_number, line, decode_error))
                continue

            cells = self._split(line)

            if first_row:
                first_row = False
                if not self._looks_like_date(cells[0] if cells else ""):
                    mapping = _map_header(cells)
                    if mapping is not None:
                        result.header = [c.strip() for c in cells]
                        continue
                    # Not a header: a data row with a bad date, reported below

            result.total_rows += 1
            try:
                result.transactions.append(self._parse_row(cells, mapping, line_number))
            except ParseError as e:
                result.errors.append(RowError(line_number, line, str(e)))

        logger.info(
            "Parsed statement: %d transaction(s), %d row error(s)",
            len(result.transactions),
            len(result.errors),
        )
        return result

    def _split(self, line: str) -> list[str]:
        reader = csv.reader(io.StringIO(line), delimiter=self.delimiter)
        return next(reader, [])

    def _looks_like_date(self, cell: str) -> bool:
        try:
            parse_statement_date(cell, self.date_formats)
        except ParseError:
            return False
        return True

    def _parse_row(
        self, cells: list[str], mapping: Optional[dict[str, int]], line_number: int
    ) -> BankTransaction:
        if mapping is None:
            mapping = {name: i for i, name in enumerate(POSITIONAL_COLUMNS)}

        def cell(column: str) -> Optional[str]:
            position = mapping.get(column)
            if position is None or position >= len(cells):
                return None
            value = cells[position].strip()
            return value or None

        raw_date = cell("date")
        if raw_date is None:
            raise ParseError("missing date")
        tx_date = parse_statement_date(raw_date, self.date_formats)

        description = cell("description")
        if description is None:
            raise ParseError("missing description")

        raw_amount = cell("amount")
        if raw_amount is not None:
            amount = parse_statement_amount(raw_amount)
        else:
            debit, credit = cell("debit"), cell("credit")
            if debit is not None and credit is not None:
                raise ParseError("both debit and credit given")
            if debit is not None:
                amount = -abs(parse_statement_amount(debit))
            elif credit is not None:
                amount = abs(parse_statement_amount(credit))
            else:
                raise ParseError("missing amount")

        return BankTransaction(
            date=tx_date,
            description=description,
            amount=amount,
            reference=cell("reference"),
            row_index=line_number,
        )
