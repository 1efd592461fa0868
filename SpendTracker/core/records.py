"""Expense records and their spreadsheet row representation.

A record is one row of the remote sheet, laid out as ``ID, Date, Category, Amount, Comment``.
Rows that cannot be read as a positive amount are dropped on ingestion, and rows
missing optional fields are filled with defaults.
"""
import dataclasses
import datetime
import logging
import math
import uuid
from typing import Any, Dict, List, Optional, Union

from ..status import status

#: Column headers written to a freshly created spreadsheet.
HEADER: List[str] = ['ID', 'Date', 'Category', 'Amount', 'Comment']

DEFAULT_CATEGORY: str = 'other'
DATE_FORMAT: str = '%Y-%m-%d'


@dataclasses.dataclass
class Record:
    """A single expense entry."""
    id: str
    date: str
    category: str
    amount: float
    comment: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Optional['Record']:
        """Build a record from a cached mapping.

        Returns:
            The record, or None if the mapping is malformed or has a non-positive amount.
        """
        if not isinstance(data, dict):
            return None
        record_id = data.get('id')
        amount = parse_amount(data.get('amount'))
        if not isinstance(record_id, str) or not record_id or amount is None:
            return None
        return cls(
            id=record_id,
            date=str(data.get('date') or ''),
            category=str(data.get('category') or DEFAULT_CATEGORY),
            amount=amount,
            comment=str(data.get('comment') or ''),
        )


@dataclasses.dataclass
class RecordDraft:
    """User input for a new record, before validation."""
    amount: Union[str, float, None]
    category: Optional[str] = None
    comment: str = ''
    date: Optional[str] = None


def new_id() -> str:
    return str(uuid.uuid4())


def today_str() -> str:
    return datetime.date.today().strftime(DATE_FORMAT)


def parse_amount(value: Any) -> Optional[float]:
    """Parse an amount leniently.

    Numbers are taken as they are. Strings are stripped and may use ``,`` as the
    decimal separator.

    Returns:
        The amount, or None if it is missing, unparsable, not finite or not positive.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        amount = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(',', '.')
        if not text:
            return None
        try:
            amount = float(text)
        except ValueError:
            return None
    else:
        return None

    if not math.isfinite(amount) or amount <= 0:
        return None
    return amount


def create_record(draft: RecordDraft) -> Record:
    """Validate a draft and turn it into a record with a fresh id.

    Raises:
        status.AmountInvalidException: If the amount is missing or not positive.
        status.CategoryMissingException: If no category was selected.
    """
    amount = parse_amount(draft.amount)
    if amount is None:
        raise status.AmountInvalidException(f'Got "{draft.amount}".')
    if not draft.category or not draft.category.strip():
        raise status.CategoryMissingException()

    return Record(
        id=new_id(),
        date=draft.date or today_str(),
        category=draft.category.strip(),
        amount=amount,
        comment=(draft.comment or '').strip(),
    )


def record_to_row(record: Record) -> List[Any]:
    """Return the sheet row of a record, in header order."""
    return [record.id, record.date, record.category, record.amount, record.comment]


def _cell(row: List[Any], idx: int) -> Any:
    if idx < len(row):
        return row[idx]
    return None


def _text(value: Any, strip: bool = True) -> str:
    if value is None:
        return ''
    # Whole numbers come back as floats from numeric cells
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip() if strip else str(value)


def row_to_record(row: List[Any]) -> Optional[Record]:
    """Map a sheet row to a record.

    Returns:
        The record, or None if the amount cell is not a positive number.
    """
    amount = parse_amount(_cell(row, 3))
    if amount is None:
        return None
    return Record(
        id=_text(_cell(row, 0)) or new_id(),
        date=_text(_cell(row, 1)),
        category=_text(_cell(row, 2)) or DEFAULT_CATEGORY,
        amount=amount,
        comment=_text(_cell(row, 4), strip=False),
    )


def rows_to_records(rows: List[List[Any]]) -> List[Record]:
    """Map sheet rows to records, dropping invalid rows."""
    records = []
    for idx, row in enumerate(rows or []):
        record = row_to_record(row)
        if record is None:
            logging.debug(f'Dropping invalid row {idx + 2}: {row}')
            continue
        records.append(record)
    return records


def find_row_index(id_rows: List[List[Any]], record_id: str) -> Optional[int]:
    """Find the zero-based sheet row index of a record.

    Args:
        id_rows: The identity column read below the header, one single-cell row per entry.
        record_id: The record to look for.

    Returns:
        The offset of the matching row plus one for the header, or None if absent.
    """
    for offset, row in enumerate(id_rows or []):
        if row and _text(row[0]) == record_id:
            return offset + 1
    return None


def build_delete_row_request(sheet_id: int, row_index: int) -> Dict[str, Any]:
    """Return a batchUpdate request deleting a single row."""
    return {
        'deleteDimension': {
            'range': {
                'sheetId': sheet_id,
                'dimension': 'ROWS',
                'startIndex': row_index,
                'endIndex': row_index + 1,
            }
        }
    }


def idx_to_col(idx: int) -> str:
    """Convert zero-based column index to spreadsheet letter(s).

    Args:
        idx: The zero-based column index.

    Returns:
        The spreadsheet column letter(s) (e.g., A, B, AA).
    """
    letters = ''
    while idx >= 0:
        letters = chr((idx % 26) + ord('A')) + letters
        idx = idx // 26 - 1
    return letters


def a1_range(sheet: str, first_row: Optional[int] = None, last_row: Optional[int] = None,
             columns: int = len(HEADER)) -> str:
    """Build an A1 range over the record columns of a sheet.

    Examples:
        >>> a1_range('spends', 2, 1000)
        "'spends'!A2:E1000"
        >>> a1_range('spends')
        "'spends'!A:E"
        >>> a1_range('spends', 2, 1000, columns=1)
        "'spends'!A2:A1000"
    """
    quoted = "'" + sheet.replace("'", "''") + "'"
    first_col = idx_to_col(0)
    last_col = idx_to_col(columns - 1)
    if first_row is None:
        return f'{quoted}!{first_col}:{last_col}'
    last = last_row if last_row is not None else first_row
    return f'{quoted}!{first_col}{first_row}:{last_col}{last}'
