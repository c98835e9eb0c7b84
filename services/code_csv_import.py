"""
Bulk code upload from CSV.

CSV format:
- A required `code` column and an optional `expirationDate` column
  (header names are matched case-insensitively, surrounding spaces ignored)
- Rows with a blank code are skipped
- `expirationDate` is either a full ISO-8601 timestamp or a plain date
  (YYYY-MM-DD), which means the end of that day in UTC

The upload is all-or-nothing: a malformed date, a code repeated within the file,
a pattern mismatch or a code that already exists rejects the whole file before
anything is written.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, TextIO, Union
from uuid import UUID

from domain.listing import ListingInventory
from domain.time import parse_utc_datetime
from services.code_cipher import CodeCipher
from services.code_hasher import mask_code, normalize_code
from services.listing_service import PatternValidator, add_dated_codes_to_listing

logger = logging.getLogger(__name__)

CODE_COLUMN = "code"
EXPIRATION_COLUMN = "expirationdate"

_END_OF_DAY = time(23, 59, 59, 999000, tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class CodeUploadRow:
    row_num: int
    code: str
    expiration_date: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class CodeUploadResult:
    """Outcome of one upload."""
    inventory: ListingInventory
    total_rows: int
    added: int
    skipped: int


def parse_expiration_date(value: str, row_num: int) -> Optional[datetime]:
    value = value.strip()
    if not value:
        return None
    try:
        if "T" in value:
            return parse_utc_datetime(value)
        return datetime.combine(date.fromisoformat(value), _END_OF_DAY)
    except ValueError:
        raise ValueError(f"Row {row_num}: invalid expirationDate {value!r}") from None


def parse_codes_csv(lines: Iterable[str]) -> List[CodeUploadRow]:
    """
    Parse CSV text lines into upload rows.

    Raises:
        ValueError: Missing `code` column, no codes, bad dates or codes repeated in the file
    """

    reader = csv.DictReader(lines)
    if not reader.fieldnames:
        raise ValueError("CSV file is empty or malformed")

    columns = {name.strip().lower(): name for name in reader.fieldnames if name}
    if CODE_COLUMN not in columns:
        raise ValueError('CSV must contain a "code" column')
    code_key = columns[CODE_COLUMN]
    expiration_key = columns.get(EXPIRATION_COLUMN)

    rows: List[CodeUploadRow] = []
    for row_num, row in enumerate(reader, start=2):  # Row 1 is header
        code = normalize_code(row.get(code_key) or "")
        if not code:
            continue
        expiration_date = None
        if expiration_key is not None:
            expiration_date = parse_expiration_date(row.get(expiration_key) or "", row_num)
        rows.append(CodeUploadRow(row_num=row_num, code=code, expiration_date=expiration_date))

    if not rows:
        raise ValueError("No valid codes found in CSV file")

    first_seen: Dict[str, int] = {}
    repeated: List[str] = []
    for row in rows:
        if row.code in first_seen:
            repeated.append(f"{mask_code(row.code)} (rows {first_seen[row.code]} and {row.row_num})")
        else:
            first_seen[row.code] = row.row_num
    if repeated:
        raise ValueError(f"Duplicate codes found within the CSV file: {', '.join(repeated[:20])}")

    return rows


def upload_codes_csv(
    external_id: UUID,
    source: Union[str, Path, TextIO],
    *,
    seller_id: str,
    pattern_validator: Optional[PatternValidator] = None,
    cipher: Optional[CodeCipher] = None,
    now: Optional[datetime] = None,
) -> CodeUploadResult:
    """
    Append the codes of a CSV file (path or open text stream) to a listing.

    Raises:
        FileNotFoundError: CSV path does not exist
        ValueError: Malformed CSV or pattern mismatch
        DuplicateCodeError: A code already exists in this or another listing
        PermissionError: Listing belongs to another seller
    """

    if isinstance(source, (str, Path)):
        csv_file = Path(source)
        if not csv_file.exists():
            raise FileNotFoundError(f"CSV file not found: {source}")
        with open(csv_file, "r", encoding="utf-8-sig", newline="") as f:
            text_lines = f.readlines()
    else:
        text_lines = source.readlines()

    rows = parse_codes_csv(text_lines)
    total_rows = sum(1 for _ in csv.DictReader(text_lines))

    inventory = add_dated_codes_to_listing(
        external_id,
        [(row.code, row.expiration_date) for row in rows],
        seller_id=seller_id,
        pattern_validator=pattern_validator,
        cipher=cipher,
        now=now,
    )
    logger.info(
        f"Uploaded {len(rows)} code(s) from CSV to listing {external_id}",
        extra={"external_id": str(external_id), "added": len(rows), "total_rows": total_rows},
    )
    return CodeUploadResult(
        inventory=inventory,
        total_rows=total_rows,
        added=len(rows),
        skipped=total_rows - len(rows),
    )


__all__ = [
    "CodeUploadResult",
    "CodeUploadRow",
    "parse_codes_csv",
    "parse_expiration_date",
    "upload_codes_csv",
]
