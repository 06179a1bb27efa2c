"""Seed the institution index from an XLSX spreadsheet.

The first worksheet is read; the first row holds column headers, matched
case-insensitively (``name`` is required, everything else optional)::

    name | type | location | website | score | numeric_score |
    animal_welfare_score | environmental_score | students | employees

Rows are upserted by case-insensitive name, the same key the duplicate check
uses.
"""
from __future__ import annotations

import logging
from pathlib import Path

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from ecoscore.models import Institution, casefold_name
from ecoscore.normalizer import normalize_grade, normalize_institution_type, normalize_percentage
from ecoscore.schemas import ImportResult

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _i(value: object) -> int | None:
    """Safely coerce cell value to int, None if missing."""
    if value is None or value == "":
        return None
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (ValueError, TypeError):
        return None


_TEXT_COLS = ("type", "location", "website")
_PERCENT_COLS = ("numeric_score", "animal_welfare_score", "environmental_score")
_INT_COLS = ("students", "employees")


def _header_map(header: tuple) -> dict[str, int]:
    return {_s(cell).casefold().replace(" ", "_"): idx for idx, cell in enumerate(header) if _s(cell)}


def _parse_row(row: tuple, cols: dict[str, int]) -> dict | None:
    def cell(field: str) -> object:
        idx = cols.get(field)
        return row[idx] if idx is not None and idx < len(row) else None

    name = _s(cell("name"))
    if not name:
        return None
    data: dict = {"name": name}
    for field in _TEXT_COLS:
        val = _s(cell(field))
        if val:
            data[field] = val
    if "type" in data:
        data["type"] = normalize_institution_type(data["type"])
    grade = normalize_grade(cell("score"))
    if grade:
        data["score"] = grade
    for field in _PERCENT_COLS:
        val = normalize_percentage(cell(field))
        if val is not None:
            data[field] = val
    for field in _INT_COLS:
        val = _i(cell(field))
        if val is not None:
            data[field] = val
    return data


def import_xlsx(file_path: str | Path, session: Session) -> ImportResult:
    """Import institutions from the first sheet. Upserts by case-insensitive name."""
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        rows = list(ws.iter_rows(values_only=True))
    finally:
        wb.close()

    if not rows:
        return ImportResult(total_rows=0, imported=0, updated=0, skipped=0)
    cols = _header_map(rows[0])
    if "name" not in cols:
        raise ValueError("Spreadsheet has no 'name' column")

    existing: dict[str, Institution] = {
        i.name_key or casefold_name(i.name): i for i in session.execute(select(Institution)).scalars().all()
    }
    imported = updated = skipped = 0
    for row in rows[1:]:
        data = _parse_row(row, cols) if row else None
        if data is None:
            skipped += 1
            continue
        key = casefold_name(data["name"])
        if key in existing:
            inst = existing[key]
            for field, val in data.items():
                if field != "name":
                    setattr(inst, field, val)
            updated += 1
        else:
            inst = Institution(**data)
            session.add(inst)
            existing[key] = inst
            imported += 1

    session.commit()
    log.info("Imported %d institutions (%d updated, %d skipped)", imported, updated, skipped)
    return ImportResult(total_rows=len(rows) - 1, imported=imported, updated=updated, skipped=skipped)
