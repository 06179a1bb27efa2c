"""Tests for XLSX institution import."""
from __future__ import annotations

import openpyxl
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ecoscore.importer import import_xlsx
from ecoscore.models import Base, Institution


@pytest.fixture()
def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    s = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield s
    s.close()


def _workbook(path, rows):
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    wb.save(path)
    return path


class TestImportXlsx:
    def test_imports_and_normalizes(self, tmp_path, session):
        path = _workbook(tmp_path / "institutions.xlsx", [
            ["Name", "Type", "Score", "Numeric Score", "Students"],
            ["Green College", "university", "a-", 88.5, "12000"],
            ["Acme Corp", "CORPORATION", "Q", 130, None],
            [None, "government", None, None, None],
        ])
        result = import_xlsx(path, session)
        assert (result.total_rows, result.imported, result.updated, result.skipped) == (3, 2, 0, 1)

        rows = {i.name: i for i in session.execute(select(Institution)).scalars()}
        assert rows["Green College"].type == "University"
        assert rows["Green College"].score == "A-"
        assert rows["Green College"].students == 12000
        assert rows["Acme Corp"].type == "Corporation"
        assert rows["Acme Corp"].score is None
        assert rows["Acme Corp"].numeric_score == 100.0

    def test_upserts_case_insensitively(self, tmp_path, session):
        session.add(Institution(name="Green College", type="University", score="C"))
        session.commit()
        path = _workbook(tmp_path / "update.xlsx", [
            ["name", "score"],
            ["GREEN COLLEGE", "B+"],
        ])
        result = import_xlsx(path, session)
        assert (result.imported, result.updated) == (0, 1)
        rows = session.execute(select(Institution)).scalars().all()
        assert len(rows) == 1
        assert rows[0].score == "B+"
        assert rows[0].name == "Green College"

    def test_upsert_matches_non_ascii_names(self, tmp_path, session):
        session.add(Institution(name="École Polytechnique", type="University"))
        session.commit()
        path = _workbook(tmp_path / "accents.xlsx", [
            ["name", "score"],
            ["ÉCOLE POLYTECHNIQUE", "A"],
        ])
        result = import_xlsx(path, session)
        assert (result.imported, result.updated) == (0, 1)
        row = session.execute(select(Institution)).scalars().one()
        assert row.score == "A"
        assert row.name_key == "école polytechnique"

    def test_imported_rows_carry_match_key(self, tmp_path, session):
        path = _workbook(tmp_path / "new.xlsx", [["name"], ["  Université Laval "]])
        import_xlsx(path, session)
        row = session.execute(select(Institution)).scalars().one()
        assert row.name_key == "université laval"

    def test_missing_name_column(self, tmp_path, session):
        path = _workbook(tmp_path / "bad.xlsx", [["title", "type"], ["Green College", "university"]])
        with pytest.raises(ValueError, match="name"):
            import_xlsx(path, session)
