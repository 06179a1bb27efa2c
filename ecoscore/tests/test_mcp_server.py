"""Tests for the MCP tool functions, called directly against an in-memory store."""
from __future__ import annotations

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ecoscore import mcp_server
from ecoscore.config import Settings
from ecoscore.models import Base, DetailedAnalysis, Institution
from ecoscore.store import RecordStore


@pytest.fixture()
def TestSession(monkeypatch):
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    settings = Settings(database_url="sqlite://", webhook_url=None, poll_interval=0.01, poll_timeout=0.05)
    monkeypatch.setattr(mcp_server, "_store", lambda: RecordStore(factory))
    monkeypatch.setattr(mcp_server, "_get_settings", lambda: settings)
    monkeypatch.setattr(mcp_server, "_supervisor", None)
    return factory


class TestOverview:
    def test_overview_lists_poll_states(self):
        data = json.loads(mcp_server.ecoscore_overview())
        assert data["poll_states"] == ["pending", "found-detailed", "found-legacy", "timeout"]


class TestSubmitTool:
    @pytest.mark.asyncio
    async def test_submit(self, TestSession):
        result = await mcp_server.submit_institution("Green College")
        assert result["is_duplicate"] is False
        assert result["notified"] is False
        assert result["submission"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_blank_name(self, TestSession):
        assert await mcp_server.submit_institution(" ") == {"error": "Institution name is required"}


class TestAnalysisTools:
    @pytest.mark.asyncio
    async def test_check_unknown_submission(self, TestSession):
        result = await mcp_server.check_analysis("missing")
        assert "not found" in result["error"]

    @pytest.mark.asyncio
    async def test_wait_times_out(self, TestSession):
        submitted = await mcp_server.submit_institution("Green College")
        result = await mcp_server.wait_for_analysis(submitted["submission"]["id"])
        assert result["state"] == "timeout"

    @pytest.mark.asyncio
    async def test_wait_finds_detailed(self, TestSession):
        submitted = await mcp_server.submit_institution("Green College")
        submission_id = submitted["submission"]["id"]
        session = TestSession()
        session.add(DetailedAnalysis(submission_id=submission_id, institution_name="Green College",
                                     overall_grade="A-"))
        session.commit()
        session.close()
        result = await mcp_server.wait_for_analysis(submission_id, timeout_seconds=2)
        assert result["state"] == "found-detailed"
        assert result["detailed"]["overall_grade"] == "A-"

    @pytest.mark.asyncio
    async def test_lookup(self, TestSession):
        session = TestSession()
        session.add(DetailedAnalysis(submission_id="s-1", institution_name="Green College",
                                     certifications_json=json.dumps(["LEED"])))
        session.commit()
        session.close()
        result = await mcp_server.lookup_analysis("green college")
        assert result["detailed"]["certifications"] == ["LEED"]


class TestInstitutionTool:
    @pytest.mark.asyncio
    async def test_list(self, TestSession):
        session = TestSession()
        session.add_all([
            Institution(name="Green College", type="University", numeric_score=60),
            Institution(name="Acme Corp", type="Corporation", numeric_score=90),
        ])
        session.commit()
        session.close()
        result = await mcp_server.list_institutions(limit=1)
        assert [r["name"] for r in result] == ["Acme Corp"]

    @pytest.mark.asyncio
    async def test_bad_sort_key(self, TestSession):
        result = await mcp_server.list_institutions(sort_by="rank")
        assert "error" in result
