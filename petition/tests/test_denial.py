"""Tests for denial-probability consistency rules and the two-pass stream."""
from __future__ import annotations

import json

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from petition.analysis import MissingPrerequisiteError, save_artifact
from petition.denial import (
    EvidenceInventory,
    build_inventory,
    filing_recommendation_for,
    finalize_report,
    prepare_denial_context,
    risk_level_for,
    stream_denial_probability,
)
from petition.llm import LLMCallError
from petition.models import AnalysisArtifact, Base, Case, Document, EvidenceVerification, Recommender
from petition.streaming import PartialJsonStream

FULL = EvidenceInventory(documents=12, recommenders=4, profile_present=True,
                         analysis_present=True, criteria_with_evidence=5)


def _report(pct, **overall):
    return {
        "probability_breakdown": {"base_denial_rate": 50, "adjustments": [], "final_denial_probability": pct},
        "overall_assessment": {"risk_level": "LOW", **overall},
        "filing_recommendation": {"recommendation": "FILE_NOW", "rationale": "model text"},
    }


class TestThresholds:
    @pytest.mark.parametrize("pct,level", [(5, "LOW"), (19, "LOW"), (20, "MEDIUM"), (40, "HIGH"),
                                           (59, "HIGH"), (60, "VERY_HIGH"), (95, "VERY_HIGH")])
    def test_risk_level(self, pct, level):
        assert risk_level_for(pct) == level

    @pytest.mark.parametrize("pct,rec", [(14, "FILE_NOW"), (15, "FILE_WITH_CAUTION"), (30, "STRENGTHEN_FIRST"),
                                         (50, "MAJOR_GAPS"), (70, "MAJOR_GAPS"), (71, "CONSIDER_ALTERNATIVE")])
    def test_filing_recommendation(self, pct, rec):
        assert filing_recommendation_for(pct) == rec


class TestFinalizeReport:
    def test_consistent_report_untouched(self):
        report = finalize_report(_report(25, rfe_probability_pct=45), FULL)
        assert report["overall_assessment"]["denial_probability_pct"] == 25
        assert report["overall_assessment"]["risk_level"] == "MEDIUM"
        assert report["overall_assessment"]["rfe_probability_pct"] == 45
        assert report["filing_recommendation"]["recommendation"] == "FILE_WITH_CAUTION"

    def test_falls_back_to_base_plus_adjustments(self):
        report = {"probability_breakdown": {"base_denial_rate": 40, "adjustments": [
            {"factor": "Strong awards", "delta_pct": -10}, {"factor": "Thin media", "delta_pct": 5}]}}
        out = finalize_report(report, FULL)
        assert out["probability_breakdown"]["final_denial_probability"] == 35

    def test_no_recommenders_adds_penalty_once(self):
        inventory = EvidenceInventory(12, 0, True, True, 5)
        out = finalize_report(_report(20), inventory)
        assert out["overall_assessment"]["denial_probability_pct"] == 35
        factors = [a["factor"] for a in out["probability_breakdown"]["adjustments"]]
        assert factors == ["No recommenders on file"]

        again = finalize_report(out, inventory)
        assert len(again["probability_breakdown"]["adjustments"]) == 1

    @pytest.mark.parametrize("inventory,floor", [
        (EvidenceInventory(0, 3, True, True, 5), 85),
        (EvidenceInventory(5, 3, True, False, 5), 90),
        (EvidenceInventory(5, 3, True, True, 2), 70),
    ])
    def test_empty_evidence_floors(self, inventory, floor):
        out = finalize_report(_report(10), inventory)
        assert out["overall_assessment"]["denial_probability_pct"] == floor

    def test_clamped(self):
        assert finalize_report(_report(1), FULL)["overall_assessment"]["denial_probability_pct"] == 5
        assert finalize_report(_report(120), FULL)["overall_assessment"]["denial_probability_pct"] == 95

    def test_rfe_bounded(self):
        out = finalize_report(_report(20, rfe_probability_pct=10), FULL)
        assert out["overall_assessment"]["rfe_probability_pct"] == 30
        out = finalize_report(_report(20, rfe_probability_pct=80), FULL)
        assert out["overall_assessment"]["rfe_probability_pct"] == 40
        out = finalize_report(_report(60), FULL)
        assert out["overall_assessment"]["rfe_probability_pct"] == 90

    def test_missing_sections_created(self):
        out = finalize_report({}, FULL)
        assert out["overall_assessment"]["denial_probability_pct"] == 50
        assert out["filing_recommendation"] == {"recommendation": "MAJOR_GAPS", "rationale": ""}


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------


class FakeStreamClient:
    """Streams canned replies, one per call, in small chunks."""

    model = "test-model"

    def __init__(self, replies, fail_on=None):
        self.replies = list(replies)
        self.fail_on = fail_on
        self.calls = []

    async def stream_text(self, system, user, max_tokens=None):
        self.calls.append((system, user))
        if self.fail_on == len(self.calls):
            raise LLMCallError("stream dropped", retryable=True)
        text = self.replies.pop(0)
        for i in range(0, len(text), 7):
            yield text[i:i + 7]


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    sess = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def case(session):
    case = Case(owner_id="u1", name="Dr. Risk")
    session.add(case)
    session.flush()
    session.add(Recommender(case_id=case.id, name="Ada", title="Prof"))
    for i, cid in enumerate(("C1", "C5", "C6")):
        doc = Document(case_id=case.id, name=f"evidence-{i}.pdf", content="x")
        session.add(doc)
        session.flush()
        session.add(EvidenceVerification(case_id=case.id, document_id=doc.id, criterion=cid,
                                         tier=2, score=8.0, recommendation="STRONG"))
    session.commit()
    return case


def _with_prereqs(session, case):
    save_artifact(session, case.id, "strength_evaluation", {"overall": "ok"}, "m")
    save_artifact(session, case.id, "gap_analysis", {"gaps": []}, "m")
    session.commit()


PASS1 = json.dumps({"kazarian_analysis": {"step1": "met"}, "red_flags": [{"flag": "thin media"}]})
PASS2 = json.dumps({
    "probability_breakdown": {"base_denial_rate": 45, "adjustments": [], "final_denial_probability": 12},
    "overall_assessment": {"denial_probability_pct": 12, "rfe_probability_pct": 20, "risk_level": "LOW"},
    "filing_recommendation": {"recommendation": "FILE_NOW", "rationale": "Solid case."},
})


class TestStreamDenialProbability:
    def test_inventory(self, session, case):
        inv = build_inventory(session, case.id)
        assert inv == EvidenceInventory(documents=3, recommenders=1, profile_present=False,
                                        analysis_present=True, criteria_with_evidence=3)

    def test_prerequisites_required(self, session, case):
        with pytest.raises(MissingPrerequisiteError) as exc_info:
            prepare_denial_context(session, case)
        assert exc_info.value.missing == ["strength_evaluation", "gap_analysis"]

    @pytest.mark.asyncio
    async def test_two_pass_stream(self, session, case):
        _with_prereqs(session, case)
        prepared = prepare_denial_context(session, case)
        client = FakeStreamClient([PASS1, PASS2])

        consumer = PartialJsonStream()
        async for line in stream_denial_probability(session, case, prepared, client, prompts={"denial_pass1": "P1"}):
            consumer.feed(line)
        final = consumer.close()

        assert consumer.applied > 2
        assert consumer.skipped == 0
        assert client.calls[0][0] == "P1"
        assert "QUALITATIVE ANALYSIS" in client.calls[1][1]
        assert final["kazarian_analysis"] == {"step1": "met"}
        assert final["overall_assessment"]["denial_probability_pct"] == 12
        assert final["filing_recommendation"]["recommendation"] == "FILE_NOW"

        art = session.execute(
            select(AnalysisArtifact).where(AnalysisArtifact.kind == "denial_probability")
        ).scalars().one()
        assert json.loads(art.data_json) == final

    @pytest.mark.asyncio
    async def test_failure_emits_error_and_stores_nothing(self, session, case):
        _with_prereqs(session, case)
        prepared = prepare_denial_context(session, case)
        client = FakeStreamClient([PASS1, PASS2], fail_on=2)

        lines = [line async for line in stream_denial_probability(session, case, prepared, client)]
        assert json.loads(lines[-1][len("data: "):]) == {"error": "Denial probability assessment failed"}
        assert session.execute(
            select(AnalysisArtifact).where(AnalysisArtifact.kind == "denial_probability")
        ).scalars().first() is None

    @pytest.mark.asyncio
    async def test_unparseable_reply_is_an_error(self, session, case):
        _with_prereqs(session, case)
        prepared = prepare_denial_context(session, case)
        client = FakeStreamClient(["I cannot do that."])

        lines = [line async for line in stream_denial_probability(session, case, prepared, client)]
        assert len(lines) == 1
        assert "error" in lines[0]
