"""Tests for criterion verdict normalization, verification runs and per-document locks."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from petition.criteria import CRITERION_IDS, c5_tier, recommendation_for_tier, tier_for_score
from petition.llm import LLMCallError
from petition.models import Base, Case, Document, EvidenceVerification
from petition.verification import (
    RunState,
    VerificationInProgressError,
    VerificationLocks,
    VerificationRun,
    latest_verdicts,
    normalize_verdict,
    run_document_verification,
    stream_document_verification,
    verify_criterion,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def document(session: Session) -> Document:
    case = Case(owner_id="u1", name="Dr. Test")
    session.add(case)
    session.flush()
    doc = Document(case_id=case.id, name="Best Paper Award.pdf", type="PDF",
                   category="AWARD_CERTIFICATE", content="Best Paper Award, ACM SIGMOD 2023. " * 5)
    session.add(doc)
    session.commit()
    return doc


def _fake_client(payloads: dict[str, dict] | None = None, fail: set[str] | None = None):
    """LLM stand-in: answers by the criterion named in the system prompt."""
    payloads = payloads or {}
    fail = fail or set()

    async def call(system, user, max_tokens=None):
        for cid in sorted(CRITERION_IDS, key=len, reverse=True):
            if f"Criterion {cid[1:]}:" in system:
                if cid in fail:
                    raise LLMCallError("boom", retryable=True)
                return payloads.get(cid, {"evidence_tier": 4, "score": 3.5, "recommendation": "NEEDS_MORE_DOCS"})
        raise AssertionError("criterion not found in prompt")

    client = AsyncMock()
    client.model = "test-model"
    client.call = AsyncMock(side_effect=call)
    return client


# ---------------------------------------------------------------------------
# Tier tables
# ---------------------------------------------------------------------------


class TestTierTables:
    @pytest.mark.parametrize("score,tier", [(10, 1), (9.0, 1), (8.9, 2), (7.0, 2), (5.0, 3), (4.9, 4), (3.0, 4), (2.9, 5), (0, 5)])
    def test_tier_for_score(self, score, tier):
        assert tier_for_score(score) == tier

    @pytest.mark.parametrize("tier,rec", [(1, "STRONG"), (2, "STRONG"), (3, "INCLUDE_WITH_SUPPORT"),
                                          (4, "NEEDS_MORE_DOCS"), (5, "EXCLUDE")])
    def test_recommendation_for_tier(self, tier, rec):
        assert recommendation_for_tier(tier) == rec

    @pytest.mark.parametrize("count,tier", [(6, 1), (4, 1), (3, 2), (2, 3), (1, 4), (0, 5)])
    def test_c5_tier(self, count, tier):
        assert c5_tier(count) == tier


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestNormalizeVerdict:
    def test_clamps_score_and_tier(self):
        v = normalize_verdict("C1", {"evidence_tier": 9, "score": 14, "recommendation": "STRONG"})
        assert v.tier == 5
        assert v.score == 10.0

    def test_tier_derived_from_score(self):
        v = normalize_verdict("C1", {"score": 7.4})
        assert v.tier == 2
        assert v.recommendation == "STRONG"

    def test_unknown_recommendation_follows_tier(self):
        v = normalize_verdict("C2", {"evidence_tier": 3, "score": 6, "recommendation": "MAYBE"})
        assert v.recommendation == "INCLUDE_WITH_SUPPORT"

    def test_list_fields_coerced(self):
        v = normalize_verdict("C6", {"score": 5, "verified_claims": "one claim", "red_flags": None,
                                     "missing_documentation": ["citation report", ""]})
        assert v.verified_claims == ["one claim"]
        assert v.red_flags == []
        assert v.missing_documents == ["citation report"]

    def test_missing_score_and_tier_rejected(self):
        with pytest.raises(ValueError):
            normalize_verdict("C1", {"reasoning": "no numbers"})

    def test_c5_indicators_recounted(self):
        raw = {
            "evidence_tier": 1, "score": 9.5, "recommendation": "STRONG",
            "significance_indicators": {
                "widespread_adoption": True, "commercial_validation": False,
                "research_impact": True, "independent_adoption": False,
                "expert_validation": False, "field_transformation": False,
                "indicators_met": 5,
            },
        }
        v = normalize_verdict("C5", raw)
        assert v.test["indicators_met"] == 2
        assert v.tier == 3
        assert 5.0 <= v.score <= 6.9
        assert v.to_dict()["significance_indicators"]["indicators_met"] == 2

    def test_c5_without_indicators_keeps_model_tier(self):
        v = normalize_verdict("C5", {"evidence_tier": 2, "score": 8.0, "recommendation": "STRONG"})
        assert v.tier == 2
        assert v.score == 8.0
        assert v.recommendation == "STRONG"
        assert v.test == {}

    def test_c5_empty_indicators_object_is_recounted(self):
        v = normalize_verdict("C5", {"evidence_tier": 2, "score": 8.0, "significance_indicators": {}})
        assert v.tier == 5
        assert v.score == 2.9
        assert v.recommendation == "EXCLUDE"

    def test_c5_agreeing_tier_keeps_recommendation(self):
        raw = {"evidence_tier": 4, "score": 3.5, "recommendation": "INCLUDE_WITH_SUPPORT",
               "significance_indicators": {"research_impact": True}}
        v = normalize_verdict("C5", raw)
        assert v.tier == 4
        assert v.recommendation == "INCLUDE_WITH_SUPPORT"


# ---------------------------------------------------------------------------
# verify_criterion
# ---------------------------------------------------------------------------


class TestVerifyCriterion:
    @pytest.mark.asyncio
    async def test_returns_verdict(self):
        client = _fake_client({"C1": {"evidence_tier": 2, "score": 8.1, "verified_claims": ["ACM award"]}})
        v = await verify_criterion(client, "C1", "text", "ctx", document_name="award.pdf")
        assert v is not None
        assert v.tier == 2
        assert v.verified_claims == ["ACM award"]

    @pytest.mark.asyncio
    async def test_llm_failure_fails_open(self):
        client = _fake_client(fail={"C1"})
        assert await verify_criterion(client, "C1", "text", "ctx") is None

    @pytest.mark.asyncio
    async def test_unusable_payload_fails_open(self):
        client = _fake_client({"C3": {"reasoning": "?"}})
        assert await verify_criterion(client, "C3", "text", "ctx") is None

    @pytest.mark.asyncio
    async def test_custom_prompt_used(self):
        client = _fake_client()
        client.call = AsyncMock(return_value={"score": 5})
        await verify_criterion(client, "C4", "text", "ctx", system_prompt="CUSTOM")
        assert client.call.call_args[0][0] == "CUSTOM"


# ---------------------------------------------------------------------------
# Run state machine & locks
# ---------------------------------------------------------------------------


class TestVerificationRun:
    def test_lifecycle(self):
        run = VerificationRun(1, ("C1", "C2"))
        assert run.state is RunState.IDLE
        run.start()
        assert run.state is RunState.VERIFYING
        run.record("C1", normalize_verdict("C1", {"score": 8}))
        assert run.pending == {"C2"}
        run.record("C2", None)
        assert run.state is RunState.COMPLETE
        assert run.completed == {"C1"}
        assert run.failed == {"C2"}

    def test_close_completes_early(self):
        run = VerificationRun(1, ("C1", "C2"))
        run.start()
        run.close()
        assert run.state is RunState.COMPLETE
        run.record("C1", normalize_verdict("C1", {"score": 8}))
        assert run.completed == set()

    def test_start_twice_rejected(self):
        run = VerificationRun(1)
        run.start()
        with pytest.raises(RuntimeError):
            run.start()


class TestVerificationLocks:
    def test_second_acquire_rejected(self):
        locks = VerificationLocks()
        locks.acquire(1, 10)
        with pytest.raises(VerificationInProgressError):
            locks.acquire(1, 10)
        locks.acquire(1, 11)
        locks.release(1, 10)
        locks.acquire(1, 10)

    def test_hold_releases_on_error(self):
        locks = VerificationLocks()
        with pytest.raises(KeyError):
            with locks.hold(2, 3):
                assert locks.is_locked(2, 3)
                raise KeyError("x")
        assert not locks.is_locked(2, 3)


# ---------------------------------------------------------------------------
# Document runs
# ---------------------------------------------------------------------------


class TestRunDocumentVerification:
    @pytest.mark.asyncio
    async def test_stores_successful_verdicts_only(self, session, document):
        client = _fake_client({"C1": {"evidence_tier": 2, "score": 8.0}}, fail={"C2"})
        run = await run_document_verification(session, document, client, "ctx", criteria=("C1", "C2", "C3"))
        session.commit()

        assert run.completed == {"C1", "C3"}
        assert run.failed == {"C2"}
        rows = session.execute(select(EvidenceVerification)).scalars().all()
        assert {r.criterion for r in rows} == {"C1", "C3"}
        assert all(r.version == 1 for r in rows)
        assert document.evidence_verification_count == 1

    @pytest.mark.asyncio
    async def test_rerun_increments_version(self, session, document):
        client = _fake_client()
        await run_document_verification(session, document, client, "ctx", criteria=("C1",))
        session.commit()
        await run_document_verification(session, document, client, "ctx", criteria=("C1",), source="manual")
        session.commit()

        latest = latest_verdicts(session, document.case_id)
        assert len(latest) == 1
        assert latest[0].version == 2
        assert latest[0].source == "manual"
        assert document.evidence_verification_count == 2

    @pytest.mark.asyncio
    async def test_staged_verdicts_visible_before_commit(self, session, document):
        client = _fake_client()
        await run_document_verification(session, document, client, "ctx", criteria=("C1", "C2"))
        await run_document_verification(session, document, client, "ctx", criteria=("C1",))

        latest = {v.criterion: v.version for v in latest_verdicts(session, document.case_id)}
        assert latest == {"C1": 2, "C2": 1}

    @pytest.mark.asyncio
    async def test_all_failed_does_not_count(self, session, document):
        client = _fake_client(fail=set(CRITERION_IDS))
        run = await run_document_verification(session, document, client, "ctx")
        assert run.state is RunState.COMPLETE
        assert run.completed == set()
        assert not document.evidence_verification_count

    @pytest.mark.asyncio
    async def test_callback_invoked_per_criterion(self, session, document):
        seen = []
        client = _fake_client(fail={"C4"})
        await run_document_verification(
            session, document, client, "ctx", criteria=("C3", "C4"),
            on_criterion_complete=lambda c, v: seen.append((c, v is not None)),
        )
        assert sorted(seen) == [("C3", True), ("C4", False)]

    @pytest.mark.asyncio
    async def test_stored_payload_has_test_object(self, session, document):
        client = _fake_client({"C2": {"evidence_tier": 2, "score": 8,
                                      "three_part_test": {"outstanding_achievement_required": True}}})
        await run_document_verification(session, document, client, "ctx", criteria=("C2",))
        session.commit()
        row = session.execute(select(EvidenceVerification)).scalars().one()
        data = json.loads(row.data_json)
        assert data["three_part_test"]["outstanding_achievement_required"] is True


class TestStreamDocumentVerification:
    @pytest.mark.asyncio
    async def test_event_sequence(self, session, document):
        client = _fake_client(fail={"C2"})
        events = [e async for e in stream_document_verification(
            session, document, client, "ctx", criteria=("C1", "C2"),
        )]
        types = [e["type"] for e in events]
        assert types[-1] == "doc_complete"
        assert sorted(types[:-1]) == ["criterion_complete", "criterion_failed"]
        assert events[-1]["completed"] == ["C1"]
        assert events[-1]["failed"] == ["C2"]
        assert events[-1]["state"] == "complete"
