"""Tests for criterion routing (pure computation and persisted sync)."""
from __future__ import annotations

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from petition.models import Base, Case, CriterionRouting, Document, EvidenceVerification
from petition.routing import (
    MANUAL_RECOMMENDATION,
    add_manual_route,
    compute_routing,
    load_routing,
    remove_route,
    routing_response,
    sync_routing,
)

T0 = datetime(2024, 1, 1, 12, 0, 0)


def _doc(id, name="doc", minutes=0, category="OTHER"):
    return Document(id=id, case_id=1, name=name, category=category, created_at=T0 + timedelta(minutes=minutes))


def _verdict(doc_id, criterion, score, rec="STRONG", version=1, source="bulk", id=None, tier=2):
    return SimpleNamespace(
        id=id or doc_id * 100 + version, document_id=doc_id, criterion=criterion, score=score,
        recommendation=rec, version=version, source=source, tier=tier,
    )


class TestComputeRouting:
    def test_every_criterion_present(self):
        table = compute_routing([], [])
        assert list(table) == [f"C{i}" for i in range(1, 11)]
        assert all(v == [] for v in table.values())

    def test_excluded_verdicts_not_routed(self):
        docs = [_doc(1), _doc(2)]
        table = compute_routing(docs, [_verdict(1, "C1", 8.0), _verdict(2, "C1", 1.0, rec="EXCLUDE")])
        assert [e.document_id for e in table["C1"]] == [1]

    def test_sorted_by_score_then_recency(self):
        docs = [_doc(1, minutes=0), _doc(2, minutes=5), _doc(3, minutes=10)]
        verdicts = [_verdict(1, "C6", 6.0), _verdict(2, "C6", 8.0), _verdict(3, "C6", 6.0)]
        table = compute_routing(docs, verdicts)
        assert [e.document_id for e in table["C6"]] == [2, 3, 1]

    def test_id_breaks_full_ties(self):
        docs = [_doc(5), _doc(4)]
        table = compute_routing(docs, [_verdict(5, "C2", 7.0), _verdict(4, "C2", 7.0)])
        assert [e.document_id for e in table["C2"]] == [4, 5]

    def test_latest_version_wins(self):
        docs = [_doc(1)]
        verdicts = [_verdict(1, "C3", 9.0, version=1), _verdict(1, "C3", 2.0, rec="EXCLUDE", version=2)]
        assert compute_routing(docs, verdicts)["C3"] == []

    def test_manual_source_not_auto_routed(self):
        table = compute_routing([_doc(1)], [_verdict(1, "C4", 7.0, source="manual")])
        assert table["C4"][0].auto_routed is False

    def test_verdicts_for_unknown_documents_ignored(self):
        table = compute_routing([_doc(1)], [_verdict(9, "C1", 9.0)])
        assert table["C1"] == []

    def test_response_shape(self):
        table = compute_routing([_doc(1, name="award.pdf")], [_verdict(1, "C1", 9.0)])
        resp = routing_response(table)
        assert resp["C1"]["label"] == "Awards & Prizes"
        assert resp["C1"]["documents"][0] == {
            "documentId": 1, "documentName": "award.pdf", "score": 9.0, "recommendation": "STRONG",
            "tier": 2, "autoRouted": True, "pinned": False,
        }


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


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
def case_docs(session):
    case = Case(owner_id="u1", name="Case")
    session.add(case)
    session.flush()
    docs = [
        Document(case_id=case.id, name="a.pdf", content="x", created_at=T0),
        Document(case_id=case.id, name="b.pdf", content="y", created_at=T0 + timedelta(minutes=1)),
    ]
    session.add_all(docs)
    session.commit()
    return case, docs


def _store(session, case, doc, criterion, score, rec="STRONG", version=1, source="bulk"):
    session.add(EvidenceVerification(
        case_id=case.id, document_id=doc.id, criterion=criterion, version=version,
        tier=2, score=score, recommendation=rec, source=source,
    ))
    session.flush()


class TestSyncRouting:
    def test_persists_rows(self, session, case_docs):
        case, (a, b) = case_docs
        _store(session, case, a, "C1", 8.0)
        _store(session, case, b, "C1", 6.0)
        sync_routing(session, case.id)
        session.commit()

        rows = session.execute(select(CriterionRouting)).scalars().all()
        assert {(r.document_id, r.criterion) for r in rows} == {(a.id, "C1"), (b.id, "C1")}

    def test_idempotent(self, session, case_docs):
        case, (a, _) = case_docs
        _store(session, case, a, "C1", 8.0)
        sync_routing(session, case.id)
        session.commit()
        first = [(r.id, r.score) for r in session.execute(select(CriterionRouting)).scalars().all()]
        sync_routing(session, case.id)
        session.commit()
        second = [(r.id, r.score) for r in session.execute(select(CriterionRouting)).scalars().all()]
        assert first == second

    def test_stale_rows_removed_unless_pinned(self, session, case_docs):
        case, (a, b) = case_docs
        _store(session, case, a, "C1", 8.0)
        _store(session, case, b, "C2", 7.0)
        sync_routing(session, case.id)
        add_manual_route(session, case.id, b.id, "C2")
        session.commit()

        _store(session, case, a, "C1", 1.0, rec="EXCLUDE", version=2)
        _store(session, case, b, "C2", 1.0, rec="EXCLUDE", version=2)
        sync_routing(session, case.id)
        session.commit()

        rows = session.execute(select(CriterionRouting)).scalars().all()
        assert [(r.document_id, r.criterion, r.pinned) for r in rows] == [(b.id, "C2", True)]

    def test_load_routing_orders_rows(self, session, case_docs):
        case, (a, b) = case_docs
        _store(session, case, a, "C5", 5.0)
        _store(session, case, b, "C5", 5.0)
        sync_routing(session, case.id)
        session.commit()
        table = load_routing(session, case.id)
        # equal scores: newer document first
        assert [e.document_id for e in table["C5"]] == [b.id, a.id]


class TestManualRoutes:
    def test_manual_route_without_verdict(self, session, case_docs):
        case, (a, _) = case_docs
        row = add_manual_route(session, case.id, a.id, "C7")
        session.commit()
        assert row.pinned is True
        assert row.auto_routed is False
        assert row.recommendation == MANUAL_RECOMMENDATION
        assert row.score == 0.0

    def test_manual_route_uses_verdict_score(self, session, case_docs):
        case, (a, _) = case_docs
        _store(session, case, a, "C8", 6.5, rec="INCLUDE_WITH_SUPPORT")
        row = add_manual_route(session, case.id, a.id, "C8")
        assert row.score == 6.5
        assert row.recommendation == "INCLUDE_WITH_SUPPORT"

    def test_remove_route(self, session, case_docs):
        case, (a, _) = case_docs
        add_manual_route(session, case.id, a.id, "C9")
        session.commit()
        assert remove_route(session, case.id, a.id, "C9") is True
        session.commit()
        assert remove_route(session, case.id, a.id, "C9") is False
