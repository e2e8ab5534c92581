"""Criterion routing: which documents support which criteria.

``compute_routing`` is pure: given documents and their verdicts it returns,
per criterion, every document whose latest verdict is not EXCLUDE, ordered by
score (desc), then document recency (newer first), then document id.

``sync_routing`` persists that table as ``CriterionRouting`` rows keyed by
(document, criterion). It upserts computed entries and deletes rows that are
no longer computed unless the user pinned them, so running it twice in a row
is a no-op.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from petition.criteria import CRITERIA_LABELS, CRITERION_IDS, is_criterion
from petition.models import CriterionRouting, Document
from petition.utils import clamp
from petition.verification import latest_verdicts

log = logging.getLogger(__name__)

MANUAL_RECOMMENDATION = "MANUAL"


@dataclass(frozen=True)
class RoutedDocument:
    document_id: int
    document_name: str
    score: float
    recommendation: str
    tier: int | None
    auto_routed: bool
    created_at: datetime | None = None
    pinned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "documentId": self.document_id,
            "documentName": self.document_name,
            "score": self.score,
            "recommendation": self.recommendation,
            "tier": self.tier,
            "autoRouted": self.auto_routed,
            "pinned": self.pinned,
        }


RoutingTable = dict[str, list[RoutedDocument]]


def routing_sort_key(entry: RoutedDocument) -> tuple:
    ts = entry.created_at.timestamp() if entry.created_at else 0.0
    return (-entry.score, -ts, entry.document_id)


def _latest_per_pair(verdicts: Iterable[Any]) -> dict[tuple[int, str], Any]:
    latest: dict[tuple[int, str], Any] = {}
    for v in verdicts:
        key = (v.document_id, v.criterion)
        current = latest.get(key)
        if current is None or (v.version or 0, v.id or 0) > (current.version or 0, current.id or 0):
            latest[key] = v
    return latest


def compute_routing(documents: Iterable[Document], verdicts: Iterable[Any]) -> RoutingTable:
    docs = {d.id: d for d in documents}
    table: RoutingTable = {cid: [] for cid in CRITERION_IDS}
    for (doc_id, criterion), v in _latest_per_pair(verdicts).items():
        doc = docs.get(doc_id)
        if doc is None or not is_criterion(criterion):
            continue
        if v.recommendation == "EXCLUDE":
            continue
        table[criterion].append(RoutedDocument(
            document_id=doc_id,
            document_name=doc.name,
            score=clamp(float(v.score or 0.0), 0.0, 10.0),
            recommendation=v.recommendation,
            tier=v.tier,
            auto_routed=(v.source or "bulk") == "bulk",
            created_at=doc.created_at,
        ))
    for entries in table.values():
        entries.sort(key=routing_sort_key)
    return table


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def _case_documents(session: Session, case_id: int) -> list[Document]:
    return list(session.execute(select(Document).where(Document.case_id == case_id)).scalars().all())


def sync_routing(session: Session, case_id: int) -> RoutingTable:
    """Recompute and persist routing rows for a case. Caller commits."""
    table = compute_routing(_case_documents(session, case_id), latest_verdicts(session, case_id))
    computed = {(e.document_id, criterion): e for criterion, entries in table.items() for e in entries}

    existing = {
        (row.document_id, row.criterion): row
        for row in session.execute(
            select(CriterionRouting).where(CriterionRouting.case_id == case_id)
        ).scalars().all()
    }

    for key, entry in computed.items():
        row = existing.get(key)
        if row is None:
            session.add(CriterionRouting(
                case_id=case_id, document_id=entry.document_id, criterion=key[1],
                score=entry.score, recommendation=entry.recommendation,
                auto_routed=entry.auto_routed,
            ))
            continue
        if (row.score, row.recommendation, row.auto_routed) != (entry.score, entry.recommendation, entry.auto_routed):
            row.score = entry.score
            row.recommendation = entry.recommendation
            row.auto_routed = entry.auto_routed

    removed = 0
    for key, row in existing.items():
        if key not in computed and not row.pinned:
            session.delete(row)
            removed += 1
    if removed:
        log.info("Routing for case %s: dropped %d stale entries", case_id, removed)
    session.flush()
    return table


def load_routing(session: Session, case_id: int) -> RoutingTable:
    """Read the persisted routing table, including pinned manual entries."""
    rows = session.execute(
        select(CriterionRouting, Document)
        .join(Document, Document.id == CriterionRouting.document_id)
        .where(CriterionRouting.case_id == case_id)
    ).all()
    table: RoutingTable = {cid: [] for cid in CRITERION_IDS}
    for row, doc in rows:
        if row.criterion not in table:
            continue
        table[row.criterion].append(RoutedDocument(
            document_id=doc.id, document_name=doc.name, score=row.score,
            recommendation=row.recommendation, tier=None, auto_routed=row.auto_routed,
            created_at=doc.created_at, pinned=row.pinned,
        ))
    for entries in table.values():
        entries.sort(key=routing_sort_key)
    return table


def routing_response(table: RoutingTable) -> dict[str, Any]:
    return {
        cid: {
            "criterion": cid,
            "label": CRITERIA_LABELS[cid],
            "documents": [e.to_dict() for e in entries],
        }
        for cid, entries in table.items()
    }


def add_manual_route(session: Session, case_id: int, document_id: int, criterion: str) -> CriterionRouting:
    """Pin a document to a criterion by hand. Uses the latest verdict's score if there is one."""
    row = session.execute(
        select(CriterionRouting).where(
            CriterionRouting.document_id == document_id, CriterionRouting.criterion == criterion,
        )
    ).scalars().first()
    if row is not None:
        row.pinned = True
        return row

    verdict = next(
        (v for v in latest_verdicts(session, case_id) if v.document_id == document_id and v.criterion == criterion),
        None,
    )
    row = CriterionRouting(
        case_id=case_id, document_id=document_id, criterion=criterion,
        score=verdict.score if verdict else 0.0,
        recommendation=verdict.recommendation if verdict else MANUAL_RECOMMENDATION,
        auto_routed=False, pinned=True,
    )
    session.add(row)
    return row


def remove_route(session: Session, case_id: int, document_id: int, criterion: str) -> bool:
    row = session.execute(
        select(CriterionRouting).where(
            CriterionRouting.case_id == case_id,
            CriterionRouting.document_id == document_id,
            CriterionRouting.criterion == criterion,
        )
    ).scalars().first()
    if row is None:
        return False
    session.delete(row)
    return True
