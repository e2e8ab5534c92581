"""Per-case document checklist derived from documents, verdicts and recommenders.

Slots:

- one personal statement,
- one recommendation letter per recommender,
- one evidence document per criterion (the top routed document).

Each slot's status comes only from its linked document and that document's
latest verdict: ``missing`` (nothing linked), ``draft`` (linked, no verdict)
or the weaker of the tier class and the recommendation class.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from petition.criteria import CRITERIA_LABELS, CRITERION_IDS
from petition.models import Document, Recommender
from petition.routing import RoutingTable, compute_routing
from petition.utils import base_name, json_parse

STATUS_ORDER = ("missing", "draft", "weak", "moderate", "strong")
_RANK = {s: i for i, s in enumerate(STATUS_ORDER)}

_LETTER_CATEGORIES = {"RECOMMENDATION_LETTER"}
_NON_EVIDENCE_CATEGORIES = {"PERSONAL_STATEMENT", "RECOMMENDATION_LETTER", "PETITION_LETTER"}


@dataclass
class ChecklistItem:
    id: str
    type: str  # personal_statement | recommendation_letter | evidence_document
    label: str
    description: str
    status: str
    criterion_key: str | None = None
    recommender_id: int | None = None
    document_id: int | None = None
    document_name: str | None = None
    document_status: str | None = None
    feedback: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "description": self.description,
            "status": self.status,
            "criterionKey": self.criterion_key,
            "recommenderId": self.recommender_id,
            "documentId": self.document_id,
            "documentName": self.document_name,
            "documentStatus": self.document_status,
            "feedback": self.feedback,
        }


@dataclass
class Checklist:
    items: list[ChecklistItem] = field(default_factory=list)
    last_verified_at: datetime | None = None

    @property
    def summary(self) -> dict[str, int]:
        counts = {s: 0 for s in STATUS_ORDER}
        for item in self.items:
            counts[item.status] += 1
        completed = counts["strong"] + counts["moderate"] + counts["weak"]
        total = len(self.items)
        return {
            "total": total,
            "completed": completed,
            "strong": counts["strong"],
            "moderate": counts["moderate"],
            "weak": counts["weak"],
            "missing": total - completed,
            "draft": counts["draft"],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [i.to_dict() for i in self.items],
            "summary": self.summary,
            "lastVerifiedAt": self.last_verified_at.isoformat() if self.last_verified_at else None,
        }


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _tier_class(tier: int | None) -> str:
    if tier is None:
        return "weak"
    if tier <= 2:
        return "strong"
    if tier == 3:
        return "moderate"
    return "weak"


def _recommendation_class(recommendation: str | None) -> str:
    if recommendation == "STRONG":
        return "strong"
    if recommendation == "INCLUDE_WITH_SUPPORT":
        return "moderate"
    return "weak"


def classify(document: Document | None, verdict: Any | None) -> str:
    if document is None:
        return "missing"
    if verdict is None:
        return "draft"
    a, b = _tier_class(verdict.tier), _recommendation_class(verdict.recommendation)
    return a if _RANK[a] <= _RANK[b] else b


def _feedback(verdict: Any | None) -> str | None:
    if verdict is None:
        return None
    data = json_parse(getattr(verdict, "data_json", None), {})
    return data.get("reasoning") or None


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def current_documents(documents: Iterable[Document]) -> list[Document]:
    """Latest document per base name; older versions are dropped."""
    latest: dict[str, Document] = {}
    for doc in documents:
        key = base_name(doc.name).lower()
        current = latest.get(key)
        if current is None or (doc.created_at or datetime.min, doc.id) > (current.created_at or datetime.min, current.id):
            latest[key] = doc
    return sorted(latest.values(), key=lambda d: d.id)


def _newest(docs: Iterable[Document]) -> Document | None:
    return max(docs, key=lambda d: (d.created_at or datetime.min, d.id), default=None)


def _best(verdicts: Iterable[Any]) -> Any | None:
    return min(verdicts, key=lambda v: (v.tier, -v.score, v.criterion), default=None)


def _item(doc: Document | None, verdict: Any | None, **kwargs: Any) -> ChecklistItem:
    return ChecklistItem(
        status=classify(doc, verdict),
        document_id=doc.id if doc else None,
        document_name=doc.name if doc else None,
        document_status=doc.status if doc else None,
        feedback=_feedback(verdict),
        **kwargs,
    )


def build_checklist(
    documents: Iterable[Document],
    verdicts: Iterable[Any],
    recommenders: Sequence[Recommender],
    *,
    criteria: Sequence[str] = CRITERION_IDS,
    routing: RoutingTable | None = None,
    last_verified_at: datetime | None = None,
) -> Checklist:
    docs = current_documents(documents)
    doc_ids = {d.id for d in docs}

    latest: dict[tuple[int, str], Any] = {}
    for v in verdicts:
        if v.document_id not in doc_ids:
            continue
        key = (v.document_id, v.criterion)
        if key not in latest or (v.version or 0) > (latest[key].version or 0):
            latest[key] = v

    def doc_verdicts(doc_id: int, keys: Iterable[str] | None = None) -> list[Any]:
        wanted = set(keys) if keys else None
        return [v for (d, c), v in latest.items() if d == doc_id and (wanted is None or c in wanted)]

    items: list[ChecklistItem] = []

    statement = _newest(
        d for d in docs if d.category == "PERSONAL_STATEMENT" or "personal statement" in d.name.lower()
    )
    items.append(_item(
        statement, _best(doc_verdicts(statement.id)) if statement else None,
        id="personal_statement", type="personal_statement", label="Personal Statement",
        description="A narrative describing your career and achievements",
    ))

    for rec in recommenders:
        letter = _newest(d for d in docs if d.category in _LETTER_CATEGORIES and d.recommender_id == rec.id)
        keys = json_parse(rec.criteria_keys_json, [])
        items.append(_item(
            letter, _best(doc_verdicts(letter.id, keys)) if letter else None,
            id=f"rec_{rec.id}", type="recommendation_letter", label=f"Recommendation: {rec.name}",
            description=f"Letter from {rec.name}" + (f" ({rec.title})" if rec.title else ""),
            recommender_id=rec.id, criterion_key=keys[0] if len(keys) == 1 else None,
        ))

    evidence_docs = {d.id: d for d in docs if d.category not in _NON_EVIDENCE_CATEGORIES}
    if routing is None:
        routing = compute_routing(evidence_docs.values(), latest.values())
    for cid in criteria:
        top = next((e for e in routing.get(cid, []) if e.document_id in evidence_docs), None)
        doc = evidence_docs[top.document_id] if top else None
        items.append(_item(
            doc, latest.get((doc.id, cid)) if doc else None,
            id=f"evidence_{cid}", type="evidence_document", criterion_key=cid,
            label=f"Evidence: {CRITERIA_LABELS.get(cid, cid)}",
            description=f"Supporting document for {CRITERIA_LABELS.get(cid, cid)}",
        ))

    return Checklist(items=items, last_verified_at=last_verified_at)
