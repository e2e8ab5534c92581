"""Shared business logic used by the API routes."""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from petition.analysis import case_profile_data
from petition.checklist import Checklist, build_checklist, current_documents
from petition.config import get_settings
from petition.criteria import CRITERION_IDS
from petition.extraction import classify_document, document_type_for, extract_text
from petition.llm import LLMClient
from petition.models import (
    AgentPrompt, Case, CaseProfile, ChecklistSnapshot, Document, Recommender,
)
from petition.routing import load_routing, routing_response, sync_routing
from petition.utils import json_parse
from petition.verification import (
    VerificationInProgressError, latest_verdicts, run_document_verification, verdict_payload, verification_locks,
)

log = logging.getLogger(__name__)

DOCUMENT_UPDATE_FIELDS = ("name", "status", "category", "content")
RECOMMENDER_UPDATE_FIELDS = (
    "name", "title", "organization", "relationship_type", "relationship_context", "email",
    "phone", "linkedin", "country_region", "bio", "credentials",
)


class InsufficientTextError(ValueError):
    """Document text is too short to verify."""


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def case_summary(session: Session, case: Case) -> dict:
    docs = session.execute(
        select(func.count(Document.id)).where(Document.case_id == case.id)
    ).scalar() or 0
    recs = session.execute(
        select(func.count(Recommender.id)).where(Recommender.case_id == case.id)
    ).scalar() or 0
    return {
        "id": case.id,
        "name": case.name,
        "created_at": _iso(case.created_at),
        "document_count": docs,
        "recommender_count": recs,
    }


def document_summary(doc: Document) -> dict:
    return {
        "id": doc.id,
        "name": doc.name,
        "type": doc.type,
        "source": doc.source,
        "status": doc.status,
        "category": doc.category,
        "classification_confidence": doc.classification_confidence or 0.0,
        "recommender_id": doc.recommender_id,
        "evidence_verification_count": doc.evidence_verification_count or 0,
        "signature_status": doc.signature_status,
        "created_at": _iso(doc.created_at),
        "updated_at": _iso(doc.updated_at),
    }


def document_detail(doc: Document) -> dict:
    return {**document_summary(doc), "content": doc.content or ""}


def recommender_summary(rec: Recommender) -> dict:
    return {
        **{f: getattr(rec, f) or "" for f in RECOMMENDER_UPDATE_FIELDS},
        "id": rec.id,
        "criteria_keys": json_parse(rec.criteria_keys_json, []),
        "created_at": _iso(rec.created_at),
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def merge_profile(session: Session, case_id: int, data: dict[str, Any]) -> dict[str, Any]:
    """Shallow-merge top-level keys into the case profile, creating it if needed."""
    profile = session.execute(select(CaseProfile).where(CaseProfile.case_id == case_id)).scalars().first()
    if profile is None:
        profile = CaseProfile(case_id=case_id, data_json="{}")
        session.add(profile)
    merged = {**json_parse(profile.data_json, {}), **data}
    profile.data_json = json.dumps(merged)
    return merged


async def create_document(
    session: Session, case: Case, filename: str, content: bytes, *,
    category: str | None = None, client: LLMClient | None = None, prompts: dict[str, str] | None = None,
) -> Document:
    """Extract text from an upload and store it as a new draft document. Caller commits.

    Without an explicit *category* the document is classified by the model.
    """
    text = extract_text(filename, content)
    if category:
        doc_category, confidence = category, 1.0
    else:
        doc_category, confidence = await classify_document(
            client or LLMClient(), filename, text, (prompts or {}).get("document_classify"),
        )
    doc = Document(
        case_id=case.id,
        name=filename,
        type=document_type_for(filename),
        source="USER_UPLOADED",
        status="DRAFT",
        category=doc_category,
        classification_confidence=confidence,
        content=text,
    )
    session.add(doc)
    session.flush()
    return doc


def delete_document(session: Session, doc: Document) -> None:
    session.delete(doc)


def delete_recommender(session: Session, rec: Recommender) -> None:
    for doc in session.execute(select(Document).where(Document.recommender_id == rec.id)).scalars().all():
        doc.recommender_id = None
    session.delete(rec)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def load_prompts(session: Session) -> dict[str, str]:
    """Stored prompt contents by key; agents fall back to their defaults for missing keys."""
    rows = session.execute(select(AgentPrompt)).scalars().all()
    return {r.key: r.content for r in rows if r.content}


def get_prompts(session: Session) -> list[dict]:
    rows = session.execute(select(AgentPrompt).order_by(AgentPrompt.key)).scalars().all()
    return [{"key": r.key, "label": r.label, "content": r.content, "updated_at": _iso(r.updated_at)} for r in rows]


def update_prompt(session: Session, key: str, content: str) -> dict | None:
    row = session.execute(select(AgentPrompt).where(AgentPrompt.key == key)).scalars().first()
    if row is None:
        return None
    row.content = content
    session.commit()
    return {"key": row.key, "label": row.label, "content": row.content, "updated_at": _iso(row.updated_at)}


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verification_context(session: Session, case: Case) -> str:
    """Applicant background handed to every criterion agent."""
    profile = case_profile_data(session, case.id)
    if not profile:
        return f"CASE: {case.name or case.id}"
    return f"CASE: {case.name or case.id}\n\nAPPLICANT PROFILE:\n{json.dumps(profile, indent=2)}"


def check_verifiable(doc: Document) -> None:
    if len((doc.content or "").strip()) < get_settings().min_document_chars:
        raise InsufficientTextError("Document has no extractable text")


def evidence_results(session: Session, case_id: int) -> list[dict]:
    """Latest verdicts grouped by document, newest document first."""
    docs = {
        d.id: d for d in session.execute(select(Document).where(Document.case_id == case_id)).scalars().all()
    }
    grouped: dict[int, dict] = {}
    for v in latest_verdicts(session, case_id):
        doc = docs.get(v.document_id)
        if doc is None:
            continue
        entry = grouped.setdefault(doc.id, {
            "document": {
                "id": doc.id, "name": doc.name, "category": doc.category,
                "classificationConfidence": doc.classification_confidence,
            },
            "criteria": {},
        })
        entry["criteria"][v.criterion] = verdict_payload(v)
    return [grouped[k] for k in sorted(grouped, key=lambda i: (docs[i].created_at, i), reverse=True)]


async def verify_single_criterion(
    session: Session, case: Case, doc: Document, criterion_id: str,
    client: LLMClient | None = None, prompts: dict[str, str] | None = None,
) -> dict | None:
    """Manual single-criterion check; the verdict is stored with source ``manual``."""
    check_verifiable(doc)
    client = client or LLMClient()
    run = await run_document_verification(
        session, doc, client, verification_context(session, case),
        criteria=(criterion_id,), source="manual", prompts=prompts,
    )
    verdict = run.verdicts.get(criterion_id)
    if verdict is None:
        return None
    sync_routing(session, case.id)
    return verdict.to_dict()


# ---------------------------------------------------------------------------
# Checklist
# ---------------------------------------------------------------------------


def _last_snapshot(session: Session, case_id: int) -> ChecklistSnapshot | None:
    return session.execute(
        select(ChecklistSnapshot)
        .where(ChecklistSnapshot.case_id == case_id)
        .order_by(ChecklistSnapshot.verified_at.desc(), ChecklistSnapshot.id.desc())
        .limit(1)
    ).scalars().first()


def case_checklist(session: Session, case_id: int) -> Checklist:
    documents = session.execute(select(Document).where(Document.case_id == case_id)).scalars().all()
    recommenders = session.execute(
        select(Recommender).where(Recommender.case_id == case_id).order_by(Recommender.id)
    ).scalars().all()
    snapshot = _last_snapshot(session, case_id)
    return build_checklist(
        documents, latest_verdicts(session, case_id), recommenders,
        last_verified_at=snapshot.verified_at if snapshot else None,
    )


async def verify_all_documents(
    session: Session, case: Case, client: LLMClient | None = None, prompts: dict[str, str] | None = None,
) -> dict:
    """Re-verify every current document with text, then store a checklist snapshot.

    Each document commits on its own; a failure is logged and the rest carry on.
    """
    client = client or LLMClient()
    context = verification_context(session, case)
    documents = session.execute(select(Document).where(Document.case_id == case.id)).scalars().all()
    verified = failed = 0
    for doc in current_documents(documents):
        if len((doc.content or "").strip()) < get_settings().min_document_chars:
            continue
        try:
            with verification_locks.hold(case.id, doc.id):
                run = await run_document_verification(
                    session, doc, client, context, criteria=CRITERION_IDS, source="bulk", prompts=prompts,
                )
            session.commit()
        except VerificationInProgressError:
            log.info("Document %s is already being verified, skipped", doc.id)
            failed += 1
            continue
        except Exception as exc:
            log.warning("Verification failed for document %s: %s", doc.id, exc)
            session.rollback()
            failed += 1
            continue
        if run.verdicts:
            verified += 1
        else:
            failed += 1

    sync_routing(session, case.id)
    checklist = case_checklist(session, case.id)
    snapshot = ChecklistSnapshot(case_id=case.id, data_json=json.dumps(checklist.to_dict()))
    session.add(snapshot)
    session.commit()
    checklist.last_verified_at = snapshot.verified_at
    return {**checklist.to_dict(), "verified": verified, "failed": failed}


def routing_documents(session: Session, case_id: int) -> list[dict]:
    docs = session.execute(
        select(Document).where(Document.case_id == case_id).order_by(Document.created_at.desc(), Document.id.desc())
    ).scalars().all()
    return [{"id": d.id, "name": d.name, "category": d.category} for d in docs]


def criteria_routing(session: Session, case_id: int) -> dict:
    return {"routings": routing_response(load_routing(session, case_id)), "documents": routing_documents(session, case_id)}

