"""Per-document evidence verification against the ten EB-1A criteria.

Architecture
------------
One verification *run* scores a single document against a set of criteria
(all ten for the bulk flow, one for a manual single-criterion drop). Each
criterion is an independent LLM call; calls run concurrently and every
successful verdict is stored as an immutable ``EvidenceVerification`` row
tagged with the document's next version number.

A failed call (transport error, malformed JSON, unusable payload) leaves the
criterion *without* a verdict. It is never recorded as Tier 5.

Run lifecycle: ``idle -> verifying -> complete``. While verifying, the run
exposes the set of criteria that have already reported so callers can stream
progress; it completes once every requested criterion has reported (success or
failure) or the caller closes it.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Callable, Generator, Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from petition.criteria import (
    CRITERIA, CRITERION_IDS, RECOMMENDATIONS, TIER_SCORE_BANDS, c5_tier, count_c5_indicators,
    recommendation_for_tier, tier_for_score, verifier_prompt,
)
from petition.llm import LLMCallError, LLMClient
from petition.models import Document, EvidenceVerification
from petition.utils import as_str_list, clamp, json_parse, to_float, to_int

log = logging.getLogger(__name__)

MAX_DOCUMENT_CHARS = 60_000

_DATA_FIELDS = (
    "document_type", "verified_claims", "unverified_claims", "missing_documents",
    "red_flags", "reasoning", "matched_item_ids",
)


class VerificationInProgressError(Exception):
    """Another verification of the same document is already running."""


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------


@dataclass
class CriterionVerdict:
    criterion: str
    tier: int
    score: float
    recommendation: str
    verified_claims: list[str] = field(default_factory=list)
    unverified_claims: list[str] = field(default_factory=list)
    missing_documents: list[str] = field(default_factory=list)
    red_flags: list[str] = field(default_factory=list)
    reasoning: str = ""
    document_type: str = ""
    matched_item_ids: list[str] = field(default_factory=list)
    test: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        test = data.pop("test")
        name = CRITERIA[self.criterion].test_name
        if name:
            data[name] = test
        return data


def _score_band(tier: int) -> tuple[float, float]:
    low = dict(TIER_SCORE_BANDS)[tier]
    high = 10.0 if tier == 1 else dict(TIER_SCORE_BANDS)[tier - 1] - 0.1
    return low, high


def _normalize_test(criterion_id: str, raw: Any) -> dict[str, Any]:
    crit = CRITERIA[criterion_id]
    if not crit.test_name or not isinstance(raw, dict):
        return {}
    out: dict[str, Any] = {}
    for key in crit.test_fields:
        if key not in raw:
            continue
        value = raw[key]
        if key == "percentile_estimate" or key == "role_type":
            out[key] = str(value)
        elif criterion_id == "C6":
            out[key] = to_int(value, default=0) if value is not None else None
        else:
            out[key] = value is True or (isinstance(value, str) and value.strip().lower() == "true")
    return out


def normalize_verdict(criterion_id: str, raw: dict[str, Any]) -> CriterionVerdict:
    """Coerce a model reply into a consistent verdict.

    Raises ValueError when the payload carries neither a score nor a tier.
    """
    raw_score = raw.get("score")
    raw_tier = raw.get("evidence_tier", raw.get("tier"))
    if raw_score is None and raw_tier is None:
        raise ValueError(f"{criterion_id} verdict has no score or tier")

    if raw_tier is not None:
        tier = int(clamp(to_int(raw_tier, default=5), 1, 5))
    else:
        tier = tier_for_score(clamp(to_float(raw_score), 0.0, 10.0))
    if raw_score is not None:
        score = round(clamp(to_float(raw_score), 0.0, 10.0), 1)
    else:
        score = _score_band(tier)[0]

    crit = CRITERIA[criterion_id]
    test = _normalize_test(criterion_id, raw.get(crit.test_name) if crit.test_name else None)

    recommendation = str(raw.get("recommendation") or "").strip().upper()

    # Without an indicators object the model's own tier stands.
    if criterion_id == "C5" and isinstance(raw.get(crit.test_name), dict):
        met = count_c5_indicators(test)
        claimed = raw[crit.test_name].get("indicators_met")
        if claimed is not None and to_int(claimed, default=-1) != met:
            log.info("C5 indicators_met corrected from %s to %d", claimed, met)
        test["indicators_met"] = met
        if c5_tier(met) != tier:
            tier = c5_tier(met)
            recommendation = ""
        low, high = _score_band(tier)
        score = round(clamp(score, low, high), 1)

    if recommendation not in RECOMMENDATIONS:
        recommendation = recommendation_for_tier(tier)

    return CriterionVerdict(
        criterion=criterion_id,
        tier=tier,
        score=score,
        recommendation=recommendation,
        verified_claims=as_str_list(raw.get("verified_claims")),
        unverified_claims=as_str_list(raw.get("unverified_claims")),
        missing_documents=as_str_list(raw.get("missing_documentation", raw.get("missing_documents"))),
        red_flags=as_str_list(raw.get("red_flags")),
        reasoning=str(raw.get("reasoning") or ""),
        document_type=str(raw.get("document_type") or ""),
        matched_item_ids=as_str_list(raw.get("matched_item_ids")),
        test=test,
    )


async def verify_criterion(
    client: LLMClient,
    criterion_id: str,
    document_text: str,
    context: str,
    document_name: str = "",
    system_prompt: str | None = None,
) -> CriterionVerdict | None:
    """Score one document against one criterion. Returns None when no verdict could be produced."""
    if criterion_id not in CRITERIA:
        raise ValueError(f"Unknown criterion: {criterion_id}")
    user = (
        f"=== CASE CONTEXT ===\n{context or '(no case context yet)'}\n\n"
        f"=== DOCUMENT TO VERIFY ===\nNAME: {document_name}\n\n{document_text[:MAX_DOCUMENT_CHARS]}"
    )
    try:
        raw = await client.call(system_prompt or verifier_prompt(criterion_id), user)
        return normalize_verdict(criterion_id, raw)
    except (LLMCallError, ValueError) as exc:
        log.warning("Verification %s failed for %r: %s", criterion_id, document_name, exc)
        return None


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class RunState(str, enum.Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    COMPLETE = "complete"


class VerificationRun:
    """Progress of one document's verification across its requested criteria."""

    def __init__(self, document_id: int, criteria: Iterable[str] = CRITERION_IDS):
        self.document_id = document_id
        self.criteria: tuple[str, ...] = tuple(criteria)
        self.state = RunState.IDLE
        self.version: int | None = None
        self.verdicts: dict[str, CriterionVerdict] = {}
        self.failed: set[str] = set()

    @property
    def completed(self) -> set[str]:
        return set(self.verdicts)

    @property
    def reported(self) -> set[str]:
        return self.completed | self.failed

    @property
    def pending(self) -> set[str]:
        return set(self.criteria) - self.reported

    def start(self) -> None:
        if self.state is not RunState.IDLE:
            raise RuntimeError(f"run already {self.state.value}")
        self.state = RunState.VERIFYING

    def record(self, criterion: str, verdict: CriterionVerdict | None) -> None:
        if self.state is not RunState.VERIFYING:
            return
        if verdict is None:
            self.failed.add(criterion)
        else:
            self.verdicts[criterion] = verdict
        if not self.pending:
            self.state = RunState.COMPLETE

    def close(self) -> None:
        self.state = RunState.COMPLETE

    def summary(self) -> dict[str, Any]:
        return {
            "documentId": self.document_id,
            "state": self.state.value,
            "version": self.version,
            "completed": sorted(self.completed, key=CRITERION_IDS.index),
            "failed": sorted(self.failed, key=CRITERION_IDS.index),
        }


# ---------------------------------------------------------------------------
# Per-document lock
# ---------------------------------------------------------------------------


class VerificationLocks:
    """Non-blocking per-(case, document) guard against duplicate verification runs."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[tuple[int, int]] = set()

    def acquire(self, case_id: int, document_id: int) -> None:
        key = (case_id, document_id)
        with self._guard:
            if key in self._held:
                raise VerificationInProgressError(f"Document {document_id} is already being verified")
            self._held.add(key)

    def release(self, case_id: int, document_id: int) -> None:
        with self._guard:
            self._held.discard((case_id, document_id))

    def is_locked(self, case_id: int, document_id: int) -> bool:
        with self._guard:
            return (case_id, document_id) in self._held

    @contextmanager
    def hold(self, case_id: int, document_id: int) -> Generator[None, None, None]:
        self.acquire(case_id, document_id)
        try:
            yield
        finally:
            self.release(case_id, document_id)


verification_locks = VerificationLocks()


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def next_version(session: Session, document_id: int) -> int:
    latest = session.execute(
        select(func.max(EvidenceVerification.version)).where(EvidenceVerification.document_id == document_id)
    ).scalar()
    return (latest or 0) + 1


def _store_verdict(
    session: Session, document: Document, verdict: CriterionVerdict, version: int, source: str, model: str,
) -> EvidenceVerification:
    data = verdict.to_dict()
    row = EvidenceVerification(
        case_id=document.case_id,
        document_id=document.id,
        criterion=verdict.criterion,
        version=version,
        tier=verdict.tier,
        score=verdict.score,
        recommendation=verdict.recommendation,
        source=source,
        data_json=json.dumps(data),
        llm_model=model,
    )
    session.add(row)
    return row


def latest_verdicts(session: Session, case_id: int) -> list[EvidenceVerification]:
    """Latest-version verdict per (document, criterion) for a case."""
    rows = session.execute(
        select(EvidenceVerification)
        .where(EvidenceVerification.case_id == case_id)
        .order_by(EvidenceVerification.version.desc(), EvidenceVerification.id.desc())
    ).scalars().all()
    seen: set[tuple[int, str]] = set()
    latest = []
    for row in rows:
        key = (row.document_id, row.criterion)
        if key in seen:
            continue
        seen.add(key)
        latest.append(row)
    return latest


def verdict_payload(row: EvidenceVerification) -> dict[str, Any]:
    data = json_parse(row.data_json, {})
    data.update({
        "criterion": row.criterion,
        "tier": row.tier,
        "score": row.score,
        "recommendation": row.recommendation,
        "version": row.version,
        "source": row.source,
        "documentId": row.document_id,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    })
    for key in _DATA_FIELDS:
        data.setdefault(key, "" if key in ("document_type", "reasoning") else [])
    return data


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def run_document_verification(
    session: Session,
    document: Document,
    client: LLMClient,
    context: str,
    *,
    criteria: Iterable[str] = CRITERION_IDS,
    source: str = "bulk",
    prompts: dict[str, str] | None = None,
    on_criterion_complete: Callable[[str, CriterionVerdict | None], None] | None = None,
) -> VerificationRun:
    """Verify one document against *criteria* concurrently and stage the verdict rows.

    The caller owns the transaction: rows are flushed to *session* but not committed.
    """
    run = VerificationRun(document.id, criteria)
    run.version = next_version(session, document.id)
    run.start()
    prompts = prompts or {}

    async def _one(criterion_id: str) -> None:
        verdict = await verify_criterion(
            client, criterion_id, document.content, context,
            document_name=document.name, system_prompt=prompts.get(f"verify_{criterion_id}"),
        )
        if verdict is not None:
            _store_verdict(session, document, verdict, run.version, source, client.model)
        run.record(criterion_id, verdict)
        if on_criterion_complete is not None:
            on_criterion_complete(criterion_id, verdict)

    try:
        await asyncio.gather(*(_one(c) for c in run.criteria))
    finally:
        run.close()
    if run.verdicts:
        document.evidence_verification_count = (document.evidence_verification_count or 0) + 1
        session.flush()
    return run


async def stream_document_verification(
    session: Session,
    document: Document,
    client: LLMClient,
    context: str,
    **kwargs: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Run a verification and yield a progress event as each criterion reports.

    Yields ``criterion_complete`` / ``criterion_failed`` events and finally a
    ``doc_complete`` event carrying the run summary.
    """
    queue: asyncio.Queue[tuple[str, CriterionVerdict | None]] = asyncio.Queue()
    task = asyncio.create_task(run_document_verification(
        session, document, client, context,
        on_criterion_complete=lambda c, v: queue.put_nowait((c, v)),
        **kwargs,
    ))
    try:
        while not (task.done() and queue.empty()):
            try:
                criterion, verdict = await asyncio.wait_for(queue.get(), timeout=0.25)
            except asyncio.TimeoutError:
                continue
            if verdict is None:
                yield {"type": "criterion_failed", "documentId": document.id, "criterion": criterion}
            else:
                yield {"type": "criterion_complete", "documentId": document.id,
                       "criterion": criterion, "result": verdict.to_dict()}
        run = task.result()
    finally:
        if not task.done():
            task.cancel()
    yield {"type": "doc_complete", "documentId": document.id, **run.summary()}
