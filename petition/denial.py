"""Denial-probability synthesis.

Two streamed passes:

1. qualitative: Kazarian step 1/2, field context, criterion risks, letter
   portfolio, red flags, strengths;
2. quantitative: probability breakdown, overall assessment, recommendations,
   filing recommendation, computed from pass 1 and the evidence inventory.

While a pass streams, every time the accumulated model text can be closed
into a valid JSON object it is emitted as a ``data:`` line (pass 2 partials
are merged over the final pass 1 object). The last line is the finalized
report, made internally consistent by :func:`finalize_report`.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from petition.analysis import (
    build_case_context, case_profile_data, latest_artifact_data, require_artifacts, save_artifact,
)
from petition.llm import LLMCallError, LLMClient, extract_json_text
from petition.models import Case, Document, Recommender
from petition.routing import compute_routing
from petition.streaming import parse_partial_json, sse_event
from petition.utils import clamp, to_int
from petition.verification import latest_verdicts

log = logging.getLogger(__name__)

PREREQUISITES = ("strength_evaluation", "gap_analysis")

MIN_PCT = 5
MAX_PCT = 95
MAX_RFE_PCT = 90
NO_RECOMMENDER_PENALTY = 15

DEFAULT_DENIAL_PASS1_PROMPT = """\
You are a Denial Probability Engine for an EB-1A (Extraordinary Ability) \
petition. Do not use emojis.

You receive the evidence inventory, the case data (profile, documents, \
recommenders, verification verdicts), the strength evaluation and the gap \
analysis, and optionally the consolidated case profile.

This pass produces QUALITATIVE ANALYSIS ONLY. Probabilities are computed in a \
separate pass.

EMPTY OR MINIMAL EVIDENCE:
- 0 documents, 0 recommenders, no verification verdicts, or fewer than 3 \
criteria with any evidence are each a HIGH red flag.
- Never list strengths that do not exist in the data.

Respond with ONLY valid JSON:
{
  "kazarian_analysis": {
    "step1": {"criteria_met_count": <int>, "criteria_met": ["C.."], "threshold_met": <bool>,
              "risk_score": <0-100>, "analysis": "..."},
    "step2": {"sustained_acclaim": "<STRONG|MODERATE|WEAK>", "top_of_field": "<STRONG|MODERATE|WEAK>",
              "geographic_scope": "<INTERNATIONAL|NATIONAL|REGIONAL|LOCAL>", "risk_score": <0-100>,
              "analysis": "..."}
  },
  "field_context": {"field": "...", "baseline_approval_rate": <0-100>, "comparison": "<ABOVE|AT|BELOW>",
                    "benchmarks": {}},
  "criterion_risk_assessments": [{"criterion": "C..", "classification": "<PRIMARY|SECONDARY|WEAK>",
                                  "evidence_strength": <0-100>,
                                  "documentation_status": "<COMPLETE|PARTIAL|INSUFFICIENT>",
                                  "rfe_risk": <0-100>, "denial_risk": <0-100>, "issues": ["..."]}],
  "letter_analysis": {"total": <int>, "independent": <int>, "collaborative": <int>,
                      "independent_pct": <0-100>, "portfolio_risk": "<LOW|MEDIUM|HIGH>", "issues": ["..."]},
  "red_flags": [{"severity": "<HIGH|MEDIUM|LOW>", "flag": "...", "impact": "..."}],
  "strengths": ["..."]
}
"""

DEFAULT_DENIAL_PASS2_PROMPT = """\
You are a probability calculator for EB-1A denial risk. Do not use emojis.

You receive a completed qualitative analysis plus the evidence inventory. \
Compute the probability breakdown, overall assessment, recommendations and \
filing recommendation.

ALL PERCENTAGES ARE WHOLE INTEGERS (30 means 30%).

CALCULATION:
- Start with the field base denial rate (100 - baseline approval rate).
- Apply adjustments (criteria satisfied, step 2 merits, C5 tier, red flags, \
letters, documentation gaps); positive delta_pct increases denial.
- Clamp to 5-95. denial_probability_pct MUST EQUAL final_denial_probability.
- rfe_probability_pct: 1.5-2x denial, capped at 90.
- risk_level: LOW <20, MEDIUM 20-40, HIGH 40-60, VERY_HIGH >=60.

EMPTY EVIDENCE RULES:
- 0 documents: denial >= 85
- 0 recommenders: +15
- No verification analysis: denial >= 90
- <3 criteria with evidence: denial >= 70

FILING RECOMMENDATION:
- FILE_NOW: denial < 15
- FILE_WITH_CAUTION: denial 15-30
- STRENGTHEN_FIRST: denial 30-50
- MAJOR_GAPS: denial 50-70
- CONSIDER_ALTERNATIVE: denial > 70

Respond with ONLY valid JSON:
{
  "probability_breakdown": {"base_denial_rate": <int>, "adjustments": [{"factor": "...", "delta_pct": <int>}],
                            "final_denial_probability": <int>},
  "overall_assessment": {"risk_level": "<LOW|MEDIUM|HIGH|VERY_HIGH>", "denial_probability_pct": <int>,
                         "rfe_probability_pct": <int>, "confidence": "<HIGH|MEDIUM|LOW>", "summary": "..."},
  "recommendations": {"critical": [{"action": "...", "guidance": "..."}],
                      "high_priority": [{"action": "...", "guidance": "..."}],
                      "moderate_priority": [{"action": "...", "guidance": "..."}]},
  "filing_recommendation": {"recommendation": "<FILE_NOW|FILE_WITH_CAUTION|STRENGTHEN_FIRST|MAJOR_GAPS|CONSIDER_ALTERNATIVE>",
                            "rationale": "..."}
}
"""


@dataclass(frozen=True)
class EvidenceInventory:
    documents: int
    recommenders: int
    profile_present: bool
    analysis_present: bool
    criteria_with_evidence: int

    def to_text(self) -> str:
        return (
            "=== EVIDENCE INVENTORY ===\n"
            f"Documents: {self.documents}\n"
            f"Recommenders: {self.recommenders}\n"
            f"Profile: {'present' if self.profile_present else 'empty'}\n"
            f"Verification analysis: {'present' if self.analysis_present else 'none'}\n"
            f"Criteria with evidence: {self.criteria_with_evidence}"
        )


def build_inventory(session: Session, case_id: int) -> EvidenceInventory:
    documents = session.execute(select(Document).where(Document.case_id == case_id)).scalars().all()
    verdicts = latest_verdicts(session, case_id)
    routing = compute_routing(documents, verdicts)
    recommenders = session.execute(
        select(func.count(Recommender.id)).where(Recommender.case_id == case_id)
    ).scalar() or 0
    return EvidenceInventory(
        documents=len(documents),
        recommenders=recommenders,
        profile_present=bool(case_profile_data(session, case_id)),
        analysis_present=bool(verdicts),
        criteria_with_evidence=sum(1 for entries in routing.values() if entries),
    )


# ---------------------------------------------------------------------------
# Consistency rules
# ---------------------------------------------------------------------------


def risk_level_for(pct: int) -> str:
    if pct >= 60:
        return "VERY_HIGH"
    if pct >= 40:
        return "HIGH"
    if pct >= 20:
        return "MEDIUM"
    return "LOW"


def filing_recommendation_for(pct: int) -> str:
    if pct < 15:
        return "FILE_NOW"
    if pct < 30:
        return "FILE_WITH_CAUTION"
    if pct < 50:
        return "STRENGTHEN_FIRST"
    if pct <= 70:
        return "MAJOR_GAPS"
    return "CONSIDER_ALTERNATIVE"


def _has_recommender_penalty(adjustments: list[Any]) -> bool:
    return any(
        isinstance(a, dict) and "recommender" in str(a.get("factor", "")).lower()
        and to_int(a.get("delta_pct")) >= NO_RECOMMENDER_PENALTY
        for a in adjustments
    )


def finalize_report(report: dict[str, Any], inventory: EvidenceInventory) -> dict[str, Any]:
    """Make the merged report internally consistent and apply the empty-evidence floors."""
    breakdown = report.get("probability_breakdown")
    if not isinstance(breakdown, dict):
        breakdown = {}
    overall = report.get("overall_assessment")
    if not isinstance(overall, dict):
        overall = {}
    adjustments = breakdown.get("adjustments")
    if not isinstance(adjustments, list):
        adjustments = []

    if breakdown.get("final_denial_probability") is not None:
        pct = to_int(breakdown["final_denial_probability"])
    elif overall.get("denial_probability_pct") is not None:
        pct = to_int(overall["denial_probability_pct"])
    else:
        pct = to_int(breakdown.get("base_denial_rate"), default=50) + sum(
            to_int(a.get("delta_pct")) for a in adjustments if isinstance(a, dict)
        )

    if inventory.recommenders == 0 and not _has_recommender_penalty(adjustments):
        adjustments.append({"factor": "No recommenders on file", "delta_pct": NO_RECOMMENDER_PENALTY})
        pct += NO_RECOMMENDER_PENALTY
    if inventory.documents == 0:
        pct = max(pct, 85)
    if not inventory.analysis_present:
        pct = max(pct, 90)
    if inventory.criteria_with_evidence < 3:
        pct = max(pct, 70)
    pct = int(clamp(pct, MIN_PCT, MAX_PCT))

    breakdown["adjustments"] = adjustments
    breakdown["final_denial_probability"] = pct
    overall["denial_probability_pct"] = pct
    overall["risk_level"] = risk_level_for(pct)

    rfe_low, rfe_high = min(round(pct * 1.5), MAX_RFE_PCT), min(pct * 2, MAX_RFE_PCT)
    rfe = overall.get("rfe_probability_pct")
    rfe = to_int(rfe, default=rfe_low) if rfe is not None else rfe_low
    overall["rfe_probability_pct"] = int(clamp(rfe, rfe_low, rfe_high))

    filing = report.get("filing_recommendation")
    if not isinstance(filing, dict):
        filing = {}
    expected = filing_recommendation_for(pct)
    if filing.get("recommendation") != expected:
        filing["recommendation"] = expected
        filing.setdefault("rationale", "")
    report["probability_breakdown"] = breakdown
    report["overall_assessment"] = overall
    report["filing_recommendation"] = filing
    return report


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


@dataclass
class DenialContext:
    context: str
    inventory: EvidenceInventory


def prepare_denial_context(session: Session, case: Case) -> DenialContext:
    """Gather inputs for a run. Raises MissingPrerequisiteError before anything streams."""
    upstream = require_artifacts(session, case.id, "denial_probability", PREREQUISITES)
    inventory = build_inventory(session, case.id)
    parts = [inventory.to_text(), build_case_context(session, case)]
    for kind, data in upstream.items():
        parts.append(f"=== {kind.upper()} ===\n{json.dumps(data, indent=2)}")
    consolidation = latest_artifact_data(session, case.id, "case_consolidation")
    if consolidation:
        parts.append(f"=== CASE CONSOLIDATION ===\n{json.dumps(consolidation, indent=2)}")
    return DenialContext(context="\n\n".join(parts), inventory=inventory)


async def _stream_pass(
    client: LLMClient, system: str, user: str, base: dict[str, Any],
) -> AsyncIterator[tuple[dict[str, Any], bool]]:
    """Yield (merged partial, is_final) while the model streams one pass."""
    text = ""
    last: dict[str, Any] | None = None
    async for delta in client.stream_text(system, user):
        text += delta
        partial = parse_partial_json(text)
        if partial is not None and partial != last:
            last = partial
            yield {**base, **partial}, False
    try:
        final = json.loads(extract_json_text(text))
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
    if not isinstance(final, dict):
        raise LLMCallError("LLM returned a non-object report")
    yield {**base, **final}, True


async def stream_denial_probability(
    session: Session,
    case: Case,
    prepared: DenialContext,
    client: LLMClient | None = None,
    prompts: dict[str, str] | None = None,
) -> AsyncIterator[str]:
    """SSE lines for a full two-pass run; stores the final report as an artifact."""
    client = client or LLMClient()
    prompts = prompts or {}
    try:
        pass1: dict[str, Any] = {}
        async for merged, is_final in _stream_pass(
            client, prompts.get("denial_pass1") or DEFAULT_DENIAL_PASS1_PROMPT,
            "Perform a qualitative denial probability assessment on the following case data, "
            f"strength evaluation, and gap analysis:\n\n{prepared.context}",
            {},
        ):
            if is_final:
                pass1 = merged
            yield sse_event(merged)

        report: dict[str, Any] = dict(pass1)
        async for merged, is_final in _stream_pass(
            client, prompts.get("denial_pass2") or DEFAULT_DENIAL_PASS2_PROMPT,
            "Compute probability breakdown, overall assessment, recommendations, and filing "
            f"recommendation from this qualitative analysis.\n\n{prepared.inventory.to_text()}\n\n"
            f"=== QUALITATIVE ANALYSIS ===\n{json.dumps(pass1, indent=2)}",
            pass1,
        ):
            if is_final:
                report = merged
            else:
                yield sse_event(merged)

        report = finalize_report(report, prepared.inventory)
        save_artifact(session, case.id, "denial_probability", report, client.model)
        session.commit()
        yield sse_event(report)
    except LLMCallError as exc:
        session.rollback()
        log.warning("Denial probability failed for case %s: %s", case.id, exc)
        yield sse_event({"error": "Denial probability assessment failed"})
