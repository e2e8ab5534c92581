"""Upstream case analyses: strength evaluation, gap analysis and case strategy.

Each analysis is a single LLM call over a text dossier of the case (profile,
document inventory, recommenders, latest per-criterion verdicts) plus the
earlier analyses it depends on. Results are stored as immutable, versioned
``AnalysisArtifact`` rows; readers always take the latest version per kind.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from petition.criteria import C5_INDICATORS, CRITERIA_LABELS, CRITERION_IDS, c5_tier, count_c5_indicators
from petition.llm import LLMClient
from petition.models import AnalysisArtifact, Case, CaseProfile, Document, Recommender
from petition.utils import json_parse
from petition.verification import latest_verdicts

log = logging.getLogger(__name__)

_DOC_EXCERPT_CHARS = 1500
_MAX_CONTEXT_CHARS = 120_000


class MissingPrerequisiteError(Exception):
    """An analysis was requested before the analyses it builds on exist."""
    def __init__(self, kind: str, missing: list[str]):
        super().__init__(f"{kind} requires {', '.join(missing)} to be run first")
        self.kind = kind
        self.missing = missing


# ---------------------------------------------------------------------------
# Default prompts (editable via API)
# ---------------------------------------------------------------------------

DEFAULT_STRENGTH_EVALUATION_PROMPT = """\
You are an EB-1A Strength Evaluation Agent. Evaluate the applicant against all \
ten regulatory criteria (8 CFR 204.5(h)(3)(i)-(x)) using the case data and the \
per-document verification verdicts provided.

For each criterion assign a tier (1 exceptional .. 5 disqualifying), a score \
0-10 using the bands Tier 1 9-10, Tier 2 7-8.9, Tier 3 5-6.9, Tier 4 3-4.9, \
Tier 5 0-2.9, and say whether it is satisfied. For C5 count the six \
significance indicators; indicators_met must equal the number of true booleans.

Then give the Kazarian step 1 result (criteria count threshold: 3 of 10) and \
the step 2 final-merits view (sustained acclaim, top of the field).

Respond with ONLY valid JSON:
{
  "applicant_name": "<name>",
  "detected_field": "<STEM|HEALTHCARE|BUSINESS|ARTS|ATHLETICS|ACADEMIA>",
  "criteria_evaluations": {
    "C1": {"tier": <1-5>, "score": <0-10>, "satisfied": <bool>, "evidence_count": <int>,
           "rfe_risk": "<LOW|MODERATE|HIGH|VERY_HIGH|N_A>", "key_evidence": ["..."],
           "tier_5_flags": ["..."], "scoring_rationale": "...", "improvement_notes": "..."},
    "...": "same shape for C2..C10; C5 adds major_significance_indicators"
  },
  "step1_assessment": {"criteria_satisfied_count": <int>, "criteria_satisfied_list": ["C.."],
                       "step1_result": "<SATISFIED|BORDERLINE|NOT_SATISFIED>"},
  "step2_assessment": {"step2_result": "<STRONG|MODERATE|WEAK>", "step2_rationale": "..."},
  "overall_assessment": {"petition_strength": "<EXCELLENT|STRONG|MODERATE|WEAK|VERY_WEAK>",
                         "overall_score": <0-10>, "approval_probability": "<range>",
                         "recommendation": "<FILE_NOW|STRENGTHEN_FIRST|BUILD_EVIDENCE|CONSIDER_ALTERNATIVE>"}
}
"""

DEFAULT_GAP_ANALYSIS_PROMPT = """\
You are an EB-1A Gap Analysis Agent. Using the strength evaluation and the case \
data, identify what stands between this applicant and an approvable petition.

Prioritise gaps by impact on approval. Each gap names the criterion, the issue, \
the AAO basis, the current and required state, concrete actions, a timeline and \
an estimated cost. List weak evidence that should be removed (it dilutes the \
record) and the recommendation-letter plan.

Respond with ONLY valid JSON:
{
  "executive_summary": {"overall_case_strength": "<STRONG|MODERATE|WEAK|NOT_READY>",
                        "current_approval_probability": <0-100>,
                        "projected_approval_probability": <0-100>,
                        "criteria_satisfied_count": <int>, "total_gaps_identified": <int>},
  "critical_gaps": [{"priority": "<HIGH|MEDIUM|LOW>", "criterion": "C..", "issue": "...",
                     "aao_basis": "...", "current_state": "...", "required_state": "...",
                     "actions": [{"action": "...", "detail": "..."}], "timeline": "...",
                     "estimated_cost": "...", "impact": "..."}],
  "evidence_to_remove": [{"item": "...", "criterion_affected": "C..", "reason_for_removal": "..."}],
  "letter_plan": [{"letter_number": <int>, "recommender_type": "<INNER_CIRCLE|OUTER_CIRCLE>",
                   "target_profile": "...", "criteria_to_address": ["C.."], "key_topics": ["..."]}],
  "alternative_visas": [{"visa_type": "...", "fit_assessment": "...", "estimated_probability": <0-100>}]
}
"""

DEFAULT_CASE_STRATEGY_PROMPT = """\
You are an EB-1A Case Strategy Agent. Using the strength evaluation, the gap \
analysis and the case data, decide how this petition should be argued.

Pick the criteria to claim (aim for at least three, lead with the strongest), \
the narrative that ties them together, the exhibit order, and the filing \
timeline. Be concrete and honest about weaknesses.

Respond with ONLY valid JSON:
{
  "recommended_criteria": [{"criterion": "C..", "role": "<PRIMARY|BACKUP>", "argument": "..."}],
  "narrative_theme": "...",
  "exhibit_strategy": ["..."],
  "letter_strategy": ["..."],
  "filing_timeline": "...",
  "risks": ["..."],
  "next_steps": ["..."]
}
"""

ANALYSIS_PROMPTS = {
    "strength_evaluation": ("Strength Evaluation", DEFAULT_STRENGTH_EVALUATION_PROMPT),
    "gap_analysis": ("Gap Analysis", DEFAULT_GAP_ANALYSIS_PROMPT),
    "case_strategy": ("Case Strategy", DEFAULT_CASE_STRATEGY_PROMPT),
}

PREREQUISITES: dict[str, tuple[str, ...]] = {
    "strength_evaluation": (),
    "gap_analysis": ("strength_evaluation",),
    "case_strategy": ("strength_evaluation", "gap_analysis"),
}


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


def latest_artifact(session: Session, case_id: int, kind: str) -> AnalysisArtifact | None:
    return session.execute(
        select(AnalysisArtifact)
        .where(AnalysisArtifact.case_id == case_id, AnalysisArtifact.kind == kind)
        .order_by(AnalysisArtifact.version.desc(), AnalysisArtifact.id.desc())
        .limit(1)
    ).scalars().first()


def latest_artifact_data(session: Session, case_id: int, kind: str) -> dict[str, Any] | None:
    art = latest_artifact(session, case_id, kind)
    return json_parse(art.data_json, {}) if art else None


def save_artifact(session: Session, case_id: int, kind: str, data: dict[str, Any], model: str = "") -> AnalysisArtifact:
    current = session.execute(
        select(func.max(AnalysisArtifact.version))
        .where(AnalysisArtifact.case_id == case_id, AnalysisArtifact.kind == kind)
    ).scalar()
    art = AnalysisArtifact(
        case_id=case_id, kind=kind, version=(current or 0) + 1,
        data_json=json.dumps(data), llm_model=model,
    )
    session.add(art)
    session.flush()
    return art


def artifact_payload(art: AnalysisArtifact) -> dict[str, Any]:
    return {
        "id": art.id,
        "kind": art.kind,
        "version": art.version,
        "model": art.llm_model,
        "createdAt": art.created_at.isoformat() if art.created_at else None,
        "data": json_parse(art.data_json, {}),
    }


def require_artifacts(session: Session, case_id: int, kind: str, kinds: tuple[str, ...]) -> dict[str, dict[str, Any]]:
    found: dict[str, dict[str, Any]] = {}
    missing: list[str] = []
    for k in kinds:
        data = latest_artifact_data(session, case_id, k)
        if data is None:
            missing.append(k)
        else:
            found[k] = data
    if missing:
        raise MissingPrerequisiteError(kind, missing)
    return found


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


def case_profile_data(session: Session, case_id: int) -> dict[str, Any]:
    profile = session.execute(select(CaseProfile).where(CaseProfile.case_id == case_id)).scalars().first()
    return json_parse(profile.data_json, {}) if profile else {}


def build_case_context(session: Session, case: Case, *, include_verdicts: bool = True) -> str:
    """Text dossier of a case for LLM consumption."""
    sections: list[str] = [f"CASE: {case.name or case.id}"]

    profile = case_profile_data(session, case.id)
    if profile:
        sections.append(f"=== APPLICANT PROFILE ===\n{json.dumps(profile, indent=2)}")

    documents = session.execute(
        select(Document).where(Document.case_id == case.id).order_by(Document.created_at)
    ).scalars().all()
    if documents:
        lines = []
        for d in documents:
            excerpt = (d.content or "")[:_DOC_EXCERPT_CHARS]
            lines.append(f"- [{d.id}] {d.name} ({d.category}, {d.type}, {d.source}, {d.status})"
                         + (f"\n  {excerpt}" if excerpt else ""))
        sections.append(f"=== DOCUMENTS ({len(documents)}) ===\n" + "\n".join(lines))

    recommenders = session.execute(select(Recommender).where(Recommender.case_id == case.id)).scalars().all()
    if recommenders:
        lines = []
        for r in recommenders:
            keys = ", ".join(json_parse(r.criteria_keys_json, [])) or "unassigned"
            lines.append(
                f"- {r.name}, {r.title or 'N/A'} at {r.organization or 'N/A'}\n"
                f"  Relationship: {r.relationship_type} ({r.relationship_context or 'N/A'})\n"
                f"  Credentials: {r.credentials or 'N/A'}\n  Criteria: {keys}"
            )
        sections.append(f"=== RECOMMENDERS ({len(recommenders)}) ===\n" + "\n".join(lines))

    if include_verdicts:
        verdicts = latest_verdicts(session, case.id)
        if verdicts:
            names = {d.id: d.name for d in documents}
            lines = [
                f"- {v.criterion} {CRITERIA_LABELS.get(v.criterion, '')}: {names.get(v.document_id, v.document_id)} "
                f"tier {v.tier}, score {v.score}, {v.recommendation}"
                for v in sorted(verdicts, key=lambda v: (CRITERION_IDS.index(v.criterion), -v.score))
                if v.criterion in CRITERION_IDS
            ]
            sections.append("=== EVIDENCE VERIFICATION ===\n" + "\n".join(lines))

    return "\n\n".join(sections)[:_MAX_CONTEXT_CHARS]


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------


def _normalize_strength_evaluation(data: dict[str, Any]) -> dict[str, Any]:
    evaluations = data.get("criteria_evaluations")
    if not isinstance(evaluations, dict):
        return data
    for key, value in evaluations.items():
        if not (isinstance(value, dict) and key.split("_")[0] == "C5"):
            continue
        indicators = value.get("major_significance_indicators")
        if isinstance(indicators, dict):
            met = count_c5_indicators({k: indicators.get(k) for k in C5_INDICATORS})
            indicators["indicators_met"] = met
            value["tier"] = c5_tier(met)
    return data


async def run_analysis(
    session: Session,
    case: Case,
    kind: str,
    client: LLMClient | None = None,
    prompts: dict[str, str] | None = None,
) -> AnalysisArtifact:
    """Run one upstream analysis and store it as a new artifact version. Caller commits."""
    if kind not in PREREQUISITES:
        raise ValueError(f"Unknown analysis kind: {kind}")
    upstream = require_artifacts(session, case.id, kind, PREREQUISITES[kind])
    client = client or LLMClient()

    parts = [build_case_context(session, case)]
    for k, data in upstream.items():
        parts.append(f"=== {k.upper()} ===\n{json.dumps(data, indent=2)}")
    system = (prompts or {}).get(kind) or ANALYSIS_PROMPTS[kind][1]
    data = await client.call(system, "\n\n".join(parts))
    if kind == "strength_evaluation":
        data = _normalize_strength_evaluation(data)
    log.info("Case %s: %s complete", case.id, kind)
    return save_artifact(session, case.id, kind, data, client.model)
