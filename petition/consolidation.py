"""Case consolidation: one ranked master view of the whole case.

The LLM writes the narrative sections (candidate profile, evidence inventory,
letter strategy, risk notes). The criteria ranking is computed here, never
taken from the model, so identical inputs always give identical
PRIMARY / BACKUP / DROP assignments and order.

Ranking order: verification score desc, tier asc, verified-claim count desc,
red-flag count asc, then criterion number.

Classification:

- DROP: no evidence on file, any Tier 5 item for the criterion, tier >= 4,
  score < 3.0, or a critical red flag.
- PRIMARY: tier <= 3 and score >= 5.0.
- BACKUP: everything else.

When fewer than three criteria are recommended, the best-ranked DROP
criteria that still have usable evidence are promoted to BACKUP.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from petition.analysis import build_case_context, require_artifacts, save_artifact
from petition.checklist import current_documents
from petition.criteria import CRITERIA_LABELS, CRITERION_IDS, criterion_sort_key
from petition.llm import LLMClient
from petition.models import AnalysisArtifact, Case, Document
from petition.utils import json_parse
from petition.verification import latest_verdicts

log = logging.getLogger(__name__)

MIN_RECOMMENDED = 3
PRIMARY_MAX_TIER = 3
PRIMARY_MIN_SCORE = 5.0
DROP_MIN_TIER = 4
DROP_MAX_SCORE = 3.0

CRITICAL_FLAG_MARKERS = ("critical", "disqualif", "fraud", "fabricat", "misrepresent", "forged")

PREREQUISITES = ("strength_evaluation", "gap_analysis", "case_strategy")

DEFAULT_CONSOLIDATION_PROMPT = """\
You are the EB-1A Case Consolidation & Prioritization Agent. Consolidate all \
upstream pipeline outputs into a master case profile JSON. Do not use emojis.

You receive: the candidate profile and documents, the criteria evaluation \
(strength evaluation), the gap analysis, the case strategy, and the evidence \
verification results per criterion, plus a pre-computed CRITERIA RANKING. \
The ranking is final: build the narrative around it, do not re-rank.

Respond with ONLY valid JSON:
{
  "candidate_profile": {"name": "...", "field_of_expertise": "...", "current_position": "...",
                        "institution": "...", "years_experience": <int>, "education_summary": "...",
                        "key_metrics": {}},
  "petition_strategy": {"approach": "...", "narrative_theme": "...", "lead_argument": "..."},
  "evidence_inventory": {"by_criterion": {"C..": {"overall_strength": "<strong|moderate|weak|no_evidence>",
                                                   "gaps": ["..."]}},
                         "evidence_to_remove": [{"document": "...", "criterion": "C..", "reason": "..."}],
                         "evidence_to_obtain": [{"criterion": "C..", "document_type": "...",
                                                 "priority": "<CRITICAL|HIGH|MEDIUM>", "description": "..."}]},
  "letter_strategy": [{"letter_number": <int>, "recommender_type": "...", "suggested_profile": "...",
                       "criteria_to_address": ["C.."]}],
  "petition_structure": ["..."],
  "gap_priorities": ["..."],
  "risk_assessment": {"overall_risk": "<LOW|MEDIUM|HIGH>", "key_risks": ["..."]},
  "narrative_anchors": ["..."]
}
"""


@dataclass
class CriterionSummary:
    criterion: str
    tier: int | None = None
    verification_score: float = 0.0
    verified_claims_count: int = 0
    unverified_claims_count: int = 0
    red_flags_count: int = 0
    red_flag_details: list[str] = field(default_factory=list)
    missing_documents: list[str] = field(default_factory=list)
    documents_on_file: list[str] = field(default_factory=list)
    has_tier5: bool = False

    @property
    def has_evidence(self) -> bool:
        return bool(self.documents_on_file)

    @property
    def has_critical_flag(self) -> bool:
        return any(m in flag.lower() for flag in self.red_flag_details for m in CRITICAL_FLAG_MARKERS)


@dataclass
class CriterionRanking:
    criterion: str
    name: str
    rank: int
    tier: int | None
    verification_score: float
    classification: str
    rationale: str
    verified_claims_count: int
    unverified_claims_count: int
    red_flags_count: int
    red_flag_details: list[str]
    missing_documents: list[str]
    documents_on_file: list[str]
    promoted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def _verdict_data(v: Any) -> dict[str, Any]:
    return json_parse(getattr(v, "data_json", None), {})


def _lead_key(v: Any) -> tuple:
    data = _verdict_data(v)
    return (-(v.score or 0.0), v.tier or 5, -len(data.get("verified_claims") or []),
            len(data.get("red_flags") or []), v.document_id)


def summarize_criterion(criterion: str, verdicts: Iterable[Any], doc_names: Mapping[int, str]) -> CriterionSummary:
    """Summarise one criterion from the latest verdicts of current documents."""
    summary = CriterionSummary(criterion=criterion)
    mine = [v for v in verdicts if v.criterion == criterion]
    summary.has_tier5 = any(v.tier == 5 for v in mine)
    routed = [v for v in mine if v.recommendation != "EXCLUDE"]
    if not routed:
        return summary
    routed.sort(key=_lead_key)
    lead = routed[0]
    data = _verdict_data(lead)
    summary.tier = lead.tier
    summary.verification_score = round(float(lead.score or 0.0), 1)
    summary.verified_claims_count = len(data.get("verified_claims") or [])
    summary.unverified_claims_count = len(data.get("unverified_claims") or [])
    summary.red_flag_details = list(data.get("red_flags") or [])
    summary.red_flags_count = len(summary.red_flag_details)
    summary.missing_documents = list(data.get("missing_documents") or [])
    summary.documents_on_file = [doc_names.get(v.document_id, str(v.document_id)) for v in routed]
    return summary


def _ranking_key(s: CriterionSummary) -> tuple:
    return (-s.verification_score, s.tier if s.tier is not None else 6,
            -s.verified_claims_count, s.red_flags_count, criterion_sort_key(s.criterion))


def _classify(s: CriterionSummary) -> tuple[str, str]:
    if not s.has_evidence:
        return "DROP", "No verified evidence on file."
    if s.has_tier5:
        return "DROP", "A disqualifying (Tier 5) item is on file for this criterion."
    if s.tier is not None and s.tier >= DROP_MIN_TIER:
        return "DROP", f"Best evidence is Tier {s.tier}."
    if s.verification_score < DROP_MAX_SCORE:
        return "DROP", f"Verification score {s.verification_score} is below {DROP_MAX_SCORE}."
    if s.has_critical_flag:
        return "DROP", "A critical red flag is attached to the best evidence."
    if s.tier is not None and s.tier <= PRIMARY_MAX_TIER and s.verification_score >= PRIMARY_MIN_SCORE:
        return "PRIMARY", f"Tier {s.tier} evidence scoring {s.verification_score}."
    return "BACKUP", f"Tier {s.tier} evidence scoring {s.verification_score}; needs support."


def rank_criteria(summaries: Mapping[str, CriterionSummary]) -> list[CriterionRanking]:
    """Deterministic ranking of all ten criteria."""
    full = [summaries.get(cid) or CriterionSummary(criterion=cid) for cid in CRITERION_IDS]
    ordered = sorted(full, key=_ranking_key)

    rankings = []
    for rank, s in enumerate(ordered, start=1):
        classification, rationale = _classify(s)
        rankings.append(CriterionRanking(
            criterion=s.criterion, name=CRITERIA_LABELS[s.criterion], rank=rank, tier=s.tier,
            verification_score=s.verification_score, classification=classification, rationale=rationale,
            verified_claims_count=s.verified_claims_count, unverified_claims_count=s.unverified_claims_count,
            red_flags_count=s.red_flags_count, red_flag_details=s.red_flag_details,
            missing_documents=s.missing_documents, documents_on_file=s.documents_on_file,
        ))

    by_id = {s.criterion: s for s in ordered}
    recommended = sum(1 for r in rankings if r.classification != "DROP")
    for r in rankings:
        if recommended >= MIN_RECOMMENDED:
            break
        s = by_id[r.criterion]
        if r.classification != "DROP" or not s.has_evidence or s.has_tier5 or s.has_critical_flag:
            continue
        if s.tier is None or s.tier >= 5:
            continue
        r.classification = "BACKUP"
        r.promoted = True
        r.rationale += " Promoted to BACKUP to reach the minimum of three claimed criteria."
        recommended += 1
    return rankings


def ranking_for_case(session: Session, case_id: int) -> list[CriterionRanking]:
    docs = current_documents(session.execute(select(Document).where(Document.case_id == case_id)).scalars().all())
    doc_names = {d.id: d.name for d in docs}
    verdicts = [v for v in latest_verdicts(session, case_id) if v.document_id in doc_names]
    summaries = {cid: summarize_criterion(cid, verdicts, doc_names) for cid in CRITERION_IDS}
    return rank_criteria(summaries)


def apply_ranking(data: dict[str, Any], rankings: list[CriterionRanking]) -> dict[str, Any]:
    """Overwrite the model's ranking fields with the deterministic ranking."""
    data["criteria_ranking"] = [r.to_dict() for r in rankings]
    strategy = data.get("petition_strategy")
    if not isinstance(strategy, dict):
        strategy = {}
    strategy["primary_criteria"] = [r.criterion for r in rankings if r.classification == "PRIMARY"]
    strategy["backup_criteria"] = [r.criterion for r in rankings if r.classification == "BACKUP"]
    strategy["dropped_criteria"] = [r.criterion for r in rankings if r.classification == "DROP"]
    data["petition_strategy"] = strategy
    return data


async def run_case_consolidation(
    session: Session,
    case: Case,
    client: LLMClient | None = None,
    prompts: dict[str, str] | None = None,
) -> AnalysisArtifact:
    """Consolidate all upstream analyses into a stored master profile. Caller commits."""
    upstream = require_artifacts(session, case.id, "case_consolidation", PREREQUISITES)
    client = client or LLMClient()
    rankings = ranking_for_case(session, case.id)

    parts = [build_case_context(session, case)]
    for kind, data in upstream.items():
        parts.append(f"=== {kind.upper()} ===\n{json.dumps(data, indent=2)}")
    parts.append("=== CRITERIA RANKING (final) ===\n" + json.dumps([r.to_dict() for r in rankings], indent=2))

    system = (prompts or {}).get("case_consolidation") or DEFAULT_CONSOLIDATION_PROMPT
    data = await client.call(system, "\n\n".join(parts))
    data = apply_ranking(data, rankings)
    log.info("Case %s consolidated: %s", case.id, data["petition_strategy"]["primary_criteria"])
    return save_artifact(session, case.id, "case_consolidation", data, client.model)
