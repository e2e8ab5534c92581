"""Registry of editable agent prompts: key -> (label, default content).

Seeded into the ``agent_prompts`` table on first start; the API lets users
edit them, and every agent reads the stored version with the default as
fallback.
"""
from __future__ import annotations

from petition.analysis import ANALYSIS_PROMPTS
from petition.consolidation import DEFAULT_CONSOLIDATION_PROMPT
from petition.criteria import CRITERIA, CRITERION_IDS, verifier_prompt
from petition.denial import DEFAULT_DENIAL_PASS1_PROMPT, DEFAULT_DENIAL_PASS2_PROMPT
from petition.extraction import DEFAULT_CLASSIFY_PROMPT
from petition.recommenders import (
    DEFAULT_EXTRACT_PROMPT, DEFAULT_IMPROVE_CONTEXT_PROMPT, DEFAULT_MAP_PROMPT,
)

DEFAULT_PROMPTS: dict[str, tuple[str, str]] = {
    **{
        f"verify_{cid}": (f"Verification: {cid} {CRITERIA[cid].label}", verifier_prompt(cid))
        for cid in CRITERION_IDS
    },
    "document_classify": ("Document Classification", DEFAULT_CLASSIFY_PROMPT),
    **ANALYSIS_PROMPTS,
    "case_consolidation": ("Case Consolidation", DEFAULT_CONSOLIDATION_PROMPT),
    "denial_pass1": ("Denial Probability: Qualitative Pass", DEFAULT_DENIAL_PASS1_PROMPT),
    "denial_pass2": ("Denial Probability: Probability Pass", DEFAULT_DENIAL_PASS2_PROMPT),
    "recommender_map": ("Recommender Import: Column Mapping", DEFAULT_MAP_PROMPT),
    "recommender_extract": ("Recommender Extraction", DEFAULT_EXTRACT_PROMPT),
    "recommender_context": ("Recommender Relationship Context", DEFAULT_IMPROVE_CONTEXT_PROMPT),
}
