"""EB-1A criterion catalogue, tier rubrics and deterministic tier rules.

Each of the ten regulatory criteria (8 CFR 204.5(h)(3)(i)-(x)) has:

- a label and citation,
- a tier rubric (Tier 1 strongest .. Tier 5 disqualifying) with score bands,
- an optional criterion-specific test object the verifier must fill in
  (e.g. the C2 three-part test or the C5 significance indicators).

The verifier system prompt for each criterion is assembled from these pieces
so that the rubric text and the normalisation code never drift apart.
"""
from __future__ import annotations

from dataclasses import dataclass, field

RECOMMENDATIONS = ("STRONG", "INCLUDE_WITH_SUPPORT", "NEEDS_MORE_DOCS", "EXCLUDE")

# (tier, lowest score in band)
TIER_SCORE_BANDS: tuple[tuple[int, float], ...] = ((1, 9.0), (2, 7.0), (3, 5.0), (4, 3.0), (5, 0.0))

C5_INDICATORS = (
    "widespread_adoption",
    "commercial_validation",
    "research_impact",
    "independent_adoption",
    "expert_validation",
    "field_transformation",
)


@dataclass(frozen=True)
class Criterion:
    id: str
    label: str
    citation: str
    description: str
    tiers: tuple[str, str, str, str, str]
    checklist: tuple[str, ...] = ()
    test_name: str | None = None
    test_fields: tuple[str, ...] = ()
    test_preamble: str = ""
    extra_rules: tuple[str, ...] = field(default_factory=tuple)


CRITERIA: dict[str, Criterion] = {c.id: c for c in (
    Criterion(
        id="C1", label="Awards & Prizes", citation="8 CFR 204.5(h)(3)(i)",
        description="nationally or internationally recognized prizes or awards for excellence in the field",
        tiers=(
            "Nobel, Pulitzer, Oscar, Fields Medal, Turing Award, MacArthur Fellowship",
            "Major professional society awards, government national awards, top international competition",
            "Competitive fellowships (NSF GRFP, Rhodes, Fulbright), university awards with broader recognition",
            "Single-university awards without external validation",
            "Employee of the Month, participation certificates, Dean's List, course completion",
        ),
        checklist=(
            "Is this an award/prize (not a certificate of participation, degree, or employment recognition)?",
            "Is it for excellence in the field (not general academic or employment)?",
            "Is it nationally or internationally recognized (not internal/institutional only)?",
            "Is there documentation of selectivity (acceptance rate, number of applicants)?",
            "Is the awarding body reputable and recognized?",
        ),
    ),
    Criterion(
        id="C2", label="Membership in Associations", citation="8 CFR 204.5(h)(3)(ii)",
        description=("membership in associations that require outstanding achievements of their members, "
                     "as judged by recognized national or international experts"),
        tiers=(
            "National Academy (NAS, NAE, NAM), Royal Society Fellow. <1% acceptance",
            "Fellow-level in a major society (IEEE Fellow, ACM Fellow). <5% acceptance",
            "Senior member with documented selective process. 5-15% acceptance",
            "Standard professional membership with some selection",
            "Basic membership, dues-based, automatic",
        ),
        checklist=(
            "Does the document show actual membership (not just application or interest)?",
            "Does it identify the association and its membership criteria?",
            "Is there evidence of selective admission (<15% acceptance ideal)?",
            "Are the judges/selectors recognized experts?",
        ),
        test_name="three_part_test",
        test_fields=("outstanding_achievement_required", "expert_judgment_documented", "distinct_from_employment"),
        test_preamble="THREE-PART TEST (all must be satisfied)",
    ),
    Criterion(
        id="C3", label="Published Material About Applicant", citation="8 CFR 204.5(h)(3)(iii)",
        description=("published material in professional or major trade publications or other major media "
                     "ABOUT the applicant and their work"),
        tiers=(
            "Top-tier outlets (NYT, WSJ, BBC, Nature News) specifically about the applicant. Circulation >1M",
            "Major national media. 3+ independent outlets. Substantial discussion",
            "Regional media or niche trade publications. 2-3 outlets",
            "Local media, brief mentions",
            "Press releases, marketing materials, self-published, social media",
        ),
        checklist=(
            "Is the material primarily ABOUT the applicant (not just mentioning them)?",
            "Is it in a major trade publication or major media outlet?",
            "Can you verify title, date, and author?",
            "Is it editorially independent (not a press release or paid placement)?",
        ),
        test_name="about_test",
        test_fields=("primarily_about_petitioner", "major_media_or_trade_pub",
                     "title_date_author_present", "independent_editorial"),
        test_preamble="ABOUT TEST (all should be satisfied for strong evidence)",
    ),
    Criterion(
        id="C4", label="Judging the Work of Others", citation="8 CFR 204.5(h)(3)(iv)",
        description="participation as a judge of the work of others in the same or an allied field",
        tiers=(
            "Editor for a major journal AND 200+ reviews, or senior conference role at a top venue",
            "Editorial board OR 100+ reviews, or conference senior PC",
            "PC member AND 50+ reviews",
            "<50 reviews. Low-impact journals only",
            "Grading students, internal code reviews, predatory journals",
        ),
        checklist=(
            "Does the document prove actual judging/reviewing activity (not just an invitation)?",
            "Is this peer review (not student grading or internal code review)?",
            "What is the prestige of the journal/conference/competition?",
            "Is there evidence of multiple reviews or sustained involvement?",
        ),
        test_name="judging_test",
        test_fields=("actual_participation_proven", "peers_not_students",
                     "venue_prestige_documented", "sustained_pattern"),
        test_preamble="JUDGING TEST",
    ),
    Criterion(
        id="C5", label="Original Contributions of Major Significance", citation="8 CFR 204.5(h)(3)(v)",
        description=("original scientific, scholarly, artistic, athletic, or business-related contributions "
                     "of major significance in the field"),
        tiers=(
            "4+ significance indicators met",
            "3 significance indicators met",
            "2 significance indicators met",
            "1 significance indicator met",
            "No indicators of major significance. Routine work without field impact",
        ),
        checklist=(
            "Does the document show an ORIGINAL contribution (not routine work)?",
            "Are there concrete metrics (adoption numbers, citations, revenue)?",
            "Is there independent validation of the contribution's impact?",
        ),
        test_name="significance_indicators",
        test_fields=C5_INDICATORS,
        test_preamble="SIGNIFICANCE INDICATORS (count how many are evidenced)",
        extra_rules=(
            "widespread_adoption: 3+ independent orgs OR 100M+ end users",
            "commercial_validation: $1M+ licensing revenue OR production deployment at scale",
            "research_impact: 100+ citations AND growing >=20% YoY",
            "independent_adoption: 2+ companies the applicant NEVER worked for use the work",
            "expert_validation: 3+ letters with specific 'transformative' language and metrics",
            "field_transformation: changed standard practice field-wide",
            "Tier is set by the indicator count: >=4 Tier 1, 3 Tier 2, 2 Tier 3, 1 Tier 4, 0 Tier 5.",
            "indicators_met must equal the count of true indicator booleans.",
        ),
    ),
    Criterion(
        id="C6", label="Scholarly Articles", citation="8 CFR 204.5(h)(3)(vi)",
        description="authorship of scholarly articles in professional journals or other major media in the field",
        tiers=(
            "h-index >=15, citations >=800, publications in Nature/Science/Cell, first author at top venues",
            "h-index >=10, citations >=400, top 10% journals by impact factor, A* conference papers",
            "h-index >=5, citations >=100, mid-tier peer-reviewed journals",
            "Sporadic publications, long gaps, low-impact venues",
            "Predatory journals (pay-to-publish), unpublished manuscripts, non-peer-reviewed",
        ),
        checklist=(
            "Is the applicant an author of the article(s)?",
            "Is the venue peer-reviewed and in the applicant's field?",
            "Are citation metrics or venue rankings documented?",
        ),
        test_name="publication_metrics",
        test_fields=("h_index", "total_citations", "first_author_count", "top_venue_count"),
        test_preamble="PUBLICATION METRICS (numbers, omit what the document does not state)",
    ),
    Criterion(
        id="C7", label="Artistic Exhibitions", citation="8 CFR 204.5(h)(3)(vii)",
        description="display of the applicant's work at artistic exhibitions or showcases",
        tiers=(
            "Solo exhibition at a major museum (MoMA, Tate, Guggenheim), Venice/Whitney Biennale",
            "Curated group show at a recognized museum, major film festival selection (Cannes, Sundance)",
            "Juried exhibition with <10% acceptance, established regional gallery with national reach",
            "Non-juried group shows, galleries without established reputation",
            "Self-organized exhibitions, pay-to-display, community center or coffee shop shows",
        ),
        checklist=(
            "Is the displayed work artistic in nature?",
            "Is the venue's prestige documented?",
            "Was selection merit-based (juried, curated)?",
        ),
        test_name="exhibition_test",
        test_fields=("artistic_nature", "venue_prestige_documented", "merit_based_selection", "critical_reception"),
        test_preamble="EXHIBITION TEST",
    ),
    Criterion(
        id="C8", label="Leading or Critical Role", citation="8 CFR 204.5(h)(3)(viii)",
        description="performance in a leading or critical role for organizations with a distinguished reputation",
        tiers=(
            "C-suite at a Fortune 500, PI at a top research university, founding engineer at a unicorn",
            "VP/Director at a well-known company, lab lead at an R1 university, CTO at a funded startup ($10M+)",
            "Senior role at a mid-size company, critical technical role with documented project impact",
            "Junior/mid-level role, organization lacks documented reputation",
            "Unknown organization without reputation, self-employment without distinguished clients",
        ),
        checklist=(
            "Is the role leading (title, authority) or critical (impact on outcomes)?",
            "Is the organization's distinguished reputation documented?",
            "Does the impact reach beyond a single department?",
        ),
        test_name="two_part_test",
        test_fields=("role_type", "role_documented", "org_reputation_proven",
                     "impact_beyond_department", "field_wide_recognition"),
        test_preamble="TWO-PART TEST (role_type is one of leading, critical, unclear)",
    ),
    Criterion(
        id="C9", label="High Salary", citation="8 CFR 204.5(h)(3)(ix)",
        description="a high salary or other significantly high remuneration in relation to others in the field",
        tiers=(
            ">=95th percentile with multi-source data (BLS + DOL + 2 surveys), multi-year W-2 pattern",
            ">=90th percentile with BLS + one additional source",
            "Above average but <90th percentile, or adequate salary with insufficient comparative data",
            "No comparative data, wrong geographic comparison, one-time bonus only",
            "Below field average, no documentation, benefits counted as salary",
        ),
        checklist=(
            "Is compensation documented (W-2, offer letter, pay stubs)?",
            "Is comparative data present for the same occupation and geography?",
        ),
        test_name="salary_analysis",
        test_fields=("compensation_documented", "comparative_data_present", "percentile_estimate",
                     "geographic_match", "multi_year_pattern"),
        test_preamble="SALARY ANALYSIS (percentile_estimate is a short string)",
    ),
    Criterion(
        id="C10", label="Commercial Success", citation="8 CFR 204.5(h)(3)(x)",
        description="commercial successes in the performing arts, shown by box office receipts or sales",
        tiers=(
            "Billboard #1/Top 10, $100M+ box office, platinum album, 500M+ streams",
            "Gold album, $50M+ box office, major streaming platform special, 100M+ streams",
            "5M-50M streams, $1M-5M tour gross, moderate box office with documented ROI",
            "Moderate commercial activity without comparative context, small venues",
            "No financial documentation, social media metrics only, amateur performances",
        ),
        checklist=(
            "Are financial metrics documented?",
            "Is the success attributable to the applicant individually?",
            "Is the work in the performing arts?",
        ),
        test_name="commercial_test",
        test_fields=("financial_metrics_documented", "individual_attribution_proven",
                     "comparative_data_present", "performing_arts_scope", "sustained_pattern"),
        test_preamble="COMMERCIAL TEST",
    ),
)}

CRITERION_IDS: tuple[str, ...] = tuple(CRITERIA)

CRITERIA_LABELS = {cid: c.label for cid, c in CRITERIA.items()}


def is_criterion(value: str) -> bool:
    return value in CRITERIA


def criterion_sort_key(criterion_id: str) -> int:
    """Numeric order so C10 sorts after C9."""
    try:
        return int(criterion_id.lstrip("C"))
    except ValueError:
        return 99


# ---------------------------------------------------------------------------
# Tier rules
# ---------------------------------------------------------------------------


def tier_for_score(score: float) -> int:
    for tier, low in TIER_SCORE_BANDS:
        if score >= low:
            return tier
    return 5


def recommendation_for_tier(tier: int) -> str:
    if tier <= 2:
        return "STRONG"
    if tier == 3:
        return "INCLUDE_WITH_SUPPORT"
    if tier == 4:
        return "NEEDS_MORE_DOCS"
    return "EXCLUDE"


def c5_tier(indicators_met: int) -> int:
    """Map a count of satisfied C5 significance indicators to a tier."""
    if indicators_met >= 4:
        return 1
    if indicators_met == 3:
        return 2
    if indicators_met == 2:
        return 3
    if indicators_met == 1:
        return 4
    return 5


def count_c5_indicators(indicators: dict) -> int:
    return sum(1 for key in C5_INDICATORS if indicators.get(key) is True)


# ---------------------------------------------------------------------------
# Verifier prompts
# ---------------------------------------------------------------------------

_VERIFIER_RESPONSE_SHAPE = """\
Respond with ONLY valid JSON:
{
  "criterion": "<criterion id>",
  "document_type": "<what kind of document this is>",
  "evidence_tier": <1-5>,
  "score": <0-10>,
  "verified_claims": ["<claims the document itself proves>"],
  "unverified_claims": ["<claims made but not proven by this document>"],
  "missing_documentation": ["<documents that would close the gaps>"],
  "red_flags": ["<problems an adjudicator would notice>"],
  "recommendation": "<STRONG|INCLUDE_WITH_SUPPORT|NEEDS_MORE_DOCS|EXCLUDE>",
  "reasoning": "<2-4 sentences>"%s
}
"""


def verifier_prompt(criterion_id: str) -> str:
    """Build the default system prompt for one criterion's verification agent."""
    c = CRITERIA[criterion_id]
    lines = [
        f"You are an EB-1A Evidence Verification Agent for Criterion {c.id[1:]}: "
        f"{c.label} ({c.citation}).",
        "",
        f"You evaluate a single document against criterion {c.id}. Determine if the document "
        f"provides evidence of {c.description}.",
        "",
    ]
    if c.test_name:
        lines.append(f"{c.test_preamble}:")
        lines.extend(f"- {name}" for name in c.test_fields)
        lines.append("")
    if c.extra_rules:
        lines.extend(c.extra_rules)
        lines.append("")
    if c.checklist:
        lines.append("VERIFICATION CHECKLIST:")
        lines.extend(f"- {q}" for q in c.checklist)
        lines.append("")
    lines.append("TIER SCORING:")
    for tier, (examples, (_, low)) in enumerate(zip(c.tiers, TIER_SCORE_BANDS), start=1):
        high = 10 if tier == 1 else TIER_SCORE_BANDS[tier - 2][1] - 0.1
        lines.append(f"- Tier {tier} ({low:g}-{high:g}): {examples}")
    lines.append("")
    lines.append("Be honest and precise. Score only what the document actually shows. Do not use emojis.")
    lines.append("")
    test_shape = ""
    if c.test_name:
        fields = ", ".join(f'"{name}": ...' for name in c.test_fields)
        if c.id == "C5":
            fields += ', "indicators_met": <count of true indicators>'
        test_shape = f',\n  "{c.test_name}": {{{fields}}}'
    lines.append(_VERIFIER_RESPONSE_SHAPE % test_shape)
    return "\n".join(lines)
