"""Turn uploaded files into plain text and a best-guess document category."""
from __future__ import annotations

import io
import logging
import re
import zipfile
from pathlib import Path

import docx
import openpyxl
from docx.opc.exceptions import PackageNotFoundError
from lxml import etree, html as lxml_html
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from petition.llm import LLMCallError, LLMClient
from petition.models import DOCUMENT_CATEGORIES
from petition.utils import clamp, to_float

log = logging.getLogger(__name__)

_MAX_TEXT = 200_000

TEXT_SUFFIXES = {".txt", ".md", ".markdown", ".csv", ".json"}
SUPPORTED_SUFFIXES = TEXT_SUFFIXES | {".pdf", ".docx", ".html", ".htm", ".xlsx"}


class DocumentTextError(Exception):
    """Uploaded file could not be turned into usable text."""


def document_type_for(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix == ".pdf":
        return "PDF"
    if suffix == ".docx":
        return "DOCX"
    if suffix in (".md", ".markdown"):
        return "MARKDOWN"
    return "TEXT"


def extract_text(filename: str, content: bytes) -> str:
    """Extract text from an upload based on its extension.

    Raises DocumentTextError for unsupported or unreadable files.
    """
    suffix = Path(filename or "").suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise DocumentTextError(f"Unsupported file type: {suffix or 'none'}")
    try:
        if suffix == ".pdf":
            text = _pdf_text(content)
        elif suffix == ".docx":
            text = _docx_text(content)
        elif suffix in (".html", ".htm"):
            text = html_to_text(content.decode("utf-8", errors="replace"))
        elif suffix == ".xlsx":
            text = _xlsx_text(content)
        else:
            text = content.decode("utf-8", errors="replace")
    except DocumentTextError:
        raise
    except (PdfReadError, PackageNotFoundError, zipfile.BadZipFile, etree.XMLSyntaxError,
            KeyError, ValueError, OSError) as exc:
        raise DocumentTextError(f"Could not read {filename}: {exc}") from exc
    return _normalize_whitespace(text)[:_MAX_TEXT]


def _normalize_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\x00", "")
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _pdf_text(content: bytes) -> str:
    reader = PdfReader(io.BytesIO(content))
    pages = []
    for idx, page in enumerate(reader.pages, start=1):
        page_text = page.extract_text() or ""
        if page_text.strip():
            pages.append(f"[Page {idx}]\n{page_text}")
    return "\n\n".join(pages)


def _docx_text(content: bytes) -> str:
    doc = docx.Document(io.BytesIO(content))
    return "\n".join(p.text for p in doc.paragraphs if p.text.strip())


def _xlsx_text(content: bytes) -> str:
    wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        lines = []
        for ws in wb.worksheets:
            lines.append(f"[Sheet {ws.title}]")
            for row in ws.iter_rows(values_only=True):
                cells = ["" if v is None else str(v).strip() for v in row]
                if any(cells):
                    lines.append(" | ".join(cells))
        return "\n".join(lines)
    finally:
        wb.close()


def html_to_text(raw_html: str) -> str:
    """Readable text from an HTML page (scripts, styles and nav chrome dropped)."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    for bad in tree.xpath("//script | //style | //noscript | //nav | //footer"):
        bad.drop_tree()
    title = re.sub(r"\s+", " ", " ".join(tree.xpath("//title//text()"))).strip()
    bodies = tree.xpath("//body")
    root = bodies[0] if bodies else tree
    body = re.sub(r"\s+", " ", " ".join(root.xpath(".//text()"))).strip()
    if title and not body.startswith(title):
        return f"{title}\n{body}" if body else title
    return body


# ---------------------------------------------------------------------------
# Category guess
# ---------------------------------------------------------------------------

# Ordered: first match wins. (category, name patterns, content patterns)
_CATEGORY_RULES: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = [
    ("PERSONAL_STATEMENT", ("personal statement",), ()),
    ("PETITION_LETTER", ("petition letter", "cover letter"), ("petitioner respectfully",)),
    ("RECOMMENDATION_LETTER", ("recommendation", "reference letter", "support letter"),
     ("i am pleased to recommend", "i strongly recommend", "letter of recommendation")),
    ("RESUME_CV", ("resume", "cv", "curriculum vitae"), ("work experience", "education")),
    ("AWARD_CERTIFICATE", ("award", "prize", "certificate of excellence"), ("is hereby awarded", "recipient of")),
    ("MEMBERSHIP_CERTIFICATE", ("membership", "fellow"), ("elected as a fellow", "admitted as a member")),
    ("MEDIA_COVERAGE", ("article", "press", "interview", "news"), ()),
    ("PUBLICATION", ("paper", "journal", "proceedings"), ("abstract", "doi:", "references")),
    ("CITATION_REPORT", ("citation", "google scholar", "h-index"), ("h-index", "cited by")),
    ("JUDGING_EVIDENCE", ("review", "judge", "reviewer", "program committee"), ("thank you for reviewing", "review invitation")),
    ("PATENT", ("patent",), ("patent no", "inventor")),
    ("SALARY_DOCUMENTATION", ("salary", "w-2", "w2", "paystub", "compensation"), ("gross pay", "wages, tips")),
    ("EMPLOYMENT_VERIFICATION", ("employment", "offer letter", "experience letter"), ("to whom it may concern", "has been employed")),
    ("DEGREE_CERTIFICATE", ("degree", "diploma", "transcript"), ("bachelor of", "master of", "doctor of philosophy")),
    ("PASSPORT_ID", ("passport", "visa", "i-94", "id card"), ()),
    ("BUSINESS_PLAN", ("business plan",), ()),
    ("CONTRACT", ("contract", "agreement"), ("this agreement",)),
    ("EXHIBIT_INDEX", ("exhibit list", "exhibit index"), ()),
]


def guess_category(filename: str, text: str = "") -> tuple[str, float]:
    """Keyword-based category guess. Returns (category, confidence)."""
    name = Path(filename or "").stem.lower().replace("_", " ")
    head = (text or "")[:4000].lower()
    for category, name_patterns, _ in _CATEGORY_RULES:
        if any(re.search(rf"\b{re.escape(p)}\b", name) for p in name_patterns):
            return category, 0.8
    for category, _, text_patterns in _CATEGORY_RULES:
        hits = sum(1 for p in text_patterns if p in head)
        if hits:
            return category, min(0.4 + 0.2 * hits, 0.7)
    return "OTHER", 0.0


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_CLASSIFY_CHARS = 1500

DEFAULT_CLASSIFY_PROMPT = """\
Classify this immigration case document into one of the categories. Return \
the best-fit category and your confidence (0-1). Do not use emojis.

Categories:
- RESUME_CV: Resume or curriculum vitae
- AWARD_CERTIFICATE: Award, prize, or honor certificate
- PUBLICATION: Published article, paper, or book
- MEDIA_COVERAGE: News article, press coverage, or media mention
- PATENT: Patent filing or grant
- RECOMMENDATION_LETTER: Letter of recommendation or support
- MEMBERSHIP_CERTIFICATE: Professional membership or association certificate
- EMPLOYMENT_VERIFICATION: Employment letter, contract, or verification
- SALARY_DOCUMENTATION: Pay stubs, tax returns, or compensation evidence
- CITATION_REPORT: Citation metrics, Google Scholar report, or impact data
- JUDGING_EVIDENCE: Evidence of judging, reviewing, or evaluating others' work
- PASSPORT_ID: Passport, ID, or identity document
- DEGREE_CERTIFICATE: Academic degree, diploma, or transcript
- PERSONAL_STATEMENT: The applicant's own personal statement
- PETITION_LETTER: Attorney petition or cover letter
- EXHIBIT_INDEX: Exhibit list or index
- BUSINESS_PLAN: Business plan
- CONTRACT: Contract or agreement
- OTHER: Does not fit any above category

Respond with ONLY valid JSON: {"category": "<CATEGORY>", "confidence": <0-1>}
"""


async def classify_document(
    client: LLMClient, filename: str, text: str = "", system_prompt: str | None = None,
) -> tuple[str, float]:
    """Ask the model for a category. Falls back to ``guess_category`` when the call or reply is unusable."""
    user = f"Filename: {filename}"
    if text:
        user += f"\n\nContent (first {_CLASSIFY_CHARS} chars):\n{text[:_CLASSIFY_CHARS]}"
    try:
        raw = await client.call(system_prompt or DEFAULT_CLASSIFY_PROMPT, user, max_tokens=200)
    except LLMCallError as exc:
        log.warning("Classification failed for %r: %s", filename, exc)
        return guess_category(filename, text)
    category = str(raw.get("category") or "").strip().upper()
    if category not in DOCUMENT_CATEGORIES:
        log.info("Unusable classification %r for %r, using keyword guess", category, filename)
        return guess_category(filename, text)
    return category, round(clamp(to_float(raw.get("confidence")), 0.0, 1.0), 2)
