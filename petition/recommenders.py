"""Recommender import (CSV/XLSX + AI column mapping), extraction and merge.

Import is two-step: the table is parsed and validated locally (no network),
the model maps columns to recommender fields and drafts one recommender per
row (``map``), and the user-reviewed drafts are bulk-inserted (``create``).
"""
from __future__ import annotations

import csv
import io
import json
import logging
import zipfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.orm import Session

from petition.config import get_settings
from petition.criteria import CRITERIA_LABELS
from petition.llm import LLMClient
from petition.models import RELATIONSHIP_TYPES, Recommender

log = logging.getLogger(__name__)

RECOMMENDER_FIELDS = (
    "name", "title", "organization", "email", "phone", "linkedin",
    "country_region", "bio", "credentials",
)
MAP_FIELDS = RECOMMENDER_FIELDS + ("relationship_type",)
DRAFT_FIELDS = MAP_FIELDS + ("relationship_context",)
APPEND_FIELDS = ("bio", "credentials", "relationship_context")
MERGE_FIELDS = RECOMMENDER_FIELDS + ("relationship_context",)


class ImportValidationError(ValueError):
    """Uploaded table or import payload is unusable; raised before any LLM call."""


# ---------------------------------------------------------------------------
# Default prompts (editable via API)
# ---------------------------------------------------------------------------

DEFAULT_MAP_PROMPT = f"""\
You map spreadsheet columns to recommender fields and extract structured data. \
Do not use emojis.

Available fields to map to: {', '.join(MAP_FIELDS)}
Relationship types: {', '.join(RELATIONSHIP_TYPES)}

For each column, decide which recommender field it maps to (or null if none).
Then for each row produce a recommender object with every field filled from \
the row. For relationship_type infer from the available context (title, \
organization); use OTHER if unclear. For relationship_context write one \
sentence on how this person could serve as a recommender, e.g. "Senior \
colleague at Google who supervised AI research projects."

Respond with ONLY valid JSON:
{{
  "mapping": [{{"column": "<header>", "field": "<field or null>"}}],
  "recommenders": [{{"name": "...", "title": "...", "organization": "...", "email": "...",
                    "phone": "...", "linkedin": "...", "country_region": "...", "bio": "...",
                    "credentials": "...", "relationship_type": "...", "relationship_context": "..."}}]
}}
"""

DEFAULT_EXTRACT_PROMPT = """\
You extract structured professional information from resumes, CVs, LinkedIn \
profiles and web pages. Do not use emojis.

Extract, if present:
- name: full name
- title: current professional title or position
- organization: current employer, organization or university
- email, phone
- linkedin: LinkedIn profile URL
- country_region: country or region
- bio: brief professional biography (2-3 sentences)
- credentials: notable degrees, fellowships and honours (e.g. "Ph.D., IEEE Fellow")

Use null for fields with no data. Extract only what is explicitly stated.

Respond with ONLY valid JSON with exactly those keys.
"""

DEFAULT_IMPROVE_CONTEXT_PROMPT = """\
You improve relationship-context descriptions for EB-1A recommendation \
letters. Do not use emojis.

Given a rough draft and recommender details, rewrite the relationship context \
to be professional and specific: say how the applicant knows the recommender \
and why this person is qualified to speak to the applicant's abilities. Keep \
it to 2-4 sentences.

Output ONLY the improved text. No preamble, no explanation.
"""


# ---------------------------------------------------------------------------
# Table parsing
# ---------------------------------------------------------------------------


def _cell(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _csv_rows(content: bytes) -> list[list[str]]:
    text = content.decode("utf-8-sig", errors="replace")
    return [[_cell(c) for c in row] for row in csv.reader(io.StringIO(text))]


def _xlsx_rows(content: bytes) -> list[list[str]]:
    wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0] if wb.worksheets else None
        if ws is None:
            return []
        return [[_cell(c) for c in row] for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def validate_table(headers: Sequence[str], rows: Sequence[Sequence[str]], max_rows: int | None = None) -> None:
    max_rows = max_rows or get_settings().max_import_rows
    if not headers or all(not h for h in headers):
        raise ImportValidationError("CSV has no valid headers")
    if not rows:
        raise ImportValidationError("CSV has no data rows")
    if len(rows) > max_rows:
        raise ImportValidationError(f"Maximum {max_rows} rows allowed per import")


def parse_table(filename: str, content: bytes, max_rows: int | None = None) -> tuple[list[str], list[list[str]]]:
    """Headers and data rows of an uploaded CSV/XLSX, in file order.

    Blank data lines are dropped; rows are padded or cut to the header width.
    Raises ImportValidationError for unsupported, empty or oversized tables.
    """
    suffix = Path(filename or "").suffix.lower()
    if suffix == ".csv":
        raw = _csv_rows(content)
    elif suffix == ".xlsx":
        try:
            raw = _xlsx_rows(content)
        except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as exc:
            raise ImportValidationError(f"Could not read spreadsheet: {exc}") from exc
    else:
        raise ImportValidationError("Unsupported file type. Use CSV or XLSX.")

    if not any(any(row) for row in raw):
        raise ImportValidationError("CSV file is empty")

    # The first row is the header row even when blank.
    headers = raw[0]
    while headers and not headers[-1]:
        headers = headers[:-1]
    width = len(headers)
    rows = [(row + [""] * width)[:width] for row in raw[1:] if any(row)]
    validate_table(headers, rows, max_rows)
    return headers, rows


def table_preview(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# AI mapping and extraction
# ---------------------------------------------------------------------------


def _nullable_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_relationship_type(value: Any) -> str:
    text = (_nullable_str(value) or "").upper().replace(" ", "_").replace("-", "_")
    return text if text in RELATIONSHIP_TYPES else "OTHER"


def normalize_draft(raw: Any) -> dict[str, Any]:
    raw = raw if isinstance(raw, dict) else {}
    draft = {f: _nullable_str(raw.get(f)) for f in DRAFT_FIELDS}
    draft["relationship_type"] = normalize_relationship_type(raw.get("relationship_type"))
    return draft


def normalize_mapping(headers: Sequence[str], raw: Any) -> list[dict[str, str | None]]:
    """One entry per header, in header order; unknown fields become null."""
    by_column: dict[str, str | None] = {}
    for entry in raw if isinstance(raw, list) else []:
        if not isinstance(entry, dict):
            continue
        column = _nullable_str(entry.get("column") or entry.get("csvColumn"))
        field = _nullable_str(entry.get("field"))
        if column is not None and column not in by_column:
            by_column[column] = field if field in MAP_FIELDS else None
    return [{"column": h, "field": by_column.get(h)} for h in headers]


async def map_columns(
    headers: Sequence[str],
    rows: Sequence[Sequence[str]],
    client: LLMClient | None = None,
    prompts: dict[str, str] | None = None,
) -> dict[str, Any]:
    validate_table(headers, rows)
    client = client or LLMClient()
    system = (prompts or {}).get("recommender_map") or DEFAULT_MAP_PROMPT
    data = await client.call(
        system, f"Map these columns and extract recommender data:\n\n{table_preview(headers, rows)}",
    )
    drafts = [normalize_draft(r) for r in data.get("recommenders") or [] if isinstance(r, dict)]
    log.info("Mapped %d import rows into %d recommender drafts", len(rows), len(drafts))
    return {"mapping": normalize_mapping(headers, data.get("mapping")), "recommenders": drafts}


async def extract_recommender(
    text: str,
    client: LLMClient | None = None,
    prompts: dict[str, str] | None = None,
) -> dict[str, str | None]:
    client = client or LLMClient()
    system = (prompts or {}).get("recommender_extract") or DEFAULT_EXTRACT_PROMPT
    data = await client.call(system, f"Extract professional information from this text:\n\n{text}")
    return {f: _nullable_str(data.get(f)) for f in RECOMMENDER_FIELDS}


async def improve_context(
    draft: str,
    details: dict[str, Any],
    client: LLMClient | None = None,
    prompts: dict[str, str] | None = None,
) -> str:
    client = client or LLMClient()
    lines = [f"{k.replace('_', ' ').title()}: {v}" for k, v in details.items() if v]
    system = (prompts or {}).get("recommender_context") or DEFAULT_IMPROVE_CONTEXT_PROMPT
    return await client.complete(
        system,
        f"Recommender details:\n{chr(10).join(lines) or 'No additional details provided.'}\n\n"
        f"Draft relationship context:\n{draft}",
    )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def validate_criteria_keys(keys: Iterable[str]) -> list[str]:
    out: list[str] = []
    for k in keys:
        if k not in CRITERIA_LABELS:
            raise ImportValidationError(f"Unknown criterion: {k}")
        if k not in out:
            out.append(k)
    return out


def create_recommenders(session: Session, case_id: int, items: Sequence[Any]) -> list[Recommender]:
    """Bulk-insert validated recommender drafts. Caller commits."""
    max_rows = get_settings().max_import_rows
    if not items:
        raise ImportValidationError("No recommenders to import")
    if len(items) > max_rows:
        raise ImportValidationError(f"Maximum {max_rows} rows allowed per import")
    created = []
    for item in items:
        values = item.model_dump() if hasattr(item, "model_dump") else dict(item)
        rec = Recommender(case_id=case_id, name=values["name"])
        for f in DRAFT_FIELDS:
            if f != "name":
                setattr(rec, f, values.get(f) or "")
        rec.relationship_type = normalize_relationship_type(values.get("relationship_type"))
        rec.criteria_keys_json = json.dumps(validate_criteria_keys(values.get("criteria_keys") or []))
        session.add(rec)
        created.append(rec)
    session.flush()
    log.info("Imported %d recommenders into case %s", len(created), case_id)
    return created


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: str
    new_value: str
    kind: str  # NEW | APPEND

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def diff_recommender(existing: Recommender, incoming: dict[str, Any]) -> list[FieldChange]:
    """Changes that would fold *incoming* into *existing* without losing data.

    Empty fields are filled (NEW). Long-text fields that already hold text get
    the incoming text appended on a new line unless it is already contained
    (APPEND). Other fields that are already set are left alone.
    """
    changes: list[FieldChange] = []
    for f in MERGE_FIELDS:
        new = _nullable_str(incoming.get(f))
        if new is None:
            continue
        old = (getattr(existing, f, "") or "").strip()
        if not old:
            changes.append(FieldChange(f, "", new, "NEW"))
        elif f in APPEND_FIELDS and new.lower() not in old.lower():
            changes.append(FieldChange(f, old, f"{old}\n{new}", "APPEND"))
    return changes


def apply_changes(recommender: Recommender, changes: Iterable[FieldChange]) -> None:
    for change in changes:
        if change.field in MERGE_FIELDS:
            setattr(recommender, change.field, change.new_value)
