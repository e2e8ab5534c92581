"""Tests for recommender table import, AI mapping, extraction and merge."""
from __future__ import annotations

import io
from unittest.mock import AsyncMock

import openpyxl
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from petition.models import Base, Case, Recommender
from petition.recommenders import (
    ImportValidationError,
    apply_changes,
    create_recommenders,
    diff_recommender,
    extract_recommender,
    improve_context,
    map_columns,
    normalize_mapping,
    normalize_relationship_type,
    parse_table,
)
from petition.schemas import RecommenderCreate


def _xlsx(rows):
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseTable:
    def test_csv_preserves_header_order(self):
        content = b"\xef\xbb\xbfName,Email,Title\nAda Lovelace,ada@x.org,Professor\n\nAlan Turing,,Reader\n"
        headers, rows = parse_table("people.csv", content)
        assert headers == ["Name", "Email", "Title"]
        assert rows == [["Ada Lovelace", "ada@x.org", "Professor"], ["Alan Turing", "", "Reader"]]

    def test_ragged_rows_padded_and_cut(self):
        headers, rows = parse_table("p.csv", b"A,B,\n1\n1,2,3,4\n")
        assert headers == ["A", "B"]
        assert rows == [["1", ""], ["1", "2"]]

    def test_xlsx(self):
        content = _xlsx([["Name", "Organization"], ["Grace Hopper", "US Navy"], [None, None]])
        headers, rows = parse_table("people.xlsx", content)
        assert headers == ["Name", "Organization"]
        assert rows == [["Grace Hopper", "US Navy"]]

    @pytest.mark.parametrize("filename,content,message", [
        ("people.txt", b"Name\nAda\n", "Unsupported file type. Use CSV or XLSX."),
        ("people.csv", b"", "CSV file is empty"),
        ("people.csv", b"\n,,\n", "CSV file is empty"),
        ("people.csv", b"Name,Title\n", "CSV has no data rows"),
        ("people.csv", b",,\nAda,Prof,\n", "CSV has no valid headers"),
        ("people.csv", b"\nName,Title\nAda,Prof\n", "CSV has no valid headers"),
    ])
    def test_rejections(self, filename, content, message):
        with pytest.raises(ImportValidationError, match=message):
            parse_table(filename, content)

    def test_row_limit(self):
        content = b"Name\n" + b"".join(f"Person {i}\n".encode() for i in range(4))
        with pytest.raises(ImportValidationError, match="Maximum 3 rows allowed per import"):
            parse_table("p.csv", content, max_rows=3)

    def test_corrupt_xlsx(self):
        with pytest.raises(ImportValidationError, match="Could not read spreadsheet"):
            parse_table("p.xlsx", b"not a zip file")


# ---------------------------------------------------------------------------
# Normalization and AI calls
# ---------------------------------------------------------------------------


class TestNormalization:
    @pytest.mark.parametrize("raw,expected", [
        ("academic advisor", "ACADEMIC_ADVISOR"),
        ("Peer-Expert", "PEER_EXPERT"),
        ("friend", "OTHER"),
        (None, "OTHER"),
    ])
    def test_relationship_type(self, raw, expected):
        assert normalize_relationship_type(raw) == expected

    def test_mapping_follows_headers(self):
        raw = [
            {"csvColumn": "E-mail", "field": "email"},
            {"column": "Full Name", "field": "name"},
            {"column": "Notes", "field": "favorite_color"},
            "junk",
        ]
        assert normalize_mapping(["Full Name", "E-mail", "Notes", "Extra"], raw) == [
            {"column": "Full Name", "field": "name"},
            {"column": "E-mail", "field": "email"},
            {"column": "Notes", "field": None},
            {"column": "Extra", "field": None},
        ]


class TestMapColumns:
    @pytest.mark.asyncio
    async def test_validates_before_calling_model(self):
        client = AsyncMock()
        with pytest.raises(ImportValidationError, match="CSV has no data rows"):
            await map_columns(["Name"], [], client)
        client.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_returns_mapping_and_drafts(self):
        client = AsyncMock()
        client.call = AsyncMock(return_value={
            "mapping": [{"column": "Name", "field": "name"}],
            "recommenders": [{"name": "Ada", "relationship_type": "mentor?", "email": " "}],
        })
        result = await map_columns(["Name", "Role"], [["Ada", "Prof"]], client, prompts={"recommender_map": "MAP"})

        assert client.call.call_args[0][0] == "MAP"
        assert "Name,Role\nAda,Prof" in client.call.call_args[0][1]
        assert result["mapping"] == [{"column": "Name", "field": "name"}, {"column": "Role", "field": None}]
        draft = result["recommenders"][0]
        assert draft["name"] == "Ada"
        assert draft["relationship_type"] == "OTHER"
        assert draft["email"] is None


class TestExtractAndImprove:
    @pytest.mark.asyncio
    async def test_extract_returns_known_fields_only(self):
        client = AsyncMock()
        client.call = AsyncMock(return_value={"name": "Ada", "title": "", "hobby": "chess"})
        data = await extract_recommender("Ada is a professor.", client)
        assert data["name"] == "Ada"
        assert data["title"] is None
        assert "hobby" not in data

    @pytest.mark.asyncio
    async def test_improve_context_uses_plain_completion(self):
        client = AsyncMock()
        client.complete = AsyncMock(return_value="Improved paragraph.")
        out = await improve_context("we worked together", {"name": "Ada", "title": ""}, client)
        assert out == "Improved paragraph."
        user = client.complete.call_args[0][1]
        assert "Name: Ada" in user
        assert "Title" not in user
        assert "we worked together" in user


# ---------------------------------------------------------------------------
# Persistence and merge
# ---------------------------------------------------------------------------


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    sess = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def case(session):
    case = Case(owner_id="u1", name="Import")
    session.add(case)
    session.commit()
    return case


def _create(**overrides):
    values = {
        "name": "Ada Lovelace", "title": "Professor", "relationshipType": "ACADEMIC_ADVISOR",
        "relationshipContext": "PhD advisor 2015-2019", "criteriaKeys": ["C5", "C6", "C5"],
    }
    values.update(overrides)
    return RecommenderCreate(**values)


class TestCreateRecommenders:
    def test_bulk_insert(self, session, case):
        created = create_recommenders(session, case.id, [_create(), _create(name="Alan Turing", email="a@t.uk")])
        session.commit()
        rows = session.execute(select(Recommender).order_by(Recommender.id)).scalars().all()
        assert [r.name for r in rows] == ["Ada Lovelace", "Alan Turing"]
        assert rows[0].criteria_keys_json == '["C5", "C6"]'
        assert rows[1].email == "a@t.uk"
        assert len(created) == 2

    def test_empty_rejected(self, session, case):
        with pytest.raises(ImportValidationError, match="No recommenders to import"):
            create_recommenders(session, case.id, [])

    def test_schema_rejects_bad_rows(self):
        with pytest.raises(ValueError):
            _create(name="")
        with pytest.raises(ValueError):
            _create(relationshipType="FRIEND")
        with pytest.raises(ValueError):
            _create(criteriaKeys=["C11"])


class TestMerge:
    def test_diff_fills_and_appends(self):
        existing = Recommender(name="Ada", title="", bio="Mathematician.", email="ada@x.org",
                               credentials="", relationship_context="")
        incoming = {"title": "Professor", "bio": "Wrote the first program.", "email": "other@x.org",
                    "credentials": "FRS"}
        changes = {c.field: c for c in diff_recommender(existing, incoming)}

        assert changes["title"].kind == "NEW"
        assert changes["credentials"].new_value == "FRS"
        assert changes["bio"].kind == "APPEND"
        assert changes["bio"].new_value == "Mathematician.\nWrote the first program."
        assert "email" not in changes

    def test_contained_text_not_appended(self):
        existing = Recommender(name="Ada", bio="Mathematician. Wrote the first program.")
        assert diff_recommender(existing, {"bio": "wrote the first program."}) == []

    def test_apply_changes(self):
        existing = Recommender(name="Ada", title="", bio="A.")
        apply_changes(existing, diff_recommender(existing, {"title": "Prof", "bio": "B."}))
        assert existing.title == "Prof"
        assert existing.bio == "A.\nB."
