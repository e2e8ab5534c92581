"""Tests for upload text extraction, category guessing and page fetching."""
from __future__ import annotations

import io
import zipfile
from unittest.mock import AsyncMock, patch

import docx
import httpx
import openpyxl
import pytest

from petition.enricher import FetchError, fetch_page_text
from petition.extraction import (
    DocumentTextError,
    classify_document,
    document_type_for,
    extract_text,
    guess_category,
    html_to_text,
)
from petition.llm import LLMCallError


def _docx(*paragraphs):
    doc = docx.Document()
    for text in paragraphs:
        doc.add_paragraph(text)
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


class TestDocumentType:
    @pytest.mark.parametrize("name,kind", [("a.pdf", "PDF"), ("a.DOCX", "DOCX"), ("notes.md", "MARKDOWN"),
                                           ("a.txt", "TEXT"), ("page.html", "TEXT")])
    def test_mapping(self, name, kind):
        assert document_type_for(name) == kind


class TestExtractText:
    def test_plain_text_whitespace_normalized(self):
        raw = b"Line one\t\twith   tabs\r\n\r\n\r\n\r\nLine two\x00"
        assert extract_text("notes.txt", raw) == "Line one with tabs\n\nLine two"

    def test_docx_paragraphs(self):
        content = _docx("Best Paper Award", "", "ACM SIGMOD 2023")
        assert extract_text("award.docx", content) == "Best Paper Award\nACM SIGMOD 2023"

    def test_xlsx_rows(self):
        wb = openpyxl.Workbook()
        wb.active.title = "Citations"
        wb.active.append(["Year", "Cites"])
        wb.active.append([2023, 410])
        buf = io.BytesIO()
        wb.save(buf)
        assert extract_text("metrics.xlsx", buf.getvalue()) == "[Sheet Citations]\nYear | Cites\n2023 | 410"

    def test_html(self):
        raw = b"<html><head><title>Profile</title><script>var x=1;</script></head>" \
              b"<body><nav>Home</nav><p>Professor of Physics</p></body></html>"
        assert extract_text("page.html", raw) == "Profile\nProfessor of Physics"

    def test_unsupported(self):
        with pytest.raises(DocumentTextError, match="Unsupported file type"):
            extract_text("photo.png", b"\x89PNG")

    @pytest.mark.parametrize("name", ["broken.docx", "broken.pdf", "broken.xlsx"])
    def test_corrupt_files(self, name):
        with pytest.raises(DocumentTextError, match="Could not read"):
            extract_text(name, b"definitely not a real file")

    def test_docx_without_body(self):
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("other.xml", "<x/>")
        with pytest.raises(DocumentTextError):
            extract_text("empty.docx", buf.getvalue())


class TestHtmlToText:
    def test_title_not_duplicated(self):
        assert html_to_text("<html><body><h1>Dr. Ada</h1></body></html>") == "Dr. Ada"

    def test_empty_markup(self):
        assert html_to_text("") == ""


class TestGuessCategory:
    @pytest.mark.parametrize("name,category", [
        ("Personal Statement - v2.docx", "PERSONAL_STATEMENT"),
        ("recommendation_smith.pdf", "RECOMMENDATION_LETTER"),
        ("CV.pdf", "RESUME_CV"),
        ("W2_2023.pdf", "SALARY_DOCUMENTATION"),
        ("Google Scholar citations.pdf", "CITATION_REPORT"),
    ])
    def test_by_name(self, name, category):
        assert guess_category(name) == (category, 0.8)

    def test_by_content(self):
        category, confidence = guess_category("scan001.pdf", "This is to certify the Recipient of the 2022 prize")
        assert category == "AWARD_CERTIFICATE"
        assert 0.4 < confidence <= 0.7

    def test_unknown(self):
        assert guess_category("scan001.pdf", "lorem ipsum") == ("OTHER", 0.0)


class TestClassifyDocument:
    @pytest.mark.asyncio
    async def test_model_category_used(self):
        client = AsyncMock()
        client.call = AsyncMock(return_value={"category": "patent", "confidence": 1.4})
        assert await classify_document(client, "scan001.pdf", "US Patent 9,999,999") == ("PATENT", 1.0)
        user = client.call.call_args[0][1]
        assert user.startswith("Filename: scan001.pdf")
        assert "US Patent 9,999,999" in user

    @pytest.mark.asyncio
    async def test_custom_prompt(self):
        client = AsyncMock()
        client.call = AsyncMock(return_value={"category": "OTHER", "confidence": 0.3})
        await classify_document(client, "a.pdf", "", system_prompt="SYS")
        assert client.call.call_args[0][0] == "SYS"
        assert client.call.call_args[0][1] == "Filename: a.pdf"

    @pytest.mark.asyncio
    async def test_falls_back_on_failure(self):
        client = AsyncMock()
        client.call = AsyncMock(side_effect=LLMCallError("timeout", retryable=True))
        assert await classify_document(client, "CV.pdf", "") == ("RESUME_CV", 0.8)

    @pytest.mark.asyncio
    async def test_falls_back_on_unknown_category(self):
        client = AsyncMock()
        client.call = AsyncMock(return_value={"category": "HOROSCOPE", "confidence": 0.9})
        assert await classify_document(client, "scan001.pdf", "lorem ipsum") == ("OTHER", 0.0)


class TestFetchPageText:
    @pytest.mark.asyncio
    async def test_rejects_bad_urls(self):
        for url in ("", "ftp://example.com/x", "not a url"):
            with pytest.raises(FetchError, match="Invalid URL"):
                await fetch_page_text(url)

    @pytest.mark.asyncio
    async def test_returns_page_text(self):
        body = "<html><body><p>" + "Professor of computer science. " * 5 + "</p></body></html>"
        with patch("petition.enricher._fetch_url", new_callable=AsyncMock, return_value=body):
            text = await fetch_page_text("https://uni.example/ada")
        assert text.startswith("Professor of computer science.")

    @pytest.mark.asyncio
    async def test_short_page_rejected(self):
        with patch("petition.enricher._fetch_url", new_callable=AsyncMock, return_value="<p>Hi</p>"):
            with pytest.raises(FetchError, match="Not enough readable text"):
                await fetch_page_text("https://uni.example/ada")

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        err = httpx.ConnectError("refused")
        with patch("petition.enricher._fetch_url", new_callable=AsyncMock, side_effect=err):
            with pytest.raises(FetchError, match="Could not fetch"):
                await fetch_page_text("https://uni.example/ada")
