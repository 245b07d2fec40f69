"""Test DocumentIngestor (deterministic parsing)."""

import io
import math

import docx
import pytest

from srs_testgen.exceptions import DocumentExtractionError, UnsupportedFormatError
from srs_testgen.nodes.ingestor import (
    DocumentIngestor,
    MediaType,
    estimate_tokens,
    extract_requirements,
    media_type_for_filename,
    resolve_media_type,
)


class TestRequirementExtraction:
    """Requirement clause extraction from single lines."""

    def test_shall_and_req_tag_on_one_line(self):
        clauses = extract_requirements("The system shall allow login. REQ-001: support SSO.")

        assert clauses == ["allow login.", "support SSO."]

    def test_application_must(self):
        clauses = extract_requirements("The application must encrypt data at rest.")

        assert clauses == ["encrypt data at rest."]

    def test_fr_and_nfr_tags(self):
        clauses = extract_requirements("FR-7: Export reports as CSV. NFR-2: respond within 200ms")

        assert clauses == ["Export reports as CSV.", "respond within 200ms"]

    def test_clause_stops_at_sentence_end(self):
        clauses = extract_requirements("The system shall log out idle users. Sessions last 30 minutes.")

        assert clauses == ["log out idle users."]

    def test_no_markers(self):
        assert extract_requirements("Users like fast pages.") == []


class TestHeadingDetection:
    """Heuristic heading detection."""

    @pytest.mark.parametrize("line,level", [
        ("1. Introduction", 1),
        ("2.1 Authentication", 2),
        ("3.2.1 Password rules", 3),
        ("FUNCTIONAL REQUIREMENTS", 1),
        ("Chapter 4", 1),
        ("Section 2.3 Reporting", 2),
        ("Appendix B", 1),
        ("User Management and Roles", 2),
    ])
    def test_headings(self, line, level):
        heading = DocumentIngestor.detect_heading(line)

        assert heading is not None
        assert heading[1] == level

    @pytest.mark.parametrize("line", [
        "This document describes the login module.",
        "Users must be able to reset passwords.",
        "The Quick Brown Fox.",
    ])
    def test_non_headings(self, line):
        assert DocumentIngestor.detect_heading(line) is None

    def test_long_lines_are_never_headings(self):
        line = "1. " + "A" * 100

        assert DocumentIngestor.detect_heading(line) is None

    def test_markdown_heading_only_in_markdown(self):
        assert DocumentIngestor.detect_heading("## Login flow", markdown=True) == ("Login flow", 2)
        assert DocumentIngestor.detect_heading("## login flow") is None


class TestDocumentIngestor:
    """End-to-end parsing of uploaded documents."""

    def test_plain_text_outline(self, sample_srs):
        document = DocumentIngestor().parse(sample_srs.encode("utf-8"), "text/plain")

        titles = [s.title for s in document.sections]
        assert titles == [
            "SOFTWARE REQUIREMENTS SPECIFICATION",
            "1. Introduction",
            "2. Functional Requirements",
            "2.1 Authentication",
            "Appendix A",
        ]
        auth = document.sections[3]
        assert auth.level == 2
        assert "REQ-001: support SSO." in auth.body
        assert auth.requirements == ["allow login.", "support SSO.", "Lock the account after five failed attempts."]

    def test_end_to_end_requirement_sentences(self):
        text = "The system shall allow login. REQ-001: support SSO."

        document = DocumentIngestor().parse(text.encode("utf-8"), "text/plain")

        assert document.requirement_sentences == ["allow login.", "support SSO."]
        assert document.sections[0].title == "Preamble"
        assert document.sections[0].level == 0

    @pytest.mark.parametrize("text", ["", "a", "abcd", "abcde", "ü" * 7])
    def test_token_estimate(self, text):
        document = DocumentIngestor().parse(text.encode("utf-8"), "text/plain")

        assert document.token_estimate == math.ceil(len(text) / 4)
        assert estimate_tokens(text) == math.ceil(len(text) / 4)

    def test_token_estimate_of_full_document(self, sample_srs):
        document = DocumentIngestor().parse(sample_srs.encode("utf-8"), "text/plain")

        assert document.full_text == sample_srs
        assert document.token_estimate == math.ceil(len(sample_srs) / 4)

    def test_markdown_headings(self):
        text = "# Overview\nIntro text.\n## Login\nThe system shall lock accounts.\n"

        document = DocumentIngestor().parse(text.encode("utf-8"), "text/markdown")

        assert [(s.title, s.level) for s in document.sections] == [("Overview", 1), ("Login", 2)]
        assert document.sections[1].requirements == ["lock accounts."]

    def test_docx(self):
        word = docx.Document()
        word.add_paragraph("1. Scope")
        word.add_paragraph("The application must export invoices.")
        table = word.add_table(rows=1, cols=2)
        table.rows[0].cells[0].text = "REQ-9: audit every export."
        table.rows[0].cells[1].text = "High"
        buffer = io.BytesIO()
        word.save(buffer)

        document = DocumentIngestor().parse(buffer.getvalue(), MediaType.DOCX.value)

        assert document.sections[0].title == "1. Scope"
        assert document.requirement_sentences == ["export invoices.", "audit every export."]

    def test_corrupt_pdf(self):
        with pytest.raises(DocumentExtractionError):
            DocumentIngestor().parse(b"definitely not a pdf", "application/pdf")

    def test_unsupported_media_type(self):
        with pytest.raises(UnsupportedFormatError) as exc_info:
            DocumentIngestor().parse(b"<html></html>", "text/html")

        assert exc_info.value.reason == "UnsupportedFormat"

    def test_bom_is_stripped(self):
        document = DocumentIngestor().parse("\ufeffFR-1: log in.".encode("utf-8"), "text/plain")

        assert document.full_text == "FR-1: log in."


class TestMediaTypes:
    def test_parameters_are_ignored(self):
        assert resolve_media_type("text/plain; charset=utf-8") == MediaType.TEXT

    def test_from_filename(self):
        assert media_type_for_filename("spec.PDF") == MediaType.PDF.value
        assert media_type_for_filename("notes.md") == MediaType.MARKDOWN.value

    def test_unknown_extension(self):
        with pytest.raises(UnsupportedFormatError):
            media_type_for_filename("diagram.vsdx")
