"""
Test Suite for the Document Extractor
=====================================
DOCX and PDF extraction, media handling and input rejection.
"""

from __future__ import annotations

import zipfile

import fitz
import pytest
from docx import Document

from packparser.errors import (
    CorruptedDocumentError,
    PasswordProtectedError,
    TooLargeError,
    UnsupportedFormatError,
)
from packparser.extractor import OLE_SIGNATURE, DocumentExtractor, _format_counter, _roman
from packparser.models import WarningType
from packparser.state_machine import StructuralParser


@pytest.fixture
def extractor(tmp_path) -> DocumentExtractor:
    return DocumentExtractor(assets_dir=str(tmp_path / "assets"), file_prefix="job1")


# ═══════════════════════════════════════════════════════════════════════════════
# DOCX TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestDocxExtraction:
    """Test .docx ingestion through python-docx."""

    def test_paragraphs_in_order(self, extractor, make_docx):
        result = extractor.extract(make_docx(["Тур 1", "1. Питання", "Відповідь: так"]))
        texts = [f.text for f in result.fragments]

        assert texts == ["Кубок Києва 2024", "Тур 1", "1. Питання", "Відповідь: так"]
        assert [f.index for f in result.fragments] == [0, 1, 2, 3]
        assert result.warnings == []

    def test_title_style_marks_heading(self, extractor, make_docx):
        result = extractor.extract(make_docx(["Тур 1"]))
        assert result.fragments[0].is_heading is True
        assert result.fragments[1].is_heading is False

    def test_empty_paragraphs_skipped(self, extractor, make_docx):
        result = extractor.extract(make_docx(["Тур 1", "", "   ", "1. А"], title=None))
        assert [f.text for f in result.fragments] == ["Тур 1", "1. А"]

    def test_embedded_image_saved(self, extractor, make_docx, tmp_path):
        result = extractor.extract(make_docx(["Тур 1", "1. Що на фото?"], image_after=1))

        assets = result.assets
        assert len(assets) == 1
        assert assets[0].file_name == "job1_img_001.png"
        assert assets[0].content_type == "image/png"
        assert (tmp_path / "assets" / "job1_img_001.png").exists()
        # the picture paragraph follows the question line
        assert result.fragments[-1].assets == assets

    def test_table_rows_flattened(self, extractor, tmp_path):
        document = Document()
        document.add_paragraph("Тур 1")
        table = document.add_table(rows=2, cols=2)
        table.cell(0, 0).text = "1. Питання"
        table.cell(0, 1).text = "Відповідь: так"
        table.cell(1, 0).text = "2. Друге"
        path = tmp_path / "table.docx"
        document.save(str(path))

        result = extractor.extract(str(path))
        assert result.fragments[1].text == "1. Питання | Відповідь: так\n2. Друге"

    def test_sample_document_parses(self, extractor, make_docx):
        result = extractor.extract(make_docx())
        parsed = StructuralParser().parse(result.fragments)

        assert parsed.package.title == "Кубок Києва 2024"
        assert parsed.package.total_questions == 4
        assert parsed.confidence == 1.0

    def test_password_protected(self, extractor, tmp_path):
        path = tmp_path / "locked.docx"
        path.write_bytes(OLE_SIGNATURE + b"\x00" * 512)
        with pytest.raises(PasswordProtectedError) as exc:
            extractor.extract(str(path))
        assert exc.value.retriable is False

    def test_not_a_zip(self, extractor, tmp_path):
        path = tmp_path / "broken.docx"
        path.write_bytes(b"this is plain text, not a document")
        with pytest.raises(CorruptedDocumentError):
            extractor.extract(str(path))

    def test_zip_without_document(self, extractor, tmp_path):
        path = tmp_path / "empty.docx"
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr("readme.txt", "nothing here")
        with pytest.raises(CorruptedDocumentError):
            extractor.extract(str(path))


# ═══════════════════════════════════════════════════════════════════════════════
# PDF TESTS
# ═══════════════════════════════════════════════════════════════════════════════


def _write_pdf(path, lines: list[str], **save_kwargs):
    doc = fitz.open()
    page = doc.new_page()
    y = 72
    for line in lines:
        page.insert_text((72, y), line, fontsize=11)
        y += 40
    doc.save(str(path), **save_kwargs)
    doc.close()


class TestPdfExtraction:
    """Test .pdf ingestion through PyMuPDF."""

    def test_text_in_reading_order(self, extractor, tmp_path):
        path = tmp_path / "package.pdf"
        _write_pdf(path, ["Round 1", "1. Which city?", "Answer: Kyiv"])

        result = extractor.extract(str(path))
        text = "\n".join(f.text for f in result.fragments)

        assert text.index("Round 1") < text.index("1. Which city?") < text.index("Answer: Kyiv")
        assert all(f.font_size == 22 for f in result.fragments)

    def test_encrypted_pdf(self, extractor, tmp_path):
        path = tmp_path / "locked.pdf"
        _write_pdf(
            path, ["Round 1"],
            encryption=fitz.PDF_ENCRYPT_AES_256, user_pw="secret", owner_pw="owner",
        )
        with pytest.raises(PasswordProtectedError):
            extractor.extract(str(path))


# ═══════════════════════════════════════════════════════════════════════════════
# INPUT CHECKS
# ═══════════════════════════════════════════════════════════════════════════════


class TestInputChecks:
    """Test rejection of unusable inputs."""

    def test_unsupported_extension(self, extractor, tmp_path):
        path = tmp_path / "package.txt"
        path.write_text("Тур 1", encoding="utf-8")
        with pytest.raises(UnsupportedFormatError) as exc:
            extractor.extract(str(path))
        assert exc.value.to_dict()["hint"]

    def test_too_large(self, tmp_path, make_docx):
        small = DocumentExtractor(assets_dir=str(tmp_path / "a"), max_size_bytes=100)
        with pytest.raises(TooLargeError):
            small.extract(make_docx())

    def test_empty_file(self, extractor, tmp_path):
        path = tmp_path / "empty.pdf"
        path.write_bytes(b"")
        with pytest.raises(CorruptedDocumentError):
            extractor.extract(str(path))

    def test_unsupported_media_skipped(self, extractor):
        asset = extractor._save_media(b"\x00\x01", "application/x-msmetafile")
        assert asset is None
        assert extractor._warnings[0].type == WarningType.SKIPPED_MEDIA


class TestListNumbering:
    """Test rendering helpers for automatic list numbers."""

    def test_counter_formats(self):
        assert _format_counter(3, "decimal") == "3"
        assert _format_counter(2, "lowerLetter") == "b"
        assert _format_counter(4, "upperRoman") == "IV"
        assert _roman(9) == "ix"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
