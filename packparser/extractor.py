"""
Document Extractor
==================
Converts an uploaded document into an ordered list of ContentFragments.

    .docx → python-docx: paragraphs and tables in body order, rendered
            list numbering, embedded images attached to their paragraph
    .pdf  → PyMuPDF: text blocks and images in reading order

Embedded images are written to the job's asset directory under generated
names and attached to the fragment at their document position. Media
outside the allow-list is skipped with a warning.
"""

from __future__ import annotations

import hashlib
import logging
import os
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
from docx import Document
from docx.oxml.ns import qn
from docx.table import Table
from docx.text.paragraph import Paragraph

from . import storage
from .errors import (
    CorruptedDocumentError,
    PasswordProtectedError,
    TooLargeError,
    TransientIOError,
    UnsupportedFormatError,
)
from .models import AssetReference, ContentFragment, ParseWarning, WarningType

logger = logging.getLogger(__name__)

# Encrypted OOXML files are OLE compound documents, not zip archives
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

CONTENT_TYPE_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/tiff": ".tiff",
    "image/x-emf": ".emf",
    "image/x-wmf": ".wmf",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "audio/ogg": ".ogg",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
}

_BULLET_FORMATS = {"bullet", "none"}


@dataclass
class ExtractionResult:
    """Fragments in document order plus extraction warnings."""
    fragments: list[ContentFragment] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)

    @property
    def assets(self) -> list[AssetReference]:
        return [a for f in self.fragments for a in f.assets]


class DocumentExtractor:
    """
    Handles document ingestion for one import job.

    Args:
        assets_dir: Job-scoped directory receiving extracted media.
        max_size_bytes: Byte ceiling for the input document.
        file_prefix: Prefix for generated media names (the job id).
        min_image_size: PDF images smaller than this (pixels) are ignored.
    """

    def __init__(
        self,
        assets_dir: str,
        max_size_bytes: int = 50 * 1024 * 1024,
        file_prefix: str = "doc",
        min_image_size: int = 50,
    ):
        self.assets_dir = Path(assets_dir)
        self.max_size_bytes = max_size_bytes
        self.file_prefix = file_prefix
        self.min_image_size = min_image_size
        self.assets_dir.mkdir(parents=True, exist_ok=True)
        self._image_counter = 0
        self._warnings: list[ParseWarning] = []

    def extract(self, path: str) -> ExtractionResult:
        """
        Extract fragments from a .docx or .pdf file.

        Raises:
            UnsupportedFormatError, TooLargeError, PasswordProtectedError,
            CorruptedDocumentError: the input is unusable.
            TransientIOError: the file could not be read right now.
        """
        self._image_counter = 0
        self._warnings = []

        extension = Path(path).suffix.lower()
        if extension not in (".docx", ".pdf"):
            raise UnsupportedFormatError(
                f"Unsupported file format '{extension or '(none)'}'"
            )

        try:
            size = os.path.getsize(path)
            with open(path, "rb") as f:
                head = f.read(len(OLE_SIGNATURE))
        except OSError as e:
            raise TransientIOError("Could not read the uploaded file", str(e)) from e

        if size > self.max_size_bytes:
            raise TooLargeError(
                f"File is {size / 1024 / 1024:.1f} MB; the limit is "
                f"{self.max_size_bytes / 1024 / 1024:.0f} MB"
            )
        if size == 0:
            raise CorruptedDocumentError("The uploaded file is empty")

        logger.info(f"Extracting fragments from {path} ({size} bytes)")
        if extension == ".docx":
            fragments = self._extract_docx(path, head)
        else:
            fragments = self._extract_pdf(path)

        logger.info(
            f"Extracted {len(fragments)} fragments, "
            f"{self._image_counter} media files"
        )
        return ExtractionResult(fragments=fragments, warnings=list(self._warnings))

    # ── DOCX ──────────────────────────────────────────────────────

    def _extract_docx(self, path: str, head: bytes) -> list[ContentFragment]:
        if head == OLE_SIGNATURE:
            raise PasswordProtectedError("The document is password-protected")
        if not zipfile.is_zipfile(path):
            raise CorruptedDocumentError("The document is damaged or not a .docx file")

        try:
            document = Document(path)
        except OSError as e:
            raise TransientIOError("Could not read the uploaded file", str(e)) from e
        except Exception as e:
            raise CorruptedDocumentError(
                "The document is damaged and cannot be opened", str(e)
            ) from e

        numbering = _ListNumbering(document)
        fragments: list[ContentFragment] = []

        for child in document.element.body.iterchildren():
            if child.tag == qn("w:p"):
                paragraph = Paragraph(child, document)
                text = numbering.prefix(paragraph) + paragraph.text
                assets = self._docx_images(document, child)
                if not text.strip() and not assets:
                    continue
                fragments.append(self._docx_fragment(
                    len(fragments), paragraph, text, assets
                ))
            elif child.tag == qn("w:tbl"):
                table = Table(child, document)
                text = "\n".join(_table_rows(table))
                assets = self._docx_images(document, child)
                if not text.strip() and not assets:
                    continue
                fragments.append(ContentFragment(
                    index=len(fragments), text=text, assets=assets
                ))

        return fragments

    def _docx_fragment(self, index: int, paragraph: Paragraph, text: str,
                       assets: list[AssetReference]) -> ContentFragment:
        style = paragraph.style
        style_name = (style.name or "") if style is not None else ""

        runs = [r for r in paragraph.runs if r.text.strip()]
        bold_chars = sum(len(r.text) for r in runs if r.bold)
        total_chars = sum(len(r.text) for r in runs)

        return ContentFragment(
            index=index,
            text=text,
            style_id=style.style_id if style is not None else None,
            is_heading=style_name.startswith(("Heading", "Title")),
            is_bold=total_chars > 0 and bold_chars * 2 >= total_chars,
            font_size=_paragraph_font_size(paragraph, runs),
            assets=assets,
        )

    def _docx_images(self, document, element) -> list[AssetReference]:
        assets = []
        for rel_id in element.xpath(".//a:blip/@r:embed"):
            part = document.part.related_parts.get(rel_id)
            if part is None:
                continue
            asset = self._save_media(part.blob, part.content_type)
            if asset is not None:
                assets.append(asset)
        return assets

    # ── PDF ───────────────────────────────────────────────────────

    def _extract_pdf(self, path: str) -> list[ContentFragment]:
        try:
            doc = fitz.open(path)
        except RuntimeError as e:
            raise CorruptedDocumentError(
                "The PDF is damaged and cannot be opened", str(e)
            ) from e

        with doc:
            if doc.needs_pass:
                raise PasswordProtectedError("The PDF is password-protected")

            fragments: list[ContentFragment] = []
            seen_hashes: set[str] = set()

            for page in doc:
                items = []
                page_dict = page.get_text("dict", flags=fitz.TEXT_PRESERVE_WHITESPACE)
                for block in page_dict.get("blocks", []):
                    if block["type"] != 0:
                        continue
                    text = _pdf_block_text(block)
                    if text.strip():
                        items.append((block["bbox"], text, block, None))

                for bbox, asset in self._pdf_images(doc, page, seen_hashes):
                    items.append((bbox, "", None, asset))

                # Reading order: top to bottom, then left to right
                items.sort(key=lambda item: (item[0][1], item[0][0]))

                for _, text, block, asset in items:
                    size, bold = _pdf_font(block) if block else (None, False)
                    fragments.append(ContentFragment(
                        index=len(fragments),
                        text=text,
                        is_bold=bold,
                        font_size=size,
                        assets=[asset] if asset else [],
                    ))

        return fragments

    def _pdf_images(self, doc, page, seen_hashes: set[str]):
        for img in page.get_images(full=True):
            xref = img[0]
            try:
                base_image = doc.extract_image(xref)
            except RuntimeError as e:
                logger.warning(f"Failed extracting image {xref}: {e}")
                continue
            if not base_image:
                continue
            if (base_image["width"] < self.min_image_size
                    or base_image["height"] < self.min_image_size):
                continue

            rects = page.get_image_rects(xref)
            if not rects:
                continue

            # Repeated logos and decorations are kept once
            digest = hashlib.md5(base_image["image"]).hexdigest()
            if digest in seen_hashes:
                continue
            seen_hashes.add(digest)

            content_type = f"image/{base_image['ext']}"
            if base_image["ext"] == "jpg":
                content_type = "image/jpeg"
            asset = self._save_media(base_image["image"], content_type)
            if asset is not None:
                rect = rects[0]
                yield (rect.x0, rect.y0, rect.x1, rect.y1), asset

    # ── Media ─────────────────────────────────────────────────────

    def _save_media(self, blob: bytes, content_type: str) -> Optional[AssetReference]:
        extension = CONTENT_TYPE_EXTENSIONS.get(content_type.lower())
        if extension is None or not storage.is_allowed_media(extension):
            self._warnings.append(ParseWarning(
                type=WarningType.SKIPPED_MEDIA,
                message=f"Embedded media of type {content_type} is not supported",
                context={"content_type": content_type},
            ))
            return None

        self._image_counter += 1
        file_name = f"{self.file_prefix}_img_{self._image_counter:03d}{extension}"
        try:
            (self.assets_dir / file_name).write_bytes(blob)
        except OSError as e:
            raise TransientIOError("Could not store an embedded image", str(e)) from e

        return AssetReference(
            file_name=file_name,
            content_type=content_type,
            size_bytes=len(blob),
        )


# ─── DOCX Helpers ─────────────────────────────────────────────────────────────


def _table_rows(table: Table) -> list[str]:
    rows = []
    for row in table.rows:
        cells: list[str] = []
        for cell in row.cells:
            text = cell.text.strip()
            # merged cells repeat their content
            if text and (not cells or cells[-1] != text):
                cells.append(text)
        if cells:
            rows.append(" | ".join(cells))
    return rows


def _paragraph_font_size(paragraph: Paragraph, runs) -> Optional[int]:
    """Largest explicit run size, else the style chain's size (half-points)."""
    sizes = [r.font.size.pt for r in runs if r.font.size is not None]
    if sizes:
        return int(round(max(sizes) * 2))
    style = paragraph.style
    while style is not None:
        if style.font.size is not None:
            return int(round(style.font.size.pt * 2))
        style = style.base_style
    return None


def _roman(value: int) -> str:
    numerals = [(10, "x"), (9, "ix"), (5, "v"), (4, "iv"), (1, "i")]
    result = ""
    for number, numeral in numerals:
        while value >= number:
            result += numeral
            value -= number
    return result


def _format_counter(value: int, num_format: str) -> str:
    if num_format == "lowerLetter":
        return chr(ord("a") + (value - 1) % 26)
    if num_format == "upperLetter":
        return chr(ord("A") + (value - 1) % 26)
    if num_format == "lowerRoman":
        return _roman(value)
    if num_format == "upperRoman":
        return _roman(value).upper()
    return str(value)


class _ListNumbering:
    """Renders Word's automatic list numbers, which are not part of run text."""

    def __init__(self, document):
        try:
            self._numbering = document.part.numbering_part.element
        except (KeyError, NotImplementedError):
            self._numbering = None
        self._counters: dict[tuple[str, int], int] = {}
        self._levels: dict[tuple[str, int], tuple[str, str]] = {}

    def prefix(self, paragraph: Paragraph) -> str:
        if self._numbering is None:
            return ""
        p_pr = paragraph._p.pPr
        if p_pr is None or p_pr.numPr is None or p_pr.numPr.numId is None:
            return ""

        num_id = str(p_pr.numPr.numId.val)
        ilvl = p_pr.numPr.ilvl.val if p_pr.numPr.ilvl is not None else 0
        num_format, level_text = self._level(num_id, ilvl)
        if num_format in _BULLET_FORMATS:
            return ""

        key = (num_id, ilvl)
        self._counters[key] = self._counters.get(key, 0) + 1
        for other in list(self._counters):
            if other[0] == num_id and other[1] > ilvl:
                del self._counters[other]

        rendered = level_text or f"%{ilvl + 1}."
        for level in range(ilvl + 1):
            fmt, _ = self._level(num_id, level)
            value = self._counters.get((num_id, level), 1)
            rendered = rendered.replace(f"%{level + 1}", _format_counter(value, fmt))
        return rendered + " "

    def _level(self, num_id: str, ilvl: int) -> tuple[str, str]:
        key = (num_id, ilvl)
        if key not in self._levels:
            abstract_ids = self._numbering.xpath(
                f'./w:num[@w:numId="{num_id}"]/w:abstractNumId/@w:val'
            )
            num_format, level_text = "decimal", ""
            if abstract_ids:
                level_xpath = (
                    f'./w:abstractNum[@w:abstractNumId="{abstract_ids[0]}"]'
                    f'/w:lvl[@w:ilvl="{ilvl}"]'
                )
                formats = self._numbering.xpath(level_xpath + "/w:numFmt/@w:val")
                texts = self._numbering.xpath(level_xpath + "/w:lvlText/@w:val")
                num_format = formats[0] if formats else "decimal"
                level_text = texts[0] if texts else ""
            self._levels[key] = (num_format, level_text)
        return self._levels[key]


# ─── PDF Helpers ──────────────────────────────────────────────────────────────


def _pdf_block_text(block: dict) -> str:
    lines = []
    for line in block.get("lines", []):
        lines.append("".join(span["text"] for span in line.get("spans", [])))
    return "\n".join(lines)


def _pdf_font(block: dict) -> tuple[Optional[int], bool]:
    spans = [s for line in block.get("lines", []) for s in line.get("spans", [])]
    if not spans:
        return None, False
    size = max(s.get("size", 0) for s in spans)
    # PyMuPDF span flag bit 4 marks bold glyphs
    bold = all(s.get("flags", 0) & 16 for s in spans if s["text"].strip())
    return int(round(size * 2)), bool(bold)
