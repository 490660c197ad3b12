"""
Shared fixtures: an isolated data dir + database per test and a small
.docx builder.
"""

from __future__ import annotations

import io

import pytest
from docx import Document

from packparser import database as db
from packparser import storage
from packparser.engine import ImportConfig

# 1x1 transparent PNG
PNG_BYTES = (
    b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01"
    b"\x08\x06\x00\x00\x00\x1f\x15\xc4\x89\x00\x00\x00\nIDATx\x9cc\x00\x01"
    b"\x00\x00\x05\x00\x01\r\n-\xb4\x00\x00\x00\x00IEND\xaeB`\x82"
)

SAMPLE_LINES = [
    "Редактори: Іван Петренко, Олена Коваль",
    "Розминка",
    "1. Текст розминки",
    "Відповідь: Так",
    "Тур 1",
    "1. Перше питання",
    "Відповідь: Київ",
    "2. Друге питання",
    "Відповідь: Львів",
    "Коментар: місто Лева",
    "Тур 2",
    "3. Третє питання",
    "Відповідь: Одеса",
]


@pytest.fixture
def config(tmp_path) -> ImportConfig:
    """Config pointing at a throwaway data dir and database."""
    cfg = ImportConfig(
        data_dir=str(tmp_path / "data"),
        db_path=str(tmp_path / "packparser.sqlite"),
        job_timeout_seconds=30.0,
        normalizer_timeout_seconds=5.0,
        retry_backoff_seconds=(0.0, 0.01, 0.02),
        poll_interval_seconds=0.01,
    )
    storage.init_storage(cfg.data_dir)
    db.init_db(cfg.db_path)
    return cfg


@pytest.fixture
def make_docx(tmp_path):
    """
    Build a .docx from plain lines. ``image_after`` inserts a picture
    paragraph right after the line with that index.
    """

    def build(lines=None, name: str = "package.docx", title: str = "Кубок Києва 2024",
              image_after: int = None) -> str:
        document = Document()
        if title:
            document.add_heading(title, level=0)
        for index, line in enumerate(SAMPLE_LINES if lines is None else lines):
            document.add_paragraph(line)
            if index == image_after:
                document.add_picture(io.BytesIO(PNG_BYTES))
        path = tmp_path / name
        document.save(str(path))
        return str(path)

    return build
