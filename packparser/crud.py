"""
CRUD Service Layer
==================
High-level operations that coordinate SQLite + filesystem.
This is the ONLY layer that should be called from API endpoints and
CLI commands.

    - Upload boundary: ``create_import_job`` rejects unsupported or
      oversized documents before any extraction work and returns a
      Queued job immediately
    - Job status boundary: ``get_job_status`` / ``list_job_statuses``
    - Structural edits: every edit loads the package, applies the edit,
      renumbers and persists in one transaction, under the package's lock
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Callable, Optional

from . import database as db
from . import renumbering
from . import storage
from .engine import ImportConfig
from .errors import TooLargeError, UnsupportedFormatError, hint_for
from .models import (
    DraftPackage,
    DraftQuestion,
    DraftTour,
    ImportJob,
    JobStatus,
    NumberingMode,
    ValidationReport,
)
from .renumbering import package_lock, renumber
from .validator import ValidationEngine

logger = logging.getLogger(__name__)

_QUESTION_FIELDS = {
    "number", "text", "answer", "accepted_answers", "rejected_answers",
    "comment", "source", "host_instructions", "handout_text", "authors",
}


# ─── Upload Boundary ─────────────────────────────────────────────────────────


def create_import_job(
    file_obj,
    filename: str,
    owner_id: str = "",
    config: Optional[ImportConfig] = None,
    scheduler=None,
) -> ImportJob:
    """
    Store an uploaded document and create a Queued import job.

    Args:
        file_obj: Werkzeug FileStorage, binary stream, or a local path (str).
        filename: Original file name (its extension decides the format).
        owner_id: Submitting user.
        config: Limits and storage locations.
        scheduler: When given, the job is handed to it right away.

    Raises:
        UnsupportedFormatError: extension not in the allow-list.
        TooLargeError: document above the size ceiling.
    """
    config = config or ImportConfig()
    extension = Path(filename).suffix.lower()
    if extension not in config.allowed_extensions:
        raise UnsupportedFormatError(
            f"Unsupported file format '{extension or '(none)'}'"
        )

    job_id = uuid.uuid4().hex
    if isinstance(file_obj, (str, os.PathLike)):
        path = storage.copy_upload(str(file_obj), job_id, config.data_dir)
    else:
        path = storage.save_upload(file_obj, job_id, filename, config.data_dir)

    size = os.path.getsize(path)
    if size > config.max_file_size_bytes:
        storage.delete_job_dir(job_id, config.data_dir)
        raise TooLargeError(
            f"File is {size / 1024 / 1024:.1f} MB; the limit is "
            f"{config.max_file_size_bytes / 1024 / 1024:.0f} MB"
        )

    db.insert_job(
        job_id,
        owner_id=owner_id,
        input_file_name=filename,
        input_file_path=path,
        input_file_size=size,
        db_path=config.db_path,
    )
    if scheduler is not None:
        scheduler.submit(job_id)

    return ImportJob.from_row(db.get_job(job_id, db_path=config.db_path))


# ─── Job Status Boundary ─────────────────────────────────────────────────────


def _job_view(job: ImportJob) -> dict:
    view = {
        "job_id": job.id,
        "status": job.status.value,
        "step": job.step.value if job.step else None,
        "progress": job.progress,
        "attempts": job.attempts,
        "file_name": job.input_file_name,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
    }
    if job.status == JobStatus.QUEUED and job.next_retry_at:
        view["next_retry_at"] = job.next_retry_at.isoformat()
    if job.status == JobStatus.SUCCEEDED:
        view["package_id"] = job.package_id
        view["confidence"] = job.confidence
        view["warnings"] = [w.model_dump(mode="json") for w in job.warnings]
    if job.status == JobStatus.FAILED:
        view["error"] = {
            "kind": job.error_kind,
            "message": job.error_message,
            "hint": hint_for(job.error_kind or ""),
        }
    return view


def get_job_status(job_id: str, db_path: str = None) -> Optional[dict]:
    """Read-only view of a job; None when unknown."""
    row = db.get_job(job_id, db_path=db_path)
    if not row:
        return None
    return _job_view(ImportJob.from_row(row))


def list_job_statuses(status: str = None, owner_id: str = None,
                      limit: int = 100, db_path: str = None) -> list[dict]:
    return [
        _job_view(ImportJob.from_row(row))
        for row in db.list_jobs(status=status, owner_id=owner_id,
                                limit=limit, db_path=db_path)
    ]


# ─── Read Operations ─────────────────────────────────────────────────────────


def get_package(package_id: int, db_path: str = None) -> Optional[dict]:
    """Full package tree plus editor/author collections."""
    package = db.load_package_tree(package_id, db_path=db_path)
    if package is None:
        return None
    data = package.model_dump(mode="json")
    data["all_editors"] = db.get_package_editors(package_id, db_path=db_path)
    data["all_authors"] = db.get_package_authors(package_id, db_path=db_path)
    return data


def list_packages(db_path: str = None) -> list[dict]:
    return db.list_packages(db_path=db_path)


def get_package_report(package_id: int, db_path: str = None) -> Optional[ValidationReport]:
    package = db.load_package_tree(package_id, db_path=db_path)
    if package is None:
        return None
    return ValidationEngine().validate(package)


def delete_package(package_id: int, db_path: str = None, data_dir: str = None) -> bool:
    """Delete a package from SQLite and its media/original from disk."""
    with package_lock(package_id):
        if not db.delete_package(package_id, db_path=db_path):
            return False
    storage.delete_package_files(package_id, data_dir)
    logger.info(f"Deleted package id={package_id}")
    return True


# ─── Structural Edits ────────────────────────────────────────────────────────


def _edit_package(
    package_id: int,
    edit: Callable[[DraftPackage], None],
    db_path: str = None,
) -> Optional[DraftPackage]:
    """Load → edit → renumber → persist, under the package's lock."""
    with package_lock(package_id):
        package = db.load_package_tree(package_id, db_path=db_path)
        if package is None:
            return None
        edit(package)
        renumbered = renumber(package)
        db.sync_package_tree(renumbered, db_path=db_path)
        return renumbered


def _ordered(items: list) -> list:
    return sorted(items, key=lambda item: item.order_index)


def _tour_index(package: DraftPackage, tour_id: int) -> int:
    for index, tour in enumerate(_ordered(package.tours)):
        if tour.id == tour_id:
            return index
    raise LookupError(f"Tour {tour_id} is not part of package {package.id}")


def _block_index(tour: DraftTour, block_id: Optional[int]) -> Optional[int]:
    if block_id is None:
        return None
    for index, block in enumerate(_ordered(tour.blocks)):
        if block.id == block_id:
            return index
    raise LookupError(f"Block {block_id} is not part of tour {tour.id}")


def _locate_question(package: DraftPackage, question_id: int) -> tuple[int, Optional[int], int]:
    """(tour index, block index or None, question index) of a question."""
    for t_index, tour in enumerate(_ordered(package.tours)):
        for b_index, block in enumerate(_ordered(tour.blocks)):
            for q_index, question in enumerate(_ordered(block.questions)):
                if question.id == question_id:
                    return t_index, b_index, q_index
        for q_index, question in enumerate(_ordered(tour.questions)):
            if question.id == question_id:
                return t_index, None, q_index
    raise LookupError(f"Question {question_id} is not part of package {package.id}")


def add_tour(package_id: int, position: Optional[int] = None,
             is_warmup: bool = False, preamble: str = "",
             db_path: str = None) -> Optional[dict]:
    """Create an empty tour. Returns the stored tour, or None if no package."""
    existing: set[int] = set()

    def edit(package: DraftPackage):
        existing.update(t.id for t in package.tours)
        renumbering.add_tour(package, DraftTour(preamble=preamble), position)
        if is_warmup:
            index = next(i for i, t in enumerate(_ordered(package.tours)) if t.id is None)
            renumbering.set_warmup(package, index, True)

    result = _edit_package(package_id, edit, db_path)
    if result is None:
        return None
    tour = next(t for t in result.tours if t.id not in existing)
    logger.info(f"Package {package_id}: added tour id={tour.id} number={tour.number}")
    return tour.model_dump(mode="json")


def delete_tour(tour_id: int, db_path: str = None) -> bool:
    row = db.find_tour(tour_id, db_path=db_path)
    if not row:
        return False
    result = _edit_package(
        row["package_id"],
        lambda p: renumbering.remove_tour(p, _tour_index(p, tour_id)),
        db_path,
    )
    return result is not None


def move_tour(tour_id: int, position: int, db_path: str = None) -> bool:
    """Move a tour to a zero-based position among the package's tours."""
    row = db.find_tour(tour_id, db_path=db_path)
    if not row:
        return False
    result = _edit_package(
        row["package_id"],
        lambda p: renumbering.move_tour(p, _tour_index(p, tour_id), position),
        db_path,
    )
    return result is not None


def set_warmup(tour_id: int, is_warmup: bool = True, db_path: str = None) -> bool:
    """Flag a tour as the warm-up tour (clearing any other), or unflag it."""
    row = db.find_tour(tour_id, db_path=db_path)
    if not row:
        return False
    result = _edit_package(
        row["package_id"],
        lambda p: renumbering.set_warmup(p, _tour_index(p, tour_id), is_warmup),
        db_path,
    )
    return result is not None


def add_question(tour_id: int, position: Optional[int] = None,
                 block_id: Optional[int] = None, db_path: str = None,
                 **fields) -> Optional[dict]:
    """
    Create a question in a tour (or one of its blocks) at ``position``
    (default: last). Returns the stored question, or None if no tour.
    """
    row = db.find_tour(tour_id, db_path=db_path)
    if not row:
        return None
    values = {k: v for k, v in fields.items() if k in _QUESTION_FIELDS}
    existing: set[int] = set()

    def edit(package: DraftPackage):
        for tour in package.tours:
            existing.update(q.id for q in tour.ordered_questions())
        t_index = _tour_index(package, tour_id)
        tour = renumbering.tour_at(package, t_index)
        question = DraftQuestion(**values)
        if not question.number:
            question.number = str(tour.question_count + 1)
        renumbering.add_question(
            package, t_index, question, position,
            block_index=_block_index(tour, block_id),
        )

    result = _edit_package(row["package_id"], edit, db_path)
    if result is None:
        return None
    question = next(
        q for t in result.tours for q in t.ordered_questions()
        if q.id not in existing
    )
    return question.model_dump(mode="json")


def delete_question(question_id: int, db_path: str = None) -> bool:
    row = db.find_question(question_id, db_path=db_path)
    if not row:
        return False

    def edit(package: DraftPackage):
        t_index, b_index, q_index = _locate_question(package, question_id)
        renumbering.remove_question(package, t_index, q_index, b_index)

    return _edit_package(row["package_id"], edit, db_path) is not None


def move_question(question_id: int, to_tour_id: int, position: int,
                  to_block_id: Optional[int] = None, db_path: str = None) -> bool:
    """Move a question within its tour or into another tour of the package."""
    row = db.find_question(question_id, db_path=db_path)
    if not row:
        return False

    def edit(package: DraftPackage):
        t_index, b_index, q_index = _locate_question(package, question_id)
        target = _tour_index(package, to_tour_id)
        target_block = _block_index(renumbering.tour_at(package, target), to_block_id)
        renumbering.move_question(
            package, t_index, q_index, target, position,
            from_block=b_index, to_block=target_block,
        )

    return _edit_package(row["package_id"], edit, db_path) is not None


def set_numbering_mode(package_id: int, mode: NumberingMode,
                       db_path: str = None) -> Optional[dict]:
    def edit(package: DraftPackage):
        package.numbering_mode = NumberingMode(mode)

    result = _edit_package(package_id, edit, db_path)
    return result.model_dump(mode="json") if result else None


def renumber_package(package_id: int, mode: Optional[NumberingMode] = None,
                     db_path: str = None) -> Optional[dict]:
    """Renumber a stored package, optionally switching its numbering mode."""
    def edit(package: DraftPackage):
        if mode is not None:
            package.numbering_mode = NumberingMode(mode)

    result = _edit_package(package_id, edit, db_path)
    if result is None:
        return None
    logger.info(
        f"Package {package_id}: renumbered ({result.numbering_mode.value}, "
        f"{result.total_questions} questions)"
    )
    return result.model_dump(mode="json")
