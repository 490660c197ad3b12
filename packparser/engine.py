"""
Package Import Engine
=====================
Main orchestrator that turns one uploaded document into one stored,
renumbered package.

Usage:
    pipeline = ImportPipeline(config)
    outcome = pipeline.run(job, ctx, on_step)

Architecture:
    Document → DocumentExtractor → ContentFragments → StructuralParser →
    ParseResult → confidence gate (→ LLMNormalizer) → database import →
    renumber → persist

The pipeline runs one job's steps sequentially. Cancellation and the
job's wall-clock deadline are checked only at step boundaries.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Optional

from . import database as db
from . import storage
from .errors import (
    CorruptedDocumentError,
    JobCancelled,
    JobTimeoutError,
    ParsingError,
    TooLargeError,
    TransientIOError,
    UnsupportedFormatError,
)
from .extractor import DocumentExtractor
from .models import (
    ImportJob,
    JobStep,
    ParseResult,
    ParseWarning,
    ValidationReport,
)
from .normalizer import LLMNormalizer, NormalizerBudget, normalize
from .renumbering import renumber
from .state_machine import StructuralParser
from .validator import ValidationEngine

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Progress reported when each step starts
STEP_PROGRESS = {
    JobStep.VALIDATING: 5,
    JobStep.EXTRACTING: 15,
    JobStep.PARSING: 40,
    JobStep.IMPORTING: 70,
    JobStep.FINALIZING: 85,
}


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure the ``packparser`` logger (console + optional file)."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    package_logger = logging.getLogger("packparser")
    package_logger.setLevel(log_level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    # Console handler
    if not package_logger.handlers:
        console = logging.StreamHandler()
        console.setLevel(log_level)
        console.setFormatter(formatter)
        package_logger.addHandler(console)

    # File handler
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)


# ─── Configuration ────────────────────────────────────────────────────────────


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.environ.get(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value not in (None, "") else default


@dataclass
class ImportConfig:
    """Configuration for the import pipeline and scheduler."""

    # Storage
    data_dir: Optional[str] = None
    db_path: Optional[str] = None

    # Upload limits
    max_file_size_bytes: int = 50 * 1024 * 1024
    allowed_extensions: tuple[str, ...] = (".docx", ".pdf")
    min_image_size: int = 50

    # Scheduling
    max_concurrent_jobs: int = 2
    job_timeout_seconds: float = 600.0
    max_attempts: int = 3
    retry_backoff_seconds: tuple[float, ...] = (0.0, 30.0, 120.0)
    poll_interval_seconds: float = 0.5

    # Normalizer
    confidence_threshold: float = 0.7
    normalizer_url: Optional[str] = None
    normalizer_api_key: Optional[str] = None
    normalizer_model: str = "gpt-4o-mini"
    normalizer_timeout_seconds: float = 60.0
    normalizer_max_cost_usd: float = 0.50
    normalizer_input_price_per_1k: float = 0.00015
    normalizer_output_price_per_1k: float = 0.0006

    # Output
    save_debug_json: bool = True

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "ImportConfig":
        """Build a config from ``PACKPARSER_*`` environment variables."""
        defaults = cls()
        values = dict(
            data_dir=os.environ.get("PACKPARSER_DATA_DIR") or None,
            db_path=os.environ.get("PACKPARSER_DB_PATH") or None,
            max_file_size_bytes=_env_int(
                "PACKPARSER_MAX_FILE_SIZE", defaults.max_file_size_bytes),
            max_concurrent_jobs=_env_int(
                "PACKPARSER_MAX_CONCURRENT_JOBS", defaults.max_concurrent_jobs),
            job_timeout_seconds=_env_float(
                "PACKPARSER_JOB_TIMEOUT", defaults.job_timeout_seconds),
            max_attempts=_env_int("PACKPARSER_MAX_ATTEMPTS", defaults.max_attempts),
            confidence_threshold=_env_float(
                "PACKPARSER_CONFIDENCE_THRESHOLD", defaults.confidence_threshold),
            normalizer_url=os.environ.get("PACKPARSER_NORMALIZER_URL") or None,
            normalizer_api_key=os.environ.get("PACKPARSER_NORMALIZER_API_KEY") or None,
            normalizer_model=os.environ.get(
                "PACKPARSER_NORMALIZER_MODEL", defaults.normalizer_model),
            normalizer_timeout_seconds=_env_float(
                "PACKPARSER_NORMALIZER_TIMEOUT", defaults.normalizer_timeout_seconds),
            normalizer_max_cost_usd=_env_float(
                "PACKPARSER_NORMALIZER_MAX_COST", defaults.normalizer_max_cost_usd),
            log_level=os.environ.get("PACKPARSER_LOG_LEVEL", defaults.log_level),
            log_file=os.environ.get("PACKPARSER_LOG_FILE") or None,
        )
        values.update(overrides)
        return cls(**values)

    def validate(self):
        """Raise ValueError for inconsistent settings."""
        if self.max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.retry_backoff_seconds:
            raise ValueError("retry_backoff_seconds must not be empty")
        if self.job_timeout_seconds <= 0:
            raise ValueError("job_timeout_seconds must be positive")
        if self.normalizer_timeout_seconds >= self.job_timeout_seconds:
            raise ValueError(
                "normalizer_timeout_seconds must be shorter than job_timeout_seconds"
            )
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be between 0 and 1")

    def backoff_before(self, attempt: int) -> float:
        """Delay before the given 1-based attempt."""
        schedule = self.retry_backoff_seconds
        return schedule[min(attempt - 1, len(schedule) - 1)]

    def budget(self) -> NormalizerBudget:
        return NormalizerBudget(
            max_cost_usd=self.normalizer_max_cost_usd,
            timeout_seconds=self.normalizer_timeout_seconds,
            input_price_per_1k=self.normalizer_input_price_per_1k,
            output_price_per_1k=self.normalizer_output_price_per_1k,
        )

    def build_normalizer(self) -> Optional[LLMNormalizer]:
        if not self.normalizer_url:
            return None
        return LLMNormalizer(
            self.normalizer_url,
            api_key=self.normalizer_api_key,
            model=self.normalizer_model,
        )


# ─── Job Context ──────────────────────────────────────────────────────────────


@dataclass
class JobContext:
    """Per-attempt execution context owned by the worker running the job."""
    job_id: str
    deadline: float
    attempt: int = 1
    max_attempts: int = 1
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def start(cls, job_id: str, timeout_seconds: float, attempt: int = 1,
              max_attempts: int = 1,
              cancel_event: Optional[threading.Event] = None) -> "JobContext":
        return cls(
            job_id=job_id,
            deadline=time.monotonic() + timeout_seconds,
            attempt=attempt,
            max_attempts=max_attempts,
            cancel_event=cancel_event or threading.Event(),
        )

    @property
    def final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def remaining(self) -> float:
        return self.deadline - time.monotonic()

    def checkpoint(self):
        """Step boundary: honor cancellation, then the deadline."""
        if self.cancel_event.is_set():
            raise JobCancelled(self.job_id)
        if self.remaining() <= 0:
            raise JobTimeoutError("The import took too long and was stopped")


@dataclass
class ImportOutcome:
    """What a successful pipeline run reports back to the scheduler."""
    package_id: int
    confidence: float
    warnings: list[ParseWarning] = field(default_factory=list)
    used_normalizer: bool = False


StepCallback = Callable[[JobStep, int], None]


# ─── Pipeline ─────────────────────────────────────────────────────────────────


class ImportPipeline:
    """
    Runs the five import steps for one job:

        1. Validating: input file present, supported, within size
        2. Extracting: fragments + media into the job's asset folder
        3. Parsing: structural parse, confidence gate, normalizer
        4. Importing: draft tree committed as package records
        5. Finalizing: renumber, persist, move media, keep the original

    Any failure after Importing deletes the partially imported package.
    """

    def __init__(self, config: Optional[ImportConfig] = None,
                 normalizer: Optional[LLMNormalizer] = None):
        self.config = config or ImportConfig()
        self.normalizer = normalizer if normalizer is not None else self.config.build_normalizer()

    def run(self, job: ImportJob, ctx: JobContext,
            on_step: Optional[StepCallback] = None) -> ImportOutcome:
        on_step = on_step or (lambda step, progress: None)
        job_dir = storage.get_job_dir(job.id, self.config.data_dir)

        # ── Step 1: Validating ────────────────────────────────────────
        self._enter(JobStep.VALIDATING, ctx, on_step)
        path = self._validate_input(job)

        # ── Step 2: Extracting ────────────────────────────────────────
        self._enter(JobStep.EXTRACTING, ctx, on_step)
        storage.clear_job_assets(job.id, self.config.data_dir)
        extractor = DocumentExtractor(
            assets_dir=str(job_dir / "assets"),
            max_size_bytes=self.config.max_file_size_bytes,
            file_prefix=job.id,
            min_image_size=self.config.min_image_size,
        )
        extraction = extractor.extract(path)
        if self.config.save_debug_json:
            self._save_json(
                [f.model_dump() for f in extraction.fragments],
                job_dir / "output" / "extracted.json",
            )

        # ── Step 3: Parsing ───────────────────────────────────────────
        self._enter(JobStep.PARSING, ctx, on_step)
        result = StructuralParser().parse(extraction.fragments)
        result = result.model_copy(
            update={"warnings": [*extraction.warnings, *result.warnings]}
        )
        logger.info(
            f"Job {job.id}: {result.total_questions} questions, "
            f"confidence {result.confidence:.2f}"
        )

        ctx.checkpoint()
        budget = replace(
            self.config.budget(),
            timeout_seconds=max(
                1.0, min(self.config.normalizer_timeout_seconds, ctx.remaining())
            ),
        )
        result = normalize(
            result,
            extraction.fragments,
            self.normalizer,
            self.config.confidence_threshold,
            budget,
            final_attempt=ctx.final_attempt,
        )
        if not result.package.tours or result.total_questions == 0:
            raise ParsingError("No tours or questions were recognized in the document")
        if self.config.save_debug_json:
            self._save_json(
                result.model_dump(mode="json"),
                job_dir / "output" / "parse_result.json",
            )

        # ── Step 4: Importing ─────────────────────────────────────────
        self._enter(JobStep.IMPORTING, ctx, on_step)
        package = result.package.model_copy(deep=True)
        try:
            package_id = db.insert_package_tree(
                package, source_job_id=job.id, db_path=self.config.db_path
            )
        except sqlite3.OperationalError as e:
            raise TransientIOError("The database is temporarily unavailable", str(e)) from e

        # ── Step 5: Finalizing ────────────────────────────────────────
        try:
            self._enter(JobStep.FINALIZING, ctx, on_step)
            self._finalize(job, package, path)
        except Exception:
            logger.warning(f"Job {job.id}: rolling back package {package_id}")
            db.delete_package(package_id, db_path=self.config.db_path)
            storage.delete_package_files(package_id, self.config.data_dir)
            raise

        on_step(JobStep.FINALIZING, 100)
        return ImportOutcome(
            package_id=package_id,
            confidence=result.confidence,
            warnings=result.warnings,
            used_normalizer=result.used_normalizer,
        )

    def _enter(self, step: JobStep, ctx: JobContext, on_step: StepCallback):
        ctx.checkpoint()
        logger.info(f"Job {ctx.job_id}: {step.value}")
        on_step(step, STEP_PROGRESS[step])

    def _validate_input(self, job: ImportJob) -> str:
        path = job.input_file_path
        extension = Path(job.input_file_name or path).suffix.lower()
        if extension not in self.config.allowed_extensions:
            raise UnsupportedFormatError(
                f"Unsupported file format '{extension or '(none)'}'"
            )
        if not path or not os.path.exists(path):
            raise CorruptedDocumentError("The uploaded file is missing")
        try:
            size = os.path.getsize(path)
        except OSError as e:
            raise TransientIOError("Could not read the uploaded file", str(e)) from e
        if size > self.config.max_file_size_bytes:
            raise TooLargeError(
                f"File is {size / 1024 / 1024:.1f} MB; the limit is "
                f"{self.config.max_file_size_bytes / 1024 / 1024:.0f} MB"
            )
        return path

    def _finalize(self, job: ImportJob, package, path: str):
        renumbered = renumber(package)
        try:
            moved = storage.move_job_assets(job.id, renumbered.id, self.config.data_dir)
            for tour in renumbered.tours:
                for question in tour.ordered_questions():
                    if question.handout_asset:
                        question.handout_asset = moved.get(
                            question.handout_asset, question.handout_asset)
                    if question.comment_asset:
                        question.comment_asset = moved.get(
                            question.comment_asset, question.comment_asset)

            db.sync_package_tree(renumbered, db_path=self.config.db_path)
            original = storage.save_original(path, renumbered.id, self.config.data_dir)
            db.update_package(renumbered.id, original_path=original,
                              db_path=self.config.db_path)
        except (OSError, sqlite3.OperationalError) as e:
            raise TransientIOError("Could not store the imported package", str(e)) from e

        storage.delete_job_dir(job.id, self.config.data_dir)
        logger.info(
            f"Job {job.id}: package {renumbered.id} stored "
            f"({renumbered.total_questions} questions, "
            f"{renumbered.numbering_mode.value} numbering)"
        )

    def _save_json(self, data, filepath: Path):
        """Save a debug snapshot; failures are logged, never fatal."""
        try:
            with open(filepath, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=str)
            logger.debug(f"Saved JSON: {filepath}")
        except OSError as e:
            logger.error(f"Failed to save JSON: {e}")


# ─── Dry Run ──────────────────────────────────────────────────────────────────


def dry_run_parse(
    path: str,
    config: Optional[ImportConfig] = None,
    use_normalizer: bool = False,
) -> tuple[ParseResult, ValidationReport]:
    """
    Extract, parse and renumber a document without storing anything.
    Media go to a temporary folder that is removed afterwards.
    """
    config = config or ImportConfig()
    with tempfile.TemporaryDirectory(prefix="packparser_") as tmp:
        extractor = DocumentExtractor(
            assets_dir=tmp,
            max_size_bytes=config.max_file_size_bytes,
            file_prefix="preview",
            min_image_size=config.min_image_size,
        )
        extraction = extractor.extract(path)

    result = StructuralParser().parse(extraction.fragments)
    result = result.model_copy(
        update={"warnings": [*extraction.warnings, *result.warnings]}
    )
    if use_normalizer:
        result = normalize(
            result,
            extraction.fragments,
            config.build_normalizer(),
            config.confidence_threshold,
            config.budget(),
        )

    result = result.model_copy(update={"package": renumber(result.package)})
    report = ValidationEngine().validate(result.package, result.warnings)
    return result, report
