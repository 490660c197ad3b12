"""
Data Models
===========
Pydantic models for the package import pipeline.

Covers the extracted content fragments, the draft package tree
(package → tours → optional blocks → questions), parse warnings,
import job records and the post-parse review report.
All models are serializable to JSON.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# ─── Enums ────────────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    """Lifecycle status of an import job."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED
        )


class JobStep(str, Enum):
    """Pipeline step of a running import job."""
    VALIDATING = "validating"
    EXTRACTING = "extracting"
    PARSING = "parsing"
    IMPORTING = "importing"
    FINALIZING = "finalizing"


class NumberingMode(str, Enum):
    """How question display numbers are (re)computed."""
    GLOBAL = "global"
    PER_TOUR = "per_tour"
    MANUAL = "manual"


class FieldKind(str, Enum):
    """Labeled question or container field."""
    ANSWER = "answer"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMMENT = "comment"
    SOURCE = "source"
    AUTHORS = "authors"
    EDITORS = "editors"
    HOST_INSTRUCTIONS = "host_instructions"
    HANDOUT = "handout"


class WarningType(str, Enum):
    """Types of issues recorded for operator review."""
    MISSING_ANSWER = "missing_answer"
    MISSING_QUESTION_TEXT = "missing_question_text"
    DEFAULT_TOUR_CREATED = "default_tour_created"
    AMBIGUOUS_NUMBERING = "ambiguous_numbering"
    SUSPECT_MARKER = "suspect_marker"
    UNCLASSIFIED_ASSET = "unclassified_asset"
    UNCLOSED_BRACKET = "unclosed_bracket"
    SKIPPED_MEDIA = "skipped_media"
    LOW_CONFIDENCE = "low_confidence"
    NORMALIZER_SKIPPED = "normalizer_skipped"
    NORMALIZER_FAILED = "normalizer_failed"


# ─── Extraction Models ────────────────────────────────────────────────────────


class AssetReference(BaseModel):
    """An embedded media file written to the job's asset directory."""
    file_name: str
    content_type: str = ""
    size_bytes: int = 0


class ContentFragment(BaseModel):
    """
    An ordered text block extracted from the source document.
    Identified by its position in document order; immutable once extracted.
    """
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0, description="Position in document order")
    text: str = ""
    style_id: Optional[str] = None
    is_heading: bool = False
    is_bold: bool = False
    font_size: Optional[int] = Field(
        default=None,
        description="Dominant font size in half-points",
    )
    assets: list[AssetReference] = Field(default_factory=list)


# ─── Warning Model ────────────────────────────────────────────────────────────


class ParseWarning(BaseModel):
    """A non-fatal issue attached to a parse or import result."""
    type: WarningType
    message: str
    context: Optional[dict] = None


# ─── Draft Tree ───────────────────────────────────────────────────────────────


class DraftQuestion(BaseModel):
    """A question with its raw labeled fields."""
    id: Optional[int] = None
    number: str = ""
    order_index: int = 0
    text: str = ""
    answer: str = ""
    accepted_answers: str = ""
    rejected_answers: str = ""
    comment: str = ""
    source: str = ""
    host_instructions: str = ""
    handout_text: str = ""
    handout_asset: Optional[str] = None
    comment_asset: Optional[str] = None
    authors: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def has_text(self) -> bool:
        return bool(self.text.strip()) or bool(self.handout_asset)

    @computed_field
    @property
    def has_answer(self) -> bool:
        return bool(self.answer.strip())


class DraftBlock(BaseModel):
    """An optional subdivision of a tour with its own editors."""
    id: Optional[int] = None
    name: Optional[str] = None
    order_index: int = 0
    preamble: str = ""
    editors: list[str] = Field(default_factory=list)
    questions: list[DraftQuestion] = Field(default_factory=list)


class DraftTour(BaseModel):
    """
    A round of the package. Owns questions directly, or through blocks.
    Questions held directly by a tour that also has blocks are ordered
    after all block questions.
    """
    id: Optional[int] = None
    number: str = ""
    order_index: int = 0
    is_warmup: bool = False
    preamble: str = ""
    editors: list[str] = Field(default_factory=list)
    questions: list[DraftQuestion] = Field(default_factory=list)
    blocks: list[DraftBlock] = Field(default_factory=list)

    def ordered_questions(self) -> list[DraftQuestion]:
        """All questions of the tour in display order."""
        ordered: list[DraftQuestion] = []
        for block in sorted(self.blocks, key=lambda b: b.order_index):
            ordered.extend(
                sorted(block.questions, key=lambda q: q.order_index)
            )
        ordered.extend(sorted(self.questions, key=lambda q: q.order_index))
        return ordered

    @computed_field
    @property
    def question_count(self) -> int:
        return len(self.questions) + sum(len(b.questions) for b in self.blocks)


class DraftPackage(BaseModel):
    """Root of the draft tree."""
    id: Optional[int] = None
    title: str = ""
    description: str = ""
    preamble: str = ""
    numbering_mode: NumberingMode = NumberingMode.GLOBAL
    tags: list[str] = Field(default_factory=list)
    editors: list[str] = Field(default_factory=list)
    tours: list[DraftTour] = Field(default_factory=list)

    @computed_field
    @property
    def total_questions(self) -> int:
        return sum(t.question_count for t in self.tours)

    def warmup_tour(self) -> Optional[DraftTour]:
        return next((t for t in self.tours if t.is_warmup), None)


class ParseResult(BaseModel):
    """Outcome of the structural parser (and, optionally, the normalizer)."""
    package: DraftPackage
    warnings: list[ParseWarning] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    used_normalizer: bool = False
    normalizer_cost_usd: float = 0.0

    @computed_field
    @property
    def total_questions(self) -> int:
        return self.package.total_questions


# ─── Import Job ───────────────────────────────────────────────────────────────


class ImportJob(BaseModel):
    """Import job record as stored in the jobs table."""
    id: str
    owner_id: str = ""
    status: JobStatus = JobStatus.QUEUED
    step: Optional[JobStep] = None
    progress: int = Field(default=0, ge=0, le=100)
    attempts: int = 0
    input_file_name: str = ""
    input_file_path: str = ""
    input_file_size: int = 0
    package_id: Optional[int] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    confidence: Optional[float] = None
    warnings: list[ParseWarning] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "ImportJob":
        """Build a job from a jobs-table row (internal details dropped)."""
        data = dict(row)
        data.pop("error_details", None)
        data.pop("seq", None)
        raw = data.pop("warnings_json", None)
        data["warnings"] = json.loads(raw) if raw else []
        return cls(**data)


# ─── Review Report ────────────────────────────────────────────────────────────


class ValidationReport(BaseModel):
    """Post-parse review report over a draft tree."""
    total_tours: int = 0
    total_questions: int = 0
    structured_successfully: int = 0
    has_warmup: bool = False
    numbering_mode: NumberingMode = NumberingMode.GLOBAL
    questions_missing_answer: list[str] = Field(default_factory=list)
    questions_missing_text: list[str] = Field(default_factory=list)
    duplicate_question_numbers: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Tour number → duplicated question numbers",
    )
    empty_tours: list[str] = Field(default_factory=list)
    warning_breakdown: dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def success_rate(self) -> float:
        if self.total_questions == 0:
            return 0.0
        return round(
            self.structured_successfully / self.total_questions * 100, 2
        )
