"""
Structural Parser
=================
Deterministic state machine that turns an ordered sequence of
ContentFragments into a draft package tree
(package → tours → optional blocks → questions → fields).

Each line is classified by the pattern table; structural markers open
containers, field labels switch the active text sink, and everything
else is appended to whatever is currently open. The parser also
detects the package's numbering mode and scores its own confidence.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .models import (
    AssetReference,
    ContentFragment,
    DraftBlock,
    DraftPackage,
    DraftQuestion,
    DraftTour,
    FieldKind,
    NumberingMode,
    ParseResult,
    ParseWarning,
    WarningType,
)
from .patterns import (
    DEFAULT_TABLE,
    Marker,
    MarkerKind,
    PatternTable,
    append_text,
    classify,
    normalize_text,
    split_inline_labels,
    split_names,
)

logger = logging.getLogger(__name__)

# ─── Tuning ───────────────────────────────────────────────────────────────────

MISSING_ANSWER_WEIGHT = 0.6
MISSING_TEXT_WEIGHT = 0.4
SUSPECT_MARKER_WEIGHT = 0.1

TITLE_FONT_RATIO = 0.7
MAX_TITLE_FRAGMENTS = 3
DEFAULT_TOUR_NUMBER = "1"


class ParserSection(Enum):
    """Active text sink."""
    PACKAGE_HEADER = "PACKAGE_HEADER"
    TOUR_HEADER = "TOUR_HEADER"
    BLOCK_HEADER = "BLOCK_HEADER"
    QUESTION_TEXT = "QUESTION_TEXT"
    HOST_INSTRUCTIONS = "HOST_INSTRUCTIONS"
    HANDOUT = "HANDOUT"
    ANSWER = "ANSWER"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COMMENT = "COMMENT"
    SOURCE = "SOURCE"
    AUTHORS = "AUTHORS"


_FIELD_SECTIONS = {
    FieldKind.ANSWER: ParserSection.ANSWER,
    FieldKind.ACCEPTED: ParserSection.ACCEPTED,
    FieldKind.REJECTED: ParserSection.REJECTED,
    FieldKind.COMMENT: ParserSection.COMMENT,
    FieldKind.SOURCE: ParserSection.SOURCE,
    FieldKind.AUTHORS: ParserSection.AUTHORS,
    FieldKind.HOST_INSTRUCTIONS: ParserSection.HOST_INSTRUCTIONS,
    FieldKind.HANDOUT: ParserSection.HANDOUT,
}

_SECTION_ATTRS = {
    ParserSection.QUESTION_TEXT: "text",
    ParserSection.HOST_INSTRUCTIONS: "host_instructions",
    ParserSection.HANDOUT: "handout_text",
    ParserSection.ANSWER: "answer",
    ParserSection.ACCEPTED: "accepted_answers",
    ParserSection.REJECTED: "rejected_answers",
    ParserSection.COMMENT: "comment",
    ParserSection.SOURCE: "source",
}

# Images found while one of these is open belong to the comment
ANSWER_SECTIONS = frozenset({
    ParserSection.ANSWER,
    ParserSection.ACCEPTED,
    ParserSection.REJECTED,
    ParserSection.COMMENT,
    ParserSection.SOURCE,
    ParserSection.AUTHORS,
})

_STRUCTURAL = (
    MarkerKind.TOUR_START,
    MarkerKind.WARMUP_START,
    MarkerKind.BLOCK_START,
)


# ─── Numbering Mode Detection ─────────────────────────────────────────────────


def _is_consecutive(values: list[int]) -> bool:
    return all(b == a + 1 for a, b in zip(values, values[1:]))


def detect_numbering_mode(tours: list[DraftTour]) -> tuple[NumberingMode, bool]:
    """
    Infer the numbering mode from the raw numbers of non-warm-up tours.

    Returns:
        (mode, ambiguous). Ambiguous shapes fall back to Manual.
    """
    groups = [
        [q.number for q in tour.ordered_questions()]
        for tour in tours
        if not tour.is_warmup
    ]
    groups = [g for g in groups if g]
    numbers = [n for g in groups for n in g]

    if not numbers:
        return NumberingMode.GLOBAL, False

    if not all(n.strip().isdigit() for n in numbers):
        return NumberingMode.MANUAL, False

    values = [int(n) for n in numbers]
    if values[0] in (0, 1) and _is_consecutive(values):
        return NumberingMode.GLOBAL, False

    per_tour = all(
        int(g[0]) == 1 and _is_consecutive([int(n) for n in g])
        for g in groups
    )
    if per_tour:
        return NumberingMode.PER_TOUR, False

    return NumberingMode.MANUAL, True


# ─── Parser ───────────────────────────────────────────────────────────────────


class StructuralParser:
    """
    Finite state machine over content fragments.

    The open containers are tracked explicitly: ``current_tour``,
    ``current_block`` and ``current_question`` form the container stack,
    ``section`` names the active field sink, and ``open_bracket`` holds a
    multi-line bracketed field awaiting its closing "]".
    """

    def __init__(self, table: Optional[PatternTable] = None):
        self.table = table or DEFAULT_TABLE
        self.reset()

    def reset(self):
        """Reset the state machine for a fresh parsing run."""
        self.package = DraftPackage()
        self.section = ParserSection.PACKAGE_HEADER
        self.current_tour: Optional[DraftTour] = None
        self.current_block: Optional[DraftBlock] = None
        self.current_question: Optional[DraftQuestion] = None
        self.open_bracket: Optional[FieldKind] = None
        self.warnings: list[ParseWarning] = []
        self.in_header = True
        self.header_lines: list[tuple[str, ContentFragment]] = []
        self.pending_assets: list[AssetReference] = []
        self.author_ranges: list[tuple[int, int, list[str]]] = []
        self.named_format = False
        self.last_number: Optional[int] = None
        self.suspect_markers = 0
        self._after_boundary = False

    def parse(self, fragments: list[ContentFragment]) -> ParseResult:
        """Parse fragments into a draft tree with warnings and confidence."""
        self.reset()

        for fragment in fragments:
            self._process_fragment(fragment)

        self.finalize()

        mode, ambiguous = detect_numbering_mode(self.package.tours)
        self.package.numbering_mode = mode
        if ambiguous:
            self._warn(
                WarningType.AMBIGUOUS_NUMBERING,
                "Question numbers are neither continuous nor restarting per "
                "tour; numbering mode set to manual",
            )

        confidence = self._confidence()
        logger.info(
            f"Parsed {len(self.package.tours)} tours, "
            f"{self.package.total_questions} questions "
            f"(mode={mode.value}, confidence={confidence:.2f}, "
            f"warnings={len(self.warnings)})"
        )
        return ParseResult(
            package=self.package,
            warnings=self.warnings,
            confidence=confidence,
        )

    def finalize(self):
        """Close every open container at end of input."""
        if self.in_header:
            self._close_header()
        self._close_question()

        for asset in self.pending_assets:
            self._warn(
                WarningType.UNCLASSIFIED_ASSET,
                f"Image {asset.file_name} is not attached to any question",
                {"file": asset.file_name},
            )
        self.pending_assets = []

        self._apply_author_ranges()
        self._order_tours()
        self._tidy_text()

    # ── Fragment / Line Processing ────────────────────────────────

    def _process_fragment(self, fragment: ContentFragment):
        for raw_line in fragment.text.split("\n"):
            line = normalize_text(raw_line, apostrophes=False)
            if line:
                self._process_line(line, fragment)

        for asset in fragment.assets:
            if self.current_question is None:
                self.pending_assets.append(asset)
            else:
                self._assign_asset(asset)

    def _process_line(self, line: str, fragment: ContentFragment):
        if self.open_bracket is not None:
            if not self._interrupts_bracket(line):
                self._continue_bracket(line, fragment)
                return
            self._warn_unclosed_bracket()

        for piece in split_inline_labels(line, self.table):
            self._process_piece(piece, fragment)

    def _process_piece(self, piece: str, fragment: ContentFragment):
        marker = classify(piece, self.table)
        kind = marker.kind

        if kind == MarkerKind.AUTHOR_RANGE:
            self.author_ranges.append(
                (marker.range_start, marker.range_end, split_names(marker.text))
            )
            return

        if self.in_header:
            opens_body = kind in _STRUCTURAL or (
                kind == MarkerKind.QUESTION_START
                and self._accepts_question(marker)
            )
            if not opens_body:
                self.header_lines.append((piece, fragment))
                return
            self._close_header()

        if kind == MarkerKind.WARMUP_START:
            self._start_warmup(marker)
        elif kind == MarkerKind.TOUR_START:
            self._start_tour(marker.number, marker.text)
        elif kind == MarkerKind.BLOCK_START:
            self._start_block(marker)
        elif kind == MarkerKind.QUESTION_START:
            if self._accepts_question(marker):
                self._start_question(marker)
            else:
                self._append(piece)
        elif kind == MarkerKind.FIELD_LABEL:
            self._handle_label(marker, piece)
        else:
            self._append(piece)

    # ── Containers ────────────────────────────────────────────────

    def _start_tour(self, number: Optional[str], preamble: str = "",
                    is_warmup: bool = False):
        self._close_question()
        tour = DraftTour(
            number=number or "",
            is_warmup=is_warmup,
            preamble=preamble,
            order_index=len(self.package.tours),
        )
        self.package.tours.append(tour)
        self.current_tour = tour
        self.current_block = None
        self.section = ParserSection.TOUR_HEADER
        self.last_number = None
        self._after_boundary = True
        logger.debug(f"Detected {'warm-up ' if is_warmup else ''}tour {tour.number}")

    def _start_warmup(self, marker: Marker):
        is_question_cue = marker.name == "question"
        existing = self.package.warmup_tour()

        if existing is None:
            self._start_tour("0", "" if is_question_cue else marker.text,
                             is_warmup=True)
        elif existing is not self.current_tour:
            self._close_question()
            self.current_tour = existing
            self.current_block = None
            self.section = ParserSection.TOUR_HEADER
            numbers = [q.number for q in existing.ordered_questions()]
            self.last_number = (
                int(numbers[-1]) if numbers and numbers[-1].isdigit() else None
            )

        if is_question_cue:
            number = str((self.last_number or 0) + 1)
            self._start_question(Marker(
                MarkerKind.QUESTION_START, number=number, text=marker.text
            ))

    def _start_block(self, marker: Marker):
        self._ensure_tour()
        self._close_question()
        block = DraftBlock(
            name=marker.name or marker.number,
            order_index=len(self.current_tour.blocks),
        )
        self.current_tour.blocks.append(block)
        self.current_block = block
        self.section = ParserSection.BLOCK_HEADER
        self._after_boundary = True

    def _ensure_tour(self):
        if self.current_tour is not None:
            return
        self._start_tour(DEFAULT_TOUR_NUMBER)
        self._warn(
            WarningType.DEFAULT_TOUR_CREATED,
            "Questions found before any tour header; "
            f"created tour {DEFAULT_TOUR_NUMBER}",
        )

    def _accepts_question(self, marker: Marker) -> bool:
        """
        Plausibility check for a question start. A bare "N." after a
        "Запитання N" header, or a number that does not continue the
        current tour, is ordinary content (numbered lists in comments,
        sources and preambles).
        """
        if self.named_format and not marker.named_format:
            return False
        number = (marker.number or "").strip()
        if not number.isdigit():
            return True
        value = int(number)
        if self.current_tour is None:
            return value in (0, 1)
        if self.last_number is None:
            return True
        return value == self.last_number + 1

    def _start_question(self, marker: Marker):
        self._ensure_tour()
        self._close_question()

        if marker.named_format:
            self.named_format = True

        question = DraftQuestion(number=(marker.number or "").strip())
        container = (
            self.current_block.questions
            if self.current_block is not None
            else self.current_tour.questions
        )
        question.order_index = len(container)
        container.append(question)

        self.current_question = question
        self.section = ParserSection.QUESTION_TEXT
        self._after_boundary = False
        if question.number.isdigit():
            self.last_number = int(question.number)

        for asset in self.pending_assets:
            self._assign_asset(asset)
        self.pending_assets = []

        remainder = marker.text
        if not remainder:
            return
        if remainder.startswith("["):
            inline = classify(remainder, self.table)
            if inline.kind == MarkerKind.FIELD_LABEL and inline.bracketed:
                self._handle_label(inline, remainder)
                return
        self._append(remainder)

    def _close_question(self):
        question = self.current_question
        if question is None:
            return
        if self.open_bracket is not None:
            self._warn_unclosed_bracket()

        context = {
            "tour": self.current_tour.number if self.current_tour else None,
            "question": question.number,
        }
        if not question.has_text:
            self._warn(
                WarningType.MISSING_QUESTION_TEXT,
                f"Question {question.number}: text not found",
                context,
            )
        if not question.has_answer:
            self._warn(
                WarningType.MISSING_ANSWER,
                f"Question {question.number}: answer not found",
                context,
            )
        self.current_question = None

    # ── Fields ────────────────────────────────────────────────────

    def _handle_label(self, marker: Marker, piece: str):
        kind = marker.field
        question = self.current_question
        self._after_boundary = False

        if kind == FieldKind.EDITORS:
            target = self.current_block or self.current_tour or self.package
            target.editors.extend(split_names(marker.text))
            return

        if question is None:
            self._append(piece)
            return

        section = _FIELD_SECTIONS[kind]

        if marker.bracketed:
            attr = _SECTION_ATTRS[section]
            setattr(question, attr, append_text(getattr(question, attr), marker.text))
            if marker.bracket_open:
                self.open_bracket = kind
                self.section = section
                return
            self.section = ParserSection.QUESTION_TEXT
            if marker.trailing:
                self._append(marker.trailing)
            return

        self.section = section
        if kind == FieldKind.AUTHORS:
            question.authors = split_names(marker.text)
        else:
            setattr(question, _SECTION_ATTRS[section], marker.text)

    def _interrupts_bracket(self, line: str) -> bool:
        marker = classify(line, self.table)
        if marker.kind in _STRUCTURAL:
            return True
        return (
            marker.kind == MarkerKind.QUESTION_START
            and self._accepts_question(marker)
        )

    def _continue_bracket(self, line: str, fragment: ContentFragment):
        question = self.current_question
        attr = _SECTION_ATTRS[_FIELD_SECTIONS[self.open_bracket]]
        match = self.table.bracket_close.match(line)
        if match is None:
            setattr(question, attr, append_text(getattr(question, attr), line))
            return

        closing = match.group(1).strip()
        if closing:
            setattr(question, attr, append_text(getattr(question, attr), closing))
        self.open_bracket = None
        self.section = ParserSection.QUESTION_TEXT
        trailing = match.group(2).strip()
        if trailing:
            self._process_line(trailing, fragment)

    def _warn_unclosed_bracket(self):
        self._warn(
            WarningType.UNCLOSED_BRACKET,
            f"Bracketed {self.open_bracket.value} was never closed",
            {"question": self.current_question.number
             if self.current_question else None},
        )
        self.open_bracket = None
        self.section = ParserSection.QUESTION_TEXT

    def _append(self, text: str):
        """Append unmatched text to the active sink."""
        question = self.current_question
        if question is not None:
            if self.section == ParserSection.AUTHORS:
                question.authors.extend(split_names(text))
                return
            attr = _SECTION_ATTRS.get(self.section, "text")
            setattr(question, attr, append_text(getattr(question, attr), text))
            return

        container = self.current_block or self.current_tour
        if container is None:
            self.package.preamble = append_text(self.package.preamble, text)
            return

        if self._after_boundary:
            self.suspect_markers += 1
            self._warn(
                WarningType.SUSPECT_MARKER,
                f"Unrecognized line right after a tour/block start: {text[:60]!r}",
                {"tour": self.current_tour.number if self.current_tour else None},
            )
            self._after_boundary = False
        container.preamble = append_text(container.preamble, text)

    # ── Assets ────────────────────────────────────────────────────

    def _assign_asset(self, asset: AssetReference):
        question = self.current_question
        if self.section in ANSWER_SECTIONS:
            if question.comment_asset is None:
                question.comment_asset = asset.file_name
                return
        elif question.handout_asset is None:
            question.handout_asset = asset.file_name
            return

        self._warn(
            WarningType.UNCLASSIFIED_ASSET,
            f"Question {question.number}: extra image {asset.file_name} ignored",
            {"question": question.number, "file": asset.file_name},
        )

    # ── Header ────────────────────────────────────────────────────

    def _close_header(self):
        """Split collected header lines into title, editors and preamble."""
        self.in_header = False
        if not self.header_lines:
            return

        grouped: list[tuple[ContentFragment, list[str]]] = []
        for text, fragment in self.header_lines:
            if grouped and grouped[-1][0].index == fragment.index:
                grouped[-1][1].append(text)
            else:
                grouped.append((fragment, [text]))
        self.header_lines = []

        sizes = [f.font_size for f, _ in grouped if f.font_size]
        max_size = max(sizes) if sizes else 0
        varied = len(set(sizes)) > 1

        title_count = 0
        for fragment, _ in grouped[:MAX_TITLE_FRAGMENTS]:
            if not self._is_title_fragment(fragment, max_size, varied):
                break
            title_count += 1
        title_count = max(title_count, 1)

        title = " ".join(t for _, texts in grouped[:title_count] for t in texts)
        rest = [t for _, texts in grouped[title_count:] for t in texts]

        cut = len(title)
        if "[" in title:
            cut = title.index("[")
        if self.table.editors_keyword is not None:
            match = self.table.editors_keyword.search(title)
            if match:
                cut = min(cut, match.start())
        if cut < len(title):
            rest.insert(0, title[cut:].strip())
            title = title[:cut]
        self.package.title = title.strip()

        for text in rest:
            marker = classify(text, self.table)
            if marker.kind == MarkerKind.FIELD_LABEL and marker.field == FieldKind.EDITORS:
                self.package.editors.extend(split_names(marker.text))
            elif text:
                self.package.preamble = append_text(self.package.preamble, text)

    @staticmethod
    def _is_title_fragment(fragment: ContentFragment, max_size: int,
                           varied: bool) -> bool:
        style = (fragment.style_id or "").lower()
        if fragment.is_heading or style.startswith(("title", "heading")):
            return True
        return bool(
            varied
            and fragment.font_size
            and fragment.font_size >= TITLE_FONT_RATIO * max_size
        )

    # ── Finalization ──────────────────────────────────────────────

    def _apply_author_ranges(self):
        if not self.author_ranges:
            return
        for tour in self.package.tours:
            if tour.is_warmup:
                continue
            for question in tour.ordered_questions():
                if question.authors or not question.number.isdigit():
                    continue
                value = int(question.number)
                for start, end, names in self.author_ranges:
                    if start <= value <= end:
                        question.authors = list(names)
                        break

    def _order_tours(self):
        """Warm-up first, then document order."""
        self.package.tours.sort(key=lambda t: (not t.is_warmup, t.order_index))
        for index, tour in enumerate(self.package.tours):
            tour.order_index = index

    def _tidy_text(self):
        package = self.package
        package.title = normalize_text(package.title)
        package.preamble = normalize_text(package.preamble)
        for tour in package.tours:
            tour.preamble = normalize_text(tour.preamble)
            for block in tour.blocks:
                block.preamble = normalize_text(block.preamble)
            for question in tour.ordered_questions():
                for section, attr in _SECTION_ATTRS.items():
                    value = getattr(question, attr)
                    setattr(question, attr, normalize_text(
                        value, apostrophes=section != ParserSection.SOURCE
                    ))

    # ── Scoring ───────────────────────────────────────────────────

    def _confidence(self) -> float:
        tours = self.package.tours
        if not tours:
            return 0.0
        questions = [q for t in tours for q in t.ordered_questions()]
        if not questions:
            return 0.2

        missing_answers = sum(1 for q in questions if not q.has_answer)
        missing_text = sum(1 for q in questions if not q.has_text)
        penalty = (
            MISSING_ANSWER_WEIGHT * missing_answers
            + MISSING_TEXT_WEIGHT * missing_text
            + SUSPECT_MARKER_WEIGHT * self.suspect_markers
        )
        return round(max(0.0, 1.0 - penalty / len(questions)), 4)

    def _warn(self, warning_type: WarningType, message: str,
              context: Optional[dict] = None):
        logger.debug(f"[{warning_type.value}] {message}")
        self.warnings.append(ParseWarning(
            type=warning_type, message=message, context=context
        ))
