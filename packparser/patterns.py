"""
Pattern Classifier
==================
Maps a single line of package text to at most one structural marker.

The vocabulary lives in a ``PatternTable``: an ordered list of matcher
functions per category. Categories are tried in a fixed priority order
(warm-up, tour, block, author range, question, bracketed fields, labels)
and the first matcher that returns a marker wins. Swapping the table
changes the recognized language without touching the parser.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .models import FieldKind


# ─── Markers ──────────────────────────────────────────────────────────────────


class MarkerKind(str, Enum):
    TOUR_START = "tour_start"
    WARMUP_START = "warmup_start"
    BLOCK_START = "block_start"
    QUESTION_START = "question_start"
    FIELD_LABEL = "field_label"
    AUTHOR_RANGE = "author_range"
    NO_MATCH = "no_match"


@dataclass(frozen=True)
class Marker:
    """Classification of one line, with the captured payload."""
    kind: MarkerKind
    number: Optional[str] = None
    name: Optional[str] = None
    text: str = ""
    field: Optional[FieldKind] = None
    # "[Label: ...]" form, possibly with the closing "]" on a later line
    bracketed: bool = False
    bracket_open: bool = False
    # text following a closed bracket on the same line
    trailing: str = ""
    # "Запитання N" header as opposed to a bare "N."
    named_format: bool = False
    range_start: Optional[int] = None
    range_end: Optional[int] = None


NO_MATCH = Marker(MarkerKind.NO_MATCH)

Matcher = Callable[[str], Optional[Marker]]


# ─── Text Normalization ───────────────────────────────────────────────────────

UKRAINIAN_APOSTROPHE = "\u02bc"

_APOSTROPHES = str.maketrans({
    "'": UKRAINIAN_APOSTROPHE,
    "\u2019": UKRAINIAN_APOSTROPHE,
    "\u02c8": UKRAINIAN_APOSTROPHE,
})


def normalize_text(text: str, apostrophes: bool = True) -> str:
    """
    Replace NBSP with a space and en/em dashes with "-", drop combining
    stress accents and trim. Apostrophe-like characters become U+02BC
    unless ``apostrophes`` is False (sources may hold URLs).
    """
    text = (
        text.replace("\u00a0", " ")
        .replace("\u2013", "-")
        .replace("\u2014", "-")
        .replace("\u0301", "")
    )
    if apostrophes:
        text = text.translate(_APOSTROPHES)
    return text.strip()


def append_text(existing: str, text: str) -> str:
    """Join multi-line field content with newlines."""
    if not existing:
        return text
    if not text:
        return existing
    return f"{existing}\n{text}"


_NAME_SEPARATORS = re.compile(r"\s*[,;]\s*|\s+(?:та|і|й|and)\s+", re.IGNORECASE)


def split_names(text: str) -> list[str]:
    """Split an author/editor list on commas, semicolons and conjunctions."""
    names = []
    for part in _NAME_SEPARATORS.split(text):
        name = part.strip().rstrip(".,;:!").strip()
        if name:
            names.append(normalize_text(name))
    return names


# ─── Number Conversions ───────────────────────────────────────────────────────

_ROMAN_VALUES = {"I": 1, "V": 5, "X": 10, "L": 50}

# Cyrillic look-alikes commonly typed instead of Latin numerals
_ROMAN_LOOKALIKES = str.maketrans({"І": "I", "Х": "X", "і": "I", "х": "X"})

ORDINALS = {
    "перший": 1, "другий": 2, "третій": 3, "четвертий": 4,
    "пʼятий": 5, "шостий": 6, "сьомий": 7, "восьмий": 8,
    "девʼятий": 9, "десятий": 10,
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
}


def roman_to_int(value: str) -> Optional[int]:
    value = value.translate(_ROMAN_LOOKALIKES).upper()
    if not value or any(c not in _ROMAN_VALUES for c in value):
        return None
    total = 0
    for i, char in enumerate(value):
        current = _ROMAN_VALUES[char]
        following = _ROMAN_VALUES[value[i + 1]] if i + 1 < len(value) else 0
        total += -current if current < following else current
    return total if total > 0 else None


def ordinal_to_int(word: str) -> Optional[int]:
    return ORDINALS.get(word.lower().translate(_APOSTROPHES))


# ─── Matcher Builders ─────────────────────────────────────────────────────────


def regex_matcher(
    pattern: str,
    build: Callable[[re.Match], Optional[Marker]],
) -> Matcher:
    """Wrap a case-insensitive anchored regex into a matcher function."""
    compiled = re.compile(pattern, re.IGNORECASE)

    def matcher(line: str) -> Optional[Marker]:
        match = compiled.match(line)
        return build(match) if match else None

    return matcher


def _rest(match: re.Match, group: int) -> str:
    return (match.group(group) or "").strip()


def _tour(match: re.Match) -> Marker:
    return Marker(MarkerKind.TOUR_START, number=match.group(1),
                  text=_rest(match, 2))


def _roman_tour(match: re.Match) -> Optional[Marker]:
    number = roman_to_int(match.group(1))
    if number is None:
        return None
    return Marker(MarkerKind.TOUR_START, number=str(number))


def _ordinal_tour(match: re.Match) -> Optional[Marker]:
    number = ordinal_to_int(match.group(1))
    if number is None:
        return None
    return Marker(MarkerKind.TOUR_START, number=str(number))


def _warmup(match: re.Match) -> Marker:
    return Marker(MarkerKind.WARMUP_START, text=_rest(match, 1))


def _warmup_question(match: re.Match) -> Marker:
    return Marker(MarkerKind.WARMUP_START, name="question",
                  text=_rest(match, 1))


def _block_numbered(match: re.Match) -> Marker:
    return Marker(MarkerKind.BLOCK_START, number=match.group(1))


def _block_named(match: re.Match) -> Marker:
    return Marker(MarkerKind.BLOCK_START, name=match.group(1).strip())


def _author_range(match: re.Match) -> Optional[Marker]:
    start, end = int(match.group(1)), int(match.group(2))
    if end < start:
        return None
    return Marker(MarkerKind.AUTHOR_RANGE, text=_rest(match, 3),
                  range_start=start, range_end=end)


def _named_question(match: re.Match) -> Marker:
    return Marker(MarkerKind.QUESTION_START, number=match.group(1),
                  text=_rest(match, 2), named_format=True)


def _numbered_question(match: re.Match) -> Marker:
    return Marker(MarkerKind.QUESTION_START, number=match.group(1),
                  text=_rest(match, 2))


def _label(kind: FieldKind) -> Callable[[re.Match], Marker]:
    def build(match: re.Match) -> Marker:
        return Marker(MarkerKind.FIELD_LABEL, field=kind, text=_rest(match, 1))
    return build


def _closed_bracket(kind: FieldKind) -> Callable[[re.Match], Marker]:
    def build(match: re.Match) -> Marker:
        return Marker(MarkerKind.FIELD_LABEL, field=kind,
                      text=_rest(match, 1), trailing=_rest(match, 2),
                      bracketed=True)
    return build


def _open_bracket(kind: FieldKind) -> Callable[[re.Match], Marker]:
    def build(match: re.Match) -> Marker:
        return Marker(MarkerKind.FIELD_LABEL, field=kind,
                      text=_rest(match, 1), bracket_open=True,
                      bracketed=True)
    return build


# ─── Pattern Table ────────────────────────────────────────────────────────────


@dataclass
class PatternTable:
    """Ordered matcher lists per category; earlier categories win."""
    warmup: list[Matcher] = field(default_factory=list)
    tour: list[Matcher] = field(default_factory=list)
    block: list[Matcher] = field(default_factory=list)
    author_range: list[Matcher] = field(default_factory=list)
    question: list[Matcher] = field(default_factory=list)
    bracketed: list[Matcher] = field(default_factory=list)
    labels: list[Matcher] = field(default_factory=list)
    # zero-width split points for lines carrying a second label
    inline_label_split: Optional[re.Pattern] = None
    # "text] trailing" on a continuation line of an open bracket
    bracket_close: re.Pattern = re.compile(r"^(.*?)\]\s*(.*)$")
    editors_keyword: Optional[re.Pattern] = None

    def categories(self) -> list[list[Matcher]]:
        return [
            self.warmup,
            self.tour,
            self.block,
            self.author_range,
            self.question,
            self.bracketed,
            self.labels,
        ]


_TOUR_WORD = r"(?:Тур|Tour|Round)"
_EDGE = r"-*\s*"
_TAIL = r"\s*-*\s*(?:[.:]\s*(.*))?$"
_ORDINAL_WORD = r"([^\W\d_][\w'’ʼ]*)"

_LABEL_WORDS = {
    FieldKind.ANSWER: r"(?:Відповідь|Відповіді|Ответ|Answer)",
    FieldKind.ACCEPTED: r"(?:Заліки?|Зараховується|Зараховуються|Accepted)",
    FieldKind.REJECTED: (
        r"(?:Незалік|Не\s+залік|Не\s+зараховується|Не\s+приймається|Rejected)"
    ),
    FieldKind.COMMENT: r"(?:Коментарі?|Comment)",
    FieldKind.SOURCE: r"(?:Джерел[оа]|Sources?)",
    FieldKind.AUTHORS: r"(?:Автор(?:и|ка|ки)?|Authors?)",
    FieldKind.EDITORS: (
        r"(?:Редактор(?:и|ка|ки)?(?:\s+(?:туру|блоку|пакету))?|Editors?)"
    ),
    FieldKind.HANDOUT: r"(?:Роздатка|Роздатковий\s+матеріал|Handout)",
}

_BRACKET_WORDS = {
    FieldKind.HOST_INSTRUCTIONS: r"(?:Ведучому|Ведучим|Для\s+ведучого|Host)",
    FieldKind.HANDOUT: r"(?:Роздатка|Роздатковий\s+матеріал|Handout)",
}


def default_table() -> PatternTable:
    """Ukrainian tournament vocabulary with English fallbacks."""
    table = PatternTable()

    table.warmup = [
        regex_matcher(
            _EDGE + r"(?:Розминка|Розминковий\s+тур|Warm-?up(?:\s+(?:tour|round))?)"
            + _TAIL,
            _warmup,
        ),
        regex_matcher(
            _EDGE + _TOUR_WORD + r"\s*(?::|№|#)?\s*0" + _TAIL,
            _warmup,
        ),
        regex_matcher(
            r"(?:Розминочне|Розминкове)\s+(?:питання|запитання)\s*(?:[.:]\s*(.*))?$",
            _warmup_question,
        ),
    ]

    table.tour = [
        regex_matcher(
            _EDGE + _TOUR_WORD + r"\s*(?::|№|#)?\s*(\d+)" + _TAIL, _tour
        ),
        regex_matcher(
            _EDGE + r"(\d+)\s*(?:-?й)?\s+тур" + _TAIL, _tour
        ),
        regex_matcher(
            _EDGE + _TOUR_WORD + r"\s+([IVXLІХ]+)\s*-*\s*[.:]?$", _roman_tour
        ),
        regex_matcher(
            _EDGE + _ORDINAL_WORD + r"\s+(?:тур|tour|round)\s*-*\s*[.:]?$",
            _ordinal_tour,
        ),
        regex_matcher(
            _EDGE + _TOUR_WORD + r"\s+" + _ORDINAL_WORD + r"\s*-*\s*[.:]?$",
            _ordinal_tour,
        ),
    ]

    table.block = [
        regex_matcher(
            _EDGE + r"(?:Блок|Block)\s*(?::|№|#)?\s*(\d+)?\s*-*\s*[.:]?$",
            _block_numbered,
        ),
        regex_matcher(
            _EDGE + r"(?:Блок|Block)\s*[:\-]?\s+[«\"]?([^«»\"]+?)[»\"]?\s*-*$",
            _block_named,
        ),
    ]

    table.author_range = [
        regex_matcher(
            r"(?:Автор(?:и|ка|ки)?|Authors?)\s+(?:запитань|питань|questions)"
            r"\s+(\d+)\s*-\s*(\d+)\s*[.:]\s*(.+)$",
            _author_range,
        ),
    ]

    table.question = [
        regex_matcher(
            r"(?:Запитання|Питання|Question)\s*№?\s*(\d+|[^\W\d_])"
            r"\s*(?:$|[.:)]\s*(.*)$)",
            _named_question,
        ),
        regex_matcher(r"(\d+)\.(?!\d)\s*(.*)$", _numbered_question),
    ]

    for kind, word in _BRACKET_WORDS.items():
        table.bracketed.append(regex_matcher(
            r"\[\s*" + word + r"\s*[:.]?\s*([^\]]*?)\]\s*(.*)$",
            _closed_bracket(kind),
        ))
    for kind, word in _BRACKET_WORDS.items():
        table.bracketed.append(regex_matcher(
            r"\[\s*" + word + r"\s*[:.]?\s*([^\]]*)$",
            _open_bracket(kind),
        ))

    for kind, word in _LABEL_WORDS.items():
        table.labels.append(regex_matcher(
            word + r"\s*(?:$|[:.\-]\s*(.*)$)", _label(kind)
        ))

    inline_words = "|".join(
        _LABEL_WORDS[k] for k in (
            FieldKind.ACCEPTED, FieldKind.REJECTED, FieldKind.COMMENT,
            FieldKind.SOURCE, FieldKind.AUTHORS,
        )
    )
    table.inline_label_split = re.compile(
        r"(?<=[.;!?)»\"])\s+(?=(?:" + inline_words + r")\s*:)",
        re.IGNORECASE,
    )
    table.editors_keyword = re.compile(
        _LABEL_WORDS[FieldKind.EDITORS] + r"\s*[:\-]", re.IGNORECASE
    )
    return table


DEFAULT_TABLE = default_table()


# ─── Classification ───────────────────────────────────────────────────────────


def classify(line: str, table: Optional[PatternTable] = None) -> Marker:
    """Classify one stripped line. Returns ``NO_MATCH`` when nothing fits."""
    table = table or DEFAULT_TABLE
    line = line.strip()
    if not line:
        return NO_MATCH
    for category in table.categories():
        for matcher in category:
            marker = matcher(line)
            if marker is not None:
                return marker
    return NO_MATCH


def split_inline_labels(line: str, table: Optional[PatternTable] = None) -> list[str]:
    """Split "Відповідь: X. Залік: Y" into one piece per label."""
    table = table or DEFAULT_TABLE
    if table.inline_label_split is None:
        return [line]
    return [p for p in table.inline_label_split.split(line) if p.strip()]
