"""
Renumbering Engine
==================
Assigns gapless ordering and canonical display numbers to a package tree.

    renumber(tree) → tree'

Steps:
    1. Warm-up tour first, other tours keep their relative order
    2. Tour numbers: warm-up "0", the rest 1..n
    3. Contiguous zero-based OrderIndex for tours, blocks and questions
    4. Question numbers per numbering mode (Global / PerTour / Manual)

``renumber`` never mutates its input and has no persistence side effects;
callers persist the returned tree. Running it twice yields the same tree.

The structural edit helpers below mutate a tree in place and are always
followed by ``renumber`` under the package's lock (see ``package_lock``).
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Optional, TypeVar

from .models import (
    DraftBlock,
    DraftPackage,
    DraftQuestion,
    DraftTour,
    NumberingMode,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", DraftTour, DraftBlock, DraftQuestion)


# ─── Per-Package Lock Registry ────────────────────────────────────────────────

_package_locks: dict[int, threading.Lock] = {}
_registry_lock = threading.Lock()


@contextmanager
def package_lock(package_id: int):
    """Serialize structural edits of one package; other packages proceed."""
    with _registry_lock:
        lock = _package_locks.setdefault(package_id, threading.Lock())
    with lock:
        yield


# ─── Renumbering ──────────────────────────────────────────────────────────────


def _in_order(items: list[T]) -> list[T]:
    """Sort by OrderIndex; ties keep their list order."""
    return sorted(items, key=lambda item: item.order_index)


def _reindex(items: list[T]) -> list[T]:
    ordered = _in_order(items)
    for index, item in enumerate(ordered):
        item.order_index = index
    return ordered


def renumber(package: DraftPackage) -> DraftPackage:
    """Return a renumbered copy of ``package``."""
    result = package.model_copy(deep=True)

    tours = _in_order(result.tours)
    warmups = [t for t in tours if t.is_warmup]
    for extra in warmups[1:]:
        logger.warning(
            f"Package {result.id}: more than one warm-up tour; "
            f"tour {extra.number!r} demoted"
        )
        extra.is_warmup = False
    if warmups:
        tours.remove(warmups[0])
        tours.insert(0, warmups[0])

    main_number = 0
    for index, tour in enumerate(tours):
        tour.order_index = index
        if tour.is_warmup:
            tour.number = "0"
        else:
            main_number += 1
            tour.number = str(main_number)

        tour.blocks = _reindex(tour.blocks)
        for block in tour.blocks:
            block.questions = _reindex(block.questions)
        tour.questions = _reindex(tour.questions)

    result.tours = tours
    _number_questions(result)
    return result


def _number_questions(package: DraftPackage):
    mode = package.numbering_mode
    if mode == NumberingMode.MANUAL:
        return

    counter = 0
    for tour in package.tours:
        questions = tour.ordered_questions()
        if tour.is_warmup or mode == NumberingMode.PER_TOUR:
            for position, question in enumerate(questions, start=1):
                question.number = str(position)
            continue
        for question in questions:
            counter += 1
            question.number = str(counter)


# ─── Structural Edits ─────────────────────────────────────────────────────────


def _place(items: list[T], item: T, position: Optional[int]) -> list[T]:
    ordered = _in_order(items)
    if position is None or position > len(ordered):
        position = len(ordered)
    ordered.insert(max(position, 0), item)
    for index, entry in enumerate(ordered):
        entry.order_index = index
    return ordered


def _take(items: list[T], index: int) -> tuple[list[T], T]:
    ordered = _in_order(items)
    if not 0 <= index < len(ordered):
        raise IndexError(f"No item at position {index}")
    item = ordered.pop(index)
    for position, entry in enumerate(ordered):
        entry.order_index = position
    return ordered, item


def tour_at(package: DraftPackage, tour_index: int) -> DraftTour:
    tours = _in_order(package.tours)
    if not 0 <= tour_index < len(tours):
        raise IndexError(f"No tour at position {tour_index}")
    return tours[tour_index]


def _question_list(tour: DraftTour, block_index: Optional[int]) -> tuple[object, list[DraftQuestion]]:
    if block_index is None:
        return tour, tour.questions
    blocks = _in_order(tour.blocks)
    if not 0 <= block_index < len(blocks):
        raise IndexError(f"No block at position {block_index}")
    return blocks[block_index], blocks[block_index].questions


def add_tour(package: DraftPackage, tour: Optional[DraftTour] = None,
             position: Optional[int] = None) -> DraftTour:
    """Insert a tour at ``position`` (default: last)."""
    tour = tour or DraftTour()
    package.tours = _place(package.tours, tour, position)
    return tour


def remove_tour(package: DraftPackage, tour_index: int) -> DraftTour:
    package.tours, tour = _take(package.tours, tour_index)
    return tour


def move_tour(package: DraftPackage, from_index: int, to_index: int):
    package.tours, tour = _take(package.tours, from_index)
    package.tours = _place(package.tours, tour, to_index)


def set_warmup(package: DraftPackage, tour_index: int, is_warmup: bool):
    """Flag (or unflag) a tour as warm-up; at most one tour keeps the flag."""
    target = tour_at(package, tour_index)
    if not is_warmup:
        target.is_warmup = False
        return
    for tour in package.tours:
        tour.is_warmup = False
    target.is_warmup = True
    move_tour(package, tour_index, 0)


def add_question(package: DraftPackage, tour_index: int,
                 question: Optional[DraftQuestion] = None,
                 position: Optional[int] = None,
                 block_index: Optional[int] = None) -> DraftQuestion:
    tour = tour_at(package, tour_index)
    if question is None:
        question = DraftQuestion(number=str(tour.question_count + 1))
    owner, questions = _question_list(tour, block_index)
    owner.questions = _place(questions, question, position)
    return question


def remove_question(package: DraftPackage, tour_index: int, question_index: int,
                    block_index: Optional[int] = None) -> DraftQuestion:
    owner, questions = _question_list(tour_at(package, tour_index), block_index)
    owner.questions, question = _take(questions, question_index)
    return question


def move_question(package: DraftPackage,
                  from_tour: int, from_index: int,
                  to_tour: int, to_index: int,
                  from_block: Optional[int] = None,
                  to_block: Optional[int] = None):
    """Move a question within or across tours and blocks."""
    question = remove_question(package, from_tour, from_index, from_block)
    owner, questions = _question_list(tour_at(package, to_tour), to_block)
    owner.questions = _place(questions, question, to_index)
