"""
Validation Engine
=================
Post-parse validation and reporting over a draft package tree.

Two entry points:
    - ``schema_errors``: hard structural checks applied to normalizer
      output before it may replace the rule-based tree
    - ``ValidationEngine.validate``: review report for operators
      (missing answers, duplicate numbers, empty tours, warning counts)

Never silently ignores failures.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

from .models import DraftPackage, ParseWarning, ValidationReport

logger = logging.getLogger(__name__)


def schema_errors(package: DraftPackage) -> list[str]:
    """
    Required-field checks: at least one tour with questions, every
    question has a number, text and answer. Returns human-readable errors.
    """
    errors: list[str] = []
    if not package.tours:
        errors.append("package has no tours")
        return errors
    if package.total_questions == 0:
        errors.append("package has no questions")

    warmups = sum(1 for t in package.tours if t.is_warmup)
    if warmups > 1:
        errors.append(f"package has {warmups} warm-up tours")

    for position, tour in enumerate(package.tours, start=1):
        for question in tour.ordered_questions():
            label = f"tour {tour.number or position}, question {question.number or '?'}"
            if not question.number.strip():
                errors.append(f"{label}: number is empty")
            if not question.has_text:
                errors.append(f"{label}: text is empty")
            if not question.answer.strip():
                errors.append(f"{label}: answer is empty")
    return errors


class ValidationEngine:
    """
    Validates a draft tree and produces a review report.
    """

    def validate(
        self,
        package: DraftPackage,
        warnings: Optional[list[ParseWarning]] = None,
    ) -> ValidationReport:
        """
        Run full validation on a draft tree.

        Args:
            package: Draft (or renumbered) package tree.
            warnings: Parse/import warnings to summarize.

        Returns:
            ValidationReport with all detected issues.
        """
        report = ValidationReport(
            total_tours=len(package.tours),
            numbering_mode=package.numbering_mode,
            has_warmup=package.warmup_tour() is not None,
        )

        structured = 0
        for position, tour in enumerate(package.tours, start=1):
            tour_label = tour.number or str(position)
            questions = tour.ordered_questions()
            report.total_questions += len(questions)

            if not questions:
                report.empty_tours.append(tour_label)

            counts = Counter(q.number for q in questions if q.number)
            duplicates = sorted(n for n, c in counts.items() if c > 1)
            if duplicates:
                report.duplicate_question_numbers[tour_label] = duplicates

            for question in questions:
                label = f"{tour_label}/{question.number}"
                if question.has_text and question.has_answer:
                    structured += 1
                if not question.has_answer:
                    report.questions_missing_answer.append(label)
                if not question.has_text:
                    report.questions_missing_text.append(label)

        report.structured_successfully = structured
        report.warning_breakdown = dict(
            Counter(w.type.value for w in warnings or [])
        )

        # Log summary
        logger.info("=" * 60)
        logger.info("VALIDATION REPORT")
        logger.info("=" * 60)
        logger.info(f"Tours: {report.total_tours} (warm-up: {report.has_warmup})")
        logger.info(
            f"Structured Successfully: {report.structured_successfully}/"
            f"{report.total_questions} ({report.success_rate}%)"
        )
        logger.info(f"Numbering Mode: {report.numbering_mode.value}")
        logger.info(
            f"Questions Missing Answer: {len(report.questions_missing_answer)}"
        )
        logger.info(
            f"Questions Missing Text: {len(report.questions_missing_text)}"
        )
        if report.duplicate_question_numbers:
            logger.info(
                f"Duplicate Numbers: {report.duplicate_question_numbers}"
            )
        if report.warning_breakdown:
            logger.info("Warning Breakdown:")
            for warning_type, count in sorted(report.warning_breakdown.items()):
                logger.info(f"  • {warning_type}: {count}")
        logger.info("=" * 60)

        return report
