"""
Test Suite for the Structural Parser
====================================
Unit tests for the pattern classifier, the parsing state machine,
numbering-mode detection and the validation engine.
"""

from __future__ import annotations

import pytest

from packparser.models import (
    AssetReference,
    ContentFragment,
    DraftPackage,
    DraftQuestion,
    DraftTour,
    FieldKind,
    NumberingMode,
    ParseWarning,
    WarningType,
)
from packparser.patterns import (
    MarkerKind,
    classify,
    normalize_text,
    ordinal_to_int,
    roman_to_int,
    split_inline_labels,
    split_names,
)
from packparser.state_machine import (
    DEFAULT_TOUR_NUMBER,
    StructuralParser,
    detect_numbering_mode,
)
from packparser.validator import ValidationEngine, schema_errors


def fragments(*texts: str, **kwargs) -> list[ContentFragment]:
    return [ContentFragment(index=i, text=t, **kwargs) for i, t in enumerate(texts)]


def parse(*texts: str):
    return StructuralParser().parse(fragments(*texts))


def warning_types(result) -> list[WarningType]:
    return [w.type for w in result.warnings]


# ═══════════════════════════════════════════════════════════════════════════════
# CLASSIFIER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestClassifier:
    """Test line classification against the default pattern table."""

    def test_tour_start(self):
        marker = classify("Тур 1")
        assert marker.kind == MarkerKind.TOUR_START
        assert marker.number == "1"

    def test_tour_number_first(self):
        marker = classify("2 тур")
        assert marker.kind == MarkerKind.TOUR_START
        assert marker.number == "2"

    def test_tour_roman_with_cyrillic_lookalikes(self):
        marker = classify("Тур ІІ")
        assert marker.kind == MarkerKind.TOUR_START
        assert marker.number == "2"

    def test_tour_ordinal(self):
        marker = classify("Третій тур")
        assert marker.kind == MarkerKind.TOUR_START
        assert marker.number == "3"

    def test_english_round(self):
        marker = classify("Round 4")
        assert marker.kind == MarkerKind.TOUR_START
        assert marker.number == "4"

    def test_warmup_words(self):
        assert classify("Розминка").kind == MarkerKind.WARMUP_START
        assert classify("Warm-up").kind == MarkerKind.WARMUP_START

    def test_tour_zero_is_warmup(self):
        assert classify("Тур 0").kind == MarkerKind.WARMUP_START

    def test_warmup_question_cue(self):
        marker = classify("Розминочне питання")
        assert marker.kind == MarkerKind.WARMUP_START
        assert marker.name == "question"

    def test_block_numbered_and_named(self):
        numbered = classify("Блок 2")
        assert numbered.kind == MarkerKind.BLOCK_START
        assert numbered.number == "2"

        named = classify("Блок «Музика»")
        assert named.kind == MarkerKind.BLOCK_START
        assert named.name == "Музика"

    def test_bare_numbered_question(self):
        marker = classify("12. Текст питання")
        assert marker.kind == MarkerKind.QUESTION_START
        assert marker.number == "12"
        assert marker.text == "Текст питання"
        assert marker.named_format is False

    def test_decimal_is_not_a_question(self):
        assert classify("3.14 - це число пі").kind == MarkerKind.NO_MATCH

    def test_named_question(self):
        marker = classify("Запитання 5. Текст")
        assert marker.kind == MarkerKind.QUESTION_START
        assert marker.number == "5"
        assert marker.text == "Текст"
        assert marker.named_format is True

    def test_answer_label(self):
        marker = classify("Відповідь: Київ")
        assert marker.kind == MarkerKind.FIELD_LABEL
        assert marker.field == FieldKind.ANSWER
        assert marker.text == "Київ"

    def test_other_labels(self):
        assert classify("Залік: Kyiv").field == FieldKind.ACCEPTED
        assert classify("Незалік: Київська Русь").field == FieldKind.REJECTED
        assert classify("Коментар: пояснення").field == FieldKind.COMMENT
        assert classify("Джерело: https://uk.wikipedia.org").field == FieldKind.SOURCE
        assert classify("Автор: Іван Петренко").field == FieldKind.AUTHORS
        assert classify("Редактори: Олена Коваль").field == FieldKind.EDITORS

    def test_closed_bracket(self):
        marker = classify("[Ведучому: читати повільно] Далі текст")
        assert marker.kind == MarkerKind.FIELD_LABEL
        assert marker.field == FieldKind.HOST_INSTRUCTIONS
        assert marker.bracketed is True
        assert marker.bracket_open is False
        assert marker.text == "читати повільно"
        assert marker.trailing == "Далі текст"

    def test_open_bracket(self):
        marker = classify("[Роздатка: перший рядок")
        assert marker.field == FieldKind.HANDOUT
        assert marker.bracket_open is True
        assert marker.text == "перший рядок"

    def test_author_range(self):
        marker = classify("Автори запитань 1-6: Іван Петренко, Олена Коваль")
        assert marker.kind == MarkerKind.AUTHOR_RANGE
        assert (marker.range_start, marker.range_end) == (1, 6)
        assert marker.text == "Іван Петренко, Олена Коваль"

    def test_reversed_author_range_is_ignored(self):
        assert classify("Автори запитань 6-1: Іван").kind != MarkerKind.AUTHOR_RANGE

    def test_plain_text(self):
        assert classify("Просто рядок тексту").kind == MarkerKind.NO_MATCH
        assert classify("   ").kind == MarkerKind.NO_MATCH


class TestTextHelpers:
    """Test normalization and name/label splitting helpers."""

    def test_normalize_text(self):
        assert normalize_text("  a b — c–d  ") == "a b - c-d"

    def test_normalize_apostrophes(self):
        assert normalize_text("п'ять") == "п\u02bcять"
        assert normalize_text("п'ять", apostrophes=False) == "п'ять"

    def test_normalize_strips_stress_marks(self):
        assert normalize_text("за\u0301мок") == "замок"

    def test_split_names(self):
        assert split_names("Іван Петренко, Олена Коваль та Марія Бойко.") == [
            "Іван Петренко", "Олена Коваль", "Марія Бойко",
        ]

    def test_split_inline_labels(self):
        assert split_inline_labels("Відповідь: Київ. Залік: Kyiv") == [
            "Відповідь: Київ.", "Залік: Kyiv",
        ]

    def test_roman_and_ordinals(self):
        assert roman_to_int("IV") == 4
        assert roman_to_int("ХІІ") == 12
        assert roman_to_int("ABC") is None
        assert ordinal_to_int("П'ятий") == 5
        assert ordinal_to_int("second") == 2
        assert ordinal_to_int("невідомий") is None


# ═══════════════════════════════════════════════════════════════════════════════
# STATE MACHINE TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestStructuralParser:
    """Test the parsing state machine."""

    def test_full_package(self):
        result = StructuralParser().parse([
            ContentFragment(index=0, text="Кубок Києва 2024", is_heading=True),
            ContentFragment(index=1, text="Редактори: Іван Петренко, Олена Коваль"),
            ContentFragment(index=2, text="Розминка"),
            ContentFragment(index=3, text="1. Текст розминки\nВідповідь: Так"),
            ContentFragment(index=4, text="Тур 1"),
            ContentFragment(index=5, text="1. Перше питання\nВідповідь: Київ"),
            ContentFragment(index=6, text="2. Друге питання\nВідповідь: Львів\n"
                                          "Коментар: місто Лева"),
            ContentFragment(index=7, text="Тур 2"),
            ContentFragment(index=8, text="3. Третє питання\nВідповідь: Одеса"),
        ])
        package = result.package

        assert package.title == "Кубок Києва 2024"
        assert package.editors == ["Іван Петренко", "Олена Коваль"]
        assert [t.number for t in package.tours] == ["0", "1", "2"]
        assert package.tours[0].is_warmup is True
        assert package.total_questions == 4
        assert package.numbering_mode == NumberingMode.GLOBAL
        assert result.confidence == 1.0
        assert result.warnings == []

        second = package.tours[1].questions[1]
        assert second.text == "Друге питання"
        assert second.answer == "Львів"
        assert second.comment == "місто Лева"

    def test_per_tour_numbering_detected(self):
        result = parse(
            "Тур 1", "1. А\nВідповідь: а", "2. Б\nВідповідь: б",
            "Тур 2", "1. В\nВідповідь: в", "2. Г\nВідповідь: г",
        )
        assert result.package.numbering_mode == NumberingMode.PER_TOUR
        assert WarningType.AMBIGUOUS_NUMBERING not in warning_types(result)

    def test_questions_before_tour_create_default_tour(self):
        result = parse("1. Питання\nВідповідь: так", "2. Ще одне\nВідповідь: ні")
        tours = result.package.tours
        assert len(tours) == 1
        assert tours[0].number == DEFAULT_TOUR_NUMBER
        assert tours[0].question_count == 2
        assert warning_types(result).count(WarningType.DEFAULT_TOUR_CREATED) == 1

    def test_numbered_header_line_is_not_a_question(self):
        result = parse("2024. Сезон чемпіонату", "Тур 1", "1. Питання\nВідповідь: так")
        assert result.package.title == "2024. Сезон чемпіонату"
        assert result.package.total_questions == 1

    def test_missing_answer_lowers_confidence(self):
        result = parse("Тур 1", "1. Питання без відповіді")
        assert WarningType.MISSING_ANSWER in warning_types(result)
        assert result.confidence == pytest.approx(0.4)

    def test_missing_text_and_answer(self):
        result = parse("Тур 1", "1.", "2. Текст\nВідповідь: так")
        types = warning_types(result)
        assert WarningType.MISSING_QUESTION_TEXT in types
        assert WarningType.MISSING_ANSWER in types
        # (0.6 + 0.4) / 2
        assert result.confidence == pytest.approx(0.5)

    def test_empty_document(self):
        result = parse("Лише заголовок")
        assert result.package.tours == []
        assert result.confidence == 0.0

    def test_tours_without_questions(self):
        result = parse("Тур 1", "Тур 2")
        assert len(result.package.tours) == 2
        assert result.confidence == 0.2

    def test_suspect_marker_after_tour_start(self):
        result = parse("Тур 1", "Щось незрозуміле", "1. Питання\nВідповідь: так")
        assert WarningType.SUSPECT_MARKER in warning_types(result)
        assert result.package.tours[0].preamble == "Щось незрозуміле"
        assert result.confidence == pytest.approx(0.9)

    def test_inline_labels_on_one_line(self):
        result = parse("Тур 1", "1. Питання", "Відповідь: Київ. Залік: Kyiv.")
        question = result.package.tours[0].questions[0]
        assert question.answer == "Київ."
        assert question.accepted_answers == "Kyiv."

    def test_multiline_field_continues(self):
        result = parse("Тур 1", "1. Питання", "Коментар: перший рядок\nдругий рядок",
                       "Відповідь: так")
        question = result.package.tours[0].questions[0]
        assert question.comment == "перший рядок\nдругий рядок"

    def test_closed_bracket_after_number(self):
        result = parse("Тур 1", "1. [Ведучому: читати повільно] Текст питання",
                       "Відповідь: так")
        question = result.package.tours[0].questions[0]
        assert question.host_instructions == "читати повільно"
        assert question.text == "Текст питання"

    def test_multiline_bracket(self):
        result = parse("Тур 1", "1. Текст", "[Роздатка: рядок один", "рядок два]",
                       "Відповідь: так")
        question = result.package.tours[0].questions[0]
        assert question.handout_text == "рядок один\nрядок два"
        assert question.answer == "так"
        assert WarningType.UNCLOSED_BRACKET not in warning_types(result)

    def test_unclosed_bracket_is_reported(self):
        result = parse("Тур 1", "1. Текст\nВідповідь: так", "[Ведучому: без кінця",
                       "2. Друге\nВідповідь: ні")
        assert WarningType.UNCLOSED_BRACKET in warning_types(result)
        assert result.package.tours[0].question_count == 2

    def test_numbered_list_inside_comment(self):
        result = parse("Тур 1", "1. Питання\nВідповідь: так\nКоментар: пункти:",
                       "3. не питання", "2. Друге\nВідповідь: ні")
        questions = result.package.tours[0].questions
        assert [q.number for q in questions] == ["1", "2"]
        assert "3. не питання" in questions[0].comment

    def test_numbered_sources(self):
        result = parse("Тур 1", "1. Питання\nВідповідь: так\nДжерело:",
                       "1. http://a", "2. http://b\nВідповідь: ні")
        questions = result.package.tours[0].questions
        assert [q.number for q in questions] == ["1", "2"]
        assert questions[0].source == "1. http://a"
        # the expected next number still opens a question
        assert questions[1].text == "http://b"
        assert questions[1].answer == "ні"

    def test_named_format_ignores_bare_numbers(self):
        result = parse("Тур 1", "Запитання 1. Текст\nВідповідь: А\nКоментар: пункти",
                       "2. не питання", "Запитання 2. Друге\nВідповідь: Б")
        questions = result.package.tours[0].questions
        assert len(questions) == 2
        assert "2. не питання" in questions[0].comment

    def test_blocks_and_editors(self):
        result = parse("Тур 1", "Редактор туру: Іван Петренко", "Блок 1",
                       "Редактори: Олена Коваль", "1. А\nВідповідь: а",
                       "Блок 2", "2. Б\nВідповідь: б")
        tour = result.package.tours[0]
        assert tour.editors == ["Іван Петренко"]
        assert [b.name for b in tour.blocks] == ["1", "2"]
        assert tour.blocks[0].editors == ["Олена Коваль"]
        assert [q.number for q in tour.ordered_questions()] == ["1", "2"]

    def test_author_range_applies_to_questions(self):
        result = parse("Тур 1", "Автори запитань 1-2: Іван Петренко",
                       "1. А\nВідповідь: а", "2. Б\nВідповідь: б",
                       "3. В\nВідповідь: в\nАвтор: Марія Бойко")
        questions = result.package.tours[0].questions
        assert questions[0].authors == ["Іван Петренко"]
        assert questions[1].authors == ["Іван Петренко"]
        assert questions[2].authors == ["Марія Бойко"]

    def test_second_warmup_section_reuses_warmup_tour(self):
        result = parse("Розминка", "1. А\nВідповідь: а", "Тур 1",
                       "1. Б\nВідповідь: б", "Розминочне питання", "В",
                       "Відповідь: в")
        warmups = [t for t in result.package.tours if t.is_warmup]
        assert len(warmups) == 1
        assert [q.number for q in warmups[0].questions] == ["1", "2"]

    def test_warmup_is_ordered_first(self):
        result = parse("Тур 1", "1. А\nВідповідь: а", "Розминка",
                       "1. Б\nВідповідь: б")
        tours = result.package.tours
        assert tours[0].is_warmup is True
        assert [t.order_index for t in tours] == [0, 1]

    def test_images_attach_to_handout_and_comment(self):
        result = StructuralParser().parse([
            ContentFragment(index=0, text="Тур 1"),
            ContentFragment(index=1, text="1. Подивіться на фото",
                            assets=[AssetReference(file_name="img_001.png")]),
            ContentFragment(index=2, text="Відповідь: кіт\nКоментар: ось він",
                            assets=[AssetReference(file_name="img_002.png")]),
        ])
        question = result.package.tours[0].questions[0]
        assert question.handout_asset == "img_001.png"
        assert question.comment_asset == "img_002.png"

    def test_pending_image_goes_to_next_question(self):
        result = StructuralParser().parse([
            ContentFragment(index=0, text="Тур 1",
                            assets=[AssetReference(file_name="img_001.png")]),
            ContentFragment(index=1, text="1.\nВідповідь: кіт"),
        ])
        question = result.package.tours[0].questions[0]
        assert question.handout_asset == "img_001.png"
        # An image handout counts as question text
        assert WarningType.MISSING_QUESTION_TEXT not in warning_types(result)

    def test_orphan_image_is_reported(self):
        result = StructuralParser().parse([
            ContentFragment(index=0, text="Тур 1"),
            ContentFragment(index=1, text="1. А\nВідповідь: а"),
            ContentFragment(index=2, text="Тур 2",
                            assets=[AssetReference(file_name="img_009.png")]),
        ])
        assert WarningType.UNCLASSIFIED_ASSET in warning_types(result)

    def test_title_from_font_size(self):
        result = StructuralParser().parse([
            ContentFragment(index=0, text="Великий заголовок", font_size=40),
            ContentFragment(index=1, text="Дрібний опис", font_size=20),
            ContentFragment(index=2, text="Тур 1", font_size=20),
        ])
        assert result.package.title == "Великий заголовок"
        assert result.package.preamble == "Дрібний опис"

    def test_parser_is_reusable(self):
        parser = StructuralParser()
        first = parser.parse(fragments("Тур 1", "1. А\nВідповідь: а"))
        second = parser.parse(fragments("Тур 1", "1. Б\nВідповідь: б"))
        assert first.package.tours[0].questions[0].text == "А"
        assert second.package.total_questions == 1


# ═══════════════════════════════════════════════════════════════════════════════
# NUMBERING DETECTION TESTS
# ═══════════════════════════════════════════════════════════════════════════════


def _tour(numbers: list[str], is_warmup: bool = False) -> DraftTour:
    return DraftTour(
        is_warmup=is_warmup,
        questions=[DraftQuestion(number=n, order_index=i) for i, n in enumerate(numbers)],
    )


class TestNumberingDetection:
    """Test numbering mode inference."""

    def test_global(self):
        tours = [_tour(["1", "2"], is_warmup=True), _tour(["1", "2", "3"]), _tour(["4", "5"])]
        assert detect_numbering_mode(tours) == (NumberingMode.GLOBAL, False)

    def test_per_tour(self):
        assert detect_numbering_mode([_tour(["1", "2"]), _tour(["1", "2", "3"])]) == (
            NumberingMode.PER_TOUR, False,
        )

    def test_non_numeric_is_manual(self):
        assert detect_numbering_mode([_tour(["A", "B"])]) == (NumberingMode.MANUAL, False)

    def test_ambiguous_falls_back_to_manual(self):
        assert detect_numbering_mode([_tour(["3", "4"]), _tour(["1"])]) == (
            NumberingMode.MANUAL, True,
        )

    def test_no_questions(self):
        assert detect_numbering_mode([_tour([])]) == (NumberingMode.GLOBAL, False)


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDATOR TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestValidator:
    """Test schema checks and the review report."""

    def test_schema_errors_on_empty_package(self):
        assert schema_errors(DraftPackage()) == ["package has no tours"]

    def test_schema_errors_on_incomplete_question(self):
        package = DraftPackage(tours=[_tour(["1"])])
        errors = schema_errors(package)
        assert any("text is empty" in e for e in errors)
        assert any("answer is empty" in e for e in errors)

    def test_schema_accepts_image_only_question(self):
        package = DraftPackage(tours=[DraftTour(number="1", questions=[
            DraftQuestion(number="1", handout_asset="img.png", answer="кіт"),
        ])])
        assert schema_errors(package) == []

    def test_two_warmups_rejected(self):
        package = DraftPackage(tours=[
            DraftTour(is_warmup=True, questions=[DraftQuestion(number="1", text="a", answer="b")]),
            DraftTour(is_warmup=True, questions=[DraftQuestion(number="1", text="a", answer="b")]),
        ])
        assert "package has 2 warm-up tours" in schema_errors(package)

    def test_report(self):
        package = DraftPackage(tours=[
            DraftTour(number="1", questions=[
                DraftQuestion(number="1", text="a", answer="b"),
                DraftQuestion(number="1", text="c", order_index=1),
            ]),
            DraftTour(number="2"),
        ])
        warnings = [
            ParseWarning(type=WarningType.MISSING_ANSWER, message="x"),
            ParseWarning(type=WarningType.MISSING_ANSWER, message="y"),
        ]
        report = ValidationEngine().validate(package, warnings)

        assert report.total_tours == 2
        assert report.total_questions == 2
        assert report.structured_successfully == 1
        assert report.success_rate == 50.0
        assert report.questions_missing_answer == ["1/1"]
        assert report.duplicate_question_numbers == {"1": ["1"]}
        assert report.empty_tours == ["2"]
        assert report.warning_breakdown == {"missing_answer": 2}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
