"""
Confidence-Gated Normalizer
===========================
Decides whether a rule-based parse is trusted as-is or escalated to an
external language-model normalizer, and merges the model's answer back.

    decide(result, raw_text, threshold, budget) → Accept | Escalate

The guardrail (maximum cost per job, request timeout) is the explicit
``NormalizerBudget`` argument. A skipped, failed or rejected model call
never fails the import: the rule-based tree is kept and a warning
is recorded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional, Union

import requests
from pydantic import ValidationError

from .errors import NormalizerUnavailableError, SchemaValidationError
from .models import (
    ContentFragment,
    DraftPackage,
    ParseResult,
    ParseWarning,
    WarningType,
)
from .state_machine import detect_numbering_mode
from .validator import schema_errors

logger = logging.getLogger(__name__)

# Fixed prompt and schema overhead added to every request estimate
PROMPT_OVERHEAD_TOKENS = 1500

# Warnings describing the rule-based tree; obsolete once the model tree is used
_TREE_WARNINGS = {
    WarningType.MISSING_ANSWER,
    WarningType.MISSING_QUESTION_TEXT,
    WarningType.SUSPECT_MARKER,
    WarningType.AMBIGUOUS_NUMBERING,
    WarningType.DEFAULT_TOUR_CREATED,
}

SYSTEM_PROMPT = (
    "You convert a quiz tournament package into JSON. The package has tours "
    "(a warm-up tour has is_warmup=true), optional blocks inside tours, and "
    "questions. For every question copy the number, the question text, the "
    "answer, accepted answers (Залік), rejected answers (Незалік), comment "
    "(Коментар), source (Джерело), authors (Автор), host instructions "
    "([Ведучому: ...]) and handout text ([Роздатка: ...]). Lines like "
    "'[image: NAME]' mark embedded images; put NAME into handout_asset or "
    "comment_asset. Never invent content. Answer with JSON only."
)


@dataclass(frozen=True)
class NormalizerBudget:
    """Per-job guardrail for the external normalizer."""
    max_cost_usd: float = 0.50
    timeout_seconds: float = 60.0
    input_price_per_1k: float = 0.00015
    output_price_per_1k: float = 0.0006
    chars_per_token: float = 3.0
    output_ratio: float = 1.3

    def estimate_cost(self, raw_text: str) -> float:
        input_tokens = len(raw_text) / self.chars_per_token + PROMPT_OVERHEAD_TOKENS
        output_tokens = input_tokens * self.output_ratio
        return (
            input_tokens / 1000 * self.input_price_per_1k
            + output_tokens / 1000 * self.output_price_per_1k
        )

    def usage_cost(self, usage: dict) -> float:
        return (
            usage.get("prompt_tokens", 0) / 1000 * self.input_price_per_1k
            + usage.get("completion_tokens", 0) / 1000 * self.output_price_per_1k
        )


@dataclass(frozen=True)
class Accept:
    """Keep the (possibly annotated) rule-based result."""
    result: ParseResult


@dataclass(frozen=True)
class Escalate:
    """Send the raw text to the normalizer within the given budget."""
    raw_text: str
    budget: NormalizerBudget
    estimated_cost: float


Decision = Union[Accept, Escalate]


def _with_warning(result: ParseResult, warning_type: WarningType,
                  message: str, context: Optional[dict] = None) -> ParseResult:
    warning = ParseWarning(type=warning_type, message=message, context=context)
    return result.model_copy(update={"warnings": [*result.warnings, warning]})


def decide(
    result: ParseResult,
    raw_text: str,
    threshold: float,
    budget: Optional[NormalizerBudget],
) -> Decision:
    """
    Accept when confidence ≥ threshold. Otherwise escalate, unless no
    normalizer budget is available or the estimated cost exceeds the cap.
    """
    if result.confidence >= threshold:
        return Accept(result)

    message = (
        f"Parse confidence {result.confidence:.2f} is below {threshold:.2f}"
    )
    if budget is None:
        return Accept(_with_warning(
            result, WarningType.LOW_CONFIDENCE,
            f"{message}; no normalizer configured, review the import manually",
        ))

    estimated = budget.estimate_cost(raw_text)
    if estimated > budget.max_cost_usd:
        logger.warning(
            f"Normalizer skipped: estimated ${estimated:.4f} exceeds "
            f"cap ${budget.max_cost_usd:.4f}"
        )
        return Accept(_with_warning(
            result, WarningType.NORMALIZER_SKIPPED,
            f"{message}; normalizer skipped, estimated cost "
            f"${estimated:.4f} exceeds the ${budget.max_cost_usd:.2f} cap",
            {"estimated_cost_usd": round(estimated, 6)},
        ))

    return Escalate(raw_text=raw_text, budget=budget, estimated_cost=estimated)


def serialize_fragments(fragments: list[ContentFragment]) -> str:
    """Raw text sent to the normalizer, with image placeholders in place."""
    lines = []
    for fragment in fragments:
        if fragment.text.strip():
            lines.append(fragment.text)
        for asset in fragment.assets:
            lines.append(f"[image: {asset.file_name}]")
    return "\n".join(lines)


# ─── HTTP Client ──────────────────────────────────────────────────────────────


class NormalizerResponseError(Exception):
    """The normalizer answered, but not with something usable."""


class LLMNormalizer:
    """
    Client for an OpenAI-compatible chat-completions endpoint that
    returns the package tree as JSON matching ``DraftPackage``.
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        session: Optional[requests.Session] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.session = session or requests.Session()

    def normalize(self, raw_text: str, budget: NormalizerBudget) -> tuple[DraftPackage, float]:
        """
        Returns:
            (package, actual cost in USD)

        Raises:
            NormalizerUnavailableError: timeout, connection failure, 429/5xx.
            NormalizerResponseError: other HTTP errors or malformed replies.
            SchemaValidationError: the reply does not satisfy the tree schema.
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": raw_text},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "package",
                    "schema": DraftPackage.model_json_schema(),
                },
            },
        }

        logger.info(
            f"Calling normalizer {self.model} "
            f"({len(raw_text)} chars, timeout {budget.timeout_seconds:.0f}s)"
        )
        try:
            response = self.session.post(
                f"{self.api_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=budget.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise NormalizerUnavailableError(
                "The normalization service is not responding", str(e)
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NormalizerUnavailableError(
                "The normalization service is unavailable",
                f"HTTP {response.status_code}: {response.text[:200]}",
            )
        if response.status_code >= 400:
            raise NormalizerResponseError(
                f"HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
            tree = json.loads(content)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise NormalizerResponseError(f"Malformed normalizer reply: {e}") from e

        try:
            package = DraftPackage.model_validate(tree)
        except ValidationError as e:
            raise SchemaValidationError(
                "Normalizer output does not match the package schema", str(e)
            ) from e

        errors = schema_errors(package)
        if errors:
            raise SchemaValidationError(
                "Normalizer output is incomplete", "; ".join(errors[:20])
            )

        return package, budget.usage_cost(data.get("usage") or {})


# ─── Gate ─────────────────────────────────────────────────────────────────────


def normalize(
    result: ParseResult,
    fragments: list[ContentFragment],
    normalizer: Optional[LLMNormalizer],
    threshold: float,
    budget: NormalizerBudget,
    final_attempt: bool = True,
) -> ParseResult:
    """
    Apply the confidence gate and, when escalated, the normalizer.

    ``NormalizerUnavailableError`` propagates (the job is retried) unless
    this is the job's final attempt, in which case the rule-based tree
    is kept with a warning.
    """
    raw_text = serialize_fragments(fragments)
    decision = decide(result, raw_text, threshold,
                      budget if normalizer is not None else None)
    if isinstance(decision, Accept):
        return decision.result

    try:
        package, cost = normalizer.normalize(decision.raw_text, decision.budget)
    except NormalizerUnavailableError as e:
        if not final_attempt:
            raise
        logger.warning(f"Normalizer unavailable on final attempt: {e.detail}")
        return _with_warning(
            result, WarningType.NORMALIZER_FAILED,
            "Normalizer unavailable; imported the rule-based structure",
        )
    except (SchemaValidationError, NormalizerResponseError) as e:
        detail = getattr(e, "detail", None) or str(e)
        logger.warning(f"Normalizer output rejected: {detail}")
        return _with_warning(
            result, WarningType.NORMALIZER_FAILED,
            "Normalizer output rejected; imported the rule-based structure",
            {"reason": str(e)},
        )

    merged, warnings = merge(result, package, fragments)
    logger.info(
        f"Normalizer produced {merged.total_questions} questions "
        f"(cost ${cost:.4f})"
    )
    return ParseResult(
        package=merged,
        warnings=warnings,
        confidence=result.confidence,
        used_normalizer=True,
        normalizer_cost_usd=round(cost, 6),
    )


def merge(
    result: ParseResult,
    package: DraftPackage,
    fragments: list[ContentFragment],
) -> tuple[DraftPackage, list[ParseWarning]]:
    """
    Adopt the model tree, keeping what only the rule-based pass knows:
    the title when the model left it empty, and real asset file names.
    """
    merged = package.model_copy(deep=True)
    known_assets = {a.file_name for f in fragments for a in f.assets}

    merged.id = None
    if not merged.title.strip():
        merged.title = result.package.title

    for index, tour in enumerate(merged.tours):
        tour.id = None
        tour.order_index = index
        for block in tour.blocks:
            block.id = None
        for question in tour.ordered_questions():
            question.id = None
            if question.handout_asset not in known_assets:
                question.handout_asset = None
            if question.comment_asset not in known_assets:
                question.comment_asset = None

    # Assets the model dropped are re-attached by tour position and number
    rule_tours = result.package.tours
    for index, tour in enumerate(merged.tours):
        if index >= len(rule_tours):
            break
        rule_questions = {q.number: q for q in rule_tours[index].ordered_questions()}
        for question in tour.ordered_questions():
            source = rule_questions.get(question.number)
            if source is None:
                continue
            question.handout_asset = question.handout_asset or source.handout_asset
            question.comment_asset = question.comment_asset or source.comment_asset

    warnings = [w for w in result.warnings if w.type not in _TREE_WARNINGS]
    mode, ambiguous = detect_numbering_mode(merged.tours)
    merged.numbering_mode = mode
    if ambiguous:
        warnings.append(ParseWarning(
            type=WarningType.AMBIGUOUS_NUMBERING,
            message="Question numbers are neither continuous nor restarting "
                    "per tour; numbering mode set to manual",
        ))
    return merged, warnings
