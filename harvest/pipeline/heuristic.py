"""Heuristic extraction engine — text-pattern rules for deterministic extraction.

Fast, deterministic, no AI cost. Rules operate on the already-extracted page text
and headings; each rule is dispatched by its MatchStrategy through STRATEGIES.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from typing import Any

from harvest.pipeline.extraction import FieldMap, PageExtract, PageMetadata, ParseOutcome
from harvest.pipeline.rules import ExtractionRule, MatchStrategy, RuleSet, detect_rule_set
from harvest.pipeline.scoring import SUCCESS_THRESHOLD, calculate_confidence
from harvest.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)

PRICE_PATTERN = re.compile(r"\$[\d,]+\.?\d*")
RATING_PATTERN = re.compile(
    r"(\d+\.?\d*)\s*(?:out of|/)\s*(\d+)|(\d+\.?\d*)\s*stars?", re.IGNORECASE
)
PAGINATION_PATTERN = re.compile(r"page|next|more|\d+")

DESCRIPTION_MIN_LENGTH = 50

Strategy = Callable[[ExtractionRule, PageExtract], Any]


def _non_blank_lines(text: str) -> list[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def _extract_title(rule: ExtractionRule, page: PageExtract) -> str | None:
    for heading in page.headings:
        if heading.strip():
            return heading.strip()
    lines = _non_blank_lines(page.text)
    return lines[0] if lines else None


def _extract_price(rule: ExtractionRule, page: PageExtract) -> str | list[str] | None:
    matches = PRICE_PATTERN.findall(page.text)
    if not matches:
        return None
    return matches if rule.multiple else matches[0]


def _extract_description(rule: ExtractionRule, page: PageExtract) -> str | None:
    for line in _non_blank_lines(page.text):
        if len(line) > DESCRIPTION_MIN_LENGTH:
            return line
    return None


def _extract_rating(rule: ExtractionRule, page: PageExtract) -> str | None:
    match = RATING_PATTERN.search(page.text)
    return match.group(0) if match else None


def _extract_images(rule: ExtractionRule, page: PageExtract) -> list[str]:
    return list(page.images)


def _extract_links(rule: ExtractionRule, page: PageExtract) -> list[str]:
    return list(page.links)


def _extract_generic(rule: ExtractionRule, page: PageExtract) -> str | list[str] | None:
    keyword = rule.name.lower()
    relevant = [line.strip() for line in page.text.split("\n") if keyword in line.lower()]
    if not relevant:
        return None
    return relevant if rule.multiple else relevant[0]


STRATEGIES: dict[MatchStrategy, Strategy] = {
    MatchStrategy.TITLE: _extract_title,
    MatchStrategy.PRICE: _extract_price,
    MatchStrategy.DESCRIPTION: _extract_description,
    MatchStrategy.RATING: _extract_rating,
    MatchStrategy.IMAGES: _extract_images,
    MatchStrategy.LINKS: _extract_links,
    MatchStrategy.GENERIC: _extract_generic,
}


def extract_fields(page: PageExtract, rules: RuleSet) -> tuple[FieldMap, list[str]]:
    """Apply every rule independently.

    A rule that raises is logged and recorded; a rule with no match is simply
    omitted. Neither affects the other rules.

    Returns:
        The field map (rule order) and the list of rule error messages.
    """
    fields: FieldMap = {}
    errors: list[str] = []

    for rule in rules.rules:
        try:
            value = STRATEGIES[rule.match_strategy](rule, page)
        except Exception as exc:
            errors.append(f"Rule '{rule.name}' failed: {exc}")
            emit_structured_error(
                logger,
                code=ErrorCode.RULE_FAILED,
                message=str(exc),
                suppressed=True,
                details={"rule": rule.name, "url": page.url},
            )
            continue

        if value is not None:
            fields[rule.name] = value

    return fields, errors


def build_context_snippets(text: str, fields: FieldMap) -> list[str]:
    """For each string field, the first text line containing its value verbatim."""
    lines = text.split("\n")
    snippets: list[str] = []
    for name, value in fields.items():
        if not isinstance(value, str) or not value:
            continue
        context_line = next((line for line in lines if value in line), None)
        if context_line is not None:
            snippets.append(f"{name}: {context_line.strip()}")
    return snippets


def parse_page(page: PageExtract, rules: RuleSet | None = None) -> ParseOutcome:
    """Run the rule-based pass over a fetched page.

    Args:
        page: Page extract from the fetcher.
        rules: Caller-supplied override rules; detected from URL/text when omitted.

    Returns:
        ParseOutcome. A failure of the whole pass yields success=False and
        confidence 0 instead of raising.
    """
    start = time.monotonic()
    try:
        rule_set = rules if rules is not None else detect_rule_set(page.url, page.text)
        fields, errors = extract_fields(page, rule_set)
        confidence = calculate_confidence(fields, rule_set.rules)

        return ParseOutcome(
            success=confidence > SUCCESS_THRESHOLD,
            fields=fields,
            confidence=confidence,
            context_snippets=build_context_snippets(page.text, fields),
            errors=errors or None,
            elapsed_ms=_elapsed_ms(start),
            category=rule_set.category,
            metadata=PageMetadata(
                url=page.url,
                title=page.title_meta,
                description=page.description_meta,
            ),
        )
    except Exception as exc:
        emit_structured_error(
            logger,
            code=ErrorCode.PARSE_FAILED,
            message=str(exc),
            suppressed=True,
            details={"url": page.url},
        )
        return ParseOutcome.failed([str(exc) or "Unknown parsing error"], _elapsed_ms(start))


def find_pagination_links(links: list[str], max_pages: int) -> list[str]:
    """Links that look like pagination, capped so the origin page fits in max_pages."""
    candidates = [link for link in links if PAGINATION_PATTERN.search(link.lower())]
    return candidates[: max(max_pages - 1, 0)]


def _elapsed_ms(start: float) -> int:
    return round((time.monotonic() - start) * 1000)
