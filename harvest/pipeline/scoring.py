"""Confidence scoring and the LLM-necessity policy."""

from __future__ import annotations

from collections.abc import Sequence

from harvest.pipeline.extraction import FieldMap, ParseOutcome
from harvest.pipeline.rules import ExtractionRule

REQUIRED_WEIGHT = 0.7
COVERAGE_WEIGHT = 0.3

# A parse is successful above this confidence.
SUCCESS_THRESHOLD = 0.3
# Below this the LLM is always invoked (when instructions exist).
LLM_CONFIDENCE_THRESHOLD = 0.5
# Parser-only results are accepted above this confidence.
PARSER_ACCEPT_THRESHOLD = 0.6

# Fields an instruction may ask for by name.
REFERENCE_FIELDS = ("price", "title", "description", "rating", "reviews", "address", "contact")


def calculate_confidence(fields: FieldMap, rules: Sequence[ExtractionRule]) -> float:
    """Weighted score of required-field coverage and overall field yield."""
    required = [rule for rule in rules if rule.required]
    found_required = [rule for rule in required if rule.name in fields]

    required_score = len(found_required) / len(required) if required else 1.0
    coverage_score = len(fields) / len(rules) if rules else 0.0

    return REQUIRED_WEIGHT * required_score + COVERAGE_WEIGHT * coverage_score


def missing_requested_fields(fields: FieldMap, instructions: str) -> list[str]:
    """Reference fields named in the instructions that the parser did not produce.

    Containment is a substring check against the joined field names, so a
    parser key like ``reviewsCount`` satisfies a request for ``reviews``.
    """
    instruction_text = instructions.lower()
    extracted = " ".join(fields.keys()).lower()
    return [
        field
        for field in REFERENCE_FIELDS
        if field in instruction_text and field not in extracted
    ]


def should_use_llm(outcome: ParseOutcome, instructions: str | None) -> bool:
    """Decide whether a secondary LLM pass is warranted.

    LLM augmentation is instruction-driven only. Low confidence or a failed
    parse force it; otherwise it targets instruction-requested fields the
    parser missed.
    """
    if not instructions:
        return False
    if outcome.confidence < LLM_CONFIDENCE_THRESHOLD:
        return True
    if not outcome.success:
        return True
    return bool(missing_requested_fields(outcome.fields, instructions))
