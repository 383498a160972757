"""Result merging with provenance tagging."""

from __future__ import annotations

from collections.abc import Iterable

from harvest.pipeline.extraction import PROVENANCE_KEY, FieldMap

# Parser strings shorter than this are treated as thin hits the LLM may replace.
MIN_TRUSTED_PARSER_VALUE_LENGTH = 10


def with_provenance(
    fields: FieldMap, parser_keys: Iterable[str], llm_keys: Iterable[str]
) -> FieldMap:
    """Return a copy of ``fields`` carrying the ``_extraction_sources`` map."""
    result = {key: value for key, value in fields.items() if key != PROVENANCE_KEY}
    result[PROVENANCE_KEY] = {
        "parser": [key for key in parser_keys if key != PROVENANCE_KEY],
        "llm": [key for key in llm_keys if key != PROVENANCE_KEY],
        "hybrid": list(result.keys()),
    }
    return result


def _parser_value_is_thin(value: object) -> bool:
    return isinstance(value, str) and len(value) < MIN_TRUSTED_PARSER_VALUE_LENGTH


def merge_results(parser_fields: FieldMap, llm_fields: FieldMap) -> FieldMap:
    """Merge parser and LLM field maps.

    The parser map is the base. An LLM value is taken when the parser lacks the
    key or holds a string shorter than MIN_TRUSTED_PARSER_VALUE_LENGTH; it never
    replaces a non-string or a longer string.
    """
    merged: FieldMap = {
        key: value for key, value in parser_fields.items() if key != PROVENANCE_KEY
    }

    for key, value in llm_fields.items():
        if key == PROVENANCE_KEY or value is None:
            continue
        if key not in merged or _parser_value_is_thin(merged[key]):
            merged[key] = value

    return with_provenance(merged, parser_fields.keys(), llm_fields.keys())
