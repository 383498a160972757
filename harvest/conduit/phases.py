"""Per-URL state machine phases and their valid transitions."""

from __future__ import annotations

from enum import Enum


class Phase(str, Enum):
    """All valid per-URL phases. Each page moves through these on concrete
    conditions: fetched and parsed, optionally LLM-assisted, merged, persisted."""

    START = "START"
    PARSED = "PARSED"
    HYBRID_EXTRACT = "HYBRID_EXTRACT"
    LLM_EXTRACT = "LLM_EXTRACT"
    MERGED = "MERGED"
    PERSISTED = "PERSISTED"
    FAILED = "FAILED"


# Valid phase transitions. Each key maps to a set of phases it can transition to.
VALID_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.START: {Phase.PARSED, Phase.FAILED},
    # PARSED -> MERGED is the parser-only path (LLM skipped)
    Phase.PARSED: {Phase.HYBRID_EXTRACT, Phase.LLM_EXTRACT, Phase.MERGED, Phase.FAILED},
    Phase.HYBRID_EXTRACT: {Phase.MERGED, Phase.FAILED},
    Phase.LLM_EXTRACT: {Phase.MERGED, Phase.FAILED},
    Phase.MERGED: {Phase.PERSISTED, Phase.FAILED},
    Phase.PERSISTED: set(),  # terminal
    Phase.FAILED: set(),  # terminal
}

TERMINAL_PHASES = {Phase.PERSISTED, Phase.FAILED}
