"""Deterministic transient/permanent classification of recorded rule failures."""

from __future__ import annotations

from dataclasses import dataclass

# Case-sensitive substrings; "spawn" covers process spawn errors.
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "ETIMEDOUT",
    "ECONNRESET",
    "spawn",
)


@dataclass(slots=True)
class RuleFailureClassification:
    """Normalized classification result used by startup catch-up."""

    transient: bool
    matched_pattern: str | None


def classify_rule_failure(last_error: str | None) -> RuleFailureClassification:
    """Classify the last error text of a failed rule."""

    if not last_error:
        return RuleFailureClassification(transient=False, matched_pattern=None)
    pattern = _first_match(last_error, _TRANSIENT_PATTERNS)
    return RuleFailureClassification(transient=pattern is not None, matched_pattern=pattern)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
