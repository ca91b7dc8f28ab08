"""Cheap structural email checks used before any network call.

This is deliberately not RFC 5322 validation: the verification service is
the authority on deliverability.
"""

import re
from typing import Iterable

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Placeholder values spreadsheets export for missing cells.
_PLACEHOLDER_TOKENS = {"null", "undefined"}


def clean(value) -> str:
    return ("" if value is None else str(value)).strip()


def is_placeholder_address(value) -> bool:
    """True for empty, whitespace-only, ``null`` or ``undefined`` values."""
    s = clean(value)
    return not s or s.lower() in _PLACEHOLDER_TOKENS


def looks_like_email(value) -> bool:
    return bool(EMAIL_REGEX.match(clean(value)))


def contains_email_pattern(samples: Iterable[str]) -> bool:
    """True when any sample value matches the structural email pattern.

    A single header cell may itself hold comma-joined samples, so each value
    is split on commas before matching.
    """
    for sample in samples:
        for piece in clean(sample).split(","):
            if looks_like_email(piece):
                return True
    return False
