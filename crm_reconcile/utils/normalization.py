"""
String normalization helpers for contact identity fields.

Identity fields are compared across sources, so every source must reduce
emails, phones and names to the same comparable form.
"""

from __future__ import annotations

import re
import unicodedata

# Phones shorter than this are extensions or junk, not identities
MIN_PHONE_DIGITS = 7


def normalize_string(
    value: str,
    sort_words: bool = False,
    remove_spaces: bool = True,
) -> str:
    """
    Normalize a name-like string for comparison.

    Strips accents and punctuation, lower-cases and collapses whitespace.

    Args:
        value: String to normalize
        sort_words: Sort words so "Smith, Jane" and "Jane Smith" compare equal
        remove_spaces: Drop spaces entirely (ignored when sort_words is set)

    Returns:
        Normalized string, empty for falsy input
    """
    if not value:
        return ""

    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))
    normalized = normalized.lower()
    normalized = re.sub(r"[^a-z0-9\s]", "", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()

    if sort_words:
        return " ".join(sorted(normalized.split()))
    if remove_spaces:
        return normalized.replace(" ", "")
    return normalized


def normalize_email(value: str | None) -> str | None:
    """Trim and lower-case an email address; None or blank becomes None."""
    if value is None:
        return None
    email = str(value).strip().lower()
    return email or None


def normalize_phone(value: str | None) -> str | None:
    """
    Reduce a phone number to digits, keeping a leading '+'.

    Returns None when fewer than MIN_PHONE_DIGITS digits remain.
    """
    if value is None:
        return None
    raw = str(value).strip()
    digits = re.sub(r"\D", "", raw)
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return f"+{digits}" if raw.startswith("+") else digits
