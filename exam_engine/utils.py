"""Utility functions for time arithmetic, sanitization and validation."""

import math
from datetime import datetime, timezone

import bleach

QUESTION_ALLOWED_TAGS = ["b", "i", "u", "em", "strong", "p", "br", "code", "pre", "ul", "ol", "li", "sub", "sup"]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how datetimes are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end``, floored. Never negative."""
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return math.floor(seconds / 60)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (``round`` goes to even)."""
    return math.floor(value + 0.5)


def sanitize_question_text(text: str) -> str:
    """Sanitize question text to prevent XSS attacks.

    Allows basic formatting tags but removes script/dangerous content.
    """
    sanitized = bleach.clean(text, tags=QUESTION_ALLOWED_TAGS, attributes={}, strip=True)
    return sanitized.strip()


def sanitize_plain_text(text: str) -> str:
    """Strip all HTML from free text (student answers, grader feedback)."""
    return bleach.clean(text, tags=[], strip=True).strip()


def validate_marks(marks: float, max_marks: float) -> bool:
    """Validate that manually awarded marks are within ``[0, max_marks]``.

    Raises:
        ValueError: If marks exceed valid range
    """
    if marks < 0 or marks > max_marks:
        raise ValueError(f"Marks {marks} out of range [0, {max_marks}]")

    return True
