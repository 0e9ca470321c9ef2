"""
German school grade helpers.

Scale: 1 (sehr gut) .. 6 (ungenügend). A "+" improves a grade by 0.3 ("2+" = 1.7),
a "-" worsens it by 0.3 ("2-" = 2.3). Decimal notation ("2,5" / "2.5") is accepted as-is.
"""

from __future__ import annotations

import math
import re

_SIGNED_RE = re.compile(r"^(\d+)\s*([+-])$|^([+-])\s*(\d+)$")

_DESCRIPTIONS = (
    (1.0, 1.5, "sehr gut"),
    (1.5, 2.5, "gut"),
    (2.5, 3.5, "befriedigend"),
    (3.5, 4.5, "ausreichend"),
    (4.5, 5.5, "mangelhaft"),
)


def convert_german_grade(text: str | None) -> float | None:
    """
    "1+" -> 1.0, "2-" -> 2.3, "4+" -> 3.7, "2,5" -> 2.5.
    Returns None for anything that is not a grade between 1 and 6.
    """
    if not text:
        return None
    trimmed = str(text).strip()
    if not trimmed:
        return None

    m = _SIGNED_RE.match(trimmed)
    if m:
        base = int(m.group(1) or m.group(4))
        sign = m.group(2) or m.group(3)
        if base < 1 or base > 6:
            return None
        if sign == "+":
            return round(max(1.0, base - 0.3), 1)
        return round(min(6.0, base + 0.3), 1)

    try:
        value = float(trimmed.replace(",", "."))
    except ValueError:
        return None
    if math.isnan(value) or value < 1.0 or value > 6.0:
        return None
    return value


def format_german_grade(value: float | None) -> str | None:
    """
    Inverse of convert_german_grade for the common notations:
    2.0 -> "2", 2.3 -> "2-", 1.7 -> "2+", 2.5 -> "2.5".
    """
    if value is None or math.isnan(value):
        return None
    if value < 1.0 or value > 6.0:
        return None
    if float(value).is_integer():
        return str(int(value))

    base = math.floor(value)
    decimal = value - base
    if abs(decimal - 0.3) < 0.01:
        return f"{base}-"
    if abs(decimal - 0.7) < 0.01:
        return f"{base + 1}+"
    return f"{value:.1f}"


def grade_description(value: float | None) -> str | None:
    if value is None or math.isnan(value):
        return None
    for low, high, label in _DESCRIPTIONS:
        if low <= value < high:
            return label
    if 5.5 <= value <= 6.0:
        return "ungenügend"
    return None


def grade_interpretation(value: float | None) -> str:
    if value is None:
        return "Grade not available or unclear from the test."
    if 1 <= value < 1.5:
        return "Excellent work! Your child is performing at the highest level in German schools."
    if 1.5 <= value < 2.5:
        return "Very good performance. Your child demonstrates strong understanding of the material."
    if 2.5 <= value < 3.5:
        return "Satisfactory work. Your child meets the expected standards but has room for improvement."
    if 3.5 <= value < 4.5:
        return "Below average performance. Additional support may be needed to improve understanding."
    if 4.5 <= value <= 6:
        return "Insufficient performance. Immediate attention and support is needed to address gaps."
    return "Grade not available or unclear from the test."


def grade_severity(value: float | None) -> str:
    if value is not None:
        if 1 <= value < 1.5:
            return "excellent"
        if 1.5 <= value < 2.5:
            return "good"
        if 2.5 <= value < 3.5:
            return "satisfactory"
        if 3.5 <= value < 4.5:
            return "concerning"
    return "critical"


def concern_level(value: float | None) -> int:
    """0 (no concern) .. 10 (urgent), in half-grade bands. Unknown grades sit in the middle."""
    if value is None or value < 1:
        return 5
    bands = ((1.5, 0), (2.0, 1), (2.5, 3), (3.0, 4), (3.5, 6), (4.0, 7), (4.5, 8), (5.0, 9))
    for upper, level in bands:
        if value < upper:
            return level
    return 10


def semester_prediction(value: float | None) -> str:
    if value is not None:
        if 1 <= value < 2:
            return "Likely to maintain excellent performance (1-2 range)"
        if 2 <= value < 3:
            return "Expected to maintain good performance (2-3 range)"
        if 3 <= value < 4:
            return "May improve with additional support (2-3 range)"
    return "Requires immediate intervention to avoid failing (4-5 range)"


def grade_to_percentage(value: float) -> int:
    """Rough percentage for a grade when the test shows no point totals."""
    if value <= 1:
        return 100
    if value <= 2:
        return 85
    if value <= 3:
        return 70
    if value <= 4:
        return 55
    if value <= 5:
        return 40
    return 25
