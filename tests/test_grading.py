import math

import pytest

from app.gradeai.grading import (
    concern_level,
    convert_german_grade,
    format_german_grade,
    grade_description,
    grade_interpretation,
    grade_severity,
    grade_to_percentage,
    semester_prediction,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1", 1.0),
        ("1+", 1.0),
        ("2-", 2.3),
        ("4+", 3.7),
        ("+3", 2.7),
        ("6-", 6.0),
        ("2,5", 2.5),
        (" 3.0 ", 3.0),
        ("7", None),
        ("0", None),
        ("sehr gut", None),
        ("", None),
        (None, None),
    ],
)
def test_convert_german_grade(text, expected):
    assert convert_german_grade(text) == expected


@pytest.mark.parametrize(
    "value, expected",
    [(2.0, "2"), (2.3, "2-"), (1.7, "2+"), (2.5, "2.5"), (0.5, None), (None, None), (math.nan, None)],
)
def test_format_german_grade(value, expected):
    assert format_german_grade(value) == expected


def test_descriptions_and_severity():
    assert grade_description(1.0) == "sehr gut"
    assert grade_description(2.3) == "gut"
    assert grade_description(5.7) == "ungenügend"
    assert grade_description(None) is None
    assert grade_severity(1.3) == "excellent"
    assert grade_severity(3.7) == "concerning"
    assert grade_severity(None) == "critical"
    assert grade_interpretation(None).startswith("Grade not available")
    assert semester_prediction(2.5).startswith("Expected to maintain good performance")


def test_concern_level_bands():
    assert concern_level(1.0) == 0
    assert concern_level(2.3) == 3
    assert concern_level(4.7) == 9
    assert concern_level(6.0) == 10
    assert concern_level(None) == 5


def test_grade_to_percentage():
    assert [grade_to_percentage(g) for g in (1.0, 2.0, 2.3, 4.0, 5.0, 6.0)] == [100, 85, 70, 55, 40, 25]
