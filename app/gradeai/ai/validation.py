"""
Structural checks for the stored TestAnalysis document.

`sanitize_analysis` repairs the fields the report pages depend on; `validate_test_analysis`
then checks the full shape and reports every problem at once.
"""

from __future__ import annotations

import json
import math
from typing import Any


class AnalysisValidationError(ValueError):
    def __init__(self, issues: list[str]):
        self.issues = issues
        super().__init__("Invalid TestAnalysis structure: " + json.dumps(issues, ensure_ascii=False))


DEFAULT_CONFIDENCE = 0.85
DEFAULT_AI_MODEL = "KI-Analyse"

# field -> (kind, required); kinds: str, num, bool, [str], or a nested schema dict / [dict]
_SECTION_SCHEMA = {
    "name": ("str", True),
    "pointsAchieved": ("num", True),
    "pointsPossible": ("num", True),
    "percentage": ("num", True),
    "notes": ("str", False),
}

_RECOMMENDATION_SCHEMA = {
    "priority": ("num", True),
    "category": ("str", True),
    "action": ("str", True),
    "timeframe": ("str", True),
    "rationale": ("str", True),
    "resources": ("[str]", False),
}

TEST_ANALYSIS_SCHEMA: dict[str, tuple[Any, bool]] = {
    "summary": (
        {
            "overallGrade": ("str", True),
            "overallScore": ("num", True),
            "maxScore": ("num", True),
            "percentage": ("num", True),
            "subject": ("str", True),
            "topic": ("str", False),
            "childName": ("str", True),
            "testDate": ("str", False),
            "executiveSummary": ("str", False),
            "confidence": ("num", True),
        },
        True,
    ),
    "performance": ({"bySection": ([_SECTION_SCHEMA], True), "trends": ("[str]", True)}, True),
    "teacherFeedback": (
        {
            "evaluationMethodology": ("str", False),
            "written": ("str", True),
            "corrections": ("[str]", True),
            "praise": ("[str]", True),
        },
        True,
    ),
    "strengths": ("[str]", True),
    "weaknesses": ("[str]", True),
    "recommendations": ([_RECOMMENDATION_SCHEMA], True),
    "timeManagement": ({"assessment": ("str", True), "suggestions": ("[str]", True)}, False),
    "languageEnhancement": ({"applicable": ("bool", True), "notes": ("str", False)}, False),
    "longTermDevelopment": (
        {
            "semesterPrediction": ("str", True),
            "improvementAreas": ("[str]", True),
            "goalSetting": ("str", True),
        },
        True,
    ),
    "metadata": (
        {
            "processingTime": ("num", True),
            "timestamp": ("str", True),
            "ocrConfidence": ("num", True),
            "aiModel": ("str", True),
            "processingSteps": ("[str]", True),
        },
        True,
    ),
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _check_scalar(kind: str, value: Any) -> bool:
    if kind == "str":
        return isinstance(value, str)
    if kind == "num":
        return _is_number(value)
    if kind == "bool":
        return isinstance(value, bool)
    if kind == "[str]":
        return isinstance(value, list) and all(isinstance(v, str) for v in value)
    raise ValueError(f"Unknown schema kind: {kind}")


def _describe(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _check(schema: dict[str, tuple[Any, bool]], data: dict, path: str, issues: list[str]) -> None:
    for key, (kind, required) in schema.items():
        where = f"{path}.{key}" if path else key
        value = data.get(key)
        if value is None:
            # optional fields may be missing or null
            if required:
                issues.append(f"{where}: required")
            continue

        if isinstance(kind, dict):
            if not isinstance(value, dict):
                issues.append(f"{where}: expected object, got {_describe(value)}")
            else:
                _check(kind, value, where, issues)
        elif isinstance(kind, list):
            if not isinstance(value, list):
                issues.append(f"{where}: expected array, got {_describe(value)}")
                continue
            for idx, item in enumerate(value):
                if not isinstance(item, dict):
                    issues.append(f"{where}[{idx}]: expected object, got {_describe(item)}")
                else:
                    _check(kind[0], item, f"{where}[{idx}]", issues)
        elif not _check_scalar(kind, value):
            expected = "array of strings" if kind == "[str]" else {"str": "string", "num": "number"}.get(kind, kind)
            issues.append(f"{where}: expected {expected}, got {_describe(value)}")


def validate_test_analysis(data: Any) -> dict[str, Any]:
    """Return `data` unchanged if it has the TestAnalysis shape, else raise with every issue found."""
    if not isinstance(data, dict):
        raise AnalysisValidationError([f"root: expected object, got {_describe(data)}"])
    issues: list[str] = []
    _check(TEST_ANALYSIS_SCHEMA, data, "", issues)
    if issues:
        raise AnalysisValidationError(issues)
    return data


def _normalize_confidence(value: Any) -> float:
    if not _is_number(value):
        return DEFAULT_CONFIDENCE
    if value > 1:
        return value / 100
    return value


def sanitize_analysis(analysis: dict[str, Any] | None) -> dict[str, Any]:
    """Fill in the fields whose absence breaks report rendering. Mutates and returns `analysis`."""
    if analysis is None:
        raise ValueError("Analysis cannot be None")

    summary = analysis.get("summary")
    if not isinstance(summary, dict):
        summary = analysis["summary"] = {}
    summary["confidence"] = _normalize_confidence(summary.get("confidence"))

    metadata = analysis.get("metadata")
    if not isinstance(metadata, dict):
        metadata = analysis["metadata"] = {}
    metadata["ocrConfidence"] = _normalize_confidence(metadata.get("ocrConfidence"))
    if not metadata.get("aiModel"):
        metadata["aiModel"] = DEFAULT_AI_MODEL

    for key in ("strengths", "weaknesses", "recommendations"):
        if not isinstance(analysis.get(key), list):
            analysis[key] = []
    return analysis
