"""
Data shapes shared by the vision providers, the consensus merge and the
analysis pipeline. Provider JSON uses camelCase keys; `from_payload` maps it
onto these dataclasses and `to_dict` maps it back for storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

PROVIDER_NAMES = ("claude", "gemini", "mistral")
GRADE_CONFIDENCES = ("high", "medium", "low", "not_found")
PRIORITIES = ("high", "medium", "low")


@dataclass
class PageImage:
    page_number: int
    base64: str
    mime_type: str = "image/png"
    size_kb: float = 0.0


@dataclass
class GradeInfo:
    value: str | None = None
    description: str | None = None
    points: str | None = None
    breakdown: dict[str, str] | None = None
    confidence: str = "not_found"
    found_on_page: int | None = None


@dataclass
class TeacherFeedback:
    main_comment: str | None = None
    margin_notes: list[str] = field(default_factory=list)
    corrections: list[str] = field(default_factory=list)
    tone: str | None = None


@dataclass
class StrengthItem:
    point: str
    evidence: str = ""


@dataclass
class WeaknessItem:
    point: str
    evidence: str = ""
    teacher_note: str | None = None


@dataclass
class RecommendationItem:
    action: str
    priority: str = "medium"
    based_on: str = ""
    timeframe: str | None = None


@dataclass
class VisionAnalysisResult:
    provider: str
    success: bool
    duration_ms: int = 0
    error: str | None = None
    student_name: str | None = None
    student_class: str | None = None
    subject: str | None = None
    test_date: str | None = None
    topic: str | None = None
    duration: str | None = None
    grade: GradeInfo = field(default_factory=GradeInfo)
    teacher_feedback: TeacherFeedback = field(default_factory=TeacherFeedback)
    strengths: list[StrengthItem] = field(default_factory=list)
    weaknesses: list[WeaknessItem] = field(default_factory=list)
    recommendations: list[RecommendationItem] = field(default_factory=list)
    pages_analyzed: int = 0
    confidence: float = 0.0  # 0-100 as reported by the model
    has_red_marks: bool = False
    has_handwriting: bool = False
    raw_response: str | None = None

    @classmethod
    def from_payload(
        cls, provider: str, payload: dict[str, Any], *, duration_ms: int, pages: int, raw_text: str = ""
    ) -> "VisionAnalysisResult":
        student = _as_dict(payload.get("student"))
        test = _as_dict(payload.get("test"))
        grade = _as_dict(payload.get("grade"))
        feedback = _as_dict(payload.get("teacherFeedback"))
        meta = _as_dict(payload.get("metadata"))

        confidence = grade.get("confidence")
        if confidence not in GRADE_CONFIDENCES:
            confidence = "not_found" if grade.get("value") in (None, "") else "low"

        breakdown = grade.get("breakdown")
        return cls(
            provider=provider,
            success=True,
            duration_ms=duration_ms,
            student_name=_str_or_none(student.get("name")),
            student_class=_str_or_none(student.get("class")),
            subject=_str_or_none(test.get("subject")),
            test_date=_str_or_none(test.get("date")),
            topic=_str_or_none(test.get("topic")),
            duration=_str_or_none(test.get("duration")),
            grade=GradeInfo(
                value=_str_or_none(grade.get("value")),
                description=_str_or_none(grade.get("description")),
                points=_str_or_none(grade.get("points")),
                breakdown={str(k): str(v) for k, v in breakdown.items()} if isinstance(breakdown, dict) else None,
                confidence=confidence,
                found_on_page=_int_or_none(grade.get("foundOnPage")),
            ),
            teacher_feedback=TeacherFeedback(
                main_comment=_comment_text(feedback.get("mainComment")),
                margin_notes=_str_list(feedback.get("marginNotes")),
                corrections=_str_list(feedback.get("corrections")),
                tone=_str_or_none(feedback.get("tone")),
            ),
            strengths=[
                StrengthItem(point=str(s["point"]), evidence=str(s.get("evidence") or ""))
                for s in _dict_list(payload.get("strengths"))
                if s.get("point")
            ],
            weaknesses=[
                WeaknessItem(
                    point=str(w["point"]),
                    evidence=str(w.get("evidence") or ""),
                    teacher_note=_str_or_none(w.get("teacherNote")),
                )
                for w in _dict_list(payload.get("weaknesses"))
                if w.get("point")
            ],
            recommendations=[
                RecommendationItem(
                    action=str(r["action"]),
                    priority=r.get("priority") if r.get("priority") in PRIORITIES else "medium",
                    based_on=str(r.get("basedOn") or ""),
                    timeframe=_str_or_none(r.get("timeframe")),
                )
                for r in _dict_list(payload.get("recommendations"))
                if r.get("action")
            ],
            pages_analyzed=pages,
            confidence=_float_or_zero(meta.get("confidence")),
            has_red_marks=bool(meta.get("hasRedMarks")),
            has_handwriting=bool(meta.get("hasHandwriting")),
            raw_response=raw_text[:500] if raw_text else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "success": self.success,
            "error": self.error,
            "durationMs": self.duration_ms,
            "student": {"name": self.student_name, "class": self.student_class},
            "test": {
                "subject": self.subject,
                "date": self.test_date,
                "topic": self.topic,
                "duration": self.duration,
            },
            "grade": {
                "value": self.grade.value,
                "description": self.grade.description,
                "points": self.grade.points,
                "breakdown": self.grade.breakdown,
                "confidence": self.grade.confidence,
                "foundOnPage": self.grade.found_on_page,
            },
            "teacherFeedback": {
                "mainComment": self.teacher_feedback.main_comment,
                "marginNotes": list(self.teacher_feedback.margin_notes),
                "corrections": list(self.teacher_feedback.corrections),
                "tone": self.teacher_feedback.tone,
            },
            "strengths": [{"point": s.point, "evidence": s.evidence} for s in self.strengths],
            "weaknesses": [
                {"point": w.point, "evidence": w.evidence, "teacherNote": w.teacher_note} for w in self.weaknesses
            ],
            "recommendations": [
                {"action": r.action, "priority": r.priority, "basedOn": r.based_on, "timeframe": r.timeframe}
                for r in self.recommendations
            ],
            "metadata": {
                "pagesAnalyzed": self.pages_analyzed,
                "confidence": self.confidence,
                "hasRedMarks": self.has_red_marks,
                "hasHandwriting": self.has_handwriting,
            },
        }


@dataclass
class ConsensusResult:
    final_result: VisionAnalysisResult
    grade_agreement: str  # full | partial | none
    providers_used: list[str]
    providers_succeeded: list[str]
    providers_failed: list[str]
    individual_results: list[VisionAnalysisResult]
    warnings: list[str]
    overall_confidence: float  # 0-100

    def to_dict(self) -> dict[str, Any]:
        return {
            "finalResult": self.final_result.to_dict(),
            "consensus": {
                "gradeAgreement": self.grade_agreement,
                "providersUsed": self.providers_used,
                "providersSucceeded": self.providers_succeeded,
                "providersFailed": self.providers_failed,
            },
            "warnings": self.warnings,
            "overallConfidence": self.overall_confidence,
        }


def empty_result(provider: str, error: str, duration_ms: int, pages: int) -> VisionAnalysisResult:
    return VisionAnalysisResult(
        provider=provider,
        success=False,
        error=error,
        duration_ms=duration_ms,
        pages_analyzed=pages,
    )


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _dict_list(value: Any) -> list[dict[str, Any]]:
    return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v not in (None, "")]


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _comment_text(value: Any) -> str | None:
    # some models answer {"text": "..."} instead of a plain string
    if isinstance(value, dict):
        return _str_or_none(value.get("text"))
    return _str_or_none(value)


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _float_or_zero(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
