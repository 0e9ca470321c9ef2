"""
Parent-facing summary of an analysed test: the recognised grade, the teacher's
comments and plain-German warnings about anything the parent should double-check.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

CONFIDENCE_THRESHOLD = 0.7
GRADE_NOT_RECOGNIZED = "Note nicht erkannt"


@dataclass
class GradeReading:
    value: str
    confidence: float  # 0-1


@dataclass
class PageResult:
    page: int
    text: str = ""
    confidence: float = 0.0
    char_count: int | None = None  # None when no OCR ran
    has_red_text: bool = False


@dataclass
class ReportInput:
    grade: GradeReading | None = None
    subject: str | None = None
    teacher_comments: list[str] = field(default_factory=list)
    page_results: list[PageResult] = field(default_factory=list)
    overall_confidence: float | None = None


@dataclass
class ParentReport:
    grade: str
    subject: str | None
    teacher_comments: list[str]
    warnings: list[str]
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "grade": self.grade,
            "subject": self.subject,
            "teacherComments": list(self.teacher_comments),
            "warnings": list(self.warnings),
            "metadata": dict(self.metadata),
        }


def format_teacher_comments(comments: list[str]) -> list[str]:
    out = []
    for comment in comments:
        text = (comment or "").strip()
        if text:
            out.append(text[0].upper() + text[1:])
    return out


def generate_parent_report(data: ReportInput) -> ParentReport:
    warnings: list[str] = []

    grade = GRADE_NOT_RECOGNIZED
    if data.grade is None:
        warnings.append("Keine Note im Dokument gefunden.")
    elif data.grade.confidence >= CONFIDENCE_THRESHOLD:
        grade = data.grade.value
    else:
        warnings.append(
            f"Notenerkennung unsicher ({data.grade.confidence * 100:.0f}% Konfidenz). Bitte manuell überprüfen."
        )

    pages_with_red = [p.page for p in data.page_results if p.has_red_text]
    if data.page_results and not pages_with_red:
        warnings.append("Keine Lehrerkorrektur (roter Text) erkannt.")

    if data.overall_confidence is not None and data.overall_confidence < CONFIDENCE_THRESHOLD:
        warnings.append(
            f"Geringe Erkennungsqualität ({data.overall_confidence * 100:.0f}%). Dokument könnte schwer lesbar sein."
        )

    empty_pages = [str(p.page) for p in data.page_results if p.char_count == 0]
    if empty_pages:
        warnings.append(f"Seite(n) {', '.join(empty_pages)} enthält keinen erkennbaren Text.")

    if data.overall_confidence is not None:
        confidence = data.overall_confidence
    else:
        confidence = data.grade.confidence if data.grade else 0.0

    return ParentReport(
        grade=grade,
        subject=data.subject or None,
        teacher_comments=format_teacher_comments(data.teacher_comments),
        warnings=warnings,
        metadata={
            "pagesAnalyzed": len(data.page_results),
            "pagesWithRedText": pages_with_red,
            "confidence": confidence,
            "analyzedAt": datetime.now(timezone.utc).isoformat(),
        },
    )


_GRADE_CONFIDENCE_SCORE = {"high": 0.95, "medium": 0.75, "low": 0.5}


def report_input_from_analysis(analysis: dict[str, Any]) -> ReportInput:
    """Build the report input from a stored analysis document (see `app.gradeai.analysis`)."""
    summary = analysis.get("summary") or {}
    feedback = analysis.get("teacherFeedback") or {}
    metadata = analysis.get("metadata") or {}

    grade = None
    label = summary.get("overallGrade")
    grade_confidence = metadata.get("gradeConfidence")
    if label and label != "Unknown" and grade_confidence != "not_found":
        score = _GRADE_CONFIDENCE_SCORE.get(grade_confidence, summary.get("confidence") or 0.0)
        grade = GradeReading(value=str(label), confidence=float(score))

    comments = [feedback.get("written") or ""]
    comments.extend(feedback.get("marginNotes") or [])

    pages = [
        PageResult(
            page=int(p.get("page") or idx),
            text=p.get("text") or "",
            confidence=float(p.get("confidence") or 0.0),
            char_count=int(p["charCount"]) if p.get("charCount") is not None else None,
            has_red_text=bool(p.get("hasRedText")),
        )
        for idx, p in enumerate(metadata.get("pageResults") or [], start=1)
    ]

    return ReportInput(
        grade=grade,
        subject=summary.get("subject") if summary.get("subject") != "Unknown" else None,
        teacher_comments=comments,
        page_results=pages,
        overall_confidence=metadata.get("ocrConfidence"),
    )

