"""
Reshape a consensus result into the stored TestAnalysis document, and a TestAnalysis
into the parent-report layout the report endpoint returns.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any

from app.gradeai.ai.types import ConsensusResult, VisionAnalysisResult, WeaknessItem
from app.gradeai.grading import convert_german_grade, grade_to_percentage, semester_prediction

_POINTS_RE = re.compile(r"(\d+)\s*(?:/|von)\s*(\d+)")
_PRIORITY_NUMBER = {"high": 1, "medium": 2, "low": 3}


def parse_points(text: str | None) -> tuple[int, int] | None:
    """'35/100' or '35 von 100' -> (35, 100)."""
    m = _POINTS_RE.search(text or "")
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def _executive_summary(result: VisionAnalysisResult, grade: float) -> str:
    if grade <= 2:
        desc = "good"
    elif grade <= 3:
        desc = "satisfactory"
    elif grade <= 4:
        desc = "below average"
    else:
        desc = "insufficient"
    summary = f"Overall {desc} performance on {result.subject or 'this test'}"
    if result.grade.value:
        summary += f" with grade {result.grade.value}"
    if result.strengths:
        summary += f". Key strength: {result.strengths[0].point}"
    if result.weaknesses:
        summary += f". Area for improvement: {result.weaknesses[0].point}"
    return summary + "."


def _prediction(grade: float) -> str:
    if grade <= 1.5:
        return "Excellent trajectory - likely to maintain top performance"
    if grade <= 2.5:
        return "Good progress - expected to achieve strong results"
    if grade <= 3.5:
        return "Satisfactory - with focused effort, improvement is achievable"
    if grade <= 4.5:
        return "Needs support - targeted intervention recommended"
    return "Requires immediate attention - intensive support needed"


def _goals(weaknesses: list[WeaknessItem], grade: float) -> str:
    if not weaknesses:
        return "Continue current study habits and maintain performance level."
    target = max(1, math.floor(grade) - 1)
    return f"Focus on improving {weaknesses[0].point}. Target: achieve grade {target} on next assessment."


def consensus_to_test_analysis(
    consensus: ConsensusResult, *, child_name: str | None = None, subject: str | None = None
) -> dict[str, Any]:
    result = consensus.final_result
    grade_value = result.grade.value
    grade_float = convert_german_grade(grade_value) or 0.0

    points = parse_points(result.grade.points)
    if points and points[1] > 0:
        score, max_score = points
        percentage = round(score / max_score * 100)
    else:
        score, max_score = 0, 100
        percentage = grade_to_percentage(grade_float) if grade_float else 0

    by_section = []
    for name, value in (result.grade.breakdown or {}).items():
        section_points = parse_points(str(value or ""))
        achieved, possible = section_points or (0, 0)
        by_section.append(
            {
                "name": name,
                "pointsAchieved": achieved,
                "pointsPossible": possible,
                "percentage": round(achieved / possible * 100) if possible > 0 else 0,
                "notes": "",
            }
        )

    recommendations = [
        {
            "priority": _PRIORITY_NUMBER.get(rec.priority, 3),
            "category": rec.based_on or "General",
            "action": rec.action,
            "timeframe": rec.timeframe or "1-2 weeks",
            "rationale": rec.based_on,
            "resources": [],
        }
        for rec in result.recommendations
    ]

    return {
        "summary": {
            "overallGrade": grade_value or "Unknown",
            "overallScore": score,
            "maxScore": max_score,
            "percentage": percentage,
            "subject": result.subject or subject or "Unknown",
            "childName": result.student_name or child_name or "Student",
            "testDate": result.test_date,
            "topic": result.topic,
            "executiveSummary": _executive_summary(result, grade_float),
            "confidence": consensus.overall_confidence / 100,
        },
        "performance": {"bySection": by_section, "trends": []},
        "teacherFeedback": {
            "written": result.teacher_feedback.main_comment or "",
            "corrections": list(result.teacher_feedback.corrections),
            "marginNotes": list(result.teacher_feedback.margin_notes),
            "praise": [s.point for s in result.strengths][:3],
            "evaluationMethodology": (
                f"Teacher feedback tone: {result.teacher_feedback.tone}" if result.teacher_feedback.tone else None
            ),
        },
        "strengths": [s.point for s in result.strengths],
        "weaknesses": [w.point for w in result.weaknesses],
        "recommendations": recommendations,
        "longTermDevelopment": {
            "semesterPrediction": _prediction(grade_float) if grade_float else semester_prediction(None),
            "improvementAreas": [w.point for w in result.weaknesses],
            "goalSetting": _goals(result.weaknesses, grade_float),
        },
        "metadata": {
            "processingTime": result.duration_ms,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "ocrConfidence": consensus.overall_confidence / 100,
            "aiModel": f"Multi-AI Vision ({', '.join(consensus.providers_succeeded)})",
            "gradeAgreement": consensus.grade_agreement,
            "warnings": list(consensus.warnings),
            "processingSteps": [
                "Image preparation",
                "Multi-AI vision analysis",
                f"Consensus merge ({consensus.grade_agreement} agreement)",
            ],
        },
    }


def transform_to_report_format(analysis: dict[str, Any]) -> dict[str, Any]:
    summary = analysis.get("summary") or {}
    performance = analysis.get("performance") or {}
    feedback = analysis.get("teacherFeedback") or {}
    strengths = analysis.get("strengths") or []
    weaknesses = analysis.get("weaknesses") or []
    recommendations = analysis.get("recommendations") or []

    header = {
        "grade": str(summary.get("overallGrade") or "N/A"),
        "percentage": summary.get("percentage") or 0,
        "subject": str(summary.get("subject") or "Unknown"),
        "gradeLevel": str(summary.get("topic") or "Test"),
        "studentName": str(summary.get("childName") or "Student"),
        "date": summary.get("testDate") or datetime.now(timezone.utc).date().isoformat(),
    }

    exam_structure = [
        {
            "taskNumber": idx,
            "taskTypeGerman": section.get("name") or f"Task {idx}",
            "topic": section.get("notes") or "",
            "requirement": section.get("notes") or "Complete the task",
            "pointsAchieved": section.get("pointsAchieved") or 0,
            "pointsMax": section.get("pointsPossible") or 10,
        }
        for idx, section in enumerate(performance.get("bySection") or [], start=1)
    ]
    if not exam_structure:
        exam_structure.append(
            {
                "taskNumber": 1,
                "taskTypeGerman": "Test",
                "topic": summary.get("topic") or summary.get("subject") or "Assessment",
                "requirement": "Complete all questions",
                "pointsAchieved": summary.get("overallScore") or 0,
                "pointsMax": summary.get("maxScore") or 100,
            }
        )

    scores = {
        "byTask": [
            {
                "taskNumber": task["taskNumber"],
                "criteria": [
                    {
                        "criterionKey": "overall",
                        "score": task["pointsAchieved"],
                        "maxScore": task["pointsMax"],
                        "isCritical": task["pointsAchieved"] < task["pointsMax"] * 0.5,
                    }
                ],
            }
            for task in exam_structure
        ],
        "overall": {"achieved": summary.get("overallScore") or 0, "maximum": summary.get("maxScore") or 100},
    }

    # "5+" still counts as a 5 here
    digits = re.sub(r"[^0-9.]", "", str(summary.get("overallGrade") or ""))
    try:
        numeric = float(digits) if digits else 3.0
    except ValueError:
        numeric = 3.0
    if numeric >= 5:
        urgency = "high"
    elif numeric >= 4:
        urgency = "medium"
    else:
        urgency = "none"

    immediate = [{"action": rec.get("action") or "Review and practice"} for rec in recommendations[:3]]
    if not immediate:
        immediate = [
            {"action": "Review test results with your child"},
            {"action": "Identify specific areas for improvement"},
            {"action": "Create a study plan together"},
        ]
    learning_plan = [
        {
            "focus": rec.get("category") or "Practice",
            "duration": rec.get("timeframe") or "1 week",
            "timeCommitment": "15-30 minutes daily",
            "successMetric": rec.get("rationale") or "Improved understanding",
        }
        for rec in recommendations[:4]
    ]
    if not learning_plan:
        learning_plan = [
            {
                "focus": "General Review",
                "duration": "2 weeks",
                "timeCommitment": "20 minutes daily",
                "successMetric": "Improved confidence in subject",
            }
        ]

    error_analysis = [
        {
            "errorTypeHuman": f"Area {idx}",
            "frequency": 1,
            "examples": [{"wrong": weakness, "correct": "See recommendations for improvement strategies"}],
            "explanation": weakness,
            "rule": "Practice and review required",
        }
        for idx, weakness in enumerate(weaknesses[:5], start=1)
    ] or [
        {
            "errorTypeHuman": "General Review Needed",
            "frequency": 1,
            "examples": [{"wrong": "Some areas need improvement", "correct": "Focus on weak areas"}],
            "explanation": "Continue practicing and reviewing material",
            "rule": "Consistent practice leads to improvement",
        }
    ]

    strengths_identified = [
        {"strengthType": f"Strength {idx}", "description": strength}
        for idx, strength in enumerate(strengths[:5], start=1)
    ] or [{"strengthType": "Effort", "description": "Completed the test and showed willingness to learn"}]

    return {
        "header": header,
        "examStructure": exam_structure,
        "scores": scores,
        "fairnessAssessment": {
            "overallFairness": "fair",
            "reasoning": feedback.get("evaluationMethodology") or "Standard evaluation methodology applied.",
        },
        "riskAssessment": {"urgencyLevel": urgency},
        "recommendedActions": {"immediate": immediate, "learningPlan": learning_plan},
        "errorAnalysis": error_analysis,
        "strengthsIdentified": strengths_identified,
    }
