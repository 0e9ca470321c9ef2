from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TypeVar

from app.gradeai.ai.types import (
    ConsensusResult,
    GradeInfo,
    RecommendationItem,
    TeacherFeedback,
    VisionAnalysisResult,
)

logger = logging.getLogger(__name__)

PROVIDER_PRIORITY = ("claude", "gemini", "mistral")
_PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}
_AGREEMENT_BONUS = {"full": 15.0, "partial": 5.0, "none": -10.0}

T = TypeVar("T")


class AllProvidersFailed(RuntimeError):
    pass


def normalize_grade(grade: str) -> str:
    """Strip +/- so "2+" and "2-" compare equal to 2."""
    return grade.replace("+", "").replace("-", "").strip()


def dedupe_strings(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        key = item.lower().strip()
        if key and key not in seen:
            seen.add(key)
            out.append(item)
    return out


def _dedupe_by_prefix(items: Iterable[T], text_of: Callable[[T], str]) -> list[T]:
    seen: set[str] = set()
    out: list[T] = []
    for item in items:
        key = text_of(item).lower()[:50]
        if key not in seen:
            seen.add(key)
            out.append(item)
    return out


def _first(values: Iterable[str | None]) -> str | None:
    for v in values:
        if v:
            return v
    return None


def _provider_rank(result: VisionAnalysisResult) -> int:
    try:
        return PROVIDER_PRIORITY.index(result.provider)
    except ValueError:
        return len(PROVIDER_PRIORITY)


def _grade_consensus(successful: list[VisionAnalysisResult]) -> tuple[str, str | None, str, int | None, int]:
    """Returns (agreement, grade, confidence, found_on_page, number_of_grades_found)."""
    found = [r for r in successful if r.grade.value and r.grade.confidence != "not_found"]
    logger.info("Grades found: %s", [(r.provider, r.grade.value, r.grade.confidence) for r in found])

    if not found:
        return "none", None, "not_found", None, 0

    if len(found) == 1:
        only = found[0]
        return "partial", only.grade.value, only.grade.confidence, only.grade.found_on_page, 1

    unique = {normalize_grade(r.grade.value or "") for r in found}
    if len(unique) == 1:
        page = next((r.grade.found_on_page for r in found if r.grade.found_on_page), None)
        return "full", found[0].grade.value, "high", page, len(found)

    # majority vote; within a tie, a high-confidence reading wins
    votes: dict[str, dict] = {}
    for r in found:
        key = normalize_grade(r.grade.value or "")
        vote = votes.setdefault(key, {"count": 0, "original": r.grade.value, "confidence": r.grade.confidence})
        vote["count"] += 1
        if r.grade.confidence == "high" and vote["confidence"] != "high":
            vote["confidence"] = "high"
            vote["original"] = r.grade.value
    ranked = sorted(votes.values(), key=lambda v: (-v["count"], v["confidence"] != "high"))
    logger.info("Grade votes: %s", votes)
    return "partial", ranked[0]["original"], "medium", None, len(found)


def merge_vision_results(results: list[VisionAnalysisResult]) -> ConsensusResult:
    successful = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    logger.info(
        "Merging %d provider results (ok: %s, failed: %s)",
        len(results),
        ", ".join(r.provider for r in successful) or "none",
        ", ".join(f"{r.provider}({r.error})" for r in failed) or "none",
    )

    if not successful:
        errors = "; ".join(f"{r.provider}: {r.error}" for r in failed)
        raise AllProvidersFailed(f"All AI providers failed: {errors}")

    agreement, grade, grade_confidence, found_on_page, grades_found = _grade_consensus(successful)
    base = sorted(successful, key=_provider_rank)[0]

    strengths = _dedupe_by_prefix((s for r in successful for s in r.strengths), lambda s: s.point)
    weaknesses = _dedupe_by_prefix((w for r in successful for w in r.weaknesses), lambda w: w.point)
    recommendations: list[RecommendationItem] = _dedupe_by_prefix(
        (rec for r in successful for rec in r.recommendations), lambda rec: rec.action
    )
    recommendations.sort(key=lambda rec: _PRIORITY_RANK.get(rec.priority, 1))

    breakdown: dict[str, str] | None = None
    for r in successful:
        if r.grade.breakdown:
            breakdown = {**(breakdown or {}), **r.grade.breakdown}

    warnings: list[str] = []
    if failed:
        warnings.append(f"{len(failed)} AI provider(s) failed: {', '.join(r.provider for r in failed)}")
    if agreement == "none":
        warnings.append("Grade could not be automatically detected. Please verify manually.")
    elif agreement == "partial" and grades_found > 1:
        warnings.append("AI providers disagreed on the grade. Result may need verification.")

    avg_confidence = sum(r.confidence for r in successful) / len(successful)
    success_ratio = len(successful) / len(results)
    overall = min(100.0, max(0.0, avg_confidence + _AGREEMENT_BONUS[agreement] + success_ratio * 10))

    final = VisionAnalysisResult(
        provider=base.provider,
        success=True,
        duration_ms=max(r.duration_ms for r in successful),
        student_name=_first(r.student_name for r in successful),
        student_class=_first(r.student_class for r in successful),
        subject=_first(r.subject for r in successful),
        test_date=_first(r.test_date for r in successful),
        topic=_first(r.topic for r in successful),
        duration=_first(r.duration for r in successful),
        grade=GradeInfo(
            value=grade,
            description=base.grade.description,
            points=_first(r.grade.points for r in successful),
            breakdown=breakdown,
            confidence=grade_confidence,
            found_on_page=found_on_page,
        ),
        teacher_feedback=TeacherFeedback(
            main_comment=_first(r.teacher_feedback.main_comment for r in successful),
            margin_notes=dedupe_strings(n for r in successful for n in r.teacher_feedback.margin_notes),
            corrections=dedupe_strings(c for r in successful for c in r.teacher_feedback.corrections),
            tone=_first(r.teacher_feedback.tone for r in successful),
        ),
        strengths=strengths,
        weaknesses=weaknesses,
        recommendations=recommendations,
        pages_analyzed=base.pages_analyzed,
        confidence=overall,
        has_red_marks=any(r.has_red_marks for r in successful),
        has_handwriting=any(r.has_handwriting for r in successful),
    )

    logger.info(
        "Consensus: grade=%s (%s agreement) subject=%s confidence=%.0f",
        final.grade.value,
        agreement,
        final.subject,
        overall,
    )
    return ConsensusResult(
        final_result=final,
        grade_agreement=agreement,
        providers_used=[r.provider for r in results],
        providers_succeeded=[r.provider for r in successful],
        providers_failed=[r.provider for r in failed],
        individual_results=list(results),
        warnings=warnings,
        overall_confidence=overall,
    )
