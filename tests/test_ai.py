"""Tests for provider parsing, consensus, the TestAnalysis transform and validation."""
import time

import pytest

from app.gradeai.ai.consensus import AllProvidersFailed, merge_vision_results, normalize_grade
from app.gradeai.ai.prompts import build_vision_prompt, translation_prompt
from app.gradeai.ai.providers import ProviderError, VisionProvider, enabled_providers, extract_json_object
from app.gradeai.ai.transform import consensus_to_test_analysis, parse_points, transform_to_report_format
from app.gradeai.ai.types import GradeInfo, PageImage, RecommendationItem, StrengthItem, VisionAnalysisResult, empty_result
from app.gradeai.ai.validation import AnalysisValidationError, sanitize_analysis, validate_test_analysis
from app.gradeai.ai.vision import NoProvidersConfigured, analyze_test_with_multi_vision, run_providers

IMAGES = [PageImage(page_number=1, base64="aGVsbG8=", mime_type="image/png", size_kb=1.0)]


def _result(provider, grade=None, grade_confidence="high", **kwargs):
    kwargs.setdefault("confidence", 70.0)
    return VisionAnalysisResult(
        provider=provider,
        success=True,
        grade=GradeInfo(value=grade, confidence=grade_confidence if grade else "not_found"),
        **kwargs,
    )


class ScriptedProvider(VisionProvider):
    def __init__(self, name, text="", delay=0.0, configured=True):
        self.name = name
        self.text = text
        self.delay = delay
        self.configured = configured

    def is_configured(self):
        return self.configured

    def _complete(self, images, prompt):
        if self.delay:
            time.sleep(self.delay)
        return self.text


# --- providers -------------------------------------------------------------


def test_extract_json_prefers_fenced_block():
    text = 'Here you go:\n```json\n{"grade": {"value": "3"}}\n```\nthanks {not json}'
    assert extract_json_object(text) == {"grade": {"value": "3"}}


def test_extract_json_outer_object():
    assert extract_json_object('noise {"a": {"b": 1}} trailing') == {"a": {"b": 1}}


def test_extract_json_errors():
    with pytest.raises(ProviderError, match="no JSON found"):
        extract_json_object("no braces at all")
    with pytest.raises(ProviderError, match="Invalid JSON"):
        extract_json_object("{broken: json,}")


def test_provider_analyze_normalizes_payload():
    text = (
        '{"test": {"subject": "Deutsch"}, "grade": {"value": "3+", "confidence": "sure"},'
        ' "teacherFeedback": {"mainComment": {"text": "Schöne Schrift"}, "marginNotes": ["gut", 5]},'
        ' "strengths": [{"point": "Lesen"}, {"evidence": "no point"}],'
        ' "recommendations": [{"action": "Diktat üben", "priority": "urgent"}],'
        ' "metadata": {"confidence": "85"}}'
    )
    result = ScriptedProvider("gemini", text).analyze(IMAGES, "prompt")
    assert result.success is True
    assert result.subject == "Deutsch"
    assert result.grade.value == "3+"
    assert result.grade.confidence == "low"
    assert result.teacher_feedback.main_comment == "Schöne Schrift"
    assert [s.point for s in result.strengths] == ["Lesen"]
    assert result.recommendations[0].priority == "medium"
    assert result.pages_analyzed == 1


def test_provider_analyze_failures_become_results():
    missing_key = ScriptedProvider("claude", configured=False).analyze(IMAGES, "p")
    assert missing_key.success is False
    assert missing_key.error == "API key not configured"

    garbage = ScriptedProvider("mistral", "I cannot read this").analyze(IMAGES, "p")
    assert garbage.success is False
    assert "no JSON found" in garbage.error


def test_enabled_providers_respects_keys_and_flags():
    config = {"ANTHROPIC_API_KEY": "k1", "GOOGLE_API_KEY": "k2", "MISTRAL_API_KEY": "", "VISION_GEMINI_ENABLED": False}
    assert [p.name for p in enabled_providers(config)] == ["claude"]


# --- vision orchestration --------------------------------------------------


def test_run_providers_times_out_slow_provider():
    fast = ScriptedProvider("claude", '{"grade": {"value": "2", "confidence": "high"}}')
    slow = ScriptedProvider("gemini", "{}", delay=1.0)
    results = run_providers([fast, slow], IMAGES, "p", timeout=0.3)
    assert [r.provider for r in results] == ["claude", "gemini"]
    assert results[0].success is True
    assert results[1].success is False
    assert results[1].error.startswith("Timeout")


def test_multi_vision_without_providers():
    with pytest.raises(NoProvidersConfigured):
        analyze_test_with_multi_vision(IMAGES, config={})
    with pytest.raises(ValueError):
        analyze_test_with_multi_vision([], config={})


def test_vision_prompt_includes_evidence():
    prompt = build_vision_prompt("[Visual Evidence]\n- Grade detected by OCR: 3")
    assert "Grade detected by OCR: 3" in prompt
    assert "[Visual Evidence]" not in build_vision_prompt()


def test_translation_prompt_names_language():
    assert "Türkisch" in translation_prompt({"summary": {"overallGrade": "2"}}, "Türkisch")


# --- consensus -------------------------------------------------------------


def test_normalize_grade():
    assert normalize_grade("2+") == normalize_grade("2-") == "2"


def test_consensus_full_agreement():
    merged = merge_vision_results([_result("gemini", "2+"), _result("claude", "2-")])
    assert merged.grade_agreement == "full"
    assert merged.final_result.grade.confidence == "high"
    assert merged.final_result.provider == "claude"
    assert merged.warnings == []
    # 70 average + 15 agreement bonus + 10 for all providers succeeding
    assert merged.overall_confidence == pytest.approx(95.0)


def test_consensus_majority_vote():
    merged = merge_vision_results(
        [_result("claude", "3", "medium"), _result("gemini", "3-", "low"), _result("mistral", "4", "high")]
    )
    assert merged.grade_agreement == "partial"
    assert normalize_grade(merged.final_result.grade.value) == "3"
    assert merged.final_result.grade.confidence == "medium"
    assert "AI providers disagreed on the grade. Result may need verification." in merged.warnings


def test_consensus_no_grade_and_failed_provider():
    merged = merge_vision_results(
        [
            _result("claude", None, subject="Englisch", strengths=[StrengthItem("Vokabeln"), StrengthItem("vokabeln")]),
            empty_result("gemini", "boom", 10, 1),
        ]
    )
    assert merged.grade_agreement == "none"
    assert merged.final_result.grade.value is None
    assert merged.providers_failed == ["gemini"]
    assert merged.warnings[0] == "1 AI provider(s) failed: gemini"
    assert [s.point for s in merged.final_result.strengths] == ["Vokabeln"]


def test_consensus_sorts_recommendations_by_priority():
    merged = merge_vision_results(
        [
            _result(
                "claude",
                "2",
                recommendations=[RecommendationItem("Lesen", "low"), RecommendationItem("Rechnen", "high")],
            )
        ]
    )
    assert [r.action for r in merged.final_result.recommendations] == ["Rechnen", "Lesen"]


def test_consensus_all_failed():
    with pytest.raises(AllProvidersFailed, match="claude: x; gemini: y"):
        merge_vision_results([empty_result("claude", "x", 1, 1), empty_result("gemini", "y", 1, 1)])


# --- transform -------------------------------------------------------------


def test_parse_points():
    assert parse_points("35/100") == (35, 100)
    assert parse_points("12 von 20 Punkten") == (12, 20)
    assert parse_points("") is None


def test_consensus_to_test_analysis_uses_grade_when_no_points():
    merged = merge_vision_results([_result("claude", "3", subject=None)])
    analysis = consensus_to_test_analysis(merged, child_name="Mia", subject="Sachkunde")
    summary = analysis["summary"]
    assert summary["overallGrade"] == "3"
    assert summary["percentage"] == 70
    assert summary["maxScore"] == 100
    assert summary["subject"] == "Sachkunde"
    assert summary["childName"] == "Mia"
    assert 0 <= summary["confidence"] <= 1
    validate_test_analysis(sanitize_analysis(analysis))


def test_transform_to_report_format_defaults():
    report = transform_to_report_format({"summary": {"overallGrade": "5+", "subject": "Physik"}})
    assert report["header"]["grade"] == "5+"
    assert report["riskAssessment"]["urgencyLevel"] == "high"
    assert report["examStructure"][0]["taskTypeGerman"] == "Test"
    assert len(report["recommendedActions"]["immediate"]) == 3
    assert report["strengthsIdentified"][0]["strengthType"] == "Effort"


# --- validation ------------------------------------------------------------


def test_validate_reports_every_issue():
    with pytest.raises(AnalysisValidationError) as exc:
        validate_test_analysis({"summary": {"overallGrade": 2}, "strengths": "viel"})
    issues = exc.value.issues
    assert "summary.overallGrade: expected string, got number" in issues
    assert "strengths: expected array of strings, got string" in issues
    assert "metadata: required" in issues
    assert str(exc.value).startswith("Invalid TestAnalysis structure: ")


def test_validate_rejects_non_object():
    with pytest.raises(AnalysisValidationError, match="root: expected object, got array"):
        validate_test_analysis([])


def test_sanitize_analysis():
    analysis = sanitize_analysis({"summary": {"confidence": 87}, "metadata": {}, "strengths": None})
    assert analysis["summary"]["confidence"] == pytest.approx(0.87)
    assert analysis["metadata"]["ocrConfidence"] == pytest.approx(0.85)
    assert analysis["metadata"]["aiModel"] == "KI-Analyse"
    assert analysis["strengths"] == [] and analysis["recommendations"] == []
    with pytest.raises(ValueError):
        sanitize_analysis(None)
