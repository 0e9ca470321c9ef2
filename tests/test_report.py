from app.gradeai.report import (
    GRADE_NOT_RECOGNIZED,
    GradeReading,
    PageResult,
    ReportInput,
    format_teacher_comments,
    generate_parent_report,
    report_input_from_analysis,
)


def test_confident_grade_without_warnings():
    report = generate_parent_report(
        ReportInput(
            grade=GradeReading("2", 0.9),
            subject="Mathematik",
            teacher_comments=["gut gemacht", "  ", "weiter so"],
            page_results=[PageResult(1, "Aufgabe 1", 0.9, 120, True), PageResult(2, "Aufgabe 2", 0.9, 80, False)],
            overall_confidence=0.88,
        )
    )
    assert report.grade == "2"
    assert report.subject == "Mathematik"
    assert report.teacher_comments == ["Gut gemacht", "Weiter so"]
    assert report.warnings == []
    assert report.metadata["pagesAnalyzed"] == 2
    assert report.metadata["pagesWithRedText"] == [1]
    assert report.metadata["confidence"] == 0.88


def test_missing_grade_and_no_red_text():
    report = generate_parent_report(ReportInput(page_results=[PageResult(1, char_count=40)]))
    assert report.grade == GRADE_NOT_RECOGNIZED
    assert report.warnings == [
        "Keine Note im Dokument gefunden.",
        "Keine Lehrerkorrektur (roter Text) erkannt.",
    ]
    assert report.metadata["confidence"] == 0.0


def test_unsure_grade_low_quality_and_empty_pages():
    report = generate_parent_report(
        ReportInput(
            grade=GradeReading("4", 0.55),
            page_results=[PageResult(1, char_count=0, has_red_text=True), PageResult(2, char_count=0)],
            overall_confidence=0.42,
        )
    )
    assert report.grade == GRADE_NOT_RECOGNIZED
    assert report.warnings == [
        "Notenerkennung unsicher (55% Konfidenz). Bitte manuell überprüfen.",
        "Geringe Erkennungsqualität (42%). Dokument könnte schwer lesbar sein.",
        "Seite(n) 1, 2 enthält keinen erkennbaren Text.",
    ]


def test_pages_without_ocr_are_not_reported_empty():
    report = generate_parent_report(
        ReportInput(grade=GradeReading("3", 0.8), page_results=[PageResult(1, has_red_text=True)])
    )
    assert report.warnings == []


def test_format_teacher_comments():
    assert format_teacher_comments(["", "ähm, naja", "X"]) == ["Ähm, naja", "X"]


def test_report_input_from_analysis():
    analysis = {
        "summary": {"overallGrade": "2-", "subject": "Deutsch", "confidence": 0.6},
        "teacherFeedback": {"written": "Saubere Schrift", "marginNotes": ["Komma!"]},
        "metadata": {
            "gradeConfidence": "medium",
            "ocrConfidence": 0.9,
            "pageResults": [{"page": 1, "charCount": None, "hasRedText": True}],
        },
    }
    data = report_input_from_analysis(analysis)
    assert data.grade == GradeReading("2-", 0.75)
    assert data.subject == "Deutsch"
    assert data.teacher_comments == ["Saubere Schrift", "Komma!"]
    assert data.page_results[0].char_count is None
    assert data.overall_confidence == 0.9


def test_report_input_without_grade():
    data = report_input_from_analysis(
        {"summary": {"overallGrade": "Unknown", "subject": "Unknown"}, "metadata": {"gradeConfidence": "not_found"}}
    )
    assert data.grade is None
    assert data.subject is None
    assert data.page_results == []
