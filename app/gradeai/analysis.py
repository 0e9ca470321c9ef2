"""
Upload analysis pipeline.

    stored pages -> quality check -> preprocessing preset -> red-ink separation
    -> visual evidence -> multi-provider vision -> consensus -> TestAnalysis
    -> sanitise/validate -> Upload row

The image and AI work runs in a worker thread so the whole run can be bounded by
ANALYSIS_TIMEOUT_SECONDS; all database writes happen on the calling thread.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from flask import Flask
from sqlalchemy import select, update

from app.gradeai.ai.providers import VisionProvider
from app.gradeai.ai.transform import consensus_to_test_analysis, transform_to_report_format
from app.gradeai.ai.validation import sanitize_analysis, validate_test_analysis
from app.gradeai.ai.vision import DEFAULT_PROVIDER_TIMEOUT_SECONDS, analyze_test_with_multi_vision
from app.gradeai.audit import record_event
from app.gradeai.db import session_scope
from app.gradeai.grading import convert_german_grade
from app.gradeai.imaging.color_separation import enhance_image, red_ink_ratio
from app.gradeai.imaging.pages import convert_pdf_to_images, is_pdf, prepare_multiple_images
from app.gradeai.imaging.preprocessing import analyze_image_quality, preprocess_for_mode
from app.gradeai.imaging.visual_detection import build_visual_evidence, is_red, load_scaled, mask_ratio
from app.gradeai.models import User
from app.gradeai.modules.uploads.models import Upload
from app.gradeai.report import generate_parent_report, report_input_from_analysis
from app.gradeai.storage import storage_from_config

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_TIMEOUT_SECONDS = 55.0
RED_TEXT_PAGE_RATIO = 0.001
PROVIDER_DEADLINE_MARGIN_SECONDS = 3.0
GRADE_LABEL_MAX_LEN = 16
SUBJECT_MAX_LEN = 128

OcrFn = Callable[[bytes], str]


class AnalysisError(RuntimeError):
    pass


@dataclass
class _UploadContext:
    upload_id: int
    user_id: int
    child_name: str | None
    subject: str | None
    mime_types: list[str]
    storage_keys: list[str]


def _rasterize(files: list[bytes], mime_types: list[str]) -> list[bytes]:
    """PDF files become one PNG per page; images pass through unchanged."""
    pages: list[bytes] = []
    for idx, data in enumerate(files):
        mime = mime_types[idx] if idx < len(mime_types) else ""
        if mime == "application/pdf" or is_pdf(data):
            pages.extend(base64.b64decode(p.base64) for p in convert_pdf_to_images(data))
        else:
            pages.append(data)
    return pages


def _page_results(pages: list[bytes], ocr: OcrFn | None, preprocess_mode: str) -> tuple[list[dict], list[str]]:
    results: list[dict] = []
    steps: list[str] = []
    for number, data in enumerate(pages, start=1):
        prepped = preprocess_for_mode(data, preprocess_mode)
        if number == 1:
            steps = list(prepped.steps_applied)

        red_ratio = mask_ratio(load_scaled(data), is_red)
        text = ""
        if ocr is not None:
            try:
                text = ocr(prepped.processed) or ""
            except Exception as e:
                # page OCR only feeds the report warnings
                logger.warning("OCR failed for page %d: %s", number, e)
        results.append(
            {
                "page": number,
                "text": text[:2000],
                "charCount": len(text.strip()) if ocr is not None else None,
                "hasRedText": red_ratio > RED_TEXT_PAGE_RATIO,
                "redRatio": round(red_ratio, 4),
            }
        )
    return results, steps


def provider_timeout_within_budget(provider_timeout: float, time_budget: float, elapsed: float) -> float:
    """Per-provider timeout capped at what is left of `time_budget`, keeping a margin for consensus and saving."""
    margin = min(PROVIDER_DEADLINE_MARGIN_SECONDS, time_budget * 0.25)
    return max(0.1, min(provider_timeout, time_budget - elapsed - margin))


def run_pipeline(
    files: list[bytes],
    mime_types: list[str],
    *,
    config: dict,
    providers: list[VisionProvider] | None = None,
    ocr: OcrFn | None = None,
    child_name: str | None = None,
    subject: str | None = None,
    time_budget: float | None = None,
) -> dict[str, Any]:
    """
    Pure image + AI part of the analysis. Returns a validated TestAnalysis dict.

    With `time_budget` set, the per-provider timeout is shortened so provider calls
    end before the overall analysis deadline.
    """
    started = time.monotonic()
    pages = _rasterize(files, mime_types)
    if not pages:
        raise AnalysisError("Upload has no pages")

    first = pages[0]
    quality = analyze_image_quality(first)
    logger.info(
        "Image quality: brightness=%.1f contrast=%.1f blurry=%s -> mode=%s",
        quality.brightness,
        quality.contrast,
        quality.is_blurry,
        quality.recommended_mode,
    )
    page_results, preprocessing_steps = _page_results(pages, ocr, quality.recommended_mode)

    red_ratio = red_ink_ratio(first)
    evidence = build_visual_evidence(first, ocr=ocr)

    vision_input = [enhance_image(p) for p in pages] if quality.needs_preprocessing else pages
    images = prepare_multiple_images(vision_input)

    provider_timeout = float(config.get("VISION_PROVIDER_TIMEOUT_SECONDS") or DEFAULT_PROVIDER_TIMEOUT_SECONDS)
    if time_budget is not None:
        provider_timeout = provider_timeout_within_budget(provider_timeout, time_budget, time.monotonic() - started)

    consensus = analyze_test_with_multi_vision(
        images,
        config=config,
        providers=providers,
        evidence_text=evidence.to_prompt_text(),
        timeout=provider_timeout,
    )

    analysis = consensus_to_test_analysis(consensus, child_name=child_name, subject=subject)
    sanitize_analysis(analysis)
    metadata = analysis["metadata"]
    metadata["processingTime"] = int((time.monotonic() - started) * 1000)
    metadata["processingSteps"] = [
        f"Quality check ({quality.recommended_mode})",
        *[f"Preprocess: {step}" for step in preprocessing_steps],
        "Red ink separation",
        "Visual evidence",
        *metadata.get("processingSteps", []),
    ]
    metadata["gradeConfidence"] = consensus.final_result.grade.confidence
    metadata["providersUsed"] = consensus.providers_used
    metadata["providersSucceeded"] = consensus.providers_succeeded
    metadata["providersFailed"] = consensus.providers_failed
    metadata["redInkRatio"] = round(red_ratio, 4)
    metadata["imageQuality"] = {
        "brightness": quality.brightness,
        "contrast": quality.contrast,
        "isBlurry": quality.is_blurry,
        "recommendedMode": quality.recommended_mode,
    }
    metadata["visualEvidence"] = evidence.to_dict()
    metadata["pageResults"] = page_results
    validate_test_analysis(analysis)
    return analysis


def _load_context(app: Flask, upload_id: int) -> _UploadContext:
    with session_scope(app) as s:
        upload = s.get(Upload, upload_id)
        if upload is None:
            raise AnalysisError(f"Upload {upload_id} not found")
        upload.analysis_status = "processing"
        upload.error_message = None
        return _UploadContext(
            upload_id=upload.id,
            user_id=upload.user_id,
            child_name=upload.child.name if upload.child else None,
            subject=upload.subject,
            mime_types=[p.content_type or "" for p in upload.pages],
            storage_keys=[p.storage_key for p in upload.pages],
        )


def _mark_failed(app: Flask, ctx: _UploadContext, message: str) -> None:
    with session_scope(app) as s:
        upload = s.get(Upload, ctx.upload_id)
        if upload is None:
            return
        upload.analysis_status = "failed"
        upload.error_message = message[:2000]
        upload.processed_at = datetime.utcnow()
        record_event(
            s,
            actor=s.get(User, ctx.user_id),
            action="upload.analysis_failed",
            entity_type="Upload",
            entity_id=str(ctx.upload_id),
            metadata={"error": message[:500]},
        )


def _save_result(app: Flask, ctx: _UploadContext, analysis: dict[str, Any]) -> None:
    summary = analysis["summary"]
    label = summary.get("overallGrade")
    label = None if label in (None, "", "Unknown") else str(label)[:GRADE_LABEL_MAX_LEN]
    subject = summary.get("subject")
    subject = None if subject in (None, "", "Unknown") else str(subject)[:SUBJECT_MAX_LEN]
    with session_scope(app) as s:
        upload = s.get(Upload, ctx.upload_id)
        if upload is None:
            raise AnalysisError(f"Upload {ctx.upload_id} disappeared during analysis")
        upload.grade = convert_german_grade(summary.get("overallGrade"))
        upload.grade_label = label
        upload.subject = subject
        upload.teacher_comment = (analysis.get("teacherFeedback") or {}).get("written") or None
        upload.analysis_json = json.dumps(analysis, ensure_ascii=False, default=str)
        upload.analysis_status = "completed"
        upload.error_message = None
        upload.processed_at = datetime.utcnow()
        record_event(
            s,
            actor=s.get(User, ctx.user_id),
            action="upload.analysis_completed",
            entity_type="Upload",
            entity_id=str(ctx.upload_id),
            metadata={
                "grade": label,
                "subject": upload.subject,
                "providers": analysis["metadata"].get("providersSucceeded"),
            },
        )


def analyze_upload(
    app: Flask,
    upload_id: int,
    *,
    pages: list[bytes] | None = None,
    providers: list[VisionProvider] | None = None,
    ocr: OcrFn | None = None,
) -> dict[str, Any]:
    """
    Analyse one upload end to end and persist the outcome.

    `pages` may carry the raw file bytes when the caller still has them in memory;
    otherwise they are read back from storage. Any failure leaves the upload in
    status "failed" with the error message and is re-raised.
    """
    ctx = _load_context(app, upload_id)
    timeout = float(app.config.get("ANALYSIS_TIMEOUT_SECONDS") or DEFAULT_ANALYSIS_TIMEOUT_SECONDS)
    logger.info("Analysing upload %s (%d files, timeout %.0fs)", upload_id, len(ctx.storage_keys), timeout)

    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="analysis")
    try:
        if pages is None:
            storage = storage_from_config(app.config)
            pages = [storage.read_bytes(key) for key in ctx.storage_keys]
        future = pool.submit(
            run_pipeline,
            pages,
            ctx.mime_types,
            config=dict(app.config),
            providers=providers,
            ocr=ocr,
            child_name=ctx.child_name,
            subject=ctx.subject,
            time_budget=timeout,
        )
        analysis = future.result(timeout=timeout)
        _save_result(app, ctx, analysis)
    except FutureTimeoutError:
        message = f"Analysis timed out after {timeout:.0f}s"
        logger.error("Upload %s: %s", upload_id, message)
        _mark_failed(app, ctx, message)
        raise AnalysisError(message)
    except Exception as e:
        logger.exception("Upload %s analysis failed", upload_id)
        _mark_failed(app, ctx, str(e) or e.__class__.__name__)
        raise
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    logger.info(
        "Upload %s completed: grade=%s subject=%s",
        upload_id,
        analysis["summary"].get("overallGrade"),
        analysis["summary"].get("subject"),
    )
    return analysis


def claim_next_queued_upload(app: Flask) -> int | None:
    """Oldest queued upload id, atomically moved to "processing" so two workers never share one."""
    with session_scope(app) as s:
        candidates = s.execute(
            select(Upload.id)
            .where(Upload.analysis_status == "queued")
            .order_by(Upload.uploaded_at.asc(), Upload.id.asc())
            .limit(5)
        ).scalars()
        for upload_id in candidates.all():
            res = s.execute(
                update(Upload)
                .where(Upload.id == upload_id, Upload.analysis_status == "queued")
                .values(analysis_status="processing")
            )
            if res.rowcount == 1:
                return upload_id
    return None


def build_upload_report(upload: Upload) -> dict[str, Any]:
    if upload.analysis_status != "completed" or not upload.analysis_json:
        raise AnalysisError(f"Upload {upload.id} has no completed analysis")
    analysis = json.loads(upload.analysis_json)
    parent_report = generate_parent_report(report_input_from_analysis(analysis))
    return {
        "report": transform_to_report_format(analysis),
        "parentReport": parent_report.to_dict(),
        "analysis": analysis,
    }
