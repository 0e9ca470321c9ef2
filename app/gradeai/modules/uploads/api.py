from __future__ import annotations

import json

from flask import Blueprint, current_app, g, jsonify, request

from app.gradeai.access import login_required
from app.gradeai.ai.prompts import fairness_check_prompt, translation_prompt
from app.gradeai.ai.providers import ClaudeVisionProvider, ProviderError
from app.gradeai.analysis import AnalysisError, analyze_upload, build_upload_report
from app.gradeai.db import db_session
from app.gradeai.modules.children.models import Child
from app.gradeai.modules.uploads.models import Upload
from app.gradeai.modules.uploads.service import (
    IncomingFile,
    create_upload,
    delete_upload,
    get_owned_upload,
    remove_stored_pages,
    upload_to_dict,
    validate_files,
)
from app.gradeai.rate_limit import api_limiter, enforce
from app.gradeai.storage import StorageError, storage_from_config
from app.gradeai.utils import api_error, clean_str, json_body

bp = Blueprint("uploads", __name__)

FAIRNESS_MAX_TOKENS = 8192
TRANSLATION_MAX_TOKENS = 4096


def _incoming_files() -> list[IncomingFile]:
    files = []
    for storage_file in request.files.getlist("files") or request.files.getlist("files[]"):
        if not storage_file or not storage_file.filename:
            continue
        files.append(
            IncomingFile(
                filename=storage_file.filename,
                content_type=(storage_file.mimetype or "").lower(),
                data=storage_file.read(),
            )
        )
    return files


@bp.post("/upload")
@login_required
def upload_create():
    blocked = enforce(api_limiter)
    if blocked is not None:
        return blocked

    files = _incoming_files()
    if not files:
        return api_error("No files provided", 400)

    child_id_raw = (request.form.get("childId") or "").strip()
    if not child_id_raw:
        return api_error("Child ID is required", 400)
    try:
        child_id = int(child_id_raw)
    except ValueError:
        return api_error("Child ID is invalid", 400)

    problem = validate_files(
        files,
        max_bytes=int(current_app.config["MAX_UPLOAD_BYTES"]),
        allow_pdf=bool(current_app.config.get("ALLOW_PDF_UPLOADS")),
    )
    if problem:
        return api_error(problem, 400)

    s = db_session()
    child = s.get(Child, child_id)
    if child is None:
        return api_error("Child not found", 404)
    if child.user_id != g.current_user.id:
        return api_error("Unauthorized: You can only upload tests for your own children", 403)

    storage = storage_from_config(current_app.config)
    try:
        upload = create_upload(s, storage, child, files, g.current_user)
    except StorageError as e:
        s.commit()
        current_app.logger.error("Storage upload failed for child %s: %s", child.id, e)
        return api_error("Failed to upload files to storage", 500)

    queued = current_app.config.get("ANALYSIS_MODE") == "queue"
    if queued:
        upload.analysis_status = "queued"
    s.commit()
    upload_id = upload.id
    current_app.logger.info("Upload %s created with %d page(s), mode=%s", upload_id, len(files), "queue" if queued else "inline")

    if queued:
        return jsonify({"success": True, "uploadId": upload_id, "analysisStatus": "queued"})

    try:
        analyze_upload(current_app._get_current_object(), upload_id, pages=[f.data for f in files])
    except Exception as e:
        # analyze_upload already stored the failure on the upload and logged it
        current_app.logger.warning("Inline analysis of upload %s failed: %s", upload_id, e)

    s.expire_all()
    upload = s.get(Upload, upload_id)
    return jsonify(
        {
            "success": True,
            "uploadId": upload_id,
            "analysisStatus": upload.analysis_status if upload else "failed",
        }
    )


@bp.get("/uploads/<int:upload_id>")
@login_required
def upload_detail(upload_id: int):
    s = db_session()
    upload = get_owned_upload(s, g.current_user, upload_id)
    if upload is None:
        return api_error("Upload not found", 404)
    data = upload_to_dict(upload)
    data["analysis"] = json.loads(upload.analysis_json) if upload.analysis_json else None
    return jsonify({"success": True, "upload": data})


@bp.delete("/uploads/<int:upload_id>")
@login_required
def upload_delete(upload_id: int):
    s = db_session()
    upload = get_owned_upload(s, g.current_user, upload_id)
    if upload is None:
        return api_error("Upload not found or access denied", 404)

    keys = delete_upload(s, upload, g.current_user)
    s.commit()
    remove_stored_pages(storage_from_config(current_app.config), keys)
    return jsonify({"success": True, "message": "Upload deleted successfully"})


@bp.get("/uploads/<int:upload_id>/report")
@login_required
def upload_report(upload_id: int):
    s = db_session()
    upload = get_owned_upload(s, g.current_user, upload_id)
    if upload is None:
        return api_error("Upload not found", 404)
    try:
        report = build_upload_report(upload)
    except AnalysisError:
        return api_error(
            "Analysis not completed yet",
            409,
            analysisStatus=upload.analysis_status,
            errorMessage=upload.error_message,
        )
    return jsonify({"success": True, "uploadId": upload.id, **report})


def _claude() -> ClaudeVisionProvider:
    return ClaudeVisionProvider(
        api_key=current_app.config.get("ANTHROPIC_API_KEY") or "",
        timeout_seconds=float(current_app.config.get("VISION_PROVIDER_TIMEOUT_SECONDS") or 55.0),
    )


def _analysis_from_payload(payload: dict) -> dict | None:
    """Inline `analysisData`, or the stored analysis of one of the caller's uploads."""
    analysis = payload.get("analysisData")
    if isinstance(analysis, dict) and analysis:
        return analysis
    upload_id = payload.get("uploadId")
    if upload_id is None:
        return None
    try:
        upload_id = int(upload_id)
    except (TypeError, ValueError):
        return None
    upload = get_owned_upload(db_session(), g.current_user, upload_id)
    if upload is None or not upload.analysis_json:
        return None
    return build_upload_report(upload)["report"]


@bp.post("/ai/fairness-check")
@login_required
def fairness_check():
    blocked = enforce(api_limiter)
    if blocked is not None:
        return blocked

    payload = json_body()
    analysis = _analysis_from_payload(payload)
    if analysis is None:
        return api_error("Missing required parameters", 400)
    context = payload.get("studentContext") if isinstance(payload.get("studentContext"), dict) else {}

    provider = _claude()
    if not provider.is_configured():
        return api_error("Fairness check is not available (ANTHROPIC_API_KEY not configured)", 503)

    current_app.logger.info("Running fairness check (request_id=%s)", getattr(g, "request_id", None))
    try:
        result = provider.complete_json(
            fairness_check_prompt(analysis, context),
            image_base64=clean_str(payload.get("imageData")) or None,
            max_tokens=FAIRNESS_MAX_TOKENS,
        )
    except ProviderError as e:
        current_app.logger.error("Fairness check failed: %s", e)
        return api_error("Fairness check failed", 502, details=str(e))

    verdict = (result.get("fairnessAnalysis") or {}).get("overallVerdict")
    current_app.logger.info("Fairness check completed: %s", verdict)
    return jsonify(result)


@bp.post("/ai/translate")
@login_required
def translate():
    blocked = enforce(api_limiter)
    if blocked is not None:
        return blocked

    payload = json_body()
    analysis = _analysis_from_payload(payload)
    target_language = clean_str(payload.get("targetLanguage"))
    if analysis is None or not target_language:
        return api_error("Missing required parameters", 400)

    provider = _claude()
    if not provider.is_configured():
        return api_error("Translation is not available (ANTHROPIC_API_KEY not configured)", 503)

    current_app.logger.info("Translating report to %s", target_language)
    try:
        result = provider.complete_json(
            translation_prompt(analysis, target_language),
            max_tokens=TRANSLATION_MAX_TOKENS,
        )
    except ProviderError as e:
        current_app.logger.error("Translation to %s failed: %s", target_language, e)
        return api_error("Translation failed", 502, details=str(e))
    return jsonify(result)
