from __future__ import annotations

import hashlib
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePath
from typing import TYPE_CHECKING

from app.gradeai.audit import record_event
from app.gradeai.imaging.pages import is_pdf
from app.gradeai.modules.uploads.models import Upload, UploadPage
from app.gradeai.storage import Storage, StorageError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.gradeai.models import User
    from app.gradeai.modules.children.models import Child

logger = logging.getLogger(__name__)

IMAGE_TYPES = ("image/jpeg", "image/png")
PDF_TYPE = "application/pdf"

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9.-]")


@dataclass
class IncomingFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def sanitize_filename(name: str) -> str:
    """Keep letters, digits, dot and dash; everything else becomes "_"."""
    return _UNSAFE_CHARS_RE.sub("_", name or "") or "page"


def upload_display_name(files: list[IncomingFile]) -> str:
    """Single file keeps its name; several become "<stem of first>_<n>_pages"."""
    if len(files) == 1:
        return files[0].filename
    stem = PurePath(files[0].filename).name.split(".")[0] or "test"
    return f"{stem}_{len(files)}_pages"


def build_page_storage_key(upload_id: int, page_number: int, filename: str, timestamp_ms: int | None = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"uploads/{upload_id}/page_{page_number}_{timestamp_ms}-{sanitize_filename(filename)}"


def file_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _fmt_mb(size: int) -> str:
    return f"{size / 1024 / 1024:.1f}MB"


def validate_files(files: list[IncomingFile], *, max_bytes: int, allow_pdf: bool) -> str | None:
    """First problem with the submitted files, or None when they are acceptable."""
    if not files:
        return "No files provided"

    limit = _fmt_mb(max_bytes)
    total = sum(f.size for f in files)
    if total > max_bytes:
        return f"Total file size ({_fmt_mb(total)}) exceeds {limit} limit. Please compress the images."

    allowed = IMAGE_TYPES + ((PDF_TYPE,) if allow_pdf else ())
    for f in files:
        if f.content_type not in allowed:
            if allow_pdf:
                return f"Invalid file type for {f.filename}. Only JPG, PNG and PDF files are supported."
            return f"Invalid file type for {f.filename}. Only JPG and PNG images are supported. Please convert PDFs to images first."
        if f.content_type == PDF_TYPE and not is_pdf(f.data):
            return f"File {f.filename} is not a valid PDF."
        if f.size == 0:
            return f"File {f.filename} is empty."
        if f.size > max_bytes:
            return f"File {f.filename} exceeds {limit} limit. Please compress the file."
    return None


def create_upload(s: "Session", storage: Storage, child: "Child", files: list[IncomingFile], user: "User") -> Upload:
    """
    Create the Upload row, write every page to storage and add its UploadPage row.

    Raises StorageError when a page cannot be stored; the caller decides how to
    report it (the upload is left in status "failed").
    """
    upload = Upload(
        user_id=child.user_id,
        child_id=child.id,
        file_name=upload_display_name(files)[:255],
        file_size=sum(f.size for f in files),
        mime_type=files[0].content_type,
        analysis_status="pending",
        uploaded_at=datetime.utcnow(),
    )
    s.add(upload)
    s.flush()

    try:
        for number, f in enumerate(files, start=1):
            key = build_page_storage_key(upload.id, number, f.filename)
            storage.put_bytes(key, f.data, content_type=f.content_type)
            s.add(
                UploadPage(
                    upload_id=upload.id,
                    page_number=number,
                    storage_key=key,
                    filename=f.filename[:255],
                    content_type=f.content_type,
                    sha256=file_digest(f.data),
                    size_bytes=f.size,
                )
            )
            logger.info("Upload %s: stored page %d/%d (%d bytes)", upload.id, number, len(files), f.size)
    except StorageError:
        upload.analysis_status = "failed"
        upload.error_message = "Failed to upload files to storage"
        raise

    s.flush()
    record_event(
        s,
        actor=user,
        action="upload.create",
        entity_type="Upload",
        entity_id=str(upload.id),
        metadata={"child_id": child.id, "pages": len(files), "bytes": upload.file_size},
    )
    return upload


def get_owned_upload(s: "Session", user: "User", upload_id: int) -> Upload | None:
    return s.query(Upload).filter(Upload.id == upload_id, Upload.user_id == user.id).one_or_none()


def upload_to_dict(upload: Upload) -> dict:
    child = upload.child
    return {
        "id": upload.id,
        "childId": upload.child_id,
        "child": {"id": child.id, "name": child.name, "grade": child.grade, "schoolType": child.school_type}
        if child
        else None,
        "fileName": upload.file_name,
        "fileSize": upload.file_size,
        "mimeType": upload.mime_type,
        "analysisStatus": upload.analysis_status,
        "errorMessage": upload.error_message,
        "grade": upload.grade,
        "gradeLabel": upload.grade_label,
        "subject": upload.subject,
        "teacherComment": upload.teacher_comment,
        "uploadedAt": upload.uploaded_at.isoformat() if upload.uploaded_at else None,
        "processedAt": upload.processed_at.isoformat() if upload.processed_at else None,
        "pages": [
            {
                "pageNumber": p.page_number,
                "filename": p.filename,
                "contentType": p.content_type,
                "sizeBytes": p.size_bytes,
                "sha256": p.sha256,
            }
            for p in upload.pages
        ],
    }


def delete_upload(s: "Session", upload: Upload, user: "User") -> list[str]:
    """Delete the upload rows. Returns the storage keys the caller should remove."""
    keys = [p.storage_key for p in upload.pages]
    record_event(
        s,
        actor=user,
        action="upload.delete",
        entity_type="Upload",
        entity_id=str(upload.id),
        metadata={"file_name": upload.file_name, "pages": len(keys)},
    )
    s.delete(upload)
    return keys


def user_storage_keys(user: "User") -> list[str]:
    return [p.storage_key for child in user.children for u in child.uploads for p in u.pages]


def remove_stored_pages(storage: Storage, keys: list[str]) -> int:
    """Delete stored page objects after their rows are gone. Returns how many failed."""
    failed = 0
    for key in keys:
        try:
            storage.delete(key)
        except StorageError as e:
            failed += 1
            logger.warning("Could not delete stored page %s: %s", key, e)
    return failed
