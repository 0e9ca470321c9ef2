from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from app.gradeai.audit import record_event
from app.gradeai.modules.children.models import Child

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.gradeai.models import User


def _text(payload: dict, key: str) -> str:
    value = payload.get(key)
    if value is None:
        return ""
    return str(value).strip()


def validate_child_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate child create/update payload. Returns list of errors."""
    errors = []
    for key, label in (("name", "Name"), ("grade", "Grade"), ("schoolType", "School type")):
        if partial and key not in payload:
            continue
        if not _text(payload, key):
            errors.append(f"{label} is required.")
    if len(_text(payload, "grade")) > 32:
        errors.append("Grade must be at most 32 characters.")
    return errors


def child_to_dict(child: Child, *, include_uploads: bool = True) -> dict:
    data = {
        "id": child.id,
        "name": child.name,
        "grade": child.grade,
        "schoolType": child.school_type,
        "createdAt": child.created_at.isoformat() if child.created_at else None,
        "updatedAt": child.updated_at.isoformat() if child.updated_at else None,
    }
    if include_uploads:
        data["uploads"] = [
            {
                "id": u.id,
                "fileName": u.file_name,
                "uploadedAt": u.uploaded_at.isoformat() if u.uploaded_at else None,
                "analysisStatus": u.analysis_status,
                "subject": u.subject,
                "grade": u.grade,
                "gradeLabel": u.grade_label,
            }
            for u in child.uploads
        ]
    return data


def list_children(s: "Session", user: "User") -> list[Child]:
    return s.query(Child).filter(Child.user_id == user.id).order_by(Child.created_at.desc(), Child.id.desc()).all()


def get_owned_child(s: "Session", user: "User", child_id: int) -> Child | None:
    return s.query(Child).filter(Child.id == child_id, Child.user_id == user.id).one_or_none()


def create_child(s: "Session", payload: dict, user: "User") -> Child:
    now = datetime.utcnow()
    child = Child(
        user_id=user.id,
        name=_text(payload, "name"),
        grade=_text(payload, "grade"),
        school_type=_text(payload, "schoolType"),
        created_at=now,
        updated_at=now,
    )
    s.add(child)
    s.flush()
    record_event(
        s,
        actor=user,
        action="child.create",
        entity_type="Child",
        entity_id=str(child.id),
        metadata={"grade": child.grade, "school_type": child.school_type},
    )
    return child


def update_child(s: "Session", child: Child, payload: dict, user: "User") -> Child:
    changes = {}
    for key, attr in (("name", "name"), ("grade", "grade"), ("schoolType", "school_type")):
        if key not in payload:
            continue
        new_value = _text(payload, key)
        old_value = getattr(child, attr)
        if new_value and new_value != old_value:
            changes[attr] = {"old": old_value, "new": new_value}
            setattr(child, attr, new_value)

    child.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="child.edit",
        entity_type="Child",
        entity_id=str(child.id),
        metadata={"changes": changes},
    )
    return child


def delete_child(s: "Session", child: Child, user: "User") -> list[str]:
    """Delete a child with all uploads. Returns the storage keys the caller should remove."""
    keys = [p.storage_key for u in child.uploads for p in u.pages]
    record_event(
        s,
        actor=user,
        action="child.delete",
        entity_type="Child",
        entity_id=str(child.id),
        metadata={"uploads": len(child.uploads)},
    )
    s.delete(child)
    return keys
