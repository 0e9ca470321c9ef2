from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify

from app.gradeai.access import login_required
from app.gradeai.db import db_session
from app.gradeai.modules.children.service import (
    child_to_dict,
    create_child,
    delete_child,
    get_owned_child,
    list_children,
    update_child,
    validate_child_payload,
)
from app.gradeai.modules.uploads.service import remove_stored_pages
from app.gradeai.storage import storage_from_config
from app.gradeai.utils import api_error, json_body

bp = Blueprint("children", __name__)


@bp.get("/children")
@login_required
def children_list():
    s = db_session()
    children = list_children(s, g.current_user)
    return jsonify({"success": True, "children": [child_to_dict(c) for c in children]})


@bp.post("/children")
@login_required
def children_create():
    payload = json_body()
    errors = validate_child_payload(payload)
    if errors:
        return api_error("Missing required fields", 400, details=errors)

    s = db_session()
    child = create_child(s, payload, g.current_user)
    s.commit()
    return jsonify({"success": True, "child": child_to_dict(child, include_uploads=False)}), 201


@bp.get("/children/<int:child_id>")
@login_required
def child_detail(child_id: int):
    s = db_session()
    child = get_owned_child(s, g.current_user, child_id)
    if child is None:
        return api_error("Child not found", 404)
    return jsonify({"success": True, "child": child_to_dict(child)})


@bp.put("/children/<int:child_id>")
@login_required
def child_update(child_id: int):
    s = db_session()
    child = get_owned_child(s, g.current_user, child_id)
    if child is None:
        return api_error("Child not found", 404)

    payload = json_body()
    errors = validate_child_payload(payload, partial=True)
    if errors:
        return api_error("Invalid child data", 400, details=errors)

    update_child(s, child, payload, g.current_user)
    s.commit()
    return jsonify({"success": True, "child": child_to_dict(child)})


@bp.delete("/children/<int:child_id>")
@login_required
def child_delete(child_id: int):
    s = db_session()
    child = get_owned_child(s, g.current_user, child_id)
    if child is None:
        return api_error("Child not found", 404)

    keys = delete_child(s, child, g.current_user)
    s.commit()

    remove_stored_pages(storage_from_config(current_app.config), keys)
    return jsonify({"success": True})
