from __future__ import annotations

import re
import uuid

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.gradeai.access import login_required
from app.gradeai.audit import record_event
from app.gradeai.db import db_session
from app.gradeai.models import User
from app.gradeai.modules.uploads.service import remove_stored_pages, user_storage_keys
from app.gradeai.rate_limit import enforce, login_limiter, signup_limiter
from app.gradeai.storage import storage_from_config
from app.gradeai.utils import api_error, clean_str, json_body

bp = Blueprint("auth", __name__)
account_bp = Blueprint("account", __name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


@bp.post("/signup")
def signup():
    blocked = enforce(signup_limiter, "Too many signup attempts. Please try again later.")
    if blocked is not None:
        return blocked

    payload = json_body()
    name = clean_str(payload.get("name"))
    email = clean_str(payload.get("email")).lower()
    password = payload.get("password") if isinstance(payload.get("password"), str) else ""

    if not name or not email or not password:
        return api_error("Name, email, and password are required", 400)
    if not EMAIL_RE.match(email):
        return api_error("Invalid email format", 400)
    if len(password) < MIN_PASSWORD_LENGTH:
        return api_error(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long", 400)

    s = db_session()
    if s.query(User).filter(User.email == email).one_or_none():
        return api_error("A user with this email already exists", 409)

    user = User(
        name=name,
        email=email,
        password_hash=generate_password_hash(password),
        phone=clean_str(payload.get("phone")) or None,
        language=clean_str(payload.get("language")) or "de",
        is_active=True,
    )
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.signup", entity_type="User", entity_id=str(user.id))
    s.commit()
    current_app.logger.info("New user created: id=%s", user.id)
    return jsonify({"success": True, "message": "Account created successfully", "user": user.to_dict()}), 201


@bp.post("/login")
def login():
    blocked = enforce(login_limiter, "Too many login attempts. Please try again later.")
    if blocked is not None:
        return blocked

    payload = json_body()
    email = clean_str(payload.get("email")).lower()
    password = payload.get("password") if isinstance(payload.get("password"), str) else ""

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            return api_error("Invalid credentials", 401)

        session.clear()
        session["user_id"] = user.id
        session.permanent = True
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return jsonify({"success": True, "user": user.to_dict()})
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return jsonify({"success": True})


@bp.get("/me")
@login_required
def me():
    return jsonify({"success": True, "user": g.current_user.to_dict()})


@account_bp.delete("/api/user")
@login_required
def delete_account():
    s = db_session()
    user: User = g.current_user
    user_id = user.id
    keys = user_storage_keys(user)
    record_event(
        s,
        actor=None,
        action="user.delete",
        entity_type="User",
        entity_id=str(user_id),
        metadata={"email": user.email, "children": len(user.children)},
    )
    s.delete(user)
    s.commit()
    session.clear()
    g.current_user = None
    remove_stored_pages(storage_from_config(current_app.config), keys)
    current_app.logger.info("Deleted account %s (%d stored pages)", user_id, len(keys))
    return jsonify({"success": True, "message": "Account deleted successfully"})
