from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from app.campusvoice.audit import record_event
from app.campusvoice.constants import ROLE_HOME, ROLE_STUDENT, ROLES
from app.campusvoice.db import db_session
from app.campusvoice.models import Role, User
from app.campusvoice.rbac import primary_role, user_permissions
from app.campusvoice.security import ensure_csrf_token
from app.campusvoice.utils import clean_str, is_valid_email, password_errors, request_payload, validation_error

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)


def _check_rate_limit(ip: str) -> bool:
    limit = int(current_app.config.get("LOGIN_RATE_LIMIT") or 5)
    window = int(current_app.config.get("LOGIN_RATE_WINDOW") or 300)
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=window)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= limit


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    A failed profile lookup degrades to an anonymous request instead of an error.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
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
    except (SQLAlchemyError, ValueError) as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def serialize_profile(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "dept": user.dept,
        "role": primary_role(user),
        "status": user.status,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def session_payload() -> dict:
    """
    Bootstrap state for the client shell: who is signed in and which role drives the UI.
    Signed-in users always get their profile role; anonymous visitors get the cached
    preference (or "student"), which carries no permissions.
    """
    user: User | None = getattr(g, "current_user", None)
    if user:
        role = primary_role(user)
        profile = serialize_profile(user)
        perms = sorted(user_permissions(user))
    else:
        cached = session.get("preferred_role")
        role = cached if cached in ROLES else ROLE_STUDENT
        profile = None
        perms = []
    return {
        "authenticated": user is not None,
        "user": profile,
        "role": role,
        "permissions": perms,
        "csrf_token": ensure_csrf_token(),
    }


@bp.get("/session")
def session_get():
    return session_payload()


@bp.post("/role")
def role_preference():
    payload = request_payload()
    role = clean_str(payload.get("role")).lower()
    if role not in ROLES:
        return validation_error([f"Invalid role. Must be one of: {', '.join(ROLES)}"])
    session["preferred_role"] = role
    return session_payload()


@bp.post("/login")
def login_post():
    payload = request_payload()
    email = clean_str(payload.get("email")).lower()
    password = payload.get("password")
    if not isinstance(password, str):
        password = ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "Too many login attempts. Please wait and try again."}), 429

    _record_attempt(ip)

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
            return jsonify({"error": "Invalid credentials."}), 401

        session["user_id"] = user.id
        session.pop("preferred_role", None)
        g.current_user = user
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        out = session_payload()
        out["home"] = ROLE_HOME[out["role"]]
        return out
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/register")
def register_post():
    """Self-service sign-up; always creates a student account."""
    s = db_session()
    payload = request_payload()
    email = clean_str(payload.get("email")).lower()
    password = payload.get("password")
    password_confirm = payload.get("password_confirm")
    name = clean_str(payload.get("name")) or None
    dept = clean_str(payload.get("dept")) or None

    errors = []
    if not email:
        errors.append("Email is required.")
    elif not is_valid_email(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")

    errors.extend(password_errors(password, password_confirm))

    if errors:
        return validation_error(errors)

    student_role = s.query(Role).filter(Role.key == ROLE_STUDENT).one_or_none()
    if not student_role:
        current_app.logger.error("Registration failed: student role not seeded (run scripts/init_db.py)")
        return jsonify({"error": "Registration is not available."}), 503

    user = User(email=email, password_hash=generate_password_hash(password), name=name, dept=dept, is_active=True)
    user.roles.append(student_role)
    s.add(user)
    s.flush()
    record_event(s, actor=user, action="auth.register", entity_type="User", entity_id=str(user.id))
    s.commit()

    session["user_id"] = user.id
    session.pop("preferred_role", None)
    g.current_user = user
    out = session_payload()
    out["home"] = ROLE_HOME[out["role"]]
    return out, 201


@bp.route("/logout", methods=["GET", "POST"])
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    session.pop("preferred_role", None)
    g.current_user = None
    return {"ok": True, "redirect": "/login"}
