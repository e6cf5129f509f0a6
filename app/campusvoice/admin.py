from datetime import datetime, time, timedelta

from flask import Blueprint, abort, current_app, request
from sqlalchemy import or_, text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash

from app.campusvoice.audit import record_event, serialize_event
from app.campusvoice.auth import serialize_profile
from app.campusvoice.constants import AUDIT_TYPES, PROFILE_ACTIVE, PROFILE_SUSPENDED, ROLES
from app.campusvoice.db import db_session
from app.campusvoice.models import AuditEvent, Role, User
from app.campusvoice.modules.dashboards.service import admin_analytics
from app.campusvoice.rbac import primary_role, require_permission
from app.campusvoice.utils import (
    clean_str,
    current_user,
    is_valid_email,
    parse_date,
    password_errors,
    request_payload,
    validation_error,
)

bp = Blueprint("admin", __name__)

AUDIT_LIST_LIMIT = 200


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    cfg = current_app.config
    status = {
        "env": (cfg.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "storage_backend": cfg.get("STORAGE_BACKEND") or "local",
        "storage_configured": False,
        "storage_error": None,
    }

    # DB connectivity (lightweight)
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except SQLAlchemyError as e:
        s.rollback()
        status["db_error"] = str(e)

    # Storage config (no network calls)
    if status["storage_backend"] == "s3":
        missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not cfg.get(k)]
        status["storage_configured"] = not missing
        if missing:
            status["storage_error"] = f"Missing: {', '.join(missing)}"
    else:
        status["storage_configured"] = True

    out = {"system_status": status}
    if status["db_connected"]:
        out["analytics"] = admin_analytics(s, cfg["OVERDUE_DAYS"])
    return out


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """
    Audit log (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - type (audit type)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = clean_str(request.args.get("action"))
    actor_email = clean_str(request.args.get("actor_email"))
    audit_type = clean_str(request.args.get("type")).lower()
    raw_from = clean_str(request.args.get("date_from"))
    raw_to = clean_str(request.args.get("date_to"))
    date_from = parse_date(raw_from)
    date_to = parse_date(raw_to)

    errors = []
    if raw_from and not date_from:
        errors.append("date_from must be YYYY-MM-DD")
    if raw_to and not date_to:
        errors.append("date_to must be YYYY-MM-DD")
    if audit_type and audit_type != "all" and audit_type not in AUDIT_TYPES:
        errors.append(f"Invalid type. Must be one of: {', '.join(AUDIT_TYPES)}")
    if errors:
        return validation_error(errors)

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if audit_type and audit_type != "all":
        q = q.filter(AuditEvent.audit_type == audit_type)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(AUDIT_LIST_LIMIT).all()
    return {"events": [serialize_event(e) for e in events]}


# ============================================================================
# ACCOUNT MANAGEMENT (Admin Only)
# ============================================================================


def _role_by_key(s, key: str) -> Role | None:
    return s.query(Role).filter(Role.key == key).one_or_none()


def _account_snapshot(user: User) -> dict:
    return {"role": primary_role(user), "name": user.name, "dept": user.dept, "status": user.status}


@bp.get("/accounts")
@require_permission("admin.edit")
def accounts_list():
    s = db_session()
    q = s.query(User)
    term = clean_str(request.args.get("q"))
    if term:
        like = f"%{term}%"
        q = q.filter(or_(User.name.ilike(like), User.email.ilike(like)))
    users = q.order_by(User.email.asc()).all()
    return {"accounts": [serialize_profile(x) for x in users], "roles": list(ROLES)}


@bp.post("/accounts")
@require_permission("admin.edit")
def accounts_create():
    s = db_session()
    u = current_user()
    payload = request_payload()

    email = clean_str(payload.get("email")).lower()
    role_key = clean_str(payload.get("role")).lower()
    errors = []
    if not email:
        errors.append("Email is required.")
    elif not is_valid_email(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")
    if role_key not in ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    errors.extend(password_errors(payload.get("password"), payload.get("password_confirm")))
    if errors:
        return validation_error(errors)

    role = _role_by_key(s, role_key)
    if not role:
        return validation_error([f"Role '{role_key}' is not seeded (run scripts/init_db.py)."])

    new_user = User(
        email=email,
        password_hash=generate_password_hash(payload["password"]),
        name=clean_str(payload.get("name")) or None,
        dept=clean_str(payload.get("dept")) or None,
        is_active=True,
    )
    new_user.roles.append(role)
    s.add(new_user)
    s.flush()

    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "role": role_key},
    )
    s.commit()
    return {"account": serialize_profile(new_user)}, 201


@bp.post("/accounts/<int:user_id>")
@require_permission("admin.edit")
def accounts_update(user_id: int):
    s = db_session()
    u = current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    if user.id == u.id:
        return validation_error(["You cannot modify your own account from this page."], status=403)

    payload = request_payload()
    errors = []
    role_key = clean_str(payload.get("role")).lower() if "role" in payload else None
    if role_key is not None and role_key not in ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    status = clean_str(payload.get("status")).lower() if "status" in payload else None
    if status is not None and status not in (PROFILE_ACTIVE, PROFILE_SUSPENDED):
        errors.append(f"Invalid status. Must be one of: {PROFILE_ACTIVE}, {PROFILE_SUSPENDED}")
    role = _role_by_key(s, role_key) if role_key in ROLES else None
    if role_key in ROLES and not role:
        errors.append(f"Role '{role_key}' is not seeded (run scripts/init_db.py).")
    if errors:
        return validation_error(errors)

    before = _account_snapshot(user)
    if role is not None:
        user.roles.clear()
        user.roles.append(role)
    if status is not None:
        user.is_active = status == PROFILE_ACTIVE
    if "name" in payload:
        user.name = clean_str(payload.get("name")) or None
    if "dept" in payload:
        user.dept = clean_str(payload.get("dept")) or None
    after = _account_snapshot(user)

    record_event(
        s,
        actor=u,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after},
    )
    s.commit()
    return {"account": serialize_profile(user)}


@bp.post("/accounts/<int:user_id>/reset-password")
@require_permission("admin.edit")
def accounts_reset_password(user_id: int):
    s = db_session()
    u = current_user()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    payload = request_payload()
    errors = password_errors(payload.get("password"), payload.get("password_confirm"))
    if errors:
        return validation_error(errors)

    user.password_hash = generate_password_hash(payload["password"])
    record_event(
        s,
        actor=u,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email, "reset_by": u.email},
    )
    s.commit()
    return {"ok": True}
