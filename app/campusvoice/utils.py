from __future__ import annotations

import re
from datetime import date
from typing import Any

from flask import g, jsonify, request

from app.campusvoice.models import User

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def request_payload() -> dict[str, Any]:
    """JSON body if present, otherwise form fields (multi-valued keys become lists)."""
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    out: dict[str, Any] = {}
    for key in request.form.keys():
        values = request.form.getlist(key)
        out[key] = values if len(values) > 1 else values[0]
    return out


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_date(s: str | None) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return clean_str(value).lower() in ("1", "true", "yes", "on")


def parse_int(value: Any, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def validation_error(errors: list[str], status: int = 400):
    return jsonify({"errors": errors}), status


def isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None


def password_errors(password: Any, password_confirm: Any) -> list[str]:
    """Validate a new password pair. Values are not stripped."""
    if password is None or password == "":
        return ["Password is required."]
    if not isinstance(password, str):
        return ["Password must be a string."]
    if len(password) < 8:
        return ["Password must be at least 8 characters."]
    if password != password_confirm:
        return ["Passwords do not match."]
    return []
