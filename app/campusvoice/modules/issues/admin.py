from __future__ import annotations

from flask import Blueprint, abort, current_app, jsonify, request, send_file

from app.campusvoice.constants import ROLE_ADMIN, ROLE_FACULTY
from app.campusvoice.db import db_session
from app.campusvoice.models import Role, User
from app.campusvoice.modules.issues.models import Issue, IssueAttachment
from app.campusvoice.modules.issues.service import (
    IssueConflict,
    add_update,
    admin_update_issue,
    assign_issue,
    bulk_update,
    change_status,
    delete_issue,
    dismiss_flags,
    flag_issue,
    get_visible_issue,
    issue_detail,
    list_flags,
    list_issues,
    report_issue,
    serialize_attachment,
    serialize_issue,
    serialize_update,
    toggle_vote,
    upload_attachment,
    validate_attachment,
    validate_issue_payload,
)
from app.campusvoice.modules.issues.visibility import IssueFilters, can_view_issue, normalize_status, visible_categories
from app.campusvoice.rbac import require_permission
from app.campusvoice.storage import storage_from_config
from app.campusvoice.utils import clean_str, current_user, parse_int, request_payload, validation_error

bp = Blueprint("issues", __name__)


def _visible_issue_or_404(issue_id: int) -> Issue:
    try:
        return get_visible_issue(db_session(), issue_id, current_user())
    except LookupError:
        abort(404)


# ---------- List / Report ----------
@bp.get("")
@require_permission("issues.view")
def issues_list():
    s = db_session()
    u = current_user()
    filters, errors = IssueFilters.from_args(request.args)
    if errors:
        return validation_error(errors)

    total, issues, voted_ids = list_issues(s, u, filters)
    return {
        "total": total,
        "limit": filters.limit,
        "offset": filters.offset,
        "issues": [serialize_issue(i, u) for i in issues],
        "voted_issue_ids": voted_ids,
        "categories": visible_categories(u),
    }


@bp.post("")
@require_permission("issues.report")
def issues_report():
    s = db_session()
    u = current_user()
    payload = request_payload()

    errors = validate_issue_payload(payload)
    if errors:
        return validation_error(errors)

    issue = report_issue(s, payload, u)
    s.commit()
    return {"issue": serialize_issue(issue, u)}, 201


# ---------- Detail ----------
@bp.get("/<int:issue_id>")
@require_permission("issues.view")
def issue_get(issue_id: int):
    issue = _visible_issue_or_404(issue_id)
    return issue_detail(db_session(), issue, current_user())


# ---------- Staff actions ----------
@bp.post("/<int:issue_id>/status")
@require_permission("issues.status")
def issue_status(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)
    payload = request_payload()

    new_status = normalize_status(clean_str(payload.get("status")))
    if new_status is None:
        return validation_error(["A valid status is required."])
    try:
        changed = change_status(s, issue, new_status, u, note=payload.get("note"))
    except ValueError as e:
        return validation_error([str(e)])
    s.commit()
    return {"changed": changed, "issue": serialize_issue(issue, u)}


@bp.post("/<int:issue_id>/assign")
@require_permission("issues.assign")
def issue_assign(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)
    payload = request_payload()

    try:
        changed = assign_issue(s, issue, payload.get("assigned_to"), u)
    except ValueError as e:
        return validation_error([str(e)])
    s.commit()
    return {"changed": changed, "issue": serialize_issue(issue, u)}


@bp.get("/assignees")
@require_permission("issues.assign")
def issue_assignees():
    s = db_session()
    users = (
        s.query(User)
        .join(User.roles)
        .filter(Role.key.in_((ROLE_FACULTY, ROLE_ADMIN)))
        .filter(User.is_active.is_(True))
        .order_by(User.name.asc(), User.email.asc())
        .distinct()
        .all()
    )
    return {"assignees": [{"id": x.id, "name": x.name or x.email, "dept": x.dept} for x in users]}


@bp.post("/<int:issue_id>/updates")
@require_permission("issues.comment")
def issue_add_update(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)
    payload = request_payload()

    try:
        upd = add_update(s, issue, payload.get("message"), clean_str(payload.get("type")) or "update", u)
    except ValueError as e:
        return validation_error([str(e)])
    s.commit()
    return {"update": serialize_update(upd), "issue": serialize_issue(issue, u)}, 201


# ---------- Admin actions ----------
@bp.route("/<int:issue_id>", methods=["PATCH"])
@require_permission("issues.edit")
def issue_edit(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)
    payload = request_payload()

    errors = validate_issue_payload(payload, partial=True)
    if errors:
        return validation_error(errors)
    changes = admin_update_issue(s, issue, payload, u, reason=payload.get("reason"))
    s.commit()
    return {"changes": changes, "issue": serialize_issue(issue, u)}


@bp.route("/<int:issue_id>", methods=["DELETE"])
@require_permission("issues.delete")
def issue_delete(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)
    payload = request_payload()

    try:
        storage_keys = delete_issue(s, issue, u, payload.get("reason") or request.args.get("reason"))
    except ValueError as e:
        return validation_error([str(e)])
    s.commit()

    storage = storage_from_config(current_app.config)
    for key in storage_keys:
        try:
            storage.delete(key)
        except Exception:
            current_app.logger.exception("Failed to purge attachment blob key=%s issue_id=%s", key, issue_id)
    return {"ok": True}


@bp.post("/bulk")
@require_permission("issues.bulk")
def issues_bulk():
    s = db_session()
    u = current_user()
    payload = request_payload()

    raw_ids = payload.get("ids") or []
    if not isinstance(raw_ids, list):
        raw_ids = [raw_ids]
    ids = [parse_int(x) for x in raw_ids]
    if any(i is None for i in ids):
        return validation_error(["ids must be a list of integers."])

    changes = {k: payload[k] for k in ("status", "priority", "assigned_to", "note") if k in payload}
    if "status" in changes:
        status = normalize_status(clean_str(changes["status"]))
        if status is None:
            return validation_error(["Invalid status."])
        changes["status"] = status
    try:
        issues = bulk_update(s, ids, changes, u)
    except LookupError as e:
        s.rollback()
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        s.rollback()
        return validation_error([str(e)])
    s.commit()
    return {"updated": len(issues), "issues": [serialize_issue(i, u) for i in issues]}


# ---------- Votes / Flags ----------
@bp.post("/<int:issue_id>/vote")
@require_permission("issues.vote")
def issue_vote(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)
    voted, upvotes = toggle_vote(s, issue, u)
    s.commit()
    return {"voted": voted, "upvotes": upvotes}


@bp.post("/<int:issue_id>/flag")
@require_permission("issues.flag")
def issue_flag(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)
    payload = request_payload()

    try:
        flag = flag_issue(s, issue, u, payload.get("reason"))
    except ValueError as e:
        return validation_error([str(e)])
    except IssueConflict as e:
        return jsonify({"error": str(e)}), 409
    s.commit()
    return {"flag": {"id": flag.id, "issue_id": issue.id}}, 201


@bp.get("/flags")
@require_permission("flags.review")
def flags_list():
    return {"flags": list_flags(db_session())}


@bp.post("/<int:issue_id>/flags/dismiss")
@require_permission("flags.review")
def flags_dismiss(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)
    payload = request_payload()

    try:
        count = dismiss_flags(s, issue, u, payload.get("reason"))
    except ValueError as e:
        return validation_error([str(e)])
    s.commit()
    return {"dismissed": count}


# ---------- Attachments ----------
@bp.post("/<int:issue_id>/attachments")
@require_permission("issues.view")
def attachment_upload(issue_id: int):
    s = db_session()
    u = current_user()
    issue = _visible_issue_or_404(issue_id)

    f = request.files.get("file")
    if not f or not f.filename:
        return validation_error(["File is required."])
    kind = clean_str(request.form.get("kind")) or "evidence"
    file_bytes = f.read()

    errors = validate_attachment(f.filename, file_bytes, kind)
    if errors:
        return validation_error(errors)

    storage = storage_from_config(current_app.config)
    try:
        att = upload_attachment(
            s,
            issue,
            file_bytes,
            f.filename,
            f.mimetype or "application/octet-stream",
            u,
            kind,
            storage,
        )
    except PermissionError:
        abort(403)
    s.commit()
    return {"attachment": serialize_attachment(att)}, 201


@bp.get("/attachments/<int:attachment_id>/download")
@require_permission("issues.view")
def attachment_download(attachment_id: int):
    s = db_session()
    u = current_user()
    att = s.get(IssueAttachment, attachment_id)
    if not att or not can_view_issue(u, att.issue):
        abort(404)

    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(att.storage_key)
    except FileNotFoundError:
        current_app.logger.error("Attachment blob missing key=%s attachment_id=%s", att.storage_key, att.id)
        abort(404)
    return send_file(
        fobj,
        mimetype=att.content_type,
        as_attachment=True,
        download_name=att.original_filename,
    )
