from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func
from werkzeug.utils import secure_filename

from app.campusvoice.audit import record_event
from app.campusvoice.constants import (
    ATTACHMENT_EXTENSIONS,
    ATTACHMENT_KINDS,
    ATTACHMENT_MAX_BYTES,
    CATEGORIES,
    CLOSED_STATUSES,
    PRIORITIES,
    PRIORITY_RANK,
    ROLE_ADMIN,
    ROLE_FACULTY,
    STAFF_UPDATE_TYPES,
    STATUS_LABELS,
    STATUS_PROGRESS,
    STATUS_REJECTED,
    STATUS_RESOLVED,
    STATUS_SUBMITTED,
    STATUSES,
    TIMELINE_DESCRIPTIONS,
    TIMELINE_PATH,
    TITLE_MAX_LENGTH,
    UPDATE_TYPES,
    VISIBILITIES,
)
from app.campusvoice.modules.issues.models import Issue, IssueAttachment, IssueFlag, IssueUpdate, IssueVote
from app.campusvoice.modules.issues.visibility import (
    IssueFilters,
    apply_sort,
    can_view_issue,
    filtered_issues_query,
)
from app.campusvoice.models import User
from app.campusvoice.rbac import primary_role, user_has_permission
from app.campusvoice.utils import clean_str, isoformat

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.campusvoice.storage import Storage

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "category", "location", "priority", "visibility")


class IssueConflict(Exception):
    """Request collides with existing state (e.g. a second flag by the same user)."""


# ---------- Validation ----------
def validate_issue_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate report/edit payload. Returns list of errors."""
    errors: list[str] = []

    def _present(key: str) -> bool:
        return not partial or key in payload

    title = clean_str(payload.get("title"))
    if _present("title"):
        if not title:
            errors.append("Title is required.")
        elif len(title) > TITLE_MAX_LENGTH:
            errors.append(f"Title must be at most {TITLE_MAX_LENGTH} characters.")
    if _present("description") and not clean_str(payload.get("description")):
        errors.append("Description is required.")
    category = clean_str(payload.get("category"))
    if _present("category") and category not in CATEGORIES:
        errors.append(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}")
    if _present("location") and not clean_str(payload.get("location")):
        errors.append("Location is required.")
    priority = clean_str(payload.get("priority")).lower()
    if priority and priority not in PRIORITIES:
        errors.append(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    if partial and "priority" in payload and not priority:
        errors.append("Priority cannot be empty.")
    visibility = clean_str(payload.get("visibility")).lower()
    if visibility and visibility not in VISIBILITIES:
        errors.append(f"Invalid visibility. Must be one of: {', '.join(VISIBILITIES)}")
    if partial and "visibility" in payload and not visibility:
        errors.append("Visibility cannot be empty.")
    return errors


def default_visibility(user: "User") -> str:
    return "faculty" if primary_role(user) == ROLE_FACULTY else "student"


# ---------- Serialization ----------
def _person(user: "User | None") -> dict | None:
    if user is None:
        return None
    return {"id": user.id, "name": user.name or user.email}


def serialize_issue(issue: Issue, viewer: "User | None") -> dict[str, Any]:
    """Reporter identity is never included; the viewer only learns whether it is theirs."""
    return {
        "id": issue.id,
        "title": issue.title,
        "description": issue.description,
        "category": issue.category,
        "location": issue.location,
        "priority": issue.priority,
        "status": issue.status,
        "status_label": STATUS_LABELS.get(issue.status, issue.status),
        "progress": STATUS_PROGRESS.get(issue.status, 0),
        "visibility": issue.visibility,
        "assigned_to": _person(issue.assignee),
        "upvotes": issue.upvotes,
        "is_mine": bool(viewer and issue.created_by == viewer.id),
        "resolution_note": issue.resolution_note,
        "created_at": isoformat(issue.created_at),
        "updated_at": isoformat(issue.updated_at),
        "resolved_at": isoformat(issue.resolved_at),
    }


def serialize_update(update: IssueUpdate) -> dict[str, Any]:
    author = update.author
    if update.update_type == "system" or author is None:
        author_label = "System"
    else:
        # Staff posts are attributed; reporter comments stay anonymous.
        author_label = author.name or author.email
        if primary_role(author) not in (ROLE_FACULTY, ROLE_ADMIN):
            author_label = "Reporter"
    return {
        "id": update.id,
        "issue_id": update.issue_id,
        "message": update.message,
        "type": update.update_type,
        "new_status": update.new_status,
        "author": author_label,
        "created_at": isoformat(update.created_at),
    }


def serialize_attachment(att: IssueAttachment) -> dict[str, Any]:
    return {
        "id": att.id,
        "kind": att.kind,
        "filename": att.original_filename,
        "content_type": att.content_type,
        "size_bytes": att.size_bytes,
        "sha256": att.sha256,
        "uploaded_at": isoformat(att.uploaded_at),
    }


# ---------- Queries ----------
def get_visible_issue(s: "Session", issue_id: int, user: "User") -> Issue:
    """Hidden issues are indistinguishable from missing ones."""
    issue = s.get(Issue, issue_id)
    if not issue or not can_view_issue(user, issue):
        raise LookupError("Issue not found")
    return issue


def list_issues(s: "Session", user: "User", f: IssueFilters) -> tuple[int, list[Issue], list[int]]:
    q = filtered_issues_query(s.query(Issue), user, f)
    total = q.order_by(None).count()
    issues = apply_sort(q, f.sort).limit(f.limit).offset(f.offset).all()
    voted_ids = user_voted_issue_ids(s, user, [i.id for i in issues])
    return total, issues, voted_ids


def user_voted_issue_ids(s: "Session", user: "User", issue_ids: list[int] | None = None) -> list[int]:
    q = s.query(IssueVote.issue_id).filter(IssueVote.user_id == user.id)
    if issue_ids is not None:
        if not issue_ids:
            return []
        q = q.filter(IssueVote.issue_id.in_(issue_ids))
    return sorted(row[0] for row in q.all())


def build_timeline(issue: Issue) -> list[dict[str, Any]]:
    """
    One step per status on the main path. Dates come from the first update
    that moved the issue into that status. A rejected issue ends in a Rejected step.
    """
    reached: dict[str, datetime] = {STATUS_SUBMITTED: issue.created_at}
    for u in sorted(issue.updates, key=lambda x: (x.created_at, x.id or 0)):
        if u.new_status:
            reached.setdefault(u.new_status, u.created_at)

    steps: list[dict[str, Any]] = []
    if issue.status == STATUS_REJECTED:
        for st in TIMELINE_PATH:
            if st == STATUS_RESOLVED or st not in reached:
                continue
            steps.append(_step(st, reached.get(st), completed=True, current=False))
        steps.append(_step(STATUS_REJECTED, reached.get(STATUS_REJECTED), completed=True, current=True))
        return steps

    idx = TIMELINE_PATH.index(issue.status) if issue.status in TIMELINE_PATH else 0
    for i, st in enumerate(TIMELINE_PATH):
        if issue.status == STATUS_RESOLVED:
            completed, current = True, False
        else:
            completed, current = i < idx, i == idx
        when = reached.get(st) if (completed or current) else None
        steps.append(_step(st, when, completed=completed, current=current))
    return steps


def _step(status: str, when: datetime | None, *, completed: bool, current: bool) -> dict[str, Any]:
    return {
        "status": status,
        "label": STATUS_LABELS[status],
        "date": isoformat(when),
        "completed": completed,
        "current": current,
        "description": TIMELINE_DESCRIPTIONS[status],
    }


def issue_detail(s: "Session", issue: Issue, user: "User") -> dict[str, Any]:
    has_voted = s.get(IssueVote, (issue.id, user.id)) is not None
    has_flagged = (
        s.query(IssueFlag.id).filter(IssueFlag.issue_id == issue.id, IssueFlag.flagged_by == user.id).first()
        is not None
    )
    out: dict[str, Any] = {
        "issue": serialize_issue(issue, user),
        "timeline": build_timeline(issue),
        "updates": [serialize_update(u) for u in sorted(issue.updates, key=lambda x: (x.created_at, x.id), reverse=True)],
        "attachments": [serialize_attachment(a) for a in issue.attachments],
        "has_voted": has_voted,
        "has_flagged": has_flagged,
    }
    if primary_role(user) == ROLE_ADMIN:
        out["flag_count"] = s.query(func.count(IssueFlag.id)).filter(IssueFlag.issue_id == issue.id).scalar() or 0
    return out


# ---------- Mutations ----------
def _audit_actor(issue: Issue, user: "User") -> "User | None":
    """Actions taken by an issue's own reporter are audited without an actor."""
    return None if issue.created_by == user.id else user


def _add_update(
    s: "Session",
    issue: Issue,
    *,
    message: str,
    update_type: str,
    user: "User | None",
    new_status: str | None = None,
    at: datetime | None = None,
) -> IssueUpdate:
    if update_type not in UPDATE_TYPES:
        raise ValueError(f"Invalid update type. Must be one of: {', '.join(UPDATE_TYPES)}")
    upd = IssueUpdate(
        issue_id=issue.id,
        message=message,
        update_type=update_type,
        new_status=new_status,
        created_by=user.id if user else None,
        created_at=at or datetime.utcnow(),
    )
    s.add(upd)
    issue.updates.append(upd)
    return upd


def report_issue(s: "Session", payload: dict, user: "User") -> Issue:
    """Create a new issue from a (validated) payload. Starts in `submitted`."""
    now = datetime.utcnow()
    issue = Issue(
        title=clean_str(payload.get("title")),
        description=clean_str(payload.get("description")),
        category=clean_str(payload.get("category")),
        location=clean_str(payload.get("location")),
        priority=clean_str(payload.get("priority")).lower() or "medium",
        status=STATUS_SUBMITTED,
        visibility=clean_str(payload.get("visibility")).lower() or default_visibility(user),
        created_by=user.id,
        upvotes=0,
        created_at=now,
        updated_at=now,
    )
    s.add(issue)
    s.flush()

    _add_update(
        s,
        issue,
        message="Issue submitted and recorded in anonymous queue.",
        update_type="system",
        user=None,
        new_status=STATUS_SUBMITTED,
        at=now,
    )
    # Reporter is deliberately left out of the audit metadata.
    record_event(
        s,
        actor=None,
        action="issue.report",
        audit_type="system",
        entity_type="Issue",
        entity_id=str(issue.id),
        metadata={"category": issue.category, "priority": issue.priority, "visibility": issue.visibility},
    )
    logger.info("Issue reported id=%s category=%s priority=%s", issue.id, issue.category, issue.priority)
    return issue


def _apply_status(s: "Session", issue: Issue, new_status: str, user: "User", note: str | None) -> str | None:
    """Set status and write the timeline update. Returns the old status, or None if unchanged."""
    if new_status == issue.status:
        return None
    old_status = issue.status
    now = datetime.utcnow()
    issue.status = new_status
    issue.updated_at = now
    if new_status in CLOSED_STATUSES:
        issue.resolution_note = note
        issue.resolved_at = now
    elif old_status in CLOSED_STATUSES:
        issue.resolved_at = None

    message = f"Status changed from {STATUS_LABELS[old_status]} to {STATUS_LABELS[new_status]}."
    if note:
        message = f"{message} {note}"
    _add_update(s, issue, message=message, update_type="update", user=user, new_status=new_status)
    return old_status


def _apply_assignee(s: "Session", issue: Issue, assignee_id: Any, user: "User") -> bool:
    """Assign to an active faculty/admin member; empty unassigns. Returns False when unchanged."""
    if assignee_id in (None, ""):
        if issue.assigned_to is None:
            return False
        issue.assigned_to = None
        issue.assignee = None
        issue.updated_at = datetime.utcnow()
        _add_update(s, issue, message="Issue unassigned.", update_type="assign", user=user)
        return True

    try:
        assignee = s.get(User, int(assignee_id))
    except (TypeError, ValueError):
        assignee = None
    if not assignee or not assignee.is_active:
        raise ValueError("Assignee not found or inactive.")
    if primary_role(assignee) not in (ROLE_FACULTY, ROLE_ADMIN):
        raise ValueError("Issues can only be assigned to faculty or admin users.")
    if issue.assigned_to == assignee.id:
        return False
    issue.assigned_to = assignee.id
    issue.assignee = assignee
    issue.updated_at = datetime.utcnow()
    _add_update(s, issue, message=f"Assigned to {assignee.name or assignee.email}.", update_type="assign", user=user)
    return True


def change_status(s: "Session", issue: Issue, new_status: str, user: "User", note: str | None = None) -> bool:
    """
    Set issue status. Any status may follow any other; closing requires a note.
    Returns False when the status is unchanged.
    """
    if new_status not in STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(STATUSES)}")
    note = clean_str(note) or None
    if new_status == issue.status:
        return False
    if new_status in CLOSED_STATUSES and not note:
        raise ValueError("A resolution note is required to close an issue.")

    old_status = _apply_status(s, issue, new_status, user, note)
    record_event(
        s,
        actor=_audit_actor(issue, user),
        action="issue.status",
        audit_type="resolve" if new_status in CLOSED_STATUSES else "update",
        entity_type="Issue",
        entity_id=str(issue.id),
        reason=note,
        metadata={"old": old_status, "new": new_status, "title": issue.title},
    )
    return True


def assign_issue(s: "Session", issue: Issue, assignee_id: Any, user: "User") -> bool:
    old_assignee = issue.assigned_to
    if not _apply_assignee(s, issue, assignee_id, user):
        return False
    record_event(
        s,
        actor=_audit_actor(issue, user),
        action="issue.assign",
        audit_type="assign",
        entity_type="Issue",
        entity_id=str(issue.id),
        metadata={"old": old_assignee, "new": issue.assigned_to, "title": issue.title},
    )
    return True


def add_update(s: "Session", issue: Issue, message: str, update_type: str, user: "User") -> IssueUpdate:
    """Staff update/comment. A `critical` update escalates the issue to critical priority."""
    message = clean_str(message)
    if not message:
        raise ValueError("Message is required.")
    if update_type not in STAFF_UPDATE_TYPES:
        raise ValueError(f"Invalid update type. Must be one of: {', '.join(STAFF_UPDATE_TYPES)}")

    upd = _add_update(s, issue, message=message, update_type=update_type, user=user)
    issue.updated_at = datetime.utcnow()

    audit_type = "update"
    metadata: dict[str, Any] = {"type": update_type}
    if update_type == "critical" and issue.priority != "critical":
        metadata["priority"] = {"old": issue.priority, "new": "critical"}
        issue.priority = "critical"
        audit_type = "escalate"
    record_event(
        s,
        actor=_audit_actor(issue, user),
        action="issue.update",
        audit_type=audit_type,
        entity_type="Issue",
        entity_id=str(issue.id),
        metadata=metadata,
    )
    return upd


def admin_update_issue(s: "Session", issue: Issue, payload: dict, user: "User", reason: str | None = None) -> dict:
    """Edit any editable field (payload already validated); returns the before/after diff."""
    changes: dict[str, dict[str, Any]] = {}
    for field in EDITABLE_FIELDS:
        if field not in payload:
            continue
        new_value = clean_str(payload.get(field))
        if field in ("priority", "visibility"):
            new_value = new_value.lower()
        old_value = getattr(issue, field)
        if new_value != old_value:
            changes[field] = {"old": old_value, "new": new_value}
            setattr(issue, field, new_value)

    if not changes:
        return changes

    issue.updated_at = datetime.utcnow()
    escalated = "priority" in changes and PRIORITY_RANK[changes["priority"]["new"]] < PRIORITY_RANK.get(
        changes["priority"]["old"], len(PRIORITY_RANK)
    )
    record_event(
        s,
        actor=_audit_actor(issue, user),
        action="issue.edit",
        audit_type="escalate" if escalated else "update",
        entity_type="Issue",
        entity_id=str(issue.id),
        reason=clean_str(reason) or None,
        metadata={"changes": changes},
    )
    return changes


def delete_issue(s: "Session", issue: Issue, user: "User", reason: str) -> list[str]:
    """Hard-delete an issue and its dependents. Returns storage keys to purge after commit."""
    reason = clean_str(reason)
    if not reason:
        raise ValueError("Reason is required to delete an issue.")
    storage_keys = [a.storage_key for a in issue.attachments]
    record_event(
        s,
        actor=_audit_actor(issue, user),
        action="issue.delete",
        audit_type="system",
        entity_type="Issue",
        entity_id=str(issue.id),
        reason=reason,
        metadata={"title": issue.title, "category": issue.category, "status": issue.status},
    )
    s.delete(issue)
    return storage_keys


def bulk_update(s: "Session", issue_ids: list[int], changes: dict, user: "User") -> list[Issue]:
    """
    Apply status/priority/assignee to many issues at once. All ids must exist;
    nothing is changed otherwise. One audit event covers the batch.
    """
    if not issue_ids:
        raise ValueError("At least one issue id is required.")
    status = clean_str(changes.get("status")) or None
    priority = clean_str(changes.get("priority")).lower() or None
    has_assignee = "assigned_to" in changes
    if not (status or priority or has_assignee):
        raise ValueError("Nothing to update: provide status, priority and/or assigned_to.")
    if status and status not in STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(STATUSES)}")
    if priority and priority not in PRIORITIES:
        raise ValueError(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    note = clean_str(changes.get("note")) or None
    if status in CLOSED_STATUSES and not note:
        raise ValueError("A resolution note is required to close issues.")

    unique_ids = sorted(set(issue_ids))
    issues = s.query(Issue).filter(Issue.id.in_(unique_ids)).order_by(Issue.id).all()
    found = {i.id for i in issues}
    missing = [i for i in unique_ids if i not in found]
    if missing:
        raise LookupError(f"Issues not found: {', '.join(str(m) for m in missing)}")

    assignee_id = changes.get("assigned_to") if has_assignee else None
    for issue in issues:
        if status:
            _apply_status(s, issue, status, user, note)
        if priority and priority != issue.priority:
            issue.priority = priority
            issue.updated_at = datetime.utcnow()
            _add_update(s, issue, message=f"Priority set to {priority}.", update_type="update", user=user)
        if has_assignee:
            _apply_assignee(s, issue, assignee_id, user)

    record_event(
        s,
        actor=None if any(i.created_by == user.id for i in issues) else user,
        action="issue.bulk_update",
        audit_type="resolve" if status in CLOSED_STATUSES else "update",
        entity_type="Issue",
        entity_id=",".join(str(i) for i in unique_ids)[:128],
        reason=note,
        metadata={"ids": unique_ids, "status": status, "priority": priority, "assigned_to": assignee_id},
    )
    return issues


def toggle_vote(s: "Session", issue: Issue, user: "User") -> tuple[bool, int]:
    """Add the viewer's vote or take it back; keeps Issue.upvotes equal to the vote rows."""
    existing = s.get(IssueVote, (issue.id, user.id))
    if existing:
        s.delete(existing)
        voted = False
    else:
        s.add(IssueVote(issue_id=issue.id, user_id=user.id, created_at=datetime.utcnow()))
        voted = True
    s.flush()
    issue.upvotes = s.query(func.count(IssueVote.user_id)).filter(IssueVote.issue_id == issue.id).scalar() or 0
    return voted, issue.upvotes


def flag_issue(s: "Session", issue: Issue, user: "User", reason: str) -> IssueFlag:
    reason = clean_str(reason)
    if not reason:
        raise ValueError("A reason is required to flag an issue.")
    existing = (
        s.query(IssueFlag).filter(IssueFlag.issue_id == issue.id, IssueFlag.flagged_by == user.id).one_or_none()
    )
    if existing:
        raise IssueConflict("You have already flagged this issue.")
    flag = IssueFlag(issue_id=issue.id, flagged_by=user.id, reason=reason, created_at=datetime.utcnow())
    s.add(flag)
    s.flush()
    record_event(
        s,
        actor=_audit_actor(issue, user),
        action="issue.flag",
        audit_type="escalate",
        entity_type="Issue",
        entity_id=str(issue.id),
        reason=reason,
        metadata={"flag_id": flag.id, "title": issue.title},
    )
    return flag


def list_flags(s: "Session") -> list[dict[str, Any]]:
    flags = s.query(IssueFlag).order_by(IssueFlag.created_at.desc(), IssueFlag.id.desc()).all()
    return [
        {
            "id": f.id,
            "issue_id": f.issue_id,
            "reason": f.reason,
            "created_at": isoformat(f.created_at),
            "issue": {"title": f.issue.title, "status": f.issue.status, "category": f.issue.category},
        }
        for f in flags
    ]


def dismiss_flags(s: "Session", issue: Issue, user: "User", reason: str) -> int:
    reason = clean_str(reason)
    if not reason:
        raise ValueError("Reason is required to dismiss flags.")
    flags = s.query(IssueFlag).filter(IssueFlag.issue_id == issue.id).all()
    for f in flags:
        s.delete(f)
    record_event(
        s,
        actor=_audit_actor(issue, user),
        action="issue.flags_dismissed",
        audit_type="update",
        entity_type="Issue",
        entity_id=str(issue.id),
        reason=reason,
        metadata={"count": len(flags)},
    )
    return len(flags)


# ---------- Attachments ----------
def build_attachment_storage_key(
    issue_id: int, kind: str, filename: str, upload_date: date | None = None, token: str | None = None
) -> str:
    """Build the storage key for one uploaded attachment. `token` keeps same-named uploads apart."""
    if upload_date is None:
        upload_date = date.today()
    if token is None:
        token = uuid.uuid4().hex[:12]
    safe_filename = secure_filename(filename) or "attachment.bin"
    return f"issues/{issue_id}/{kind}/{upload_date.isoformat()}/{token}/{safe_filename}"


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    """Compute SHA256 digest and size."""
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def validate_attachment(filename: str, file_bytes: bytes, kind: str) -> list[str]:
    errors: list[str] = []
    if kind not in ATTACHMENT_KINDS:
        errors.append(f"Invalid attachment kind. Must be one of: {', '.join(ATTACHMENT_KINDS)}")
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext not in ATTACHMENT_EXTENSIONS:
        errors.append(f"Unsupported file type. Allowed: {', '.join(sorted(ATTACHMENT_EXTENSIONS))}")
    if not file_bytes:
        errors.append("File is empty.")
    elif len(file_bytes) > ATTACHMENT_MAX_BYTES:
        errors.append(f"File too large. Maximum size is {ATTACHMENT_MAX_BYTES // (1024 * 1024)}MB.")
    return errors


def can_upload_attachment(user: "User", issue: Issue, kind: str) -> bool:
    if kind == "evidence":
        return issue.created_by == user.id or user_has_permission(user, "issues.status")
    return user_has_permission(user, "issues.status")


def upload_attachment(
    s: "Session",
    issue: Issue,
    file_bytes: bytes,
    filename: str,
    content_type: str,
    user: "User",
    kind: str,
    storage: "Storage",
) -> IssueAttachment:
    if not can_upload_attachment(user, issue, kind):
        raise PermissionError("Not allowed to attach files to this issue.")

    sha256, size_bytes = file_digest_and_bytes(file_bytes)
    storage_key = build_attachment_storage_key(issue.id, kind, filename)
    storage.put_bytes(storage_key, file_bytes, content_type=content_type)

    att = IssueAttachment(
        issue_id=issue.id,
        kind=kind,
        storage_key=storage_key,
        original_filename=secure_filename(filename) or "attachment.bin",
        content_type=content_type or "application/octet-stream",
        sha256=sha256,
        size_bytes=size_bytes,
        uploaded_by=user.id,
        uploaded_at=datetime.utcnow(),
    )
    s.add(att)
    issue.attachments.append(att)
    s.flush()

    record_event(
        s,
        actor=_audit_actor(issue, user),
        action="issue.attachment_upload",
        audit_type="resolve" if kind == "resolution" else "update",
        entity_type="IssueAttachment",
        entity_id=str(att.id),
        metadata={"issue_id": issue.id, "kind": kind, "filename": att.original_filename, "sha256": sha256},
    )
    return att
