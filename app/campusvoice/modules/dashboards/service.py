"""
Read-only analytics for the three role dashboards.

All numbers are computed over the issues the viewer may see (admin analytics
see everything). Date bucketing happens in Python so the same code runs on
SQLite and Postgres.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.campusvoice.constants import (
    ACTION_ITEM_DEADLINE_DAYS,
    CATEGORIES,
    OPEN_STATUSES,
    PRIORITIES,
    PRIORITY_RANK,
    STATUS_LABELS,
    STATUS_RESOLVED,
    STATUSES,
)
from app.campusvoice.modules.issues.models import Issue, IssueFlag, IssueUpdate
from app.campusvoice.modules.issues.service import serialize_issue, serialize_update
from app.campusvoice.modules.issues.visibility import apply_visibility, open_escalated_clause
from app.campusvoice.utils import isoformat

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.campusvoice.models import User

MONTHLY_ACTIVITY_MONTHS = 7
RECENT_ACTIVITY_LIMIT = 5
ACTION_ITEMS_LIMIT = 10


def _month_starts(now: datetime, months: int) -> list[datetime]:
    """First day of each of the last `months` months, oldest first (current month last)."""
    year, month = now.year, now.month
    out: list[datetime] = []
    for _ in range(months):
        out.append(datetime(year, month, 1))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(out))


def _grouped_counts(q, column) -> dict[str, int]:
    return {key: count for key, count in q.with_entities(column, func.count(Issue.id)).group_by(column).all()}


def student_dashboard(s: "Session", user: "User", now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    mine = s.query(Issue).filter(Issue.created_by == user.id)

    by_status = _grouped_counts(mine, Issue.status)
    counts = {st: by_status.get(st, 0) for st in STATUSES}
    upvotes = mine.with_entities(func.coalesce(func.sum(Issue.upvotes), 0)).scalar() or 0

    starts = _month_starts(now, MONTHLY_ACTIVITY_MONTHS)
    visible = apply_visibility(s.query(Issue.created_at), user).filter(Issue.created_at >= starts[0])
    per_month = {m: 0 for m in starts}
    for (created_at,) in visible.all():
        per_month[datetime(created_at.year, created_at.month, 1)] += 1
    monthly = [{"month": m.strftime("%Y-%m"), "label": m.strftime("%b"), "count": per_month[m]} for m in starts]

    recent = (
        s.query(IssueUpdate)
        .join(Issue, Issue.id == IssueUpdate.issue_id)
        .filter(Issue.created_by == user.id)
        .order_by(IssueUpdate.created_at.desc(), IssueUpdate.id.desc())
        .limit(RECENT_ACTIVITY_LIMIT)
        .all()
    )
    return {
        "reported": sum(counts.values()),
        "by_status": counts,
        "open": sum(counts[st] for st in OPEN_STATUSES),
        "resolved": counts[STATUS_RESOLVED],
        "upvotes_received": int(upvotes),
        "monthly_activity": monthly,
        "recent_activity": [dict(serialize_update(u), issue_title=u.issue.title) for u in recent],
    }


def action_item_deadline(issue: Issue) -> datetime | None:
    days = ACTION_ITEM_DEADLINE_DAYS.get(issue.priority)
    if days is None:
        return None
    return issue.created_at + timedelta(days=days)


def average_resolution_days(issues: list[Issue]) -> float | None:
    durations = [
        (i.resolved_at - i.created_at).total_seconds() / 86400 for i in issues if i.resolved_at and i.created_at
    ]
    if not durations:
        return None
    return round(sum(durations) / len(durations), 1)


def faculty_dashboard(s: "Session", user: "User", now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    visible = apply_visibility(s.query(Issue), user)

    active = visible.filter(Issue.status.in_(OPEN_STATUSES)).count()
    resolved = visible.filter(Issue.status == STATUS_RESOLVED, Issue.resolved_at.isnot(None)).all()
    escalated = visible.filter(open_escalated_clause()).all()
    escalated.sort(key=lambda i: (PRIORITY_RANK.get(i.priority, len(PRIORITY_RANK)), i.created_at, i.id))

    action_items = []
    for issue in escalated[:ACTION_ITEMS_LIMIT]:
        deadline = action_item_deadline(issue)
        action_items.append(
            {
                "issue": serialize_issue(issue, user),
                "deadline": isoformat(deadline),
                "overdue": bool(deadline and deadline < now),
            }
        )

    by_category = _grouped_counts(visible, Issue.category)
    return {
        "active": active,
        "avg_resolution_days": average_resolution_days(resolved),
        "escalations": len(escalated),
        "action_items": action_items,
        "by_category": {c: by_category[c] for c in CATEGORIES if by_category.get(c)},
    }


def admin_analytics(s: "Session", overdue_days: int, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    q = s.query(Issue)

    total = q.count()
    by_status_raw = _grouped_counts(q, Issue.status)
    by_status = {st: by_status_raw.get(st, 0) for st in STATUSES}
    pending = sum(by_status[st] for st in OPEN_STATUSES)
    resolved = by_status[STATUS_RESOLVED]
    overdue = q.filter(Issue.status.in_(OPEN_STATUSES), Issue.created_at < now - timedelta(days=overdue_days)).count()

    by_priority_raw = _grouped_counts(q, Issue.priority)
    by_category_raw = _grouped_counts(q, Issue.category)

    week_start = datetime(now.year, now.month, now.day) - timedelta(days=now.weekday())
    created_this_week = q.filter(Issue.created_at >= week_start).count()
    flagged = s.query(func.count(func.distinct(IssueFlag.issue_id))).scalar() or 0
    escalated_open = q.filter(open_escalated_clause()).count()

    return {
        "total": total,
        "pending": pending,
        "overdue": overdue,
        "resolved": resolved,
        "resolution_rate": round(resolved * 100.0 / total, 1) if total else 0.0,
        "escalated_open": escalated_open,
        "by_status": by_status,
        "by_status_labels": {STATUS_LABELS[st]: n for st, n in by_status.items()},
        "by_priority": {p: by_priority_raw.get(p, 0) for p in PRIORITIES},
        "by_category": {c: by_category_raw.get(c, 0) for c in CATEGORIES},
        "created_this_week": created_this_week,
        "flagged_issues": int(flagged),
    }
