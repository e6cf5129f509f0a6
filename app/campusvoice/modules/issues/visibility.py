"""
Role-based issue visibility and list filtering.

One rule set answers both "which issues may this viewer list" (as a SQL filter)
and "may this viewer open this issue" (as a predicate), so list views and detail
views can never disagree:

- admin sees everything;
- faculty see everything except the faculty-hidden categories (unless assigned to them);
- students see student/public issues plus anything they reported.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, asc, case, desc, or_, select

from app.campusvoice.constants import (
    CATEGORIES,
    ESCALATED_PRIORITIES,
    FACULTY_HIDDEN_CATEGORIES,
    LIST_DEFAULT_LIMIT,
    LIST_MAX_LIMIT,
    OPEN_STATUSES,
    PRIORITY_RANK,
    ROLE_ADMIN,
    ROLE_FACULTY,
    STATUS_LABELS,
    STATUSES,
    VISIBILITIES,
)
from app.campusvoice.modules.issues.models import Issue, IssueVote
from app.campusvoice.rbac import primary_role
from app.campusvoice.utils import clean_str, parse_bool, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query
    from app.campusvoice.models import User

SORTS = ("newest", "oldest", "upvotes", "priority")
STUDENT_VISIBILITIES = ("student", "public")


def visible_categories(user: "User | None") -> list[str]:
    """Category filter options offered to this viewer."""
    if primary_role(user) == ROLE_FACULTY:
        return [c for c in CATEGORIES if c not in FACULTY_HIDDEN_CATEGORIES]
    return list(CATEGORIES)


def visibility_clause(user: "User"):
    role = primary_role(user)
    if role == ROLE_ADMIN:
        return None
    if role == ROLE_FACULTY:
        return or_(Issue.category.notin_(FACULTY_HIDDEN_CATEGORIES), Issue.assigned_to == user.id)
    return or_(Issue.visibility.in_(STUDENT_VISIBILITIES), Issue.created_by == user.id)


def apply_visibility(q: "Query", user: "User") -> "Query":
    clause = visibility_clause(user)
    return q if clause is None else q.filter(clause)


def can_view_issue(user: "User | None", issue: Issue) -> bool:
    if not user:
        return False
    role = primary_role(user)
    if role == ROLE_ADMIN:
        return True
    if role == ROLE_FACULTY:
        return issue.category not in FACULTY_HIDDEN_CATEGORIES or issue.assigned_to == user.id
    return issue.visibility in STUDENT_VISIBILITIES or issue.created_by == user.id


def normalize_status(value: str) -> str | None:
    """Accept either the stored value ("in_progress") or its label ("In Progress")."""
    v = clean_str(value)
    if not v:
        return None
    if v in STATUSES:
        return v
    for key, label in STATUS_LABELS.items():
        if v.lower() == label.lower():
            return key
    lowered = v.lower().replace(" ", "_")
    return lowered if lowered in STATUSES else None


@dataclass
class IssueFilters:
    category: str | None = None
    status: str | None = None
    search: str | None = None
    my_upvoted: bool = False
    escalated: bool = False
    reporter: str | None = None
    mine: bool = False
    assigned_to_me: bool = False
    sort: str = "newest"
    limit: int = LIST_DEFAULT_LIMIT
    offset: int = 0

    @classmethod
    def from_args(cls, args: Any) -> tuple["IssueFilters", list[str]]:
        errors: list[str] = []
        f = cls()

        category = clean_str(args.get("category"))
        if category and category != "All":
            if category not in CATEGORIES:
                errors.append(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}")
            f.category = category

        status = clean_str(args.get("status"))
        if status and status != "All":
            f.status = normalize_status(status)
            if f.status is None:
                errors.append(f"Invalid status. Must be one of: {', '.join(STATUSES)}")

        f.search = clean_str(args.get("q")) or None
        f.my_upvoted = parse_bool(args.get("my_upvoted"))
        f.escalated = parse_bool(args.get("escalated"))
        f.mine = parse_bool(args.get("mine"))
        f.assigned_to_me = parse_bool(args.get("assigned_to_me"))

        reporter = clean_str(args.get("reporter")).lower()
        if reporter and reporter != "all":
            if reporter not in VISIBILITIES:
                errors.append(f"Invalid reporter. Must be one of: {', '.join(VISIBILITIES)}")
            f.reporter = reporter

        sort = clean_str(args.get("sort")).lower() or "newest"
        if sort not in SORTS:
            errors.append(f"Invalid sort. Must be one of: {', '.join(SORTS)}")
        f.sort = sort

        limit = parse_int(args.get("limit"), LIST_DEFAULT_LIMIT)
        offset = parse_int(args.get("offset"), 0)
        if limit is None or limit < 1:
            errors.append("limit must be a positive integer.")
            limit = LIST_DEFAULT_LIMIT
        if offset is None or offset < 0:
            errors.append("offset must be a non-negative integer.")
            offset = 0
        f.limit = min(limit, LIST_MAX_LIMIT)
        f.offset = offset
        return f, errors


def filtered_issues_query(q: "Query", user: "User", f: IssueFilters) -> "Query":
    """Visibility first, then the viewer's own filters."""
    q = apply_visibility(q, user)

    if f.category:
        q = q.filter(Issue.category == f.category)
    if f.status:
        q = q.filter(Issue.status == f.status)
    if f.search:
        q = q.filter(Issue.title.ilike(f"%{f.search}%"))
    if f.my_upvoted:
        voted = select(IssueVote.issue_id).where(IssueVote.user_id == user.id)
        q = q.filter(Issue.id.in_(voted))
    if f.escalated:
        q = q.filter(Issue.priority.in_(ESCALATED_PRIORITIES))
    # Reporter audience is a staff-only lens; students already only see their audience.
    if f.reporter and primary_role(user) in (ROLE_FACULTY, ROLE_ADMIN):
        q = q.filter(Issue.visibility == f.reporter)
    if f.mine:
        q = q.filter(Issue.created_by == user.id)
    if f.assigned_to_me:
        q = q.filter(Issue.assigned_to == user.id)
    return q


def apply_sort(q: "Query", sort: str) -> "Query":
    if sort == "oldest":
        return q.order_by(asc(Issue.created_at), asc(Issue.id))
    if sort == "upvotes":
        return q.order_by(desc(Issue.upvotes), desc(Issue.created_at), desc(Issue.id))
    if sort == "priority":
        rank = case(PRIORITY_RANK, value=Issue.priority, else_=len(PRIORITY_RANK))
        return q.order_by(asc(rank), desc(Issue.created_at), desc(Issue.id))
    return q.order_by(desc(Issue.created_at), desc(Issue.id))


def open_escalated_clause():
    return and_(Issue.priority.in_(ESCALATED_PRIORITIES), Issue.status.in_(OPEN_STATUSES))
