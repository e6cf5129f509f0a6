from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.campusvoice.audit import record_event
from app.campusvoice.constants import LOCATION_HOTSPOT_THRESHOLD, LOCATION_TYPES, OPEN_STATUSES
from app.campusvoice.modules.issues.models import Issue
from app.campusvoice.modules.issues.visibility import apply_visibility
from app.campusvoice.modules.locations.models import Location
from app.campusvoice.utils import clean_str, isoformat, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.campusvoice.models import User


def serialize_location(loc: Location) -> dict[str, Any]:
    return {
        "id": loc.id,
        "name": loc.name,
        "type": loc.type,
        "parent_id": loc.parent_id,
        "created_at": isoformat(loc.created_at),
    }


def list_locations(s: "Session") -> list[Location]:
    return s.query(Location).order_by(Location.name.asc(), Location.id.asc()).all()


def validate_location_payload(s: "Session", payload: dict) -> list[str]:
    errors: list[str] = []
    name = clean_str(payload.get("name"))
    loc_type = clean_str(payload.get("type")).lower()
    raw_parent = payload.get("parent_id")

    if not name:
        errors.append("Name is required.")
    elif len(name) > 255:
        errors.append("Name must be at most 255 characters.")
    if loc_type not in LOCATION_TYPES:
        errors.append(f"Invalid type. Must be one of: {', '.join(LOCATION_TYPES)}")

    parent_id = None
    if raw_parent not in (None, ""):
        parent_id = parse_int(raw_parent)
        if parent_id is None or not s.get(Location, parent_id):
            errors.append("Parent location not found.")
            return errors

    if name:
        sibling = (
            s.query(Location.id)
            .filter(Location.name == name)
            .filter(Location.parent_id.is_(None) if parent_id is None else Location.parent_id == parent_id)
            .first()
        )
        if sibling:
            errors.append("A location with this name already exists here.")
    return errors


def add_location(s: "Session", payload: dict, user: "User") -> Location:
    """Create a location node (payload already validated)."""
    parent_id = parse_int(payload.get("parent_id"))
    loc = Location(
        name=clean_str(payload.get("name")),
        type=clean_str(payload.get("type")).lower(),
        parent_id=parent_id,
    )
    s.add(loc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="location.create",
        audit_type="update",
        entity_type="Location",
        entity_id=str(loc.id),
        metadata={"name": loc.name, "type": loc.type, "parent_id": parent_id},
    )
    return loc


def _issue_counts_by_location(s: "Session", user: "User", *, open_only: bool = False) -> dict[str, int]:
    q = s.query(Issue.location, func.count(Issue.id))
    q = apply_visibility(q, user)
    if open_only:
        q = q.filter(Issue.status.in_(OPEN_STATUSES))
    return {name: count for name, count in q.group_by(Issue.location).all()}


def _rollup(loc: Location, counts: dict[str, int]) -> int:
    return counts.get(loc.name, 0) + sum(_rollup(c, counts) for c in loc.children)


def location_tree(s: "Session", user: "User") -> list[dict[str, Any]]:
    """
    Nested nodes with issue counts rolled up from descendants.
    An issue counts toward the node whose name equals its location text.
    """
    counts = _issue_counts_by_location(s, user)

    def _node(loc: Location) -> dict[str, Any]:
        children = [_node(c) for c in loc.children]
        return {
            "id": loc.id,
            "name": loc.name,
            "type": loc.type,
            "issue_count": counts.get(loc.name, 0) + sum(c["issue_count"] for c in children),
            "children": children,
        }

    roots = s.query(Location).filter(Location.parent_id.is_(None)).order_by(Location.name.asc()).all()
    return [_node(r) for r in roots]


def location_stats(s: "Session", loc: Location, user: "User") -> dict[str, Any]:
    counts = _issue_counts_by_location(s, user)
    open_counts = _issue_counts_by_location(s, user, open_only=True)
    children = []
    for child in loc.children:
        total = _rollup(child, counts)
        children.append(
            {
                "id": child.id,
                "name": child.name,
                "type": child.type,
                "issue_count": total,
                "hotspot": total > LOCATION_HOTSPOT_THRESHOLD,
            }
        )
    return {
        "location": serialize_location(loc),
        "issue_count": _rollup(loc, counts),
        "open_count": _rollup(loc, open_counts),
        "children": children,
    }
