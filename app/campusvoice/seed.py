"""
Role/permission matrix and the idempotent seeding helper shared by
scripts/init_db.py and the test suite.
"""
from __future__ import annotations

from sqlalchemy.orm import Session

from app.campusvoice.constants import ROLE_ADMIN, ROLE_FACULTY, ROLE_NAMES, ROLE_STUDENT, ROLES
from app.campusvoice.models import Permission, Role

PERMISSIONS: dict[str, str] = {
    "issues.view": "Issues: view",
    "issues.report": "Issues: report",
    "issues.vote": "Issues: upvote",
    "issues.flag": "Issues: flag false report",
    "issues.comment": "Issues: post updates",
    "issues.status": "Issues: change status",
    "issues.assign": "Issues: assign",
    "issues.edit": "Issues: edit any field",
    "issues.delete": "Issues: delete",
    "issues.bulk": "Issues: bulk update",
    "flags.review": "Flags: review",
    "locations.view": "Locations: view",
    "locations.manage": "Locations: manage",
    "dashboard.view": "Dashboard: view",
    "admin.view": "Admin: view console",
    "admin.edit": "Admin: manage accounts",
    "audit.view": "Audit log: view",
}

_BASE = (
    "issues.view",
    "issues.report",
    "issues.vote",
    "issues.flag",
    "locations.view",
    "dashboard.view",
)
_STAFF = ("issues.comment", "issues.status", "issues.assign")
_ADMIN = (
    "issues.edit",
    "issues.delete",
    "issues.bulk",
    "flags.review",
    "locations.manage",
    "admin.view",
    "admin.edit",
    "audit.view",
)

ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    ROLE_STUDENT: _BASE,
    ROLE_FACULTY: _BASE + _STAFF,
    ROLE_ADMIN: _BASE + _STAFF + _ADMIN,
}


def seed_rbac(s: Session) -> dict[str, Role]:
    """Create any missing permissions and roles; never removes grants."""
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS.items():
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for role_key in ROLES:
        role = s.query(Role).filter(Role.key == role_key).one_or_none()
        if not role:
            role = Role(key=role_key, name=ROLE_NAMES[role_key])
            s.add(role)
        for perm_key in ROLE_PERMISSIONS[role_key]:
            if perms[perm_key] not in role.permissions:
                role.permissions.append(perms[perm_key])
        roles[role_key] = role
    s.flush()
    return roles
