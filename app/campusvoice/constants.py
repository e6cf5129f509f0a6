"""
Central constants for the CampusVoice application.
"""
from __future__ import annotations

# Roles, ordered by privilege (lowest first)
ROLE_STUDENT = "student"
ROLE_FACULTY = "faculty"
ROLE_ADMIN = "admin"
ROLES = (ROLE_STUDENT, ROLE_FACULTY, ROLE_ADMIN)
ROLE_NAMES = {
    ROLE_STUDENT: "Student",
    ROLE_FACULTY: "Faculty",
    ROLE_ADMIN: "Administrator",
}
ROLE_HOME = {
    ROLE_STUDENT: "/dashboard",
    ROLE_FACULTY: "/faculty",
    ROLE_ADMIN: "/admin",
}

PROFILE_ACTIVE = "active"
PROFILE_SUSPENDED = "suspended"

# Issue status (flat enum, no transition ordering)
STATUS_SUBMITTED = "submitted"
STATUS_UNDER_REVIEW = "under_review"
STATUS_IN_PROGRESS = "in_progress"
STATUS_RESOLVED = "resolved"
STATUS_REJECTED = "rejected"
STATUSES = (STATUS_SUBMITTED, STATUS_UNDER_REVIEW, STATUS_IN_PROGRESS, STATUS_RESOLVED, STATUS_REJECTED)
OPEN_STATUSES = (STATUS_SUBMITTED, STATUS_UNDER_REVIEW, STATUS_IN_PROGRESS)
CLOSED_STATUSES = (STATUS_RESOLVED, STATUS_REJECTED)
STATUS_LABELS = {
    STATUS_SUBMITTED: "Submitted",
    STATUS_UNDER_REVIEW: "Under Review",
    STATUS_IN_PROGRESS: "In Progress",
    STATUS_RESOLVED: "Resolved",
    STATUS_REJECTED: "Rejected",
}
STATUS_PROGRESS = {
    STATUS_SUBMITTED: 10,
    STATUS_UNDER_REVIEW: 30,
    STATUS_IN_PROGRESS: 60,
    STATUS_RESOLVED: 100,
    STATUS_REJECTED: 100,
}
# Main path shown on the issue timeline
TIMELINE_PATH = (STATUS_SUBMITTED, STATUS_UNDER_REVIEW, STATUS_IN_PROGRESS, STATUS_RESOLVED)
TIMELINE_DESCRIPTIONS = {
    STATUS_SUBMITTED: "Issue reported and added to anonymous queue",
    STATUS_UNDER_REVIEW: "Administration is reviewing the report",
    STATUS_IN_PROGRESS: "Work on the issue has started",
    STATUS_RESOLVED: "Issue resolved and closed",
    STATUS_REJECTED: "Report reviewed and rejected",
}

PRIORITIES = ("critical", "high", "medium", "low")
PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}
ESCALATED_PRIORITIES = ("critical", "high")
# Days allowed before a faculty action item is due
ACTION_ITEM_DEADLINE_DAYS = {"critical": 1, "high": 3, "medium": 7}

CATEGORIES = (
    "Infrastructure",
    "IT Services",
    "Academics",
    "Facilities",
    "Safety",
    "Administration",
    "Hostel",
    "Transportation",
)
FACULTY_HIDDEN_CATEGORIES = ("Hostel", "Transportation")

VISIBILITIES = ("student", "faculty", "public")

UPDATE_TYPES = ("system", "assign", "comment", "update", "critical")
STAFF_UPDATE_TYPES = ("update", "comment", "critical")

AUDIT_TYPES = ("resolve", "assign", "escalate", "update", "system")

LOCATION_TYPES = ("campus", "block", "lab", "hostel", "facility")
LOCATION_HOTSPOT_THRESHOLD = 10

ATTACHMENT_KINDS = ("evidence", "resolution")
ATTACHMENT_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "webp", "heic", "pdf"})
ATTACHMENT_MAX_BYTES = 10 * 1024 * 1024

TITLE_MAX_LENGTH = 200
LIST_DEFAULT_LIMIT = 50
LIST_MAX_LIMIT = 200
