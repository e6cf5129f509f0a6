from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.campusvoice import create_app
from app.campusvoice.db import session_scope
from app.campusvoice.models import Base, User
from app.campusvoice.modules.dashboards.service import _month_starts, average_resolution_days
from app.campusvoice.modules.issues.models import Issue, IssueFlag
from app.campusvoice.seed import seed_rbac


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("OVERDUE_DAYS", "7")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = seed_rbac(s)
        for email, role_key in (
            ("student@example.edu", "student"),
            ("other@example.edu", "student"),
            ("faculty@example.edu", "faculty"),
            ("admin@example.edu", "admin"),
        ):
            u = User(email=email, password_hash=generate_password_hash("pw"), name=email.split("@")[0], is_active=True)
            u.roles.append(roles[role_key])
            s.add(u)
    return app


def _client(app, email):
    c = app.test_client()
    r = c.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    c.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrf_token"]
    return c


def _issue(s, reporter_email, *, days_ago=0, status="submitted", priority="medium", category="Facilities", **kw):
    reporter = s.query(User).filter(User.email == reporter_email).one()
    created = datetime.utcnow() - timedelta(days=days_ago)
    issue = Issue(
        title=kw.pop("title", f"{category} issue"),
        description="seeded",
        category=category,
        location=kw.pop("location", "Block A"),
        priority=priority,
        status=status,
        visibility=kw.pop("visibility", "student"),
        created_by=reporter.id,
        upvotes=kw.pop("upvotes", 0),
        created_at=created,
        updated_at=created,
        **kw,
    )
    s.add(issue)
    s.flush()
    return issue


def test_month_starts_wraps_year():
    starts = _month_starts(datetime(2026, 2, 14), 7)
    assert [m.strftime("%Y-%m") for m in starts] == [
        "2025-08",
        "2025-09",
        "2025-10",
        "2025-11",
        "2025-12",
        "2026-01",
        "2026-02",
    ]


def test_average_resolution_days():
    base = datetime(2026, 1, 1)
    issues = [
        Issue(created_at=base, resolved_at=base + timedelta(days=2)),
        Issue(created_at=base, resolved_at=base + timedelta(days=3)),
        Issue(created_at=base, resolved_at=None),
    ]
    assert average_resolution_days(issues) == 2.5
    assert average_resolution_days([]) is None


def test_student_dashboard(app):
    with session_scope(app) as s:
        _issue(s, "student@example.edu", upvotes=3)
        _issue(s, "student@example.edu", status="resolved", upvotes=2)
        _issue(s, "student@example.edu", status="in_progress")
        _issue(s, "other@example.edu", upvotes=9)

    c = _client(app, "student@example.edu")
    r = c.get("/dashboard/student")
    assert r.status_code == 200
    d = r.json
    assert d["reported"] == 3
    assert d["by_status"]["submitted"] == 1
    assert d["by_status"]["resolved"] == 1
    assert d["by_status"]["rejected"] == 0
    assert d["open"] == 2
    assert d["upvotes_received"] == 5
    assert len(d["monthly_activity"]) == 7
    # All four issues were created this month and are visible to students
    assert d["monthly_activity"][-1]["count"] == 4
    assert d["monthly_activity"][-1]["month"] == datetime.utcnow().strftime("%Y-%m")

    # Recent activity only covers the viewer's own issues
    c.post("/issues", json={"title": "Mine", "description": "d", "category": "Safety", "location": "Gate"})
    d = c.get("/dashboard/student").json
    assert d["recent_activity"][0]["issue_title"] == "Mine"
    assert d["recent_activity"][0]["author"] == "System"

    r = c.get("/dashboard")
    assert r.json["role"] == "student"
    assert r.json["home"] == "/dashboard"
    assert r.json["dashboard"]["reported"] == 4

    assert c.get("/dashboard/faculty").status_code == 403
    assert c.get("/dashboard/admin").status_code == 403


def test_faculty_dashboard(app):
    with session_scope(app) as s:
        old_high = _issue(s, "student@example.edu", days_ago=5, priority="high", title="Old high")
        new_critical = _issue(s, "student@example.edu", days_ago=0, priority="critical", title="New critical")
        old_critical = _issue(s, "student@example.edu", days_ago=2, priority="critical", title="Old critical")
        _issue(s, "student@example.edu", priority="critical", category="Hostel", title="Hidden")
        _issue(s, "student@example.edu", priority="high", status="resolved", title="Closed")
        resolved = _issue(s, "student@example.edu", days_ago=4, status="resolved", category="Academics")
        resolved.resolved_at = resolved.created_at + timedelta(days=4)
        ids = (old_critical.id, new_critical.id, old_high.id)

    c = _client(app, "faculty@example.edu")
    d = c.get("/dashboard/faculty").json
    assert d["active"] == 3
    assert d["escalations"] == 3
    assert d["avg_resolution_days"] == 4.0
    assert [a["issue"]["id"] for a in d["action_items"]] == list(ids)
    # critical: +1 day, high: +3 days
    assert d["action_items"][0]["overdue"] is True
    assert d["action_items"][1]["overdue"] is False
    assert d["action_items"][2]["overdue"] is True
    assert "Hostel" not in d["by_category"]
    assert d["by_category"]["Facilities"] == 4
    assert d["by_category"]["Academics"] == 1

    r = c.get("/dashboard")
    assert r.json["role"] == "faculty"
    assert r.json["home"] == "/faculty"


def test_admin_analytics(app):
    with session_scope(app) as s:
        _issue(s, "student@example.edu", days_ago=10, title="Overdue")
        _issue(s, "student@example.edu", days_ago=3, status="under_review")
        _issue(s, "student@example.edu", days_ago=20, status="resolved", priority="high")
        _issue(s, "student@example.edu", days_ago=30, status="rejected", category="Hostel")
        flagged = _issue(s, "student@example.edu", priority="critical")
        reporter = s.query(User).filter(User.email == "other@example.edu").one()
        s.add(IssueFlag(issue_id=flagged.id, flagged_by=reporter.id, reason="fake"))

    c = _client(app, "admin@example.edu")
    d = c.get("/dashboard/admin").json
    assert d["total"] == 5
    assert d["pending"] == 3
    assert d["overdue"] == 1
    assert d["resolved"] == 1
    assert d["resolution_rate"] == 20.0
    assert d["escalated_open"] == 1
    assert d["by_status"] == {"submitted": 2, "under_review": 1, "in_progress": 0, "resolved": 1, "rejected": 1}
    assert d["by_priority"] == {"critical": 1, "high": 1, "medium": 3, "low": 0}
    assert d["by_category"]["Hostel"] == 1
    assert d["by_category"]["Facilities"] == 4
    assert d["flagged_issues"] == 1
    assert d["created_this_week"] >= 1

    r = c.get("/dashboard")
    assert r.json["role"] == "admin"
    assert r.json["dashboard"]["total"] == 5


def test_admin_analytics_empty(app):
    c = _client(app, "admin@example.edu")
    d = c.get("/dashboard/admin").json
    assert d["total"] == 0
    assert d["resolution_rate"] == 0.0
