import hashlib
import io
from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.campusvoice import create_app
from app.campusvoice.db import session_scope
from app.campusvoice.models import AuditEvent, Base, User
from app.campusvoice.modules.issues.models import Issue, IssueAttachment, IssueFlag, IssueUpdate, IssueVote
from app.campusvoice.modules.issues.service import _add_update, build_attachment_storage_key, build_timeline
from app.campusvoice.seed import seed_rbac

USERS = (
    ("s1@example.edu", "student", "Student One"),
    ("s2@example.edu", "student", "Student Two"),
    ("f1@example.edu", "faculty", "Faculty One"),
    ("f2@example.edu", "faculty", "Faculty Two"),
    ("admin@example.edu", "admin", "Admin"),
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = seed_rbac(s)
        for email, role_key, name in USERS:
            u = User(email=email, password_hash=generate_password_hash("pw"), name=name, is_active=True)
            u.roles.append(roles[role_key])
            s.add(u)
    return app


class _Session:
    """Logged-in test client that sends the CSRF header on mutations."""

    def __init__(self, app, email):
        self.client = app.test_client()
        r = self.client.post("/auth/login", json={"email": email, "password": "pw"})
        assert r.status_code == 200, r.json
        self.headers = {"X-CSRF-Token": r.json["csrf_token"]}

    def get(self, url, **kw):
        return self.client.get(url, **kw)

    def post(self, url, **kw):
        return self.client.post(url, headers=self.headers, **kw)

    def patch(self, url, **kw):
        return self.client.patch(url, headers=self.headers, **kw)

    def delete(self, url, **kw):
        return self.client.delete(url, headers=self.headers, **kw)


@pytest.fixture()
def users(app):
    return {email.split("@")[0]: _Session(app, email) for email, _, _ in USERS}


def _user_id(app, email):
    with session_scope(app) as s:
        return s.query(User.id).filter(User.email == email).scalar()


def _report(session, **overrides):
    payload = {
        "title": "Broken projector",
        "description": "The projector in room 204 does not turn on.",
        "category": "IT Services",
        "location": "Block A",
    }
    payload.update(overrides)
    r = session.post("/issues", json=payload)
    assert r.status_code == 201, r.json
    return r.json["issue"]


# ---------- Reporting ----------
def test_report_issue_defaults_and_anonymity(app, users):
    issue = _report(users["s1"])
    assert issue["status"] == "submitted"
    assert issue["status_label"] == "Submitted"
    assert issue["progress"] == 10
    assert issue["priority"] == "medium"
    assert issue["visibility"] == "student"
    assert issue["upvotes"] == 0
    assert issue["is_mine"] is True
    assert "created_by" not in issue

    r = users["s2"].get(f"/issues/{issue['id']}")
    assert r.status_code == 200
    assert r.json["issue"]["is_mine"] is False
    assert "created_by" not in r.json["issue"]
    assert r.json["updates"][0]["author"] == "System"
    assert r.json["updates"][0]["message"] == "Issue submitted and recorded in anonymous queue."

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "issue.report").one()
        assert ev.actor_user_id is None
        assert ev.actor_user_email is None


def test_faculty_reports_default_to_faculty_audience(users):
    issue = _report(users["f1"])
    assert issue["visibility"] == "faculty"


def test_report_validation(users):
    r = users["s1"].post("/issues", json={"title": "x" * 201, "category": "Cafeteria"})
    assert r.status_code == 400
    errors = r.json["errors"]
    assert "Title must be at most 200 characters." in errors
    assert "Description is required." in errors
    assert "Location is required." in errors
    assert any(e.startswith("Invalid category") for e in errors)

    r = users["s1"].post(
        "/issues",
        json={"title": "t", "description": "d", "category": "Safety", "location": "Gate", "priority": "urgent"},
    )
    assert r.status_code == 400
    assert any(e.startswith("Invalid priority") for e in r.json["errors"])


# ---------- Visibility ----------
def test_student_sees_student_and_public_and_own(app, users):
    mine_private = _report(users["s1"], title="Mine", visibility="faculty")
    faculty_only = _report(users["f1"], title="Faculty lounge heater")
    public = _report(users["f1"], title="Public notice board", visibility="public")
    student = _report(users["s2"], title="Library wifi")

    r = users["s1"].get("/issues")
    assert r.status_code == 200
    ids = {i["id"] for i in r.json["issues"]}
    assert ids == {mine_private["id"], public["id"], student["id"]}
    assert all("created_by" not in i for i in r.json["issues"])

    # Hidden issues look missing
    assert users["s1"].get(f"/issues/{faculty_only['id']}").status_code == 404
    assert users["s2"].get(f"/issues/{mine_private['id']}").status_code == 404


def test_faculty_hidden_categories_unless_assigned(app, users):
    hostel = _report(users["s1"], title="Hostel water", category="Hostel")
    bus = _report(users["s1"], title="Late bus", category="Transportation")
    lab = _report(users["s1"], title="Lab fan", category="Facilities")

    r = users["f1"].get("/issues")
    assert {i["id"] for i in r.json["issues"]} == {lab["id"]}
    assert "Hostel" not in r.json["categories"]
    assert "Transportation" not in r.json["categories"]
    assert users["f1"].get(f"/issues/{hostel['id']}").status_code == 404

    f1_id = _user_id(app, "f1@example.edu")
    r = users["admin"].post(f"/issues/{hostel['id']}/assign", json={"assigned_to": f1_id})
    assert r.status_code == 200

    assert users["f1"].get(f"/issues/{hostel['id']}").status_code == 200
    r = users["f1"].get("/issues")
    assert {i["id"] for i in r.json["issues"]} == {lab["id"], hostel["id"]}
    # Another faculty member still cannot see it
    assert users["f2"].get(f"/issues/{hostel['id']}").status_code == 404

    r = users["admin"].get("/issues")
    assert r.json["total"] == 3
    assert {i["id"] for i in r.json["issues"]} == {hostel["id"], bus["id"], lab["id"]}
    assert "Hostel" in r.json["categories"]


# ---------- Filters ----------
def test_list_filters_and_sorting(app, users):
    a = _report(users["s1"], title="Projector broken", priority="low")
    b = _report(users["s1"], title="Leaking roof", priority="critical", category="Infrastructure")
    c = _report(users["s2"], title="Second projector", priority="high")

    users["f1"].post(f"/issues/{c['id']}/status", json={"status": "in_progress"})
    users["s2"].post(f"/issues/{b['id']}/vote")
    users["s1"].post(f"/issues/{b['id']}/vote")
    users["s2"].post(f"/issues/{a['id']}/vote")

    s2 = users["s2"]
    r = s2.get("/issues", query_string={"q": "PROJECTOR"})
    assert {i["id"] for i in r.json["issues"]} == {a["id"], c["id"]}

    r = s2.get("/issues", query_string={"status": "In Progress"})
    assert [i["id"] for i in r.json["issues"]] == [c["id"]]

    r = s2.get("/issues", query_string={"category": "Infrastructure"})
    assert [i["id"] for i in r.json["issues"]] == [b["id"]]

    r = s2.get("/issues", query_string={"category": "All", "status": "All", "sort": "upvotes"})
    assert [i["id"] for i in r.json["issues"]] == [b["id"], a["id"], c["id"]]
    assert sorted(r.json["voted_issue_ids"]) == sorted([a["id"], b["id"]])

    r = s2.get("/issues", query_string={"sort": "priority"})
    assert [i["id"] for i in r.json["issues"]] == [b["id"], c["id"], a["id"]]

    r = s2.get("/issues", query_string={"sort": "oldest"})
    assert [i["id"] for i in r.json["issues"]] == [a["id"], b["id"], c["id"]]

    r = s2.get("/issues", query_string={"escalated": "1"})
    assert {i["id"] for i in r.json["issues"]} == {b["id"], c["id"]}

    r = s2.get("/issues", query_string={"my_upvoted": "true"})
    assert {i["id"] for i in r.json["issues"]} == {a["id"], b["id"]}

    r = s2.get("/issues", query_string={"mine": "1"})
    assert [i["id"] for i in r.json["issues"]] == [c["id"]]

    r = s2.get("/issues", query_string={"limit": 1, "offset": 1})
    assert r.json["total"] == 3
    assert len(r.json["issues"]) == 1
    assert r.json["issues"][0]["id"] == b["id"]


def test_reporter_filter_is_staff_only(users):
    student = _report(users["s1"], title="Student report")
    public = _report(users["s1"], title="Public report", visibility="public")
    faculty = _report(users["f1"], title="Faculty report")

    r = users["admin"].get("/issues", query_string={"reporter": "faculty"})
    assert [i["id"] for i in r.json["issues"]] == [faculty["id"]]

    # Students keep their normal audience view
    r = users["s2"].get("/issues", query_string={"reporter": "faculty"})
    assert {i["id"] for i in r.json["issues"]} == {student["id"], public["id"]}


def test_invalid_filters_rejected(users):
    r = users["s1"].get("/issues", query_string={"status": "closed", "sort": "random", "limit": 0})
    assert r.status_code == 400
    errors = r.json["errors"]
    assert any(e.startswith("Invalid status") for e in errors)
    assert any(e.startswith("Invalid sort") for e in errors)
    assert "limit must be a positive integer." in errors


def test_limit_is_capped(users):
    r = users["s1"].get("/issues", query_string={"limit": 5000})
    assert r.status_code == 200
    assert r.json["limit"] == 200


# ---------- Status / timeline ----------
def test_status_changes_and_timeline(app, users):
    issue = _report(users["s1"])
    f1 = users["f1"]
    url = f"/issues/{issue['id']}/status"

    r = f1.post(url, json={"status": "under_review"})
    assert r.status_code == 200
    assert r.json["changed"] is True
    assert r.json["issue"]["status_label"] == "Under Review"
    assert r.json["issue"]["progress"] == 30

    r = f1.post(url, json={"status": "resolved"})
    assert r.status_code == 400
    assert r.json["errors"] == ["A resolution note is required to close an issue."]

    # Status may skip ahead; labels are accepted too.
    r = f1.post(url, json={"status": "Resolved", "note": "Replaced the lamp."})
    assert r.status_code == 200
    assert r.json["issue"]["status"] == "resolved"
    assert r.json["issue"]["resolution_note"] == "Replaced the lamp."
    assert r.json["issue"]["resolved_at"] is not None
    assert r.json["issue"]["progress"] == 100

    r = f1.post(url, json={"status": "resolved", "note": "again"})
    assert r.status_code == 200
    assert r.json["changed"] is False

    r = users["s1"].get(f"/issues/{issue['id']}")
    timeline = r.json["timeline"]
    assert [t["label"] for t in timeline] == ["Submitted", "Under Review", "In Progress", "Resolved"]
    assert all(t["completed"] for t in timeline)
    assert timeline[0]["date"] == r.json["issue"]["created_at"]
    assert timeline[3]["date"] is not None

    updates = r.json["updates"]
    assert updates[0]["message"] == "Status changed from Under Review to Resolved. Replaced the lamp."
    assert updates[0]["author"] == "Faculty One"
    assert updates[0]["new_status"] == "resolved"
    assert updates[-1]["type"] == "system"

    # Reopening clears resolved_at
    r = f1.post(url, json={"status": "in_progress"})
    assert r.json["issue"]["resolved_at"] is None
    timeline = users["s1"].get(f"/issues/{issue['id']}").json["timeline"]
    current = [t for t in timeline if t["current"]]
    assert [t["status"] for t in current] == ["in_progress"]
    assert timeline[3]["completed"] is False

    with session_scope(app) as s:
        types = [
            e.audit_type
            for e in s.query(AuditEvent).filter(AuditEvent.action == "issue.status").order_by(AuditEvent.id).all()
        ]
        assert types == ["update", "resolve", "update"]


def test_rejected_timeline_ends_in_rejected(users):
    issue = _report(users["s1"])
    url = f"/issues/{issue['id']}/status"
    users["f1"].post(url, json={"status": "under_review"})
    r = users["f1"].post(url, json={"status": "rejected", "note": "Duplicate of #1"})
    assert r.status_code == 200

    timeline = users["s1"].get(f"/issues/{issue['id']}").json["timeline"]
    assert [t["label"] for t in timeline] == ["Submitted", "Under Review", "Rejected"]
    assert timeline[-1]["current"] is True


def test_status_change_requires_staff(users):
    issue = _report(users["s1"])
    r = users["s1"].post(f"/issues/{issue['id']}/status", json={"status": "in_progress"})
    assert r.status_code == 403

    r = users["f1"].post(f"/issues/{issue['id']}/status", json={"status": "done"})
    assert r.status_code == 400


# ---------- Assignment / updates ----------
def test_assign_validates_assignee(app, users):
    issue = _report(users["s1"])
    url = f"/issues/{issue['id']}/assign"

    r = users["f1"].post(url, json={"assigned_to": _user_id(app, "s2@example.edu")})
    assert r.status_code == 400
    assert r.json["errors"] == ["Issues can only be assigned to faculty or admin users."]

    r = users["f1"].post(url, json={"assigned_to": 99999})
    assert r.status_code == 400

    f2_id = _user_id(app, "f2@example.edu")
    r = users["f1"].post(url, json={"assigned_to": f2_id})
    assert r.status_code == 200
    assert r.json["issue"]["assigned_to"] == {"id": f2_id, "name": "Faculty Two"}

    r = users["f2"].get("/issues", query_string={"assigned_to_me": "1"})
    assert [i["id"] for i in r.json["issues"]] == [issue["id"]]

    r = users["f1"].post(url, json={"assigned_to": ""})
    assert r.json["changed"] is True
    assert r.json["issue"]["assigned_to"] is None

    r = users["f1"].get("/issues/assignees")
    names = [a["name"] for a in r.json["assignees"]]
    assert names == ["Admin", "Faculty One", "Faculty Two"]
    assert users["s1"].get("/issues/assignees").status_code == 403


def test_critical_update_escalates_priority(app, users):
    issue = _report(users["s1"], priority="low")
    url = f"/issues/{issue['id']}/updates"

    r = users["f1"].post(url, json={"message": "  "})
    assert r.status_code == 400
    r = users["f1"].post(url, json={"message": "hi", "type": "system"})
    assert r.status_code == 400

    r = users["f1"].post(url, json={"message": "Exposed wiring near water.", "type": "critical"})
    assert r.status_code == 201
    assert r.json["update"]["type"] == "critical"
    assert r.json["update"]["author"] == "Faculty One"
    assert r.json["issue"]["priority"] == "critical"

    assert users["s1"].post(url, json={"message": "me too"}).status_code == 403

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "issue.update").one()
        assert ev.audit_type == "escalate"


# ---------- Votes ----------
def test_vote_toggle_keeps_count_in_sync(app, users):
    issue = _report(users["s1"])
    url = f"/issues/{issue['id']}/vote"

    assert users["s2"].post(url).json == {"voted": True, "upvotes": 1}
    assert users["f1"].post(url).json == {"voted": True, "upvotes": 2}
    assert users["s2"].post(url).json == {"voted": False, "upvotes": 1}

    r = users["f1"].get(f"/issues/{issue['id']}")
    assert r.json["has_voted"] is True
    assert r.json["issue"]["upvotes"] == 1

    with session_scope(app) as s:
        assert s.query(IssueVote).filter(IssueVote.issue_id == issue["id"]).count() == 1
        assert s.get(Issue, issue["id"]).upvotes == 1


# ---------- Flags ----------
def test_flag_review_and_dismiss(app, users):
    issue = _report(users["s1"])
    url = f"/issues/{issue['id']}/flag"

    assert users["s2"].post(url, json={}).status_code == 400
    r = users["s2"].post(url, json={"reason": "Looks fake"})
    assert r.status_code == 201
    r = users["s2"].post(url, json={"reason": "Still fake"})
    assert r.status_code == 409

    r = users["s2"].get(f"/issues/{issue['id']}")
    assert r.json["has_flagged"] is True
    assert "flag_count" not in r.json

    r = users["admin"].get(f"/issues/{issue['id']}")
    assert r.json["flag_count"] == 1

    assert users["s2"].get("/issues/flags").status_code == 403
    r = users["admin"].get("/issues/flags")
    assert r.status_code == 200
    assert len(r.json["flags"]) == 1
    assert r.json["flags"][0]["issue"]["title"] == "Broken projector"
    assert r.json["flags"][0]["reason"] == "Looks fake"

    dismiss = f"/issues/{issue['id']}/flags/dismiss"
    assert users["admin"].post(dismiss, json={}).status_code == 400
    r = users["admin"].post(dismiss, json={"reason": "Verified with facilities"})
    assert r.json == {"dismissed": 1}

    with session_scope(app) as s:
        assert s.query(IssueFlag).count() == 0
        ev = s.query(AuditEvent).filter(AuditEvent.action == "issue.flag").one()
        assert ev.audit_type == "escalate"


# ---------- Admin edit / delete / bulk ----------
def test_admin_edit_records_diff(app, users):
    issue = _report(users["s1"], priority="medium")
    url = f"/issues/{issue['id']}"

    assert users["f1"].patch(url, json={"priority": "high"}).status_code == 403
    assert users["admin"].patch(url, json={"category": "Cafeteria"}).status_code == 400
    assert users["admin"].patch(url, json={"title": ""}).status_code == 400

    r = users["admin"].patch(url, json={"priority": "critical", "location": "Block B", "reason": "Safety risk"})
    assert r.status_code == 200
    assert r.json["changes"] == {
        "priority": {"old": "medium", "new": "critical"},
        "location": {"old": "Block A", "new": "Block B"},
    }
    assert r.json["issue"]["location"] == "Block B"

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "issue.edit").one()
        assert ev.audit_type == "escalate"
        assert ev.reason == "Safety risk"


def test_admin_delete_cascades(app, users):
    issue = _report(users["s1"])
    users["s2"].post(f"/issues/{issue['id']}/vote")
    users["s2"].post(f"/issues/{issue['id']}/flag", json={"reason": "spam"})
    url = f"/issues/{issue['id']}"

    assert users["f1"].delete(url, json={"reason": "x"}).status_code == 403
    assert users["admin"].delete(url, json={}).status_code == 400

    r = users["admin"].delete(url, json={"reason": "Test data"})
    assert r.status_code == 200
    assert users["admin"].get(url).status_code == 404

    with session_scope(app) as s:
        assert s.query(Issue).count() == 0
        assert s.query(IssueUpdate).count() == 0
        assert s.query(IssueVote).count() == 0
        assert s.query(IssueFlag).count() == 0
        ev = s.query(AuditEvent).filter(AuditEvent.action == "issue.delete").one()
        assert ev.audit_type == "system"


def test_bulk_update_is_all_or_nothing(app, users):
    a = _report(users["s1"], title="A")
    b = _report(users["s1"], title="B")
    admin = users["admin"]

    assert users["f1"].post("/issues/bulk", json={"ids": [a["id"]], "status": "in_progress"}).status_code == 403

    r = admin.post("/issues/bulk", json={"ids": [a["id"], b["id"], 9999], "status": "in_progress"})
    assert r.status_code == 404
    with session_scope(app) as s:
        assert {i.status for i in s.query(Issue).all()} == {"submitted"}

    r = admin.post("/issues/bulk", json={"ids": [a["id"], b["id"]], "status": "resolved"})
    assert r.status_code == 400

    r = admin.post("/issues/bulk", json={"ids": [a["id"]]})
    assert r.status_code == 400

    f1_id = _user_id(app, "f1@example.edu")
    r = admin.post(
        "/issues/bulk",
        json={"ids": [a["id"], b["id"]], "status": "resolved", "note": "Fixed in sweep", "priority": "low", "assigned_to": f1_id},
    )
    assert r.status_code == 200
    assert r.json["updated"] == 2
    for i in r.json["issues"]:
        assert i["status"] == "resolved"
        assert i["priority"] == "low"
        assert i["resolution_note"] == "Fixed in sweep"
        assert i["assigned_to"]["id"] == f1_id

    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "issue.bulk_update").count() == 1
        # submitted + status + priority + assign per issue
        assert s.query(IssueUpdate).filter(IssueUpdate.issue_id == a["id"]).count() == 4


# ---------- Attachments ----------
def test_attachment_upload_download_and_permissions(app, tmp_path, users):
    issue = _report(users["s1"])
    url = f"/issues/{issue['id']}/attachments"
    png = b"\x89PNG\r\n\x1a\nfake-image"

    r = users["s1"].post(
        url,
        data={"file": (io.BytesIO(png), "leak photo.png"), "kind": "evidence"},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    att = r.json["attachment"]
    assert att["filename"] == "leak_photo.png"
    assert att["sha256"] == hashlib.sha256(png).hexdigest()
    assert att["size_bytes"] == len(png)

    # Another student can see the issue but cannot add evidence to it
    r = users["s2"].post(
        url, data={"file": (io.BytesIO(png), "x.png"), "kind": "evidence"}, content_type="multipart/form-data"
    )
    assert r.status_code == 403

    r = users["s1"].post(
        url, data={"file": (io.BytesIO(b"MZ"), "tool.exe"), "kind": "evidence"}, content_type="multipart/form-data"
    )
    assert r.status_code == 400
    assert any(e.startswith("Unsupported file type") for e in r.json["errors"])

    r = users["s1"].post(
        url, data={"file": (io.BytesIO(b"%PDF"), "fix.pdf"), "kind": "resolution"}, content_type="multipart/form-data"
    )
    assert r.status_code == 403
    r = users["f1"].post(
        url, data={"file": (io.BytesIO(b"%PDF"), "fix.pdf"), "kind": "resolution"}, content_type="multipart/form-data"
    )
    assert r.status_code == 201

    r = users["s2"].get(f"/issues/attachments/{att['id']}/download")
    assert r.status_code == 200
    assert r.data == png

    detail = users["s1"].get(f"/issues/{issue['id']}").json
    assert [a["kind"] for a in detail["attachments"]] == ["evidence", "resolution"]

    with session_scope(app) as s:
        key = s.get(IssueAttachment, att["id"]).storage_key
    assert key.startswith(f"issues/{issue['id']}/evidence/")
    blob = tmp_path / "storage" / key
    assert blob.exists()

    users["admin"].delete(f"/issues/{issue['id']}", json={"reason": "cleanup"})
    assert not blob.exists()


def test_attachment_download_respects_visibility(users):
    issue = _report(users["f1"], title="Staff room")
    r = users["f1"].post(
        f"/issues/{issue['id']}/attachments",
        data={"file": (io.BytesIO(b"img"), "room.jpg")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    att_id = r.json["attachment"]["id"]

    assert users["s1"].get(f"/issues/attachments/{att_id}/download").status_code == 404
    assert users["f2"].get(f"/issues/attachments/{att_id}/download").status_code == 200


def test_same_named_attachments_keep_their_own_bytes(app, tmp_path, users):
    issue = _report(users["s1"])
    url = f"/issues/{issue['id']}/attachments"
    first = b"\x89PNG first-photo"
    second = b"\x89PNG second-photo-different"

    ids = []
    for body in (first, second):
        r = users["s1"].post(
            url, data={"file": (io.BytesIO(body), "photo.png"), "kind": "evidence"}, content_type="multipart/form-data"
        )
        assert r.status_code == 201
        ids.append(r.json["attachment"]["id"])

    assert users["s1"].get(f"/issues/attachments/{ids[0]}/download").data == first
    assert users["s1"].get(f"/issues/attachments/{ids[1]}/download").data == second

    with session_scope(app) as s:
        keys = [s.get(IssueAttachment, i).storage_key for i in ids]
    assert keys[0] != keys[1]
    assert all(k.endswith("/photo.png") for k in keys)
    assert all((tmp_path / "storage" / k).exists() for k in keys)


def test_storage_key_layout():
    key = build_attachment_storage_key(7, "evidence", "my photo.png", datetime(2026, 3, 4).date(), token="abc123")
    assert key == "issues/7/evidence/2026-03-04/abc123/my_photo.png"
    assert build_attachment_storage_key(7, "evidence", "a.png") != build_attachment_storage_key(7, "evidence", "a.png")


def test_reporter_actions_never_name_the_reporter_in_audit_log(app, users):
    issue = _report(users["s1"])
    users["s1"].post(
        f"/issues/{issue['id']}/attachments",
        data={"file": (io.BytesIO(b"\x89PNG evidence"), "photo.png"), "kind": "evidence"},
        content_type="multipart/form-data",
    )
    assert users["s1"].post(f"/issues/{issue['id']}/flag", json={"reason": "wrong category"}).status_code == 201

    # Staff reporting their own issue stay anonymous as well
    staff_issue = _report(users["f1"], title="Staff room heater")
    users["f1"].post(f"/issues/{staff_issue['id']}/status", json={"status": "in_progress"})

    # Someone else acting on the issue is attributed normally
    users["f2"].post(f"/issues/{issue['id']}/status", json={"status": "under_review"})

    events = users["admin"].get("/admin/audit").json["events"]
    issue_events = [e for e in events if e["action"].startswith("issue.")]
    assert {e["action"] for e in issue_events} >= {"issue.report", "issue.attachment_upload", "issue.flag"}
    emails = {e["actor_email"] for e in issue_events}
    assert "s1@example.edu" not in emails
    assert "f1@example.edu" not in emails
    assert "f2@example.edu" in emails

    r = users["admin"].get("/admin/audit", query_string={"actor_email": "s1@"})
    assert [e["action"] for e in r.json["events"]] == ["auth.login"]


def test_timeline_dates_come_from_first_transition():
    created = datetime(2026, 1, 1, 9, 0)
    first_review = created + timedelta(days=1)
    issue = Issue(status="in_progress", created_at=created)
    issue.updates = [
        IssueUpdate(message="m", update_type="update", new_status="under_review", created_at=first_review),
        IssueUpdate(message="m", update_type="update", new_status="submitted", created_at=created + timedelta(days=2)),
        IssueUpdate(message="m", update_type="update", new_status="under_review", created_at=created + timedelta(days=3)),
        IssueUpdate(message="m", update_type="update", new_status="in_progress", created_at=created + timedelta(days=4)),
    ]
    steps = {t["status"]: t for t in build_timeline(issue)}
    assert steps["submitted"]["date"] == created.isoformat()
    assert steps["under_review"]["date"] == first_review.isoformat()
    assert steps["in_progress"]["current"] is True
    assert steps["resolved"]["date"] is None


def test_unknown_update_type_rejected(app):
    with session_scope(app) as s:
        issue = Issue(
            title="t",
            description="d",
            category="Safety",
            location="Gate",
            priority="medium",
            status="submitted",
            visibility="student",
            upvotes=0,
        )
        s.add(issue)
        s.flush()
        with pytest.raises(ValueError):
            _add_update(s, issue, message="m", update_type="broadcast", user=None)
