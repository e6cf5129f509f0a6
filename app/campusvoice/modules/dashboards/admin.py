from flask import Blueprint, current_app

from app.campusvoice.constants import ROLE_ADMIN, ROLE_FACULTY, ROLE_HOME
from app.campusvoice.db import db_session
from app.campusvoice.modules.dashboards.service import admin_analytics, faculty_dashboard, student_dashboard
from app.campusvoice.rbac import primary_role, require_permission
from app.campusvoice.utils import current_user

bp = Blueprint("dashboards", __name__)


@bp.get("")
@require_permission("dashboard.view")
def dashboard_home():
    """Dashboard for the viewer's own role."""
    u = current_user()
    role = primary_role(u)
    s = db_session()
    if role == ROLE_ADMIN:
        data = admin_analytics(s, current_app.config["OVERDUE_DAYS"])
    elif role == ROLE_FACULTY:
        data = faculty_dashboard(s, u)
    else:
        data = student_dashboard(s, u)
    return {"role": role, "home": ROLE_HOME[role], "dashboard": data}


@bp.get("/student")
@require_permission("dashboard.view")
def dashboard_student():
    return student_dashboard(db_session(), current_user())


@bp.get("/faculty")
@require_permission("issues.status")
def dashboard_faculty():
    return faculty_dashboard(db_session(), current_user())


@bp.get("/admin")
@require_permission("admin.view")
def dashboard_admin():
    return admin_analytics(db_session(), current_app.config["OVERDUE_DAYS"])
