from flask import Blueprint

from app.campusvoice import __version__

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"name": "CampusVoice", "version": __version__}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200
