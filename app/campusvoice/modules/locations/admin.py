from flask import Blueprint, abort

from app.campusvoice.db import db_session
from app.campusvoice.modules.locations.models import Location
from app.campusvoice.modules.locations.service import (
    add_location,
    list_locations,
    location_stats,
    location_tree,
    serialize_location,
    validate_location_payload,
)
from app.campusvoice.rbac import require_permission
from app.campusvoice.utils import current_user, request_payload, validation_error

bp = Blueprint("locations", __name__)


@bp.get("")
@require_permission("locations.view")
def locations_list():
    s = db_session()
    return {"locations": [serialize_location(x) for x in list_locations(s)]}


@bp.post("")
@require_permission("locations.manage")
def locations_create():
    s = db_session()
    payload = request_payload()
    errors = validate_location_payload(s, payload)
    if errors:
        return validation_error(errors)
    loc = add_location(s, payload, current_user())
    s.commit()
    return {"location": serialize_location(loc)}, 201


@bp.get("/tree")
@require_permission("locations.view")
def locations_tree():
    return {"tree": location_tree(db_session(), current_user())}


@bp.get("/<int:location_id>/stats")
@require_permission("locations.view")
def locations_stats(location_id: int):
    s = db_session()
    loc = s.get(Location, location_id)
    if not loc:
        abort(404)
    return location_stats(s, loc, current_user())
