# routes/ring_tracking.py
from __future__ import annotations

from flask import Blueprint, request, jsonify

from db import db
from auth_guard import require_role, require_api_key, current_identity
from models.bus import Bus
from models.route import Route, Station
from services import ring_tracking as ring
from services.errors import ValidationError
from utils.validate import (
    hhmm,
    iso,
    optional_str,
    parse_coordinate,
    parse_datetime,
    parse_hhmm,
    parse_int,
    required_str,
)

ring_bp = Blueprint("ring_tracking", __name__, url_prefix="/ring-tracking")


# ── JSON shapes ─────────────────────────────────────────────────────────────

def _coord(d):
    return float(d) if d is not None else None


def station_json(s: Station) -> dict:
    return {
        "stationId": s.station_id,
        "stationName": s.station_name,
        "latitude": _coord(s.station_latitude),
        "longitude": _coord(s.station_longitude),
    }


def route_json(r: Route) -> dict:
    return {
        "routeId": r.route_id,
        "routeName": r.route_name,
        "stations": [
            {**station_json(rs.station), "stopOrder": rs.stop_order}
            for rs in r.route_stations
        ],
        "departureTimes": [hhmm(d.departure_time) for d in r.departure_times],
    }


def bus_json(b: Bus) -> dict:
    return {
        "vehicleId": b.vehicle_id,
        "latitude": _coord(b.live_latitude),
        "longitude": _coord(b.live_longitude),
        "lastUpdateTime": iso(b.last_update_time),
        "routeId": ring.current_route_id(b),
    }


# ── Input helpers ───────────────────────────────────────────────────────────

def _times_from(data: dict, key: str = "departureTimes"):
    raw = data.get(key)
    if not isinstance(raw, list):
        raise ValidationError(f"{key} must be a list of HH:MM strings")
    return [parse_hhmm(t, key) for t in raw]


def _stops_from(data: dict):
    raw = data.get("stations")
    if not isinstance(raw, list):
        raise ValidationError("stations must be a list")
    stops = []
    for s in raw:
        if not isinstance(s, dict):
            raise ValidationError("each station must be an object with stationId and stopOrder")
        stops.append({"station_id": s.get("stationId"), "stop_order": s.get("stopOrder")})
    return stops


# ── Routes ──────────────────────────────────────────────────────────────────

@ring_bp.route("/routes", methods=["GET"])
@require_role()
def list_routes():
    return jsonify(items=[route_json(r) for r in ring.list_routes(db.session)]), 200


@ring_bp.route("/routes/<route_id>", methods=["GET"])
@require_role()
def get_route(route_id: str):
    return jsonify(route_json(ring.get_route(db.session, route_id))), 200


@ring_bp.route("/routes", methods=["POST"])
@require_role("staff")
def create_route():
    """Body: { routeName, departureTimes?: ["07:30", ...] }"""
    data = request.get_json(silent=True) or {}
    route = ring.create_route(
        db.session,
        route_name=required_str(data, "routeName", max_len=128),
        departure_times=_times_from(data) if data.get("departureTimes") is not None else None,
    )
    return jsonify(route_json(route)), 201


@ring_bp.route("/routes/<route_id>", methods=["PATCH"])
@require_role("staff")
def update_route(route_id: str):
    data = request.get_json(silent=True) or {}
    route = ring.update_route(
        db.session,
        route_id,
        route_name=optional_str(data, "routeName", max_len=128),
        departure_times=_times_from(data) if data.get("departureTimes") is not None else None,
    )
    return jsonify(route_json(route)), 200


@ring_bp.route("/routes/<route_id>", methods=["DELETE"])
@require_role("admin")
def delete_route(route_id: str):
    ring.delete_route(db.session, route_id)
    return jsonify(message="Route deleted."), 200


@ring_bp.route("/routes/<route_id>/stations", methods=["PUT"])
@require_role("staff")
def update_route_stations(route_id: str):
    """Body: { stations: [{ stationId, stopOrder }, ...] }  ([] clears the route)"""
    data = request.get_json(silent=True) or {}
    route = ring.replace_route_stations(db.session, route_id, _stops_from(data))
    return jsonify(route_json(route)), 200


@ring_bp.route("/routes/<route_id>/departure-times", methods=["PUT"])
@require_role("staff")
def update_departure_times(route_id: str):
    data = request.get_json(silent=True) or {}
    route = ring.replace_departure_times(db.session, route_id, _times_from(data))
    return jsonify(route_json(route)), 200


# ── Stations ────────────────────────────────────────────────────────────────

@ring_bp.route("/stations", methods=["GET"])
@require_role()
def list_stations():
    return jsonify(items=[station_json(s) for s in ring.list_stations(db.session)]), 200


@ring_bp.route("/stations/<station_id>", methods=["GET"])
@require_role()
def get_station(station_id: str):
    return jsonify(station_json(ring.get_station(db.session, station_id))), 200


@ring_bp.route("/stations", methods=["POST"])
@require_role("staff")
def create_station():
    """Body: { stationName, latitude, longitude }"""
    data = request.get_json(silent=True) or {}
    station = ring.create_station(
        db.session,
        station_name=required_str(data, "stationName", max_len=128),
        latitude=parse_coordinate(data.get("latitude"), "latitude", limit=90),
        longitude=parse_coordinate(data.get("longitude"), "longitude", limit=180),
    )
    return jsonify(station_json(station)), 201


@ring_bp.route("/stations/<station_id>", methods=["PATCH"])
@require_role("staff")
def update_station(station_id: str):
    data = request.get_json(silent=True) or {}
    lat = data.get("latitude")
    lon = data.get("longitude")
    station = ring.update_station(
        db.session,
        station_id,
        station_name=optional_str(data, "stationName", max_len=128),
        latitude=parse_coordinate(lat, "latitude", limit=90) if lat is not None else None,
        longitude=parse_coordinate(lon, "longitude", limit=180) if lon is not None else None,
    )
    return jsonify(station_json(station)), 200


@ring_bp.route("/stations/<station_id>", methods=["DELETE"])
@require_role("admin")
def delete_station(station_id: str):
    ring.delete_station(db.session, station_id)
    return jsonify(message="Station deleted."), 200


# ── Favourites ──────────────────────────────────────────────────────────────

@ring_bp.route("/favorites", methods=["GET"])
@require_role()
def list_favorite_routes():
    routes = ring.list_favorite_routes(db.session, current_identity())
    return jsonify(items=[route_json(r) for r in routes]), 200


@ring_bp.route("/favorites", methods=["POST"])
@require_role()
def add_favorite_route():
    """Body: { routeId }"""
    data = request.get_json(silent=True) or {}
    fav = ring.add_favorite_route(db.session, current_identity(), required_str(data, "routeId", max_len=36))
    return jsonify(routeId=fav.route_id, isFavorite=fav.is_favorite), 201


@ring_bp.route("/favorites/<route_id>", methods=["DELETE"])
@require_role()
def remove_favorite_route(route_id: str):
    if ring.remove_favorite_route(db.session, current_identity(), route_id):
        return jsonify(message="Route removed from favorites."), 200
    return jsonify(message="Route was not in favorites."), 200


# ── Buses ───────────────────────────────────────────────────────────────────

@ring_bp.route("/buses/<vehicle_id>/location", methods=["PUT"])
@require_api_key
def update_bus_location(vehicle_id: str):
    """Called by the vehicle tracker. Body: { latitude, longitude, timestamp? }"""
    data = request.get_json(silent=True) or {}
    ts = data.get("timestamp")
    bus = ring.update_bus_location(
        db.session,
        vehicle_id.strip()[:64],
        latitude=parse_coordinate(data.get("latitude"), "latitude", limit=90),
        longitude=parse_coordinate(data.get("longitude"), "longitude", limit=180),
        reported_at=parse_datetime(ts, "timestamp") if ts else None,
    )
    return jsonify(bus_json(bus)), 200


@ring_bp.route("/buses/<vehicle_id>/route", methods=["POST"])
@require_role("staff")
def assign_bus_to_route(vehicle_id: str):
    """Body: { routeId }"""
    data = request.get_json(silent=True) or {}
    drive = ring.assign_bus_to_route(db.session, vehicle_id.strip()[:64], required_str(data, "routeId", max_len=36))
    return jsonify(
        vehicleId=drive.vehicle_id,
        routeId=drive.route_id,
        driveTimestamp=iso(drive.drive_timestamp),
    ), 201


@ring_bp.route("/buses/live", methods=["GET"])
@require_role()
def get_live_bus_locations():
    """?routeId=&freshMinutes="""
    fresh = request.args.get("freshMinutes")
    buses = ring.live_bus_locations(
        db.session,
        route_id=(request.args.get("routeId") or "").strip() or None,
        fresh_minutes=parse_int(fresh, "freshMinutes", minimum=1) if fresh else None,
    )
    return jsonify(items=[bus_json(b) for b in buses]), 200
