# services/ring_tracking.py
"""
Shuttle ("ring") topology and bus position services.

Stops and departure times are replaced wholesale: the old set is deleted and
the new one inserted in the same transaction, so readers never see a mix.
"""
from __future__ import annotations

from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from flask import current_app
from sqlalchemy import delete, func, insert
from sqlalchemy.orm import selectinload

from models.bus import Bus, BusDrivesRoute
from models.route import Route, RouteDepartureTime, RouteStation, Station, UserFavoriteRoute
from services.errors import BusinessRuleError, NotFoundError, ValidationError
from services.identity import Identity
from services.tx import atomic, now_utc


# ---------- lookups ----------

def get_route(session, route_id: str) -> Route:
    route = session.get(Route, route_id)
    if route is None:
        raise NotFoundError("Route not found.")
    return route


def get_station(session, station_id: str) -> Station:
    station = session.get(Station, station_id)
    if station is None:
        raise NotFoundError("Station not found.")
    return station


def list_routes(session) -> List[Route]:
    return (
        session.query(Route)
        .options(
            selectinload(Route.route_stations).selectinload(RouteStation.station),
            selectinload(Route.departure_times),
        )
        .order_by(Route.route_name)
        .all()
    )


def list_stations(session) -> List[Station]:
    return session.query(Station).order_by(Station.station_name).all()


# ---------- replace-all writers (no commit) ----------

def _validate_stops(session, stations: Iterable[dict]) -> List[dict]:
    rows: List[dict] = []
    seen_orders, seen_stations = set(), set()
    for s in stations:
        station_id = str(s.get("station_id") or "").strip()
        order = s.get("stop_order")
        if not station_id:
            raise ValidationError("Every stop needs a stationId.")
        if isinstance(order, bool) or not isinstance(order, int) or order < 1:
            raise ValidationError(f"stopOrder for station {station_id} must be a positive integer.")
        if order in seen_orders:
            raise ValidationError(f"Duplicate stopOrder {order}.")
        if station_id in seen_stations:
            raise ValidationError(f"Station {station_id} appears more than once.")
        seen_orders.add(order)
        seen_stations.add(station_id)
        rows.append({"station_id": station_id, "stop_order": order})

    if seen_stations:
        found = {sid for (sid,) in session.query(Station.station_id).filter(Station.station_id.in_(seen_stations))}
        missing = sorted(seen_stations - found)
        if missing:
            raise NotFoundError(f"Station not found: {', '.join(missing)}")
    return rows


def _replace_stops_no_commit(session, route_id: str, rows: List[dict]) -> None:
    session.execute(delete(RouteStation).where(RouteStation.route_id == route_id))
    if rows:
        session.execute(insert(RouteStation), [dict(r, route_id=route_id) for r in rows])


def _replace_times_no_commit(session, route_id: str, times: Iterable[time]) -> List[time]:
    uniq = sorted(set(times))
    session.execute(delete(RouteDepartureTime).where(RouteDepartureTime.route_id == route_id))
    if uniq:
        session.execute(
            insert(RouteDepartureTime),
            [{"route_id": route_id, "departure_time": t} for t in uniq],
        )
    return uniq


# ---------- routes ----------

def create_route(session, *, route_name: str, departure_times: Optional[List[time]] = None) -> Route:
    with atomic(session, "ring"):
        route = Route(route_name=route_name)
        session.add(route)
        session.flush()
        if departure_times:
            _replace_times_no_commit(session, route.route_id, departure_times)
        route_id = route.route_id
    current_app.logger.info("[ring] route created id=%s name=%s", route_id, route_name)
    return session.get(Route, route_id)


def update_route(
    session,
    route_id: str,
    *,
    route_name: Optional[str] = None,
    departure_times: Optional[List[time]] = None,
) -> Route:
    route = get_route(session, route_id)
    with atomic(session, "ring"):
        if route_name is not None:
            route.route_name = route_name
        if departure_times is not None:
            _replace_times_no_commit(session, route_id, departure_times)
    return route


def delete_route(session, route_id: str) -> None:
    route = get_route(session, route_id)
    with atomic(session, "ring"):
        # stops, departure times, favourites and bus assignments go with it
        session.delete(route)
    current_app.logger.info("[ring] route deleted id=%s", route_id)


def replace_route_stations(session, route_id: str, stations: Iterable[dict]) -> Route:
    """
    Replace the ordered stop list of a route. An empty list clears the route.
    Concurrent replacements serialize on commit; the last one wins.
    """
    get_route(session, route_id)
    rows = _validate_stops(session, stations)
    with atomic(session, "ring"):
        _replace_stops_no_commit(session, route_id, rows)
    current_app.logger.info("[ring] route stops replaced id=%s stops=%d", route_id, len(rows))
    return get_route(session, route_id)


def replace_departure_times(session, route_id: str, times: Iterable[time]) -> Route:
    get_route(session, route_id)
    with atomic(session, "ring"):
        uniq = _replace_times_no_commit(session, route_id, times)
    current_app.logger.info("[ring] departure times replaced id=%s count=%d", route_id, len(uniq))
    return get_route(session, route_id)


# ---------- stations ----------

def create_station(session, *, station_name: str, latitude: Decimal, longitude: Decimal) -> Station:
    with atomic(session, "ring"):
        station = Station(station_name=station_name, station_latitude=latitude, station_longitude=longitude)
        session.add(station)
    return station


def update_station(
    session,
    station_id: str,
    *,
    station_name: Optional[str] = None,
    latitude: Optional[Decimal] = None,
    longitude: Optional[Decimal] = None,
) -> Station:
    station = get_station(session, station_id)
    with atomic(session, "ring"):
        if station_name is not None:
            station.station_name = station_name
        if latitude is not None:
            station.station_latitude = latitude
        if longitude is not None:
            station.station_longitude = longitude
    return station


def delete_station(session, station_id: str) -> None:
    station = get_station(session, station_id)
    in_use = (
        session.query(func.count(RouteStation.route_id))
        .filter(RouteStation.station_id == station_id)
        .scalar()
    )
    if in_use:
        current_app.logger.warning("[ring] refused station delete id=%s routes=%d", station_id, in_use)
        raise BusinessRuleError(
            f"Cannot delete station. It is part of {in_use} route(s). Remove from routes first."
        )
    with atomic(session, "ring"):
        session.delete(station)
    current_app.logger.info("[ring] station deleted id=%s", station_id)


# ---------- favourites ----------

def add_favorite_route(session, identity: Identity, route_id: str) -> UserFavoriteRoute:
    get_route(session, route_id)
    with atomic(session, "ring"):
        fav = session.get(UserFavoriteRoute, (identity.user_id, route_id))
        if fav is None:
            fav = UserFavoriteRoute(user_id=identity.user_id, route_id=route_id, is_favorite=True)
            session.add(fav)
        else:
            fav.is_favorite = True
    return fav


def remove_favorite_route(session, identity: Identity, route_id: str) -> bool:
    """True when a favourite was removed, False when there was none."""
    fav = session.get(UserFavoriteRoute, (identity.user_id, route_id))
    if fav is None:
        return False
    with atomic(session, "ring"):
        session.delete(fav)
    return True


def list_favorite_routes(session, identity: Identity) -> List[Route]:
    return (
        session.query(Route)
        .join(UserFavoriteRoute, UserFavoriteRoute.route_id == Route.route_id)
        .filter(UserFavoriteRoute.user_id == identity.user_id, UserFavoriteRoute.is_favorite.is_(True))
        .options(
            selectinload(Route.route_stations).selectinload(RouteStation.station),
            selectinload(Route.departure_times),
        )
        .order_by(Route.route_name)
        .all()
    )


# ---------- buses ----------

def current_route_id(bus: Bus) -> Optional[str]:
    """Most recent assignment wins."""
    return bus.drives[0].route_id if bus.drives else None


def update_bus_location(
    session,
    vehicle_id: str,
    *,
    latitude: Decimal,
    longitude: Decimal,
    reported_at: Optional[datetime] = None,
) -> Bus:
    """Store the position a vehicle reports; nothing is derived from it."""
    with atomic(session, "ring"):
        bus = session.get(Bus, vehicle_id)
        if bus is None:
            bus = Bus(vehicle_id=vehicle_id)
            session.add(bus)
        bus.live_latitude = latitude
        bus.live_longitude = longitude
        bus.last_update_time = reported_at or now_utc()
    return bus


def assign_bus_to_route(session, vehicle_id: str, route_id: str) -> BusDrivesRoute:
    get_route(session, route_id)
    with atomic(session, "ring"):
        if session.get(Bus, vehicle_id) is None:
            session.add(Bus(vehicle_id=vehicle_id))
            session.flush()
        drive = BusDrivesRoute(vehicle_id=vehicle_id, route_id=route_id, drive_timestamp=now_utc())
        session.add(drive)
    current_app.logger.info("[ring] bus %s assigned to route %s", vehicle_id, route_id)
    return drive


def live_bus_locations(session, *, route_id: Optional[str] = None,
                       fresh_minutes: Optional[int] = None) -> List[Bus]:
    q = (
        session.query(Bus)
        .filter(Bus.live_latitude.isnot(None), Bus.live_longitude.isnot(None))
        .options(selectinload(Bus.drives))
    )
    if fresh_minutes is not None:
        q = q.filter(Bus.last_update_time >= now_utc() - timedelta(minutes=fresh_minutes))
    buses = q.order_by(Bus.vehicle_id).all()
    if route_id:
        buses = [b for b in buses if current_route_id(b) == route_id]
    return buses
