# models/route.py
from __future__ import annotations

import uuid

from db import db


def _uuid() -> str:
    return str(uuid.uuid4())


class Route(db.Model):
    __tablename__ = "routes"

    route_id   = db.Column(db.String(36), primary_key=True, default=_uuid)
    route_name = db.Column(db.String(128), nullable=False)

    route_stations = db.relationship(
        "RouteStation",
        back_populates="route",
        order_by="RouteStation.stop_order",
        cascade="all, delete-orphan",
    )
    departure_times = db.relationship(
        "RouteDepartureTime",
        back_populates="route",
        order_by="RouteDepartureTime.departure_time",
        cascade="all, delete-orphan",
    )
    favorites = db.relationship("UserFavoriteRoute", back_populates="route", cascade="all, delete-orphan")
    bus_drives = db.relationship("BusDrivesRoute", back_populates="route", cascade="all, delete-orphan")


class Station(db.Model):
    __tablename__ = "stations"

    station_id        = db.Column(db.String(36), primary_key=True, default=_uuid)
    station_name      = db.Column(db.String(128), nullable=False)
    station_latitude  = db.Column(db.Numeric(9, 6), nullable=False)
    station_longitude = db.Column(db.Numeric(9, 6), nullable=False)

    # no cascade: stations in use must be detached from their routes first
    route_stations = db.relationship("RouteStation", back_populates="station")


class RouteStation(db.Model):
    __tablename__ = "route_stations"

    route_id   = db.Column(db.String(36), db.ForeignKey("routes.route_id", ondelete="CASCADE"), primary_key=True)
    station_id = db.Column(db.String(36), db.ForeignKey("stations.station_id"), primary_key=True)
    stop_order = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("route_id", "stop_order", name="uq_route_stations_stop_order"),
        db.CheckConstraint("stop_order > 0", name="ck_route_stations_stop_order_positive"),
    )

    route   = db.relationship("Route", back_populates="route_stations")
    station = db.relationship("Station", back_populates="route_stations")


class RouteDepartureTime(db.Model):
    __tablename__ = "route_departure_times"

    id             = db.Column(db.Integer, primary_key=True, autoincrement=True)
    route_id       = db.Column(db.String(36), db.ForeignKey("routes.route_id", ondelete="CASCADE"),
                               nullable=False, index=True)
    departure_time = db.Column(db.Time, nullable=False)

    route = db.relationship("Route", back_populates="departure_times")


class UserFavoriteRoute(db.Model):
    __tablename__ = "favorite_routes"

    user_id     = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    route_id    = db.Column(db.String(36), db.ForeignKey("routes.route_id", ondelete="CASCADE"), primary_key=True)
    is_favorite = db.Column(db.Boolean, nullable=False, default=True)

    user  = db.relationship("User", back_populates="favorite_routes")
    route = db.relationship("Route", back_populates="favorites")
