# models/bus.py
from __future__ import annotations
from datetime import datetime

from db import db

class Bus(db.Model):
    __tablename__ = "buses"

    vehicle_id       = db.Column(db.String(64), primary_key=True)
    live_latitude    = db.Column(db.Numeric(9, 6), nullable=True)
    live_longitude   = db.Column(db.Numeric(9, 6), nullable=True)
    last_update_time = db.Column(db.DateTime, nullable=True, index=True)

    drives = db.relationship(
        "BusDrivesRoute",
        back_populates="bus",
        order_by="BusDrivesRoute.drive_timestamp.desc()",
        cascade="all, delete-orphan",
    )


class BusDrivesRoute(db.Model):
    __tablename__ = "bus_drives_routes"

    id              = db.Column(db.Integer, primary_key=True, autoincrement=True)
    vehicle_id      = db.Column(db.String(64), db.ForeignKey("buses.vehicle_id", ondelete="CASCADE"), nullable=False)
    route_id        = db.Column(db.String(36), db.ForeignKey("routes.route_id", ondelete="CASCADE"), nullable=False)
    drive_timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    bus   = db.relationship("Bus", back_populates="drives")
    route = db.relationship("Route", back_populates="bus_drives")
