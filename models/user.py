# models/user.py
from __future__ import annotations

import uuid

from db import db
from sqlalchemy.sql import func
from werkzeug.security import generate_password_hash, check_password_hash


def _uuid() -> str:
    return str(uuid.uuid4())


class User(db.Model):
    __tablename__ = "users"

    id            = db.Column(db.String(36), primary_key=True, default=_uuid)
    email         = db.Column(db.String(254), nullable=False, unique=True, index=True)
    password_hash = db.Column(db.String(255), nullable=True)
    name          = db.Column(db.String(160), nullable=True)
    f_name        = db.Column(db.String(80), nullable=True)
    m_init        = db.Column(db.String(1), nullable=True)
    l_name        = db.Column(db.String(80), nullable=True)
    phone_number  = db.Column(db.String(32), nullable=True)

    created_at    = db.Column(db.DateTime, server_default=func.now(), nullable=False)
    updated_at    = db.Column(db.DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    # ── Role records (additive, zero-or-one each) ────────────────────────────
    student = db.relationship("Student", back_populates="user", uselist=False,
                              cascade="all, delete-orphan")
    staff   = db.relationship("Staff", back_populates="user", uselist=False,
                              cascade="all, delete-orphan")
    admin   = db.relationship("Admin", back_populates="user", uselist=False,
                              foreign_keys="Admin.user_id", cascade="all, delete-orphan")

    favorite_routes = db.relationship("UserFavoriteRoute", back_populates="user",
                                      cascade="all, delete-orphan")

    # ── Helpers ─────────────────────────────────────────────────────────────
    def set_password(self, raw: str) -> None:
        self.password_hash = generate_password_hash(raw)

    def check_password(self, raw: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, raw or "")

    @property
    def display_name(self) -> str:
        fn = (self.f_name or "").strip()
        ln = (self.l_name or "").strip()
        return (self.name or "").strip() or (fn + " " + ln).strip() or self.email

    @property
    def role(self) -> str:
        """Highest role held: admin > staff > student > user."""
        if self.admin is not None:
            return "admin"
        if self.staff is not None:
            return "staff"
        if self.student is not None:
            return "student"
        return "user"


class Admin(db.Model):
    __tablename__ = "admins"

    user_id           = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    managing_admin_id = db.Column(db.String(36), db.ForeignKey("admins.user_id", ondelete="SET NULL"), nullable=True)

    user = db.relationship("User", back_populates="admin", foreign_keys=[user_id])
    managing_admin = db.relationship("Admin", remote_side=[user_id])


class Staff(db.Model):
    __tablename__ = "staff"

    user_id           = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    managing_admin_id = db.Column(db.String(36), db.ForeignKey("admins.user_id", ondelete="SET NULL"), nullable=True)

    user = db.relationship("User", back_populates="staff")
    managing_admin = db.relationship("Admin", foreign_keys=[managing_admin_id])

    # appointments keep their history when the staff record goes away
    managed_appointments = db.relationship("Appointment", back_populates="managed_by_staff")


class Student(db.Model):
    __tablename__ = "students"

    user_id           = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    managing_admin_id = db.Column(db.String(36), db.ForeignKey("admins.user_id", ondelete="SET NULL"), nullable=True)

    user = db.relationship("User", back_populates="student")
    managing_admin = db.relationship("Admin", foreign_keys=[managing_admin_id])

    digital_card = db.relationship("DigitalCard", back_populates="student", uselist=False,
                                   foreign_keys="DigitalCard.user_id", cascade="all, delete-orphan")
    appointments = db.relationship("Appointment", back_populates="student",
                                   cascade="all, delete-orphan")
