# models/appointment.py
from __future__ import annotations

import enum
import uuid
from datetime import datetime

from db import db


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    NO_SHOW   = "NoShow"


class AppointmentType(str, enum.Enum):
    BOOK   = "Book"
    SPORT  = "Sport"
    HEALTH = "Health"


class Appointment(db.Model):
    __tablename__ = "appointments"

    appointment_id      = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    taken_by_student_id = db.Column(db.String(36), db.ForeignKey("students.user_id", ondelete="CASCADE"),
                                    nullable=False, index=True)
    managed_by_staff_id = db.Column(db.String(36), db.ForeignKey("staff.user_id", ondelete="SET NULL"),
                                    nullable=True, index=True)
    appointment_date    = db.Column(db.DateTime, nullable=False, index=True)
    appointment_status  = db.Column(
        db.Enum(AppointmentStatus, name="appointment_status",
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    created_at          = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    student          = db.relationship("Student", back_populates="appointments")
    managed_by_staff = db.relationship("Staff", back_populates="managed_appointments")

    # exactly one of these is populated, by convention
    sport_appointment  = db.relationship("SportAppointment", back_populates="appointment",
                                         uselist=False, cascade="all, delete-orphan")
    health_appointment = db.relationship("HealthAppointment", back_populates="appointment",
                                         uselist=False, cascade="all, delete-orphan")
    borrowed_books     = db.relationship("BookBorrowRecord", back_populates="appointment",
                                         cascade="all, delete-orphan")

    @property
    def appointment_type(self) -> AppointmentType | None:
        if self.borrowed_books:
            return AppointmentType.BOOK
        if self.sport_appointment is not None:
            return AppointmentType.SPORT
        if self.health_appointment is not None:
            return AppointmentType.HEALTH
        return None


class SportAppointment(db.Model):
    __tablename__ = "sport_appointments"

    appointment_id = db.Column(db.String(36), db.ForeignKey("appointments.appointment_id", ondelete="CASCADE"),
                               primary_key=True)
    sport_type     = db.Column(db.String(64), nullable=False)
    start_time     = db.Column(db.Time, nullable=False)
    end_time       = db.Column(db.Time, nullable=False)

    appointment = db.relationship("Appointment", back_populates="sport_appointment")


class HealthAppointment(db.Model):
    __tablename__ = "health_appointments"

    appointment_id = db.Column(db.String(36), db.ForeignKey("appointments.appointment_id", ondelete="CASCADE"),
                               primary_key=True)
    health_type    = db.Column(db.String(64), nullable=False)
    start_time     = db.Column(db.Time, nullable=False)
    end_time       = db.Column(db.Time, nullable=False)

    appointment = db.relationship("Appointment", back_populates="health_appointment")


class BookBorrowRecord(db.Model):
    __tablename__ = "book_borrow_records"

    appointment_id  = db.Column(db.String(36), db.ForeignKey("appointments.appointment_id", ondelete="CASCADE"),
                                primary_key=True)
    isbn            = db.Column(db.String(20), db.ForeignKey("books.isbn", ondelete="CASCADE"), primary_key=True)
    borrow_quantity = db.Column(db.Integer, nullable=False, default=1)
    borrow_date     = db.Column(db.DateTime, nullable=False)
    return_date     = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint("borrow_quantity > 0", name="ck_book_borrow_records_qty_positive"),
    )

    appointment = db.relationship("Appointment", back_populates="borrowed_books")
    book        = db.relationship("Book", back_populates="borrow_records")
