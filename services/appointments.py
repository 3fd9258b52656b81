# services/appointments.py
"""
Appointment booking transactions.

Public API (all take an explicit session and caller Identity):
  - create_appointment(session, identity, *, appointment_type, appointment_date, staff_id, ...)
  - update_appointment(session, identity, appointment_id, *, status=None, ...)
  - cancel_appointment(session, identity, appointment_id)
  - return_books(session, identity, appointment_id)
  - list_my_appointments(session, identity, *, status=None, take, skip)
  - list_all_appointments(session, *, status=None, appointment_type=None, ...)

Book stock only moves through SQL-side increments/decrements; a borrow that
would push current_quantity below zero aborts the whole booking.
"""
from __future__ import annotations

from datetime import datetime, time
from typing import Iterable, Optional, Tuple, List

from flask import current_app
from sqlalchemy import update
from sqlalchemy.orm import selectinload

from models.appointment import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    BookBorrowRecord,
    HealthAppointment,
    SportAppointment,
)
from models.book import Book
from models.user import Staff
from services.errors import (
    AuthorizationError,
    BusinessRuleError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from services.identity import Identity
from services.tx import atomic, now_utc
from services.users import ensure_student

# Scheduled is the only status that may still move; the rest are final.
ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
}

# Statuses that give borrowed copies back to the shelf.
RELEASING_STATUSES = {AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}


# ---------- small utils ----------

def coerce_status(value) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in AppointmentStatus)
        raise ValidationError(f"status must be one of: {allowed}")


def coerce_type(value) -> AppointmentType:
    try:
        return AppointmentType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in AppointmentType)
        raise ValidationError(f"appointmentType must be one of: {allowed}")


def _merge_book_details(book_details: Optional[Iterable[dict]]) -> dict[str, int]:
    """[{isbn, quantity}, ...] → {isbn: total_quantity}, preserving first-seen order."""
    merged: dict[str, int] = {}
    for d in book_details or []:
        isbn = str(d.get("isbn") or "").strip()
        if not isbn:
            raise ValidationError("Every book entry needs an isbn.")
        qty = d.get("quantity", 1)
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise ValidationError(f"quantity for ISBN {isbn} must be a positive integer.")
        merged[isbn] = merged.get(isbn, 0) + qty
    return merged


def _check_times(start_time: Optional[time], end_time: Optional[time]) -> None:
    if start_time is None or end_time is None:
        raise ValidationError("Start time and end time are required for sport/health appointments.")
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time")


def _require_staff(session, staff_id: str) -> Staff:
    staff = session.get(Staff, staff_id) if staff_id else None
    if staff is None:
        raise NotFoundError("Staff member not found.")
    return staff


def _get_appointment(session, appointment_id: str) -> Appointment:
    appt = session.get(Appointment, appointment_id)
    if appt is None:
        raise NotFoundError("Appointment not found.")
    return appt


# ---------- stock movements (no commit) ----------

def _take_stock(session, isbn: str, quantity: int) -> None:
    res = session.execute(
        update(Book)
        .where(Book.isbn == isbn, Book.current_quantity >= quantity)
        .values(current_quantity=Book.current_quantity - quantity)
    )
    if res.rowcount != 1:
        raise InsufficientStockError(f"Not enough stock for book ISBN: {isbn}")


def _release_borrowed_books(session, appt: Appointment, when: datetime) -> int:
    """Put every open borrow of the appointment back on the shelf. Returns copies restored."""
    restored = 0
    for rec in appt.borrowed_books:
        if rec.return_date is not None:
            continue
        session.execute(
            update(Book)
            .where(Book.isbn == rec.isbn)
            .values(current_quantity=Book.current_quantity + rec.borrow_quantity)
        )
        rec.return_date = when
        restored += rec.borrow_quantity
    return restored


# ---------- public API ----------

def create_appointment(
    session,
    identity: Identity,
    *,
    appointment_type,
    appointment_date: datetime,
    staff_id: str,
    book_details: Optional[List[dict]] = None,
    sport_type: Optional[str] = None,
    health_type: Optional[str] = None,
    start_time: Optional[time] = None,
    end_time: Optional[time] = None,
) -> Appointment:
    """
    Book an appointment for the calling student.

    Creates the Appointment (Scheduled) plus exactly one subtype: a sport or
    health detail row, or one BookBorrowRecord per ISBN with the stock taken
    off the shelf. Everything commits together or not at all.
    """
    atype = coerce_type(appointment_type)

    # 1) Shape checks (no store access)
    requested: dict[str, int] = {}
    if atype is AppointmentType.BOOK:
        requested = _merge_book_details(book_details)
        if not requested:
            raise ValidationError("Book details (ISBN) are required for book appointments.")
    else:
        _check_times(start_time, end_time)
        if atype is AppointmentType.SPORT and not (sport_type or "").strip():
            raise ValidationError("Sport type is required for sport appointments.")
        if atype is AppointmentType.HEALTH and not (health_type or "").strip():
            raise ValidationError("Health type is required for health appointments.")

    # 2) Referenced rows + stock, still before any write
    _require_staff(session, staff_id)
    for isbn, qty in requested.items():
        book = session.get(Book, isbn)
        if book is None:
            raise NotFoundError(f"Book not found: {isbn}")
        if book.current_quantity < qty:
            raise InsufficientStockError(f"Not enough stock for book ISBN: {isbn}")

    # 3) Writes
    with atomic(session, "appointments"):
        ensure_student(session, identity.user_id)
        appt = Appointment(
            taken_by_student_id=identity.user_id,
            managed_by_staff_id=staff_id,
            appointment_date=appointment_date,
            appointment_status=AppointmentStatus.SCHEDULED,
        )
        session.add(appt)
        session.flush()

        if atype is AppointmentType.BOOK:
            for isbn, qty in requested.items():
                # conditional decrement; a concurrent borrower can still win the race
                _take_stock(session, isbn, qty)
                session.add(BookBorrowRecord(
                    appointment_id=appt.appointment_id,
                    isbn=isbn,
                    borrow_quantity=qty,
                    borrow_date=appointment_date,
                ))
        elif atype is AppointmentType.SPORT:
            session.add(SportAppointment(
                appointment_id=appt.appointment_id,
                sport_type=sport_type.strip(),
                start_time=start_time,
                end_time=end_time,
            ))
        else:
            session.add(HealthAppointment(
                appointment_id=appt.appointment_id,
                health_type=health_type.strip(),
                start_time=start_time,
                end_time=end_time,
            ))
        appointment_id = appt.appointment_id

    current_app.logger.info(
        "[appointments] booked id=%s type=%s student=%s staff=%s books=%s",
        appointment_id, atype.value, identity.user_id, staff_id, requested or "-",
    )
    return session.get(Appointment, appointment_id)


def update_appointment(
    session,
    identity: Identity,
    appointment_id: str,
    *,
    status=None,
    appointment_date: Optional[datetime] = None,
    staff_id: Optional[str] = None,
    start_time: Optional[time] = None,
    end_time: Optional[time] = None,
) -> Appointment:
    """
    Staff, admins and the managing staff member may change anything; the
    owning student may only move the status to Cancelled.
    """
    appt = _get_appointment(session, appointment_id)
    new_status = coerce_status(status) if status is not None else None

    is_owner = appt.taken_by_student_id == identity.user_id
    can_edit = identity.is_privileged or appt.managed_by_staff_id == identity.user_id

    if not can_edit and not is_owner:
        raise AuthorizationError("Not authorized to update this appointment.")
    if not can_edit:
        if new_status is not None and new_status is not AppointmentStatus.CANCELLED:
            raise AuthorizationError("Students can only cancel their own appointments.")
        if any(v is not None for v in (appointment_date, staff_id, start_time, end_time)):
            raise AuthorizationError(
                "Students can only update the status to 'Cancelled'. Other changes are not permitted."
            )

    times_given = start_time is not None or end_time is not None
    if times_given:
        _check_times(start_time, end_time)
        if appt.sport_appointment is None and appt.health_appointment is None:
            raise ValidationError("Times can only be changed on sport or health appointments.")

    current = appt.appointment_status
    status_changes = new_status is not None and new_status is not current
    if status_changes and new_status not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(
            f"Cannot change appointment status from {current.value} to {new_status.value}."
        )

    if staff_id is not None:
        _require_staff(session, staff_id)

    with atomic(session, "appointments"):
        restored = 0
        if status_changes:
            appt.appointment_status = new_status
            if new_status in RELEASING_STATUSES:
                restored = _release_borrowed_books(session, appt, now_utc())
        if appointment_date is not None:
            appt.appointment_date = appointment_date
        if staff_id is not None:
            appt.managed_by_staff_id = staff_id
        if times_given:
            detail = appt.sport_appointment or appt.health_appointment
            detail.start_time = start_time
            detail.end_time = end_time

    current_app.logger.info(
        "[appointments] updated id=%s by=%s status=%s restored_copies=%s",
        appointment_id, identity.user_id, appt.appointment_status.value, restored,
    )
    return appt


def cancel_appointment(session, identity: Identity, appointment_id: str) -> Appointment:
    appt = _get_appointment(session, appointment_id)

    is_owner = appt.taken_by_student_id == identity.user_id
    is_managing_staff = appt.managed_by_staff_id == identity.user_id
    if not (is_owner or identity.is_admin or is_managing_staff):
        raise AuthorizationError("Not authorized to cancel this appointment.")

    if appt.appointment_status in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED):
        raise InvalidTransitionError(f"Appointment is already {appt.appointment_status.value}.")

    return update_appointment(session, identity, appointment_id, status=AppointmentStatus.CANCELLED)


def return_books(session, identity: Identity, appointment_id: str) -> Appointment:
    """Close every open borrow of a book appointment and restock the copies."""
    appt = _get_appointment(session, appointment_id)
    if not (identity.is_privileged or appt.managed_by_staff_id == identity.user_id):
        raise AuthorizationError("Only staff can record book returns.")
    if not appt.borrowed_books:
        raise BusinessRuleError("Appointment has no borrowed books.")
    if all(rec.return_date is not None for rec in appt.borrowed_books):
        raise BusinessRuleError("All books for this appointment are already returned.")

    with atomic(session, "appointments"):
        restored = _release_borrowed_books(session, appt, now_utc())

    current_app.logger.info("[appointments] books returned id=%s copies=%s", appointment_id, restored)
    return appt


def _with_details(q):
    return q.options(
        selectinload(Appointment.borrowed_books).selectinload(BookBorrowRecord.book),
        selectinload(Appointment.sport_appointment),
        selectinload(Appointment.health_appointment),
        selectinload(Appointment.managed_by_staff).selectinload(Staff.user),
    )


def _filter_type(q, atype: AppointmentType):
    if atype is AppointmentType.BOOK:
        return q.filter(Appointment.borrowed_books.any())
    if atype is AppointmentType.SPORT:
        return q.filter(Appointment.sport_appointment.has())
    return q.filter(Appointment.health_appointment.has())


def list_my_appointments(session, identity: Identity, *, status=None, take: int, skip: int = 0
                         ) -> Tuple[List[Appointment], int]:
    q = session.query(Appointment).filter(Appointment.taken_by_student_id == identity.user_id)
    if status is not None:
        q = q.filter(Appointment.appointment_status == coerce_status(status))
    total = q.count()
    items = (
        _with_details(q)
        .order_by(Appointment.appointment_date.desc(), Appointment.appointment_id)
        .offset(skip)
        .limit(take)
        .all()
    )
    return items, total


def list_all_appointments(
    session,
    *,
    status=None,
    appointment_type=None,
    student_id: Optional[str] = None,
    staff_id: Optional[str] = None,
    take: int,
    skip: int = 0,
) -> Tuple[List[Appointment], int]:
    q = session.query(Appointment)
    if status is not None:
        q = q.filter(Appointment.appointment_status == coerce_status(status))
    if appointment_type is not None:
        q = _filter_type(q, coerce_type(appointment_type))
    if student_id:
        q = q.filter(Appointment.taken_by_student_id == student_id)
    if staff_id:
        q = q.filter(Appointment.managed_by_staff_id == staff_id)
    total = q.count()
    items = (
        _with_details(q)
        .order_by(Appointment.appointment_date.desc(), Appointment.appointment_id)
        .offset(skip)
        .limit(take)
        .all()
    )
    return items, total
