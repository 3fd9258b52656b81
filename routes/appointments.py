# routes/appointments.py
from __future__ import annotations

from flask import Blueprint, request, jsonify

from db import db
from auth_guard import require_role, current_identity
from models.appointment import Appointment, BookBorrowRecord
from models.book import Book
from services import appointments as appt_svc
from services import books as book_svc
from services.errors import AuthorizationError, NotFoundError, ValidationError
from utils.validate import (
    _as_bool,
    hhmm,
    iso,
    optional_str,
    paging,
    parse_datetime,
    parse_hhmm,
    parse_int,
    required_str,
)

appointments_bp = Blueprint("appointments", __name__, url_prefix="/appointments")


# ──────────────────────────────────────────────────────────────────────────────
# JSON shapes

def book_json(b: Book) -> dict:
    return {
        "isbn": b.isbn,
        "title": b.title,
        "author": b.author,
        "quantityInStock": b.quantity_in_stock,
        "currentQuantity": b.current_quantity,
    }


def _borrow_json(rec: BookBorrowRecord) -> dict:
    return {
        "isbn": rec.isbn,
        "title": rec.book.title if rec.book else None,
        "quantity": rec.borrow_quantity,
        "borrowDate": iso(rec.borrow_date),
        "returnDate": iso(rec.return_date),
    }


def appointment_json(a: Appointment) -> dict:
    atype = a.appointment_type
    out = {
        "appointmentId": a.appointment_id,
        "type": atype.value if atype else None,
        "status": a.appointment_status.value,
        "appointmentDate": iso(a.appointment_date),
        "studentId": a.taken_by_student_id,
        "staffId": a.managed_by_staff_id,
        "staffName": a.managed_by_staff.user.display_name if a.managed_by_staff else None,
        "createdAt": iso(a.created_at),
    }
    if a.sport_appointment is not None:
        d = a.sport_appointment
        out.update(sportType=d.sport_type, startTime=hhmm(d.start_time), endTime=hhmm(d.end_time))
    elif a.health_appointment is not None:
        d = a.health_appointment
        out.update(healthType=d.health_type, startTime=hhmm(d.start_time), endTime=hhmm(d.end_time))
    else:
        out["books"] = [_borrow_json(r) for r in a.borrowed_books]
    return out


def _page_json(items, total):
    return jsonify(items=[appointment_json(a) for a in items], totalCount=total)


# ──────────────────────────────────────────────────────────────────────────────
# Input helpers

def _opt_time(data: dict, key: str):
    return parse_hhmm(data[key], key) if data.get(key) is not None else None


def _book_details(data: dict):
    raw = data.get("bookDetails")
    if raw is None:
        return None
    if not isinstance(raw, list) or not all(isinstance(d, dict) for d in raw):
        raise ValidationError("bookDetails must be a list of { isbn, quantity }")
    return raw


# ──────────────────────────────────────────────────────────────────────────────
# Appointments

@appointments_bp.route("", methods=["POST"])
@require_role()
def create_appointment():
    """
    Body:
      { appointmentType: "Book"|"Sport"|"Health", appointmentDate, staffId,
        bookDetails?: [{isbn, quantity}], sportType?, healthType?, startTime?, endTime? }
    """
    data = request.get_json(silent=True) or {}
    appt = appt_svc.create_appointment(
        db.session,
        current_identity(),
        appointment_type=required_str(data, "appointmentType"),
        appointment_date=parse_datetime(required_str(data, "appointmentDate"), "appointmentDate"),
        staff_id=required_str(data, "staffId", max_len=36),
        book_details=_book_details(data),
        sport_type=optional_str(data, "sportType", max_len=64),
        health_type=optional_str(data, "healthType", max_len=64),
        start_time=_opt_time(data, "startTime"),
        end_time=_opt_time(data, "endTime"),
    )
    return jsonify(appointment_json(appt)), 201


@appointments_bp.route("/mine", methods=["GET"])
@require_role()
def list_my_appointments():
    take, skip = paging(request.args)
    items, total = appt_svc.list_my_appointments(
        db.session,
        current_identity(),
        status=request.args.get("status") or None,
        take=take,
        skip=skip,
    )
    return _page_json(items, total), 200


@appointments_bp.route("", methods=["GET"])
@require_role("staff")
def admin_list_all_appointments():
    """?status=&type=&studentId=&staffId=&take=&skip="""
    take, skip = paging(request.args)
    items, total = appt_svc.list_all_appointments(
        db.session,
        status=request.args.get("status") or None,
        appointment_type=request.args.get("type") or None,
        student_id=request.args.get("studentId") or None,
        staff_id=request.args.get("staffId") or None,
        take=take,
        skip=skip,
    )
    return _page_json(items, total), 200


@appointments_bp.route("/<appointment_id>", methods=["GET"])
@require_role()
def get_appointment(appointment_id: str):
    appt = db.session.get(Appointment, appointment_id)
    if appt is None:
        raise NotFoundError("Appointment not found.")
    ident = current_identity()
    if not (ident.is_privileged or appt.taken_by_student_id == ident.user_id
            or appt.managed_by_staff_id == ident.user_id):
        raise AuthorizationError("Not authorized to view this appointment.")
    return jsonify(appointment_json(appt)), 200


@appointments_bp.route("/<appointment_id>", methods=["PATCH"])
@require_role()
def update_appointment(appointment_id: str):
    """Body: { status?, appointmentDate?, staffId?, startTime?, endTime? }"""
    data = request.get_json(silent=True) or {}
    appt = appt_svc.update_appointment(
        db.session,
        current_identity(),
        appointment_id,
        status=optional_str(data, "status"),
        appointment_date=(
            parse_datetime(data["appointmentDate"], "appointmentDate")
            if data.get("appointmentDate") is not None else None
        ),
        staff_id=optional_str(data, "staffId", max_len=36),
        start_time=_opt_time(data, "startTime"),
        end_time=_opt_time(data, "endTime"),
    )
    return jsonify(appointment_json(appt)), 200


@appointments_bp.route("/<appointment_id>/cancel", methods=["POST"])
@require_role()
def cancel_appointment(appointment_id: str):
    appt = appt_svc.cancel_appointment(db.session, current_identity(), appointment_id)
    return jsonify(appointment_json(appt)), 200


@appointments_bp.route("/<appointment_id>/return-books", methods=["POST"])
@require_role("staff")
def return_books(appointment_id: str):
    appt = appt_svc.return_books(db.session, current_identity(), appointment_id)
    return jsonify(appointment_json(appt)), 200


# ──────────────────────────────────────────────────────────────────────────────
# Books

@appointments_bp.route("/books", methods=["GET"])
@require_role()
def list_books():
    """?query=&onlyAvailable=true&take=&skip="""
    take, skip = paging(request.args)
    items, total = book_svc.search_books(
        db.session,
        query=(request.args.get("query") or "").strip() or None,
        only_available=_as_bool(request.args.get("onlyAvailable")),
        take=take,
        skip=skip,
    )
    return jsonify(items=[book_json(b) for b in items], totalCount=total), 200


@appointments_bp.route("/books/<isbn>", methods=["GET"])
@require_role()
def get_book(isbn: str):
    return jsonify(book_json(book_svc.get_book(db.session, isbn))), 200


@appointments_bp.route("/books", methods=["POST"])
@require_role("staff")
def create_book():
    """Body: { isbn, title, author?, quantityInStock }"""
    data = request.get_json(silent=True) or {}
    book = book_svc.create_book(
        db.session,
        isbn=required_str(data, "isbn", max_len=20),
        title=required_str(data, "title", max_len=255),
        author=optional_str(data, "author", max_len=255),
        quantity_in_stock=parse_int(data.get("quantityInStock"), "quantityInStock", minimum=0),
    )
    return jsonify(book_json(book)), 201


@appointments_bp.route("/books/<isbn>", methods=["PATCH"])
@require_role("staff")
def update_book(isbn: str):
    data = request.get_json(silent=True) or {}
    stock = data.get("quantityInStock")
    current = data.get("currentQuantity")
    book = book_svc.update_book(
        db.session,
        isbn,
        title=optional_str(data, "title", max_len=255),
        author=optional_str(data, "author", max_len=255),
        quantity_in_stock=parse_int(stock, "quantityInStock", minimum=0) if stock is not None else None,
        current_quantity=parse_int(current, "currentQuantity", minimum=0) if current is not None else None,
    )
    return jsonify(book_json(book)), 200


@appointments_bp.route("/books/<isbn>", methods=["DELETE"])
@require_role("admin")
def delete_book(isbn: str):
    book_svc.delete_book(db.session, isbn)
    return jsonify(message="Book deleted."), 200
