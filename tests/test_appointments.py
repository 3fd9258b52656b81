# tests/test_appointments.py
import pytest
from sqlalchemy import update

from db import db
from models.appointment import Appointment, BookBorrowRecord
from models.book import Book
from services import appointments as appt_svc

WHEN = "2026-11-02T10:00:00Z"


@pytest.fixture
def books(client, staff):
    for isbn, title, stock in (("111", "Algorithms", 3), ("222", "Databases", 1)):
        r = client.post(
            "/appointments/books",
            headers=staff.headers,
            json={"isbn": isbn, "title": title, "author": "Someone", "quantityInStock": stock},
        )
        assert r.status_code == 201
    return ("111", "222")


def _current(client, actor, isbn):
    return client.get(f"/appointments/books/{isbn}", headers=actor.headers).get_json()["currentQuantity"]


def _book_appointment(client, actor, staff, details):
    return client.post(
        "/appointments",
        headers=actor.headers,
        json={"appointmentType": "Book", "appointmentDate": WHEN, "staffId": staff.id, "bookDetails": details},
    )


def test_book_appointment_takes_stock(client, student, staff, books):
    r = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 2}, {"isbn": "222", "quantity": 1}])
    assert r.status_code == 201
    body = r.get_json()
    assert body["type"] == "Book"
    assert body["status"] == "Scheduled"
    assert {b["isbn"]: b["quantity"] for b in body["books"]} == {"111": 2, "222": 1}

    assert _current(client, student, "111") == 1
    assert _current(client, student, "222") == 0


def test_insufficient_stock_changes_nothing(app, client, student, staff, books):
    r = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 1}, {"isbn": "222", "quantity": 2}])
    assert r.status_code == 409
    assert r.get_json()["code"] == "insufficient_stock"
    assert r.get_json()["error"] == "Not enough stock for book ISBN: 222"

    assert _current(client, student, "111") == 3
    assert _current(client, student, "222") == 1
    with app.app_context():
        assert db.session.query(Appointment).count() == 0


def test_stock_lost_mid_booking_rolls_back(app, client, student, staff, books, monkeypatch):
    real_take_stock = appt_svc._take_stock

    def take_after_rival_borrow(session, isbn, quantity):
        if isbn == "222":
            # another borrower empties the shelf after the pre-check
            session.execute(update(Book).where(Book.isbn == isbn).values(current_quantity=0))
        return real_take_stock(session, isbn, quantity)

    monkeypatch.setattr(appt_svc, "_take_stock", take_after_rival_borrow)

    r = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 1}, {"isbn": "222", "quantity": 1}])
    assert r.status_code == 409
    assert r.get_json()["code"] == "insufficient_stock"

    assert _current(client, student, "111") == 3
    with app.app_context():
        assert db.session.query(Appointment).count() == 0
        assert db.session.query(BookBorrowRecord).count() == 0


def test_duplicate_isbns_are_merged(client, student, staff, books):
    r = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 1}, {"isbn": "111", "quantity": 1}])
    assert r.status_code == 201
    assert [(b["isbn"], b["quantity"]) for b in r.get_json()["books"]] == [("111", 2)]
    assert _current(client, student, "111") == 1


@pytest.mark.parametrize("details", [[], [{"isbn": "111", "quantity": 0}], [{"quantity": 1}]])
def test_book_details_are_validated(client, student, staff, books, details):
    r = _book_appointment(client, student, staff, details)
    assert r.status_code == 400


def test_unknown_book_and_staff(client, student, staff, books):
    assert _book_appointment(client, student, staff, [{"isbn": "999", "quantity": 1}]).status_code == 404

    r = client.post(
        "/appointments",
        headers=student.headers,
        json={"appointmentType": "Book", "appointmentDate": WHEN, "staffId": student.id,
              "bookDetails": [{"isbn": "111"}]},
    )
    assert r.status_code == 404
    assert r.get_json()["error"] == "Staff member not found."


def test_cancel_restores_stock(client, student, staff, books):
    appt = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 2}, {"isbn": "222", "quantity": 1}]).get_json()

    r = client.post(f"/appointments/{appt['appointmentId']}/cancel", headers=student.headers)
    assert r.status_code == 200
    body = r.get_json()
    assert body["status"] == "Cancelled"
    assert all(b["returnDate"] for b in body["books"])

    assert _current(client, student, "111") == 3
    assert _current(client, student, "222") == 1

    r = client.post(f"/appointments/{appt['appointmentId']}/cancel", headers=student.headers)
    assert r.status_code == 409
    assert r.get_json()["error"] == "Appointment is already Cancelled."
    assert _current(client, student, "111") == 3


def test_no_show_restores_stock(client, student, staff, books):
    appt = _book_appointment(client, student, staff, [{"isbn": "222", "quantity": 1}]).get_json()
    r = client.patch(f"/appointments/{appt['appointmentId']}", headers=staff.headers, json={"status": "NoShow"})
    assert r.status_code == 200
    assert _current(client, student, "222") == 1


def test_student_may_only_cancel(client, student, staff, books):
    appt = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 1}]).get_json()
    url = f"/appointments/{appt['appointmentId']}"

    r = client.patch(url, headers=student.headers, json={"status": "Completed"})
    assert r.status_code == 403
    r = client.patch(url, headers=student.headers, json={"appointmentDate": "2026-11-03T10:00:00Z"})
    assert r.status_code == 403

    r = client.patch(url, headers=student.headers, json={"status": "Cancelled"})
    assert r.status_code == 200


def test_strangers_cannot_touch_appointment(client, student, other_student, staff, books):
    appt = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 1}]).get_json()
    url = f"/appointments/{appt['appointmentId']}"

    assert client.get(url, headers=other_student.headers).status_code == 403
    assert client.post(f"{url}/cancel", headers=other_student.headers).status_code == 403
    assert client.patch(url, headers=other_student.headers, json={"status": "Cancelled"}).status_code == 403


def test_terminal_statuses_do_not_move(client, student, staff, books):
    appt = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 1}]).get_json()
    url = f"/appointments/{appt['appointmentId']}"

    assert client.patch(url, headers=staff.headers, json={"status": "Completed"}).status_code == 200
    # same status again is a no-op
    assert client.patch(url, headers=staff.headers, json={"status": "Completed"}).status_code == 200

    r = client.patch(url, headers=staff.headers, json={"status": "Scheduled"})
    assert r.status_code == 409
    assert r.get_json()["code"] == "invalid_transition"

    r = client.patch(url, headers=staff.headers, json={"status": "Lost"})
    assert r.status_code == 400


def test_sport_appointment_times(client, student, staff):
    base = {"appointmentType": "Sport", "appointmentDate": WHEN, "staffId": staff.id, "sportType": "Tennis"}

    assert client.post("/appointments", headers=student.headers, json=base).status_code == 400
    r = client.post("/appointments", headers=student.headers, json={**base, "startTime": "11:00", "endTime": "10:00"})
    assert r.status_code == 400

    r = client.post("/appointments", headers=student.headers, json={**base, "startTime": "10:00", "endTime": "11:30"})
    assert r.status_code == 201
    body = r.get_json()
    assert body["type"] == "Sport"
    assert (body["sportType"], body["startTime"], body["endTime"]) == ("Tennis", "10:00", "11:30")

    r = client.patch(f"/appointments/{body['appointmentId']}", headers=staff.headers,
                     json={"startTime": "12:00", "endTime": "13:00"})
    assert r.status_code == 200
    assert r.get_json()["startTime"] == "12:00"


def test_health_appointment_needs_type(client, student, staff):
    r = client.post("/appointments", headers=student.headers, json={
        "appointmentType": "Health", "appointmentDate": WHEN, "staffId": staff.id,
        "startTime": "09:00", "endTime": "09:30",
    })
    assert r.status_code == 400

    r = client.post("/appointments", headers=student.headers, json={
        "appointmentType": "Health", "appointmentDate": WHEN, "staffId": staff.id,
        "healthType": "Dental", "startTime": "09:00", "endTime": "09:30",
    })
    assert r.status_code == 201
    assert r.get_json()["type"] == "Health"


def test_listing(client, student, other_student, staff, books):
    _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 1}])
    _book_appointment(client, other_student, staff, [{"isbn": "111", "quantity": 1}])

    mine = client.get("/appointments/mine", headers=student.headers).get_json()
    assert mine["totalCount"] == 1

    assert client.get("/appointments", headers=student.headers).status_code == 403

    everything = client.get("/appointments?type=Book&status=Scheduled", headers=staff.headers).get_json()
    assert everything["totalCount"] == 2
    assert client.get("/appointments?type=Sport", headers=staff.headers).get_json()["totalCount"] == 0

    page = client.get("/appointments?take=1", headers=staff.headers).get_json()
    assert page["totalCount"] == 2
    assert len(page["items"]) == 1


def test_return_books(client, student, staff, books):
    appt = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 2}]).get_json()
    url = f"/appointments/{appt['appointmentId']}/return-books"

    assert client.post(url, headers=student.headers).status_code == 403
    r = client.post(url, headers=staff.headers)
    assert r.status_code == 200
    assert _current(client, student, "111") == 3

    assert client.post(url, headers=staff.headers).status_code == 409


# ── Books ───────────────────────────────────────────────────────────────────

def test_book_crud_rules(client, student, staff, admin, books):
    r = client.post("/appointments/books", headers=staff.headers,
                    json={"isbn": "111", "title": "Again", "quantityInStock": 1})
    assert r.status_code == 409
    assert r.get_json()["code"] == "duplicate"

    assert client.post("/appointments/books", headers=student.headers,
                       json={"isbn": "333", "title": "X", "quantityInStock": 1}).status_code == 403

    r = client.patch("/appointments/books/111", headers=staff.headers, json={"currentQuantity": 5})
    assert r.status_code == 400

    r = client.patch("/appointments/books/111", headers=staff.headers, json={"quantityInStock": 5, "title": "Algorithms 2e"})
    assert r.status_code == 200
    assert r.get_json()["quantityInStock"] == 5

    found = client.get("/appointments/books?query=algo", headers=student.headers).get_json()
    assert [b["isbn"] for b in found["items"]] == ["111"]


@pytest.mark.parametrize("change", [
    {"currentQuantity": 3},
    {"quantityInStock": 1, "currentQuantity": 1},
    {"quantityInStock": 2},
])
def test_book_edit_leaves_room_for_copies_on_loan(client, student, staff, books, change):
    appt = _book_appointment(client, student, staff, [{"isbn": "111", "quantity": 2}]).get_json()

    r = client.patch("/appointments/books/111", headers=staff.headers, json=change)
    assert r.status_code == 400
    assert r.get_json()["code"] == "validation_error"

    r = client.post(f"/appointments/{appt['appointmentId']}/cancel", headers=student.headers)
    assert r.status_code == 200
    book = client.get("/appointments/books/111", headers=student.headers).get_json()
    assert (book["currentQuantity"], book["quantityInStock"]) == (3, 3)


def test_only_available_filter(client, student, staff, books):
    _book_appointment(client, student, staff, [{"isbn": "222", "quantity": 1}])
    found = client.get("/appointments/books?onlyAvailable=true", headers=student.headers).get_json()
    assert [b["isbn"] for b in found["items"]] == ["111"]


def test_book_with_active_borrow_cannot_be_deleted(client, student, staff, admin, books):
    appt = _book_appointment(client, student, staff, [{"isbn": "222", "quantity": 1}]).get_json()

    assert client.delete("/appointments/books/222", headers=staff.headers).status_code == 403
    assert client.delete("/appointments/books/222", headers=admin.headers).status_code == 409

    client.post(f"/appointments/{appt['appointmentId']}/cancel", headers=student.headers)
    assert client.delete("/appointments/books/222", headers=admin.headers).status_code == 200
    assert client.get("/appointments/books/222", headers=student.headers).status_code == 404
