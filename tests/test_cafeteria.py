# tests/test_cafeteria.py
import re
from datetime import timedelta

import pytest
from sqlalchemy import update

from db import db
from models.menu import Sale
from models.wallet import DigitalCard, QRCode
from services import cafeteria as cafe_svc
from services.tx import now_utc

CARD_NO = re.compile(r"^CARD-[0-9A-F]{8}-[0-9A-F]{6}$")


@pytest.fixture
def menu(client, staff):
    """A 7.50 menu with two dishes; returns the menu JSON."""
    soup = client.post("/cafeteria/dishes", headers=staff.headers, json={"dishName": "Soup", "calories": 120}).get_json()
    rice = client.post("/cafeteria/dishes", headers=staff.headers, json={"dishName": "Rice"}).get_json()
    r = client.post(
        "/cafeteria/menus",
        headers=staff.headers,
        json={"menuName": "Lunch A", "price": "7.50", "dishIds": [soup["dishId"], rice["dishId"]]},
    )
    assert r.status_code == 201
    return r.get_json()


def _deposit(client, actor, amount):
    r = client.post("/cafeteria/card/deposits", headers=actor.headers, json={"amount": amount})
    assert r.status_code == 201, r.get_json()
    return r.get_json()


def _new_qr(client, actor, menu_id=None):
    r = client.post("/cafeteria/qr-codes", headers=actor.headers, json={"menuId": menu_id} if menu_id else {})
    assert r.status_code == 201, r.get_json()
    return r.get_json()


def _pay(client, staff, qr_id, menu_id):
    return client.post("/cafeteria/qr-codes/pay", headers=staff.headers, json={"qrId": qr_id, "menuId": menu_id})


def _balance(client, actor):
    return client.get("/cafeteria/card", headers=actor.headers).get_json()["balance"]


# ── Card & deposits ─────────────────────────────────────────────────────────

def test_card_is_created_once(app, client, make_user):
    newcomer = make_user("fresh@uni.edu")  # no role records yet

    first = client.get("/cafeteria/card", headers=newcomer.headers).get_json()
    second = client.get("/cafeteria/card", headers=newcomer.headers).get_json()

    assert first["cardNo"] == second["cardNo"]
    assert CARD_NO.match(first["cardNo"])
    assert first["balance"] == "0.00"
    with app.app_context():
        assert db.session.query(DigitalCard).filter_by(user_id=newcomer.id).count() == 1

    me = client.get("/user/me", headers=newcomer.headers).get_json()
    assert me["isStudent"] is True


def test_deposit_updates_balance_and_history(client, student):
    body = _deposit(client, student, "20.00")
    assert body["card"]["balance"] == "20.00"
    assert body["card"]["depositMoneyAmount"] == "20.00"
    assert body["transaction"]["amount"] == "20.00"

    _deposit(client, student, 5)
    card = client.get("/cafeteria/card", headers=student.headers).get_json()
    assert card["balance"] == "25.00"
    assert card["depositMoneyAmount"] == "25.00"

    txs = client.get("/cafeteria/card/transactions", headers=student.headers).get_json()["items"]
    assert sorted(t["amount"] for t in txs) == ["20.00", "5.00"]


@pytest.mark.parametrize("amount", [0, -5, "1.005", "abc", None])
def test_deposit_rejects_bad_amounts(client, student, amount):
    r = client.post("/cafeteria/card/deposits", headers=student.headers, json={"amount": amount})
    assert r.status_code == 400
    assert r.get_json()["code"] == "validation_error"


# ── QR payments ─────────────────────────────────────────────────────────────

def test_qr_payment_debits_and_counts_sale(client, student, staff, menu):
    _deposit(client, student, "20.00")
    qr = _new_qr(client, student, menu["menuId"])
    assert qr["isUsed"] is False
    assert qr["token"]

    r = _pay(client, staff, qr["qrId"], menu["menuId"])
    assert r.status_code == 200
    body = r.get_json()
    assert body["paymentStatus"] == "success"
    assert body["balance"] == "12.50"
    assert body["sale"]["numSold"] == 1
    assert body["qrCode"]["isUsed"] is True

    second_qr = _new_qr(client, student)
    body = _pay(client, staff, second_qr["qrId"], menu["menuId"]).get_json()
    assert body["balance"] == "5.00"
    assert body["sale"]["numSold"] == 2


def test_qr_cannot_be_redeemed_twice(app, client, student, staff, menu):
    _deposit(client, student, "20.00")
    qr = _new_qr(client, student)
    assert _pay(client, staff, qr["qrId"], menu["menuId"]).status_code == 200

    r = _pay(client, staff, qr["qrId"], menu["menuId"])
    assert r.status_code == 409
    assert r.get_json()["code"] == "qr_already_used"

    assert _balance(client, student) == "12.50"
    with app.app_context():
        assert db.session.query(Sale).one().num_sold == 1


def test_redemption_race_rolls_back_debit(app, client, student, staff, menu, monkeypatch):
    _deposit(client, student, "20.00")
    qr = _new_qr(client, student)
    real_stamp = cafe_svc._stamp_redeemed_no_commit

    def stamp_after_rival_cashier(session, qr_id, menu_id, when):
        # another till redeems the code between the checks and the stamp
        session.execute(update(QRCode).where(QRCode.qr_id == qr_id).values(pays_for_date=when))
        return real_stamp(session, qr_id, menu_id, when)

    monkeypatch.setattr(cafe_svc, "_stamp_redeemed_no_commit", stamp_after_rival_cashier)

    r = _pay(client, staff, qr["qrId"], menu["menuId"])
    assert r.status_code == 409
    assert r.get_json()["code"] == "qr_already_used"

    assert _balance(client, student) == "20.00"
    with app.app_context():
        assert db.session.query(Sale).count() == 0
        assert db.session.get(QRCode, qr["qrId"]).pays_for_date is None


def test_expired_qr_is_rejected_without_side_effects(app, client, student, staff, menu):
    _deposit(client, student, "20.00")
    qr = _new_qr(client, student)
    with app.app_context():
        row = db.session.get(QRCode, qr["qrId"])
        row.expired_date = now_utc() - timedelta(seconds=1)
        db.session.commit()

    r = _pay(client, staff, qr["qrId"], menu["menuId"])
    assert r.status_code == 409
    assert r.get_json()["code"] == "qr_expired"

    assert _balance(client, student) == "20.00"
    with app.app_context():
        assert db.session.query(Sale).count() == 0
        assert db.session.get(QRCode, qr["qrId"]).pays_for_date is None


def test_insufficient_balance(app, client, student, staff, menu):
    _deposit(client, student, "5.00")
    qr = _new_qr(client, student)

    r = _pay(client, staff, qr["qrId"], menu["menuId"])
    assert r.status_code == 409
    assert r.get_json()["code"] == "insufficient_balance"
    assert _balance(client, student) == "5.00"
    with app.app_context():
        assert db.session.get(QRCode, qr["qrId"]).pays_for_date is None


def test_pay_with_signed_token(client, student, staff, menu):
    _deposit(client, student, "10.00")
    qr = _new_qr(client, student)

    r = client.post("/cafeteria/qr-codes/pay", headers=staff.headers, json={"token": qr["token"], "menuId": menu["menuId"]})
    assert r.status_code == 200
    assert r.get_json()["balance"] == "2.50"

    r = client.post("/cafeteria/qr-codes/pay", headers=staff.headers, json={"token": "x" + qr["token"], "menuId": menu["menuId"]})
    assert r.status_code == 400


def test_unknown_qr_and_menu(client, student, staff, menu):
    assert _pay(client, staff, "missing", menu["menuId"]).status_code == 404

    _deposit(client, student, "10.00")
    qr = _new_qr(client, student)
    r = _pay(client, staff, qr["qrId"], "no-such-menu")
    assert r.status_code == 404
    assert r.get_json()["error"] == "Menu not found."


def test_students_cannot_redeem(client, student, menu):
    qr = _new_qr(client, student)
    assert _pay(client, student, qr["qrId"], menu["menuId"]).status_code == 403


def test_qr_png(client, student, other_student):
    qr = _new_qr(client, student)
    r = client.get(f"/cafeteria/qr-codes/{qr['qrId']}.png", headers=student.headers)
    assert r.status_code == 200
    assert r.mimetype == "image/png"
    assert r.data[:8] == b"\x89PNG\r\n\x1a\n"

    assert client.get(f"/cafeteria/qr-codes/{qr['qrId']}.png", headers=other_student.headers).status_code == 403


def test_card_lists_recent_qr_codes(client, student):
    for _ in range(12):
        _new_qr(client, student)
    card = client.get("/cafeteria/card", headers=student.headers).get_json()
    assert len(card["qrCodes"]) == 10


# ── Dishes, menus & sales ───────────────────────────────────────────────────

def test_menu_requires_existing_dishes(client, staff):
    r = client.post("/cafeteria/menus", headers=staff.headers, json={"menuName": "X", "price": "3.00", "dishIds": []})
    assert r.status_code == 400

    r = client.post("/cafeteria/menus", headers=staff.headers, json={"menuName": "X", "price": "3.00", "dishIds": ["nope"]})
    assert r.status_code == 404


def test_update_menu_replaces_dishes(client, staff, menu):
    salad = client.post("/cafeteria/dishes", headers=staff.headers, json={"dishName": "Salad"}).get_json()
    r = client.patch(
        f"/cafeteria/menus/{menu['menuId']}",
        headers=staff.headers,
        json={"dishIds": [salad["dishId"]], "price": "8.25"},
    )
    assert r.status_code == 200
    body = r.get_json()
    assert [d["dishName"] for d in body["dishes"]] == ["Salad"]
    assert body["price"] == "8.25"


def test_dish_in_use_cannot_be_deleted(client, staff, menu):
    dish_id = menu["dishes"][0]["dishId"]
    r = client.delete(f"/cafeteria/dishes/{dish_id}", headers=staff.headers)
    assert r.status_code == 409
    assert client.get(f"/cafeteria/dishes/{dish_id}", headers=staff.headers).status_code == 200


def test_delete_menu_keeps_qr_history(app, client, student, staff, menu):
    _deposit(client, student, "10.00")
    qr = _new_qr(client, student, menu["menuId"])
    assert _pay(client, staff, qr["qrId"], menu["menuId"]).status_code == 200

    assert client.delete(f"/cafeteria/menus/{menu['menuId']}", headers=staff.headers).status_code == 200

    with app.app_context():
        assert db.session.query(Sale).count() == 0
        row = db.session.get(QRCode, qr["qrId"])
        assert row is not None
        assert row.menu_id is None
        assert row.pays_for_date is not None


def test_sales_data(client, student, staff, menu):
    _deposit(client, student, "20.00")
    for _ in range(2):
        qr = _new_qr(client, student)
        _pay(client, staff, qr["qrId"], menu["menuId"])

    r = client.get(f"/cafeteria/sales?menuId={menu['menuId']}", headers=staff.headers)
    assert r.status_code == 200
    body = r.get_json()
    assert body["totalCount"] == 1
    assert body["items"][0]["numSold"] == 2
    assert body["items"][0]["menuName"] == "Lunch A"

    assert client.get("/cafeteria/sales", headers=student.headers).status_code == 403
    assert client.get("/cafeteria/sales?from=yesterday", headers=staff.headers).status_code == 400
