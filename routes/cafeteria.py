# routes/cafeteria.py
from __future__ import annotations

from flask import Blueprint, request, jsonify, make_response, send_file, url_for

from db import db
from auth_guard import require_role, current_identity
from models.menu import Dish, Menu, Sale
from models.wallet import DigitalCard, QRCode
from services import cafeteria as cafe
from services.errors import AuthorizationError, NotFoundError, ValidationError
from services.tx import now_utc
from utils.qr import render_qr_png
from utils.validate import (
    iso,
    money,
    optional_str,
    paging,
    parse_date,
    parse_int,
    parse_money,
    required_str,
)
from utils.wallet_qr import build_payment_token, verify_payment_token

cafeteria_bp = Blueprint("cafeteria", __name__, url_prefix="/cafeteria")

RECENT_QR_LIMIT = 10


# ──────────────────────────────────────────────────────────────────────────────
# JSON shapes

def qr_json(qr: QRCode) -> dict:
    return {
        "qrId": qr.qr_id,
        "cardNo": qr.card_no,
        "menuId": qr.menu_id,
        "createDate": iso(qr.create_date),
        "expiredDate": iso(qr.expired_date),
        "paysForDate": iso(qr.pays_for_date),
        "isUsed": qr.pays_for_date is not None,
        "isExpired": qr.expired_date <= now_utc(),
    }


def deposit_json(tx) -> dict:
    return {
        "id": tx.id,
        "amount": money(tx.amount),
        "transactionDate": iso(tx.transaction_date),
    }


def card_json(card: DigitalCard) -> dict:
    recent = card.qr_codes.order_by(QRCode.create_date.desc()).limit(RECENT_QR_LIMIT).all()
    return {
        "userId": card.user_id,
        "cardNo": card.card_no,
        "balance": money(card.balance),
        "depositMoneyAmount": money(card.deposit_money_amount),
        "issuedByStaffId": card.issued_by_staff_id,
        "cardCreationDate": iso(card.card_creation_date),
        "qrCodes": [qr_json(q) for q in recent],
        "deposits": [deposit_json(t) for t in card.deposit_transactions],
    }


def dish_json(d: Dish) -> dict:
    return {"dishId": d.dish_id, "dishName": d.dish_name, "calories": d.calories}


def menu_json(m: Menu) -> dict:
    return {
        "menuId": m.menu_id,
        "menuName": m.menu_name,
        "price": money(m.price),
        "managedByStaffId": m.managed_by_staff_id,
        "dishes": [dish_json(d) for d in m.dishes],
    }


def sale_json(s: Sale) -> dict:
    return {
        "saleId": s.sale_id,
        "menuId": s.menu_id,
        "menuName": s.menu.menu_name if s.menu else None,
        "saleDate": s.sale_date.isoformat(),
        "numSold": s.num_sold,
    }


def _calories(data: dict):
    if data.get("calories") is None:
        return None
    return parse_int(data["calories"], "calories", minimum=0)


def _dish_ids(data: dict):
    ids = data.get("dishIds")
    if not isinstance(ids, list):
        raise ValidationError("dishIds must be a list")
    return [str(x) for x in ids]


# ──────────────────────────────────────────────────────────────────────────────
# Digital card

@cafeteria_bp.route("/card", methods=["GET"])
@require_role()
def get_my_digital_card():
    card = cafe.get_or_create_card(db.session, current_identity())
    return jsonify(card_json(card)), 200


@cafeteria_bp.route("/card/deposits", methods=["POST"])
@require_role()
def record_deposit():
    """Body: { amount }  (positive, two decimals at most)"""
    data = request.get_json(silent=True) or {}
    amount = parse_money(data.get("amount"))
    card, tx = cafe.record_deposit(db.session, current_identity(), amount)
    return jsonify(card=card_json(card), transaction=deposit_json(tx)), 201


@cafeteria_bp.route("/card/transactions", methods=["GET"])
@require_role()
def get_my_transactions():
    items = cafe.list_deposits(db.session, current_identity())
    return jsonify(items=[deposit_json(t) for t in items]), 200


# ──────────────────────────────────────────────────────────────────────────────
# QR payments

@cafeteria_bp.route("/qr-codes", methods=["POST"])
@require_role()
def generate_payment_qr_code():
    """Body: { menuId? }"""
    data = request.get_json(silent=True) or {}
    menu_id = optional_str(data, "menuId", max_len=36)
    qr = cafe.generate_payment_qr(db.session, current_identity(), menu_id)
    return jsonify(
        **qr_json(qr),
        token=build_payment_token(qr.qr_id),
        imageUrl=url_for("cafeteria.payment_qr_png", qr_id=qr.qr_id, _external=True),
    ), 201


@cafeteria_bp.route("/qr-codes/<qr_id>.png", methods=["GET"])
@require_role()
def payment_qr_png(qr_id: str):
    """PNG of the signed payment token; visible to the card owner and staff."""
    qr = db.session.get(QRCode, qr_id)
    if qr is None:
        raise NotFoundError("QR Code not found.")
    ident = current_identity()
    if qr.user_id != ident.user_id and not ident.is_privileged:
        raise AuthorizationError("Not authorized to view this QR Code.")

    size = request.args.get("size")
    bio = render_qr_png(build_payment_token(qr.qr_id), size=parse_int(size, "size") if size else 360)
    resp = make_response(send_file(bio, mimetype="image/png"))
    resp.headers["Cache-Control"] = "no-store, max-age=0"
    resp.headers["X-Content-Type-Options"] = "nosniff"
    return resp


@cafeteria_bp.route("/qr-codes/pay", methods=["POST"])
@require_role("staff")
def process_qr_code_payment():
    """
    Body: { qrId | token, menuId }
    token is the signed value encoded in the QR image.
    """
    data = request.get_json(silent=True) or {}
    if data.get("token"):
        qr_id = verify_payment_token(str(data["token"]))
    else:
        qr_id = required_str(data, "qrId", max_len=36)
    menu_id = required_str(data, "menuId", max_len=36)

    result = cafe.process_qr_payment(db.session, current_identity(), qr_id, menu_id)
    return jsonify(
        paymentStatus=result["paymentStatus"],
        balance=money(result["balance"]),
        sale=sale_json(result["sale"]),
        qrCode=qr_json(result["qrCode"]),
    ), 200


# ──────────────────────────────────────────────────────────────────────────────
# Dishes

@cafeteria_bp.route("/dishes", methods=["GET"])
@require_role()
def list_dishes():
    dishes = Dish.query.order_by(Dish.dish_name).all()
    return jsonify(items=[dish_json(d) for d in dishes]), 200


@cafeteria_bp.route("/dishes/<dish_id>", methods=["GET"])
@require_role()
def get_dish(dish_id: str):
    return jsonify(dish_json(cafe.get_dish(db.session, dish_id))), 200


@cafeteria_bp.route("/dishes", methods=["POST"])
@require_role("staff")
def create_dish():
    """Body: { dishName, calories? }"""
    data = request.get_json(silent=True) or {}
    dish = cafe.create_dish(
        db.session,
        dish_name=required_str(data, "dishName", max_len=128),
        calories=_calories(data),
    )
    return jsonify(dish_json(dish)), 201


@cafeteria_bp.route("/dishes/<dish_id>", methods=["PATCH"])
@require_role("staff")
def update_dish(dish_id: str):
    data = request.get_json(silent=True) or {}
    dish = cafe.update_dish(
        db.session,
        dish_id,
        dish_name=optional_str(data, "dishName", max_len=128),
        calories=_calories(data),
    )
    return jsonify(dish_json(dish)), 200


@cafeteria_bp.route("/dishes/<dish_id>", methods=["DELETE"])
@require_role("staff")
def delete_dish(dish_id: str):
    cafe.delete_dish(db.session, dish_id)
    return jsonify(message="Dish deleted."), 200


# ──────────────────────────────────────────────────────────────────────────────
# Menus

@cafeteria_bp.route("/menus", methods=["GET"])
@require_role()
def list_menus():
    menus = Menu.query.order_by(Menu.menu_name).all()
    return jsonify(items=[menu_json(m) for m in menus]), 200


@cafeteria_bp.route("/menus/<menu_id>", methods=["GET"])
@require_role()
def get_menu(menu_id: str):
    return jsonify(menu_json(cafe.get_menu(db.session, menu_id))), 200


@cafeteria_bp.route("/menus", methods=["POST"])
@require_role("staff")
def create_menu():
    """Body: { menuName, price, dishIds: [..] }"""
    data = request.get_json(silent=True) or {}
    menu = cafe.create_menu(
        db.session,
        current_identity(),
        menu_name=required_str(data, "menuName", max_len=128),
        price=parse_money(data.get("price"), "price"),
        dish_ids=_dish_ids(data),
    )
    return jsonify(menu_json(menu)), 201


@cafeteria_bp.route("/menus/<menu_id>", methods=["PATCH"])
@require_role("staff")
def update_menu(menu_id: str):
    """Body: { menuName?, price?, dishIds? }  dishIds replaces the whole set."""
    data = request.get_json(silent=True) or {}
    menu = cafe.update_menu(
        db.session,
        menu_id,
        menu_name=optional_str(data, "menuName", max_len=128),
        price=parse_money(data["price"], "price") if data.get("price") is not None else None,
        dish_ids=_dish_ids(data) if "dishIds" in data else None,
    )
    return jsonify(menu_json(menu)), 200


@cafeteria_bp.route("/menus/<menu_id>", methods=["DELETE"])
@require_role("staff")
def delete_menu(menu_id: str):
    cafe.delete_menu(db.session, menu_id)
    return jsonify(message="Menu deleted."), 200


# ──────────────────────────────────────────────────────────────────────────────
# Sales

@cafeteria_bp.route("/sales", methods=["GET"])
@require_role("staff")
def get_sales_data():
    """?menuId=&from=YYYY-MM-DD&to=YYYY-MM-DD&take=&skip="""
    take, skip = paging(request.args)
    date_from = request.args.get("from")
    date_to = request.args.get("to")
    items, total = cafe.list_sales(
        db.session,
        menu_id=(request.args.get("menuId") or "").strip() or None,
        date_from=parse_date(date_from, "from") if date_from else None,
        date_to=parse_date(date_to, "to") if date_to else None,
        take=take,
        skip=skip,
    )
    return jsonify(items=[sale_json(s) for s in items], totalCount=total), 200
