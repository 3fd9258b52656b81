# services/cafeteria.py
"""
Cafeteria services: digital cards, QR payments, dishes and menus.

Amounts are Decimal with two places; never floats.

Public API:
  - get_or_create_card(session, identity)
  - record_deposit(session, identity, amount)
  - list_deposits(session, identity)
  - generate_payment_qr(session, identity, menu_id=None)
  - process_qr_payment(session, identity, qr_id, menu_id)
  - create_menu / update_menu / delete_menu, create_dish / update_dish / delete_dish
  - list_sales(session, *, menu_id=None, date_from=None, date_to=None, take, skip)

Return values:
  - get_or_create_card -> DigitalCard
  - record_deposit -> (DigitalCard, DepositTransaction)
  - generate_payment_qr -> QRCode
  - process_qr_payment -> {"paymentStatus", "balance", "sale", "qrCode"}
"""

from __future__ import annotations

import secrets
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from models.menu import Dish, Menu, MenuDish, Sale
from models.user import Staff
from models.wallet import DepositTransaction, DigitalCard, QRCode
from services.errors import (
    BusinessRuleError,
    InsufficientBalanceError,
    NotFoundError,
    QRCodeAlreadyUsedError,
    QRCodeExpiredError,
    ValidationError,
)
from services.identity import Identity
from services.tx import atomic, now_utc
from services.users import ensure_student


# ---------- small utils ----------

def _new_card_no(user_id: str) -> str:
    """CARD-<user id prefix>-<random hex>; uniqueness is the table's job."""
    prefix = user_id.replace("-", "")[:8].upper()
    return f"CARD-{prefix}-{secrets.token_hex(3).upper()}"


def _bump_sale_no_commit(session, menu_id: str, day: date) -> Sale:
    """Increment today's sale row for the menu, creating it at 1 if absent. DOES NOT commit."""
    bump = (
        update(Sale)
        .where(Sale.menu_id == menu_id, Sale.sale_date == day)
        .values(num_sold=Sale.num_sold + 1)
    )
    if session.execute(bump).rowcount == 0:
        try:
            with session.begin_nested():
                session.add(Sale(menu_id=menu_id, sale_date=day, num_sold=1))
        except IntegrityError:
            # another payment created the row first; count on top of it
            current_app.logger.info("[cafeteria] sale row raced menu=%s day=%s; incrementing", menu_id, day)
            session.execute(bump)
    return session.query(Sale).filter(Sale.menu_id == menu_id, Sale.sale_date == day).one()


def _stamp_redeemed_no_commit(session, qr_id: str, menu_id: str, when: datetime) -> int:
    """One-way redemption stamp, only while the code is still unpaid. Returns rows stamped."""
    return session.execute(
        update(QRCode)
        .where(QRCode.qr_id == qr_id, QRCode.pays_for_date.is_(None))
        .values(pays_for_date=when, menu_id=menu_id)
    ).rowcount


# ---------- public API ----------

def get_or_create_card(session, identity: Identity) -> DigitalCard:
    """
    Return the caller's card, creating the student role record and the card
    on first access. Safe to call repeatedly: one card per student.
    """
    uid = identity.user_id
    card = session.get(DigitalCard, uid)
    if card is not None:
        return card

    try:
        ensure_student(session, uid)
        card = DigitalCard(
            user_id=uid,
            card_no=_new_card_no(uid),
            balance=Decimal("0.00"),
            deposit_money_amount=Decimal("0.00"),
        )
        session.add(card)
        session.commit()
    except IntegrityError:
        # concurrent first access already created it
        session.rollback()
        card = session.get(DigitalCard, uid)
        if card is None:
            current_app.logger.exception("[cafeteria] card creation failed uid=%s", uid)
            raise
        return card
    except Exception:
        session.rollback()
        current_app.logger.exception("[cafeteria] card creation failed uid=%s", uid)
        raise

    current_app.logger.info("[cafeteria] issued card uid=%s card_no=%s", uid, card.card_no)
    return card


def record_deposit(session, identity: Identity, amount: Decimal) -> Tuple[DigitalCard, DepositTransaction]:
    """Credit the card: balance and lifetime deposits both grow by amount."""
    amount = Decimal(amount)
    if amount <= 0:
        raise ValidationError("amount must be positive")

    card = get_or_create_card(session, identity)
    uid = card.user_id

    with atomic(session, "cafeteria"):
        session.execute(
            update(DigitalCard)
            .where(DigitalCard.user_id == uid)
            .values(
                balance=DigitalCard.balance + amount,
                deposit_money_amount=DigitalCard.deposit_money_amount + amount,
            )
        )
        tx = DepositTransaction(user_id=uid, amount=amount, transaction_date=now_utc())
        session.add(tx)

    card = session.get(DigitalCard, uid)
    current_app.logger.info("[cafeteria] deposit uid=%s amount=%s balance=%s", uid, amount, card.balance)
    return card, tx


def list_deposits(session, identity: Identity):
    return (
        session.query(DepositTransaction)
        .filter(DepositTransaction.user_id == identity.user_id)
        .order_by(DepositTransaction.transaction_date.desc())
        .all()
    )


def generate_payment_qr(session, identity: Identity, menu_id: Optional[str] = None) -> QRCode:
    """Mint a payment intent bound to the caller's card, valid for QR_EXPIRY_MINUTES."""
    card = get_or_create_card(session, identity)
    if menu_id is not None and session.get(Menu, menu_id) is None:
        raise NotFoundError("Menu not found.")

    now = now_utc()
    ttl = int(current_app.config["QR_EXPIRY_MINUTES"])
    with atomic(session, "cafeteria"):
        qr = QRCode(
            user_id=identity.user_id,
            card_no=card.card_no,
            menu_id=menu_id,
            create_date=now,
            expired_date=now + timedelta(minutes=ttl),
        )
        session.add(qr)

    current_app.logger.info("[cafeteria] qr minted qr=%s uid=%s menu=%s", qr.qr_id, identity.user_id, menu_id)
    return qr


def process_qr_payment(
    session,
    identity: Identity,
    qr_id: str,
    menu_id: str,
    *,
    now: Optional[datetime] = None,
) -> dict:
    """
    Redeem a QR code for a menu (cashier side).

    All checks run before any write; the debit, the redemption stamp and the
    day's sale count then commit together.
    """
    now = now or now_utc()

    qr = session.get(QRCode, qr_id)
    if qr is None:
        raise NotFoundError("QR Code not found.")
    if qr.expired_date <= now:
        raise QRCodeExpiredError("QR Code has expired.")
    if qr.pays_for_date is not None:
        raise QRCodeAlreadyUsedError("QR Code has already been used.")
    card = qr.digital_card
    if card is None:
        raise BusinessRuleError("QR Code is not linked to a valid digital card.")

    menu = session.get(Menu, menu_id)
    if menu is None:
        raise NotFoundError("Menu not found.")
    price = Decimal(menu.price)
    if Decimal(card.balance) < price:
        raise InsufficientBalanceError("Insufficient balance.")

    with atomic(session, "cafeteria"):
        # 1) Debit, guarded so the balance can never go negative
        debited = session.execute(
            update(DigitalCard)
            .where(DigitalCard.user_id == card.user_id, DigitalCard.balance >= price)
            .values(balance=DigitalCard.balance - price)
        ).rowcount
        if debited != 1:
            raise InsufficientBalanceError("Insufficient balance.")

        # 2) Stamp redemption; a concurrent cashier may have got there first
        if _stamp_redeemed_no_commit(session, qr_id, menu_id, now) != 1:
            raise QRCodeAlreadyUsedError("QR Code has already been used.")

        # 3) Day aggregate
        sale = _bump_sale_no_commit(session, menu_id, now.date())
        sale_id = sale.sale_id

    card = session.get(DigitalCard, card.user_id)
    current_app.logger.info(
        "[cafeteria] qr paid qr=%s card=%s menu=%s price=%s balance=%s cashier=%s",
        qr_id, card.card_no, menu_id, price, card.balance, identity.user_id,
    )
    return {
        "paymentStatus": "success",
        "balance": card.balance,
        "sale": session.get(Sale, sale_id),
        "qrCode": session.get(QRCode, qr_id),
    }


# ---------- dishes & menus ----------

def get_dish(session, dish_id: str) -> Dish:
    dish = session.get(Dish, dish_id)
    if dish is None:
        raise NotFoundError("Dish not found.")
    return dish


def get_menu(session, menu_id: str) -> Menu:
    menu = session.get(Menu, menu_id)
    if menu is None:
        raise NotFoundError("Menu not found.")
    return menu


def create_dish(session, *, dish_name: str, calories: Optional[int] = None) -> Dish:
    with atomic(session, "cafeteria"):
        dish = Dish(dish_name=dish_name, calories=calories)
        session.add(dish)
    return dish


def update_dish(session, dish_id: str, *, dish_name: Optional[str] = None, calories: Optional[int] = None) -> Dish:
    dish = get_dish(session, dish_id)
    with atomic(session, "cafeteria"):
        if dish_name is not None:
            dish.dish_name = dish_name
        if calories is not None:
            dish.calories = calories
    return dish


def delete_dish(session, dish_id: str) -> None:
    dish = get_dish(session, dish_id)
    in_use = session.query(func.count(MenuDish.menu_id)).filter(MenuDish.dish_id == dish_id).scalar()
    if in_use:
        raise BusinessRuleError(f"Cannot delete dish. It is used by {in_use} menu(s). Remove it from menus first.")
    with atomic(session, "cafeteria"):
        session.delete(dish)
    current_app.logger.info("[cafeteria] dish deleted id=%s", dish_id)


def _existing_dish_ids(session, dish_ids) -> List[str]:
    ids = list(dict.fromkeys(str(d) for d in dish_ids or []))
    if not ids:
        raise ValidationError("A menu needs at least one dish.")
    found = {d for (d,) in session.query(Dish.dish_id).filter(Dish.dish_id.in_(ids)).all()}
    missing = [d for d in ids if d not in found]
    if missing:
        raise NotFoundError(f"Dish not found: {', '.join(missing)}")
    return ids


def create_menu(session, identity: Identity, *, menu_name: str, price: Decimal, dish_ids) -> Menu:
    ids = _existing_dish_ids(session, dish_ids)
    manager = identity.user_id if session.get(Staff, identity.user_id) is not None else None

    with atomic(session, "cafeteria"):
        menu = Menu(menu_name=menu_name, price=price, managed_by_staff_id=manager)
        menu.menu_dishes = [MenuDish(dish_id=d) for d in ids]
        session.add(menu)

    current_app.logger.info("[cafeteria] menu created id=%s price=%s dishes=%d", menu.menu_id, price, len(ids))
    return menu


def update_menu(
    session,
    menu_id: str,
    *,
    menu_name: Optional[str] = None,
    price: Optional[Decimal] = None,
    dish_ids=None,
) -> Menu:
    """Partial update; a given dish list replaces the menu's dishes entirely."""
    menu = get_menu(session, menu_id)
    ids = _existing_dish_ids(session, dish_ids) if dish_ids is not None else None

    with atomic(session, "cafeteria"):
        if menu_name is not None:
            menu.menu_name = menu_name
        if price is not None:
            menu.price = price
        if ids is not None:
            keep = set(ids)
            for md in list(menu.menu_dishes):
                if md.dish_id not in keep:
                    menu.menu_dishes.remove(md)
            have = {md.dish_id for md in menu.menu_dishes}
            menu.menu_dishes.extend(MenuDish(dish_id=d) for d in ids if d not in have)
    return menu


def delete_menu(session, menu_id: str) -> None:
    menu = get_menu(session, menu_id)
    with atomic(session, "cafeteria"):
        # menu dishes and sales go with it; QR codes keep their history with menu_id nulled
        session.delete(menu)
    current_app.logger.info("[cafeteria] menu deleted id=%s", menu_id)


def list_sales(
    session,
    *,
    menu_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    take: int,
    skip: int = 0,
) -> Tuple[List[Sale], int]:
    q = session.query(Sale)
    if menu_id:
        q = q.filter(Sale.menu_id == menu_id)
    if date_from is not None:
        q = q.filter(Sale.sale_date >= date_from)
    if date_to is not None:
        q = q.filter(Sale.sale_date <= date_to)
    total = q.count()
    items = (
        q.options(selectinload(Sale.menu))
        .order_by(Sale.sale_date.desc(), Sale.menu_id)
        .offset(skip)
        .limit(take)
        .all()
    )
    return items, total
