# models/wallet.py
from __future__ import annotations

import uuid
from datetime import datetime

from db import db
from sqlalchemy.sql import func


class DigitalCard(db.Model):
    __tablename__ = "digital_cards"

    user_id              = db.Column(db.String(36), db.ForeignKey("students.user_id", ondelete="CASCADE"), primary_key=True)
    card_no              = db.Column(db.String(32), nullable=False, unique=True)
    balance              = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    deposit_money_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    issued_by_staff_id   = db.Column(db.String(36), db.ForeignKey("staff.user_id", ondelete="SET NULL"), nullable=True)
    card_creation_date   = db.Column(db.DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_digital_cards_balance_nonneg"),
    )

    student = db.relationship("Student", back_populates="digital_card", foreign_keys=[user_id])

    deposit_transactions = db.relationship(
        "DepositTransaction",
        back_populates="digital_card",
        order_by="DepositTransaction.transaction_date.desc()",
        cascade="all, delete-orphan",
    )
    qr_codes = db.relationship(
        "QRCode",
        back_populates="digital_card",
        primaryjoin="QRCode.card_no==DigitalCard.card_no",
        foreign_keys="QRCode.card_no",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )


class DepositTransaction(db.Model):
    __tablename__ = "deposit_transactions"

    id               = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id          = db.Column(db.String(36), db.ForeignKey("digital_cards.user_id", ondelete="CASCADE"),
                                 nullable=False, index=True)
    amount           = db.Column(db.Numeric(10, 2), nullable=False)
    transaction_date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    digital_card = db.relationship("DigitalCard", back_populates="deposit_transactions")


class QRCode(db.Model):
    """Short-lived payment intent bound to a card; redeemed at most once."""
    __tablename__ = "qr_codes"

    qr_id         = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id       = db.Column(db.String(36), nullable=False, index=True)
    card_no       = db.Column(db.String(32), db.ForeignKey("digital_cards.card_no", ondelete="CASCADE"),
                              nullable=False, index=True)
    menu_id       = db.Column(db.String(36), db.ForeignKey("menus.menu_id", ondelete="SET NULL"), nullable=True)
    create_date   = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    expired_date  = db.Column(db.DateTime, nullable=False)
    pays_for_date = db.Column(db.DateTime, nullable=True)

    digital_card = db.relationship(
        "DigitalCard",
        back_populates="qr_codes",
        primaryjoin="QRCode.card_no==DigitalCard.card_no",
        foreign_keys=[card_no],
    )
    menu = db.relationship("Menu", back_populates="qr_codes")
