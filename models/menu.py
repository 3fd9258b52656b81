# models/menu.py
from __future__ import annotations

import uuid

from db import db


def _uuid() -> str:
    return str(uuid.uuid4())


class Dish(db.Model):
    __tablename__ = "dishes"

    dish_id   = db.Column(db.String(36), primary_key=True, default=_uuid)
    dish_name = db.Column(db.String(128), nullable=False)
    calories  = db.Column(db.Integer, nullable=True)

    menu_dishes = db.relationship("MenuDish", back_populates="dish")


class Menu(db.Model):
    __tablename__ = "menus"

    menu_id             = db.Column(db.String(36), primary_key=True, default=_uuid)
    menu_name           = db.Column(db.String(128), nullable=False)
    price               = db.Column(db.Numeric(10, 2), nullable=False)
    managed_by_staff_id = db.Column(db.String(36), db.ForeignKey("staff.user_id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        db.CheckConstraint("price > 0", name="ck_menus_price_positive"),
    )

    managed_by_staff = db.relationship("Staff")
    menu_dishes = db.relationship("MenuDish", back_populates="menu", cascade="all, delete-orphan")
    sales       = db.relationship("Sale", back_populates="menu", cascade="all, delete-orphan",
                                  order_by="Sale.sale_date.desc()")
    # payment history survives menu removal (menu_id is nulled)
    qr_codes    = db.relationship("QRCode", back_populates="menu")

    @property
    def dishes(self):
        return sorted((md.dish for md in self.menu_dishes), key=lambda d: (d.dish_name or "").lower())


class MenuDish(db.Model):
    __tablename__ = "menu_dishes"

    menu_id = db.Column(db.String(36), db.ForeignKey("menus.menu_id", ondelete="CASCADE"), primary_key=True)
    dish_id = db.Column(db.String(36), db.ForeignKey("dishes.dish_id", ondelete="CASCADE"), primary_key=True)

    menu = db.relationship("Menu", back_populates="menu_dishes")
    dish = db.relationship("Dish", back_populates="menu_dishes")


class Sale(db.Model):
    """Running per-menu, per-day count of menus sold."""
    __tablename__ = "sales"

    sale_id   = db.Column(db.String(36), primary_key=True, default=_uuid)
    menu_id   = db.Column(db.String(36), db.ForeignKey("menus.menu_id", ondelete="CASCADE"), nullable=False)
    sale_date = db.Column(db.Date, nullable=False)
    num_sold  = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("menu_id", "sale_date", name="uq_sales_menu_date"),
    )

    menu = db.relationship("Menu", back_populates="sales")
