# models/book.py
from __future__ import annotations

from db import db


class Book(db.Model):
    __tablename__ = "books"

    isbn              = db.Column(db.String(20), primary_key=True)
    title             = db.Column(db.String(255), nullable=False)
    author            = db.Column(db.String(255), nullable=True)
    quantity_in_stock = db.Column(db.Integer, nullable=False, default=0)
    current_quantity  = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.CheckConstraint("current_quantity >= 0", name="ck_books_current_nonneg"),
        db.CheckConstraint("current_quantity <= quantity_in_stock", name="ck_books_current_le_stock"),
    )

    borrow_records = db.relationship("BookBorrowRecord", back_populates="book", cascade="all, delete-orphan")
