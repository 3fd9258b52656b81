# services/books.py
from __future__ import annotations

from typing import Optional

from flask import current_app
from sqlalchemy import func, or_

from models.appointment import Appointment, AppointmentStatus, BookBorrowRecord
from models.book import Book
from services.errors import BusinessRuleError, DuplicateError, NotFoundError, ValidationError
from services.tx import atomic

_CLOSED = (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW)


def get_book(session, isbn: str) -> Book:
    book = session.get(Book, isbn)
    if book is None:
        raise NotFoundError(f"Book not found: {isbn}")
    return book


def _outstanding(session, isbn: str) -> int:
    """Copies currently out on open borrows."""
    return int(
        session.query(func.coalesce(func.sum(BookBorrowRecord.borrow_quantity), 0))
        .filter(BookBorrowRecord.isbn == isbn, BookBorrowRecord.return_date.is_(None))
        .scalar() or 0
    )


def create_book(session, *, isbn: str, title: str, author: Optional[str], quantity_in_stock: int) -> Book:
    if session.get(Book, isbn) is not None:
        raise DuplicateError(f"A book with ISBN {isbn} already exists.")
    with atomic(session, "books"):
        book = Book(
            isbn=isbn,
            title=title,
            author=author,
            quantity_in_stock=quantity_in_stock,
            current_quantity=quantity_in_stock,  # all copies start on the shelf
        )
        session.add(book)
    current_app.logger.info("[books] created isbn=%s stock=%s", isbn, quantity_in_stock)
    return book


def update_book(
    session,
    isbn: str,
    *,
    title: Optional[str] = None,
    author: Optional[str] = None,
    quantity_in_stock: Optional[int] = None,
    current_quantity: Optional[int] = None,
) -> Book:
    book = get_book(session, isbn)

    stock = quantity_in_stock if quantity_in_stock is not None else book.quantity_in_stock
    current = current_quantity if current_quantity is not None else book.current_quantity
    if current > stock:
        raise ValidationError("Current quantity cannot exceed quantity in stock.")
    # copies out on loan must still fit on the shelf once they come back
    outstanding = _outstanding(session, isbn)
    if current + outstanding > stock:
        raise ValidationError(
            f"Quantity in stock must cover the copies on the shelf plus {outstanding} on loan."
        )

    with atomic(session, "books"):
        if title is not None:
            book.title = title
        if author is not None:
            book.author = author
        book.quantity_in_stock = stock
        book.current_quantity = current
    return book


def delete_book(session, isbn: str) -> None:
    book = get_book(session, isbn)
    active = (
        session.query(func.count(BookBorrowRecord.appointment_id))
        .join(Appointment, Appointment.appointment_id == BookBorrowRecord.appointment_id)
        .filter(
            BookBorrowRecord.isbn == isbn,
            BookBorrowRecord.return_date.is_(None),
            Appointment.appointment_status.notin_(_CLOSED),
        )
        .scalar()
    )
    if active:
        raise BusinessRuleError(
            "Cannot delete book with active borrows. Please ensure all copies are returned "
            "and appointments completed or cancelled."
        )
    with atomic(session, "books"):
        session.delete(book)
    current_app.logger.info("[books] deleted isbn=%s", isbn)


def search_books(session, *, query: Optional[str], only_available: bool, take: int, skip: int):
    q = session.query(Book)
    if query:
        like = f"%{query.lower()}%"
        q = q.filter(or_(
            func.lower(Book.title).like(like),
            func.lower(Book.author).like(like),
            Book.isbn == query,
        ))
    if only_available:
        q = q.filter(Book.current_quantity > 0)
    total = q.count()
    items = q.order_by(Book.title.asc(), Book.isbn).offset(skip).limit(take).all()
    return items, total
