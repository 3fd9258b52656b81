# services/tx.py
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone

from flask import current_app

from services.errors import AppError


def now_utc() -> datetime:
    """Naive UTC timestamp, the way every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@contextmanager
def atomic(session, tag: str):
    """
    Commit everything written inside the block once, or roll all of it back.
    Business-rule rejections are logged as warnings, anything else with a traceback.
    """
    try:
        yield session
        session.commit()
    except AppError as e:
        session.rollback()
        current_app.logger.warning("[%s] rejected: %s", tag, e.message)
        raise
    except Exception:
        session.rollback()
        current_app.logger.exception("[%s] transaction failed", tag)
        raise
