# tests/conftest.py
from __future__ import annotations

from dataclasses import dataclass

import pytest

from app import create_app
from auth_guard import issue_token
from config import TestingConfig
from db import db
from models.user import Admin, Staff, Student, User

_ROLE_MODELS = {"student": Student, "staff": Staff, "admin": Admin}


@dataclass
class Actor:
    id: str
    email: str
    headers: dict


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """make_user("a@x.edu", roles=("staff",)) -> Actor with a Bearer header."""
    def _make(email: str, *, roles=(), password: str = "password123") -> Actor:
        with app.app_context():
            user = User(email=email, name=email.split("@")[0])
            user.set_password(password)
            db.session.add(user)
            db.session.flush()
            for role in roles:
                db.session.add(_ROLE_MODELS[role](user_id=user.id))
            db.session.commit()
            token = issue_token(user)
            return Actor(id=user.id, email=email, headers={"Authorization": f"Bearer {token}"})
    return _make


@pytest.fixture
def student(make_user):
    return make_user("student@uni.edu", roles=("student",))


@pytest.fixture
def other_student(make_user):
    return make_user("other@uni.edu", roles=("student",))


@pytest.fixture
def staff(make_user):
    return make_user("staff@uni.edu", roles=("staff",))


@pytest.fixture
def admin(make_user):
    return make_user("admin@uni.edu", roles=("admin",))


@pytest.fixture
def api_key_headers(app):
    return {"X-API-Key": app.config["SERVICE_API_KEY"]}
