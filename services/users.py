# services/users.py
from __future__ import annotations

from typing import Optional, Tuple, List

from flask import current_app
from sqlalchemy import func, or_

from models.user import Admin, Staff, Student, User
from services.errors import (
    AuthenticationError,
    AuthorizationError,
    DuplicateError,
    NotFoundError,
    ValidationError,
)
from services.identity import Identity
from services.tx import atomic

UNSET = object()

PROFILE_FIELDS = ("name", "f_name", "m_init", "l_name", "phone_number")
ROLE_MODELS = {"student": Student, "staff": Staff, "admin": Admin}


def ensure_student(session, user_id: str) -> Student:
    """Student role record for user_id, created if missing. Flushes, DOES NOT commit."""
    student = session.get(Student, user_id)
    if student is None:
        student = Student(user_id=user_id)
        session.add(student)
        session.flush()
        current_app.logger.info("[users] lazily granted student role uid=%s", user_id)
    return student


def get_user(session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found.")
    return user


def _check_password(password: Optional[str]) -> str:
    minimum = int(current_app.config["MIN_PASSWORD_LENGTH"])
    if not password or len(password) < minimum:
        raise ValidationError(f"Password must be at least {minimum} characters.")
    return password


def _email_taken(session, email: str, *, exclude_id: Optional[str] = None) -> bool:
    q = session.query(User.id).filter(func.lower(User.email) == email.lower())
    if exclude_id:
        q = q.filter(User.id != exclude_id)
    return q.first() is not None


def _apply_profile(user: User, profile: dict) -> None:
    for key in PROFILE_FIELDS:
        if key in profile:
            setattr(user, key, profile[key])


def _apply_roles(session, user: User, roles: dict, managing_admin_id=UNSET) -> List[str]:
    """
    Grant (create role record) or revoke (delete it) per flag in roles.
    Flushes, DOES NOT commit. Returns a short description of the changes.
    """
    if managing_admin_id is not UNSET and managing_admin_id is not None:
        if session.get(Admin, managing_admin_id) is None:
            raise NotFoundError("Managing admin not found.")

    changes: List[str] = []
    for role, model in ROLE_MODELS.items():
        wanted = roles.get(role)
        if wanted is None:
            continue
        record = session.get(model, user.id)
        if wanted and record is None:
            kwargs = {"user_id": user.id}
            if managing_admin_id is not UNSET:
                kwargs["managing_admin_id"] = managing_admin_id
            session.add(model(**kwargs))
            changes.append(f"+{role}")
        elif not wanted and record is not None:
            session.delete(record)
            changes.append(f"-{role}")

    session.flush()
    if managing_admin_id is not UNSET:
        for model in ROLE_MODELS.values():
            record = session.get(model, user.id)
            if record is not None and record.managing_admin_id != managing_admin_id:
                record.managing_admin_id = managing_admin_id
    return changes


# ---------- public API ----------

def register(
    session,
    *,
    email: str,
    password: str,
    name: Optional[str] = None,
    f_name: Optional[str] = None,
    m_init: Optional[str] = None,
    l_name: Optional[str] = None,
    phone_number: Optional[str] = None,
) -> User:
    _check_password(password)
    if _email_taken(session, email):
        raise DuplicateError("User with this email already exists.")

    with atomic(session, "users"):
        user = User(
            email=email,
            name=name or (" ".join(p for p in (f_name, l_name) if p) or None),
            f_name=f_name,
            m_init=m_init,
            l_name=l_name,
            phone_number=phone_number,
        )
        user.set_password(password)
        session.add(user)

    current_app.logger.info("[users] registered uid=%s email=%s", user.id, email)
    return user


def authenticate(session, email: str, password: str) -> User:
    user = session.query(User).filter(func.lower(User.email) == email.lower()).first()
    if user is None or not user.check_password(password):
        current_app.logger.warning("[users] failed login email=%s", email)
        raise AuthenticationError("Invalid email or password.")
    return user


def update_profile(session, user: User, profile: dict) -> User:
    with atomic(session, "users"):
        _apply_profile(user, profile)
    return user


def list_users(session, *, email: Optional[str] = None, name: Optional[str] = None,
               take: int, skip: int = 0) -> Tuple[List[User], int]:
    q = session.query(User)
    if email:
        q = q.filter(func.lower(User.email).like(f"%{email.lower()}%"))
    if name:
        like = f"%{name.lower()}%"
        q = q.filter(or_(
            func.lower(User.name).like(like),
            func.lower(User.f_name).like(like),
            func.lower(User.l_name).like(like),
        ))
    total = q.count()
    items = q.order_by(User.created_at.desc(), User.email).offset(skip).limit(take).all()
    return items, total


def admin_create_user(
    session,
    identity: Identity,
    *,
    email: str,
    password: str,
    profile: dict,
    roles: dict,
    managing_admin_id=UNSET,
) -> User:
    _check_password(password)
    if _email_taken(session, email):
        raise DuplicateError("User with this email already exists.")

    with atomic(session, "users"):
        user = User(email=email)
        _apply_profile(user, profile)
        user.set_password(password)
        session.add(user)
        session.flush()
        changes = _apply_roles(session, user, roles, managing_admin_id)

    current_app.logger.info("[users] admin=%s created uid=%s roles=%s", identity.user_id, user.id, changes or "-")
    return user


def admin_update_user(
    session,
    identity: Identity,
    user_id: str,
    *,
    email: Optional[str] = None,
    password: Optional[str] = None,
    profile: dict,
    roles: dict,
    managing_admin_id=UNSET,
) -> User:
    user = get_user(session, user_id)
    if email is not None and _email_taken(session, email, exclude_id=user_id):
        raise DuplicateError("User with this email already exists.")
    if password is not None:
        _check_password(password)
    if user_id == identity.user_id and roles.get("admin") is False:
        raise AuthorizationError("Admins cannot remove their own admin role.")

    with atomic(session, "users"):
        if email is not None:
            user.email = email
        if password is not None:
            user.set_password(password)
        _apply_profile(user, profile)
        changes = _apply_roles(session, user, roles, managing_admin_id)

    session.refresh(user)
    if changes:
        current_app.logger.info("[users] admin=%s changed roles uid=%s %s", identity.user_id, user_id, changes)
    return user


def admin_delete_user(session, identity: Identity, user_id: str) -> None:
    if user_id == identity.user_id:
        raise AuthorizationError("Admins cannot delete their own account.")
    user = get_user(session, user_id)
    with atomic(session, "users"):
        session.delete(user)
    current_app.logger.info("[users] admin=%s deleted uid=%s", identity.user_id, user_id)


def bootstrap_admin(session, email: str, password: str) -> User:
    """
    Create (or promote) the account used to log in the first time.

    An existing account keeps its profile but takes the given password, so the
    operator always ends up with credentials that work.
    """
    _check_password(password)
    user = session.query(User).filter(func.lower(User.email) == email.lower()).first()
    existed = user is not None
    with atomic(session, "users"):
        if user is None:
            user = User(email=email, name="Administrator")
            session.add(user)
        user.set_password(password)
        session.flush()
        _apply_roles(session, user, {"admin": True, "staff": True})
    if existed:
        current_app.logger.warning("[users] create-admin reset the password of existing uid=%s", user.id)
    else:
        current_app.logger.info("[users] create-admin created uid=%s", user.id)
    return user
