# routes/user.py
from __future__ import annotations

from flask import Blueprint, request, jsonify, g

from db import db
from auth_guard import require_role, current_identity
from models.user import User
from services import users as user_svc
from utils.validate import (
    _as_bool,
    iso,
    optional_str,
    paging,
    parse_email,
)

user_bp = Blueprint("user", __name__, url_prefix="/user")

# JSON key -> (column, max length)
_PROFILE_KEYS = {
    "name":        ("name", 160),
    "fName":       ("f_name", 80),
    "mInit":       ("m_init", 1),
    "lName":       ("l_name", 80),
    "phoneNumber": ("phone_number", 32),
}
_ROLE_KEYS = {"isStudent": "student", "isStaff": "staff", "isAdmin": "admin"}


def user_json(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "name": u.display_name,
        "fName": u.f_name,
        "mInit": u.m_init,
        "lName": u.l_name,
        "phoneNumber": u.phone_number,
        "isStudent": u.student is not None,
        "isStaff": u.staff is not None,
        "isAdmin": u.admin is not None,
        "role": u.role,
        "createdAt": iso(u.created_at),
        "updatedAt": iso(u.updated_at),
    }


def _profile_from(data: dict) -> dict:
    """Only keys present in the body are touched; null clears a field."""
    out = {}
    for key, (attr, max_len) in _PROFILE_KEYS.items():
        if key in data:
            out[attr] = optional_str(data, key, max_len=max_len)
    return out


def _roles_from(data: dict) -> dict:
    return {role: _as_bool(data[key]) for key, role in _ROLE_KEYS.items() if key in data}


def _password_from(data: dict):
    pw = data.get("password")
    return pw if isinstance(pw, str) else None


def _managing_admin_from(data: dict):
    if "managingAdminId" not in data:
        return user_svc.UNSET
    return optional_str(data, "managingAdminId", max_len=36)


# ── Self-service ────────────────────────────────────────────────────────────

@user_bp.route("/register", methods=["POST"])
def register():
    """
    Body: { email, password, name?, fName?, mInit?, lName?, phoneNumber? }
    """
    data = request.get_json(silent=True) or {}
    email = parse_email(data.get("email"))
    password = _password_from(data)
    profile = _profile_from(data)

    user = user_svc.register(db.session, email=email, password=password, **profile)
    return jsonify(id=user.id, email=user.email, name=user.display_name), 201


@user_bp.route("/me", methods=["GET"])
@require_role()
def me():
    return jsonify(user_json(g.user)), 200


@user_bp.route("/me", methods=["PATCH"])
@require_role()
def update_me():
    data = request.get_json(silent=True) or {}
    user = user_svc.update_profile(db.session, g.user, _profile_from(data))
    return jsonify(user_json(user)), 200


# ── Admin user management ───────────────────────────────────────────────────

@user_bp.route("/admin/users", methods=["GET"])
@require_role("admin")
def admin_list_users():
    take, skip = paging(request.args)
    items, total = user_svc.list_users(
        db.session,
        email=(request.args.get("email") or "").strip() or None,
        name=(request.args.get("name") or "").strip() or None,
        take=take,
        skip=skip,
    )
    return jsonify(items=[user_json(u) for u in items], totalCount=total), 200


@user_bp.route("/admin/users/<user_id>", methods=["GET"])
@require_role("admin")
def admin_get_user(user_id: str):
    return jsonify(user_json(user_svc.get_user(db.session, user_id))), 200


@user_bp.route("/admin/users", methods=["POST"])
@require_role("admin")
def admin_create_user():
    data = request.get_json(silent=True) or {}
    user = user_svc.admin_create_user(
        db.session,
        current_identity(),
        email=parse_email(data.get("email")),
        password=_password_from(data),
        profile=_profile_from(data),
        roles=_roles_from(data),
        managing_admin_id=_managing_admin_from(data),
    )
    return jsonify(user_json(user)), 201


@user_bp.route("/admin/users/<user_id>", methods=["PATCH"])
@require_role("admin")
def admin_update_user(user_id: str):
    data = request.get_json(silent=True) or {}
    user = user_svc.admin_update_user(
        db.session,
        current_identity(),
        user_id,
        email=parse_email(data["email"]) if data.get("email") is not None else None,
        password=_password_from(data),
        profile=_profile_from(data),
        roles=_roles_from(data),
        managing_admin_id=_managing_admin_from(data),
    )
    return jsonify(user_json(user)), 200


@user_bp.route("/admin/users/<user_id>", methods=["DELETE"])
@require_role("admin")
def admin_delete_user(user_id: str):
    user_svc.admin_delete_user(db.session, current_identity(), user_id)
    return jsonify(message="User deleted."), 200
