# routes/auth.py
from __future__ import annotations

from flask import Blueprint, request, jsonify, current_app

from db import db
from auth_guard import issue_token
from routes.user import user_json
from services import users as user_svc
from utils.validate import parse_email

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


@auth_bp.route("/login", methods=["POST"])
def login():
    """
    Sign in with email + password and return a JWT.
    Body: { email, password }
    """
    data = request.get_json(silent=True) or {}
    if not data.get("email") or not data.get("password"):
        return jsonify(error="Missing email or password", code="validation_error"), 400

    user = user_svc.authenticate(db.session, parse_email(data["email"]), str(data["password"]))
    token = issue_token(user)
    current_app.logger.info("[auth] login uid=%s role=%s", user.id, user.role)
    return jsonify(token=token, user=user_json(user)), 200
