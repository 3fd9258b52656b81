# app.py
from __future__ import annotations

import os

import click
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from flask_cors import CORS
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError

from config import Config, config_from_env
from db import db, migrate
from services.errors import AppError

# Ensure models are imported so Flask-Migrate sees them
from models.user import User, Admin, Staff, Student
from models.wallet import DigitalCard, DepositTransaction, QRCode
from models.menu import Dish, Menu, MenuDish, Sale
from models.route import Route, Station, RouteStation, RouteDepartureTime, UserFavoriteRoute
from models.bus import Bus, BusDrivesRoute
from models.appointment import Appointment, SportAppointment, HealthAppointment, BookBorrowRecord
from models.book import Book

# Blueprints
from routes.auth import auth_bp
from routes.user import user_bp
from routes.cafeteria import cafeteria_bp
from routes.ring_tracking import ring_bp
from routes.appointments import appointments_bp


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)

    # Respect reverse proxy headers (scheme / host) for correct URL generation
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)  # type: ignore[arg-type]

    # CORS (open for now; tighten origins for production)
    CORS(app, resources={r"/*": {"origins": "*"}})

    # Load config + init extensions
    app.config.from_object(config_object or config_from_env())
    db.init_app(app)
    migrate.init_app(app, db)

    with app.app_context():
        # sqlite only enforces ON DELETE rules when asked to, per connection
        if db.engine.dialect.name == "sqlite":
            @event.listens_for(db.engine, "connect")
            def _sqlite_foreign_keys(dbapi_conn, _):
                cur = dbapi_conn.cursor()
                try:
                    cur.execute("PRAGMA foreign_keys=ON")
                finally:
                    cur.close()

        # Touch models so Alembic/Flask-Migrate registers them
        _ = (
            User, Admin, Staff, Student,
            DigitalCard, DepositTransaction, QRCode,
            Dish, Menu, MenuDish, Sale,
            Route, Station, RouteStation, RouteDepartureTime, UserFavoriteRoute,
            Bus, BusDrivesRoute,
            Appointment, SportAppointment, HealthAppointment, BookBorrowRecord, Book,
        )

        if app.config.get("AUTO_CREATE_TABLES"):
            db.create_all()
            app.logger.info("[app] tables ensured on %s", db.engine.url.render_as_string(hide_password=True))

    # Health check
    @app.route("/")
    def health_check():
        return jsonify(status="ok"), 200

    @app.errorhandler(AppError)
    def handle_app_error(e: AppError):
        return jsonify(error=e.message, code=e.code), e.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(e: IntegrityError):
        db.session.rollback()
        app.logger.warning("[app] integrity error on %s %s: %s", request.method, request.path, e.orig)
        return jsonify(error="Conflicting data. The record already exists or is still referenced.",
                       code="conflict"), 409

    @app.errorhandler(404)
    def handle_404(e):
        return jsonify(error="Not Found", code="not_found", path=request.path), 404

    # Global error handler
    @app.errorhandler(Exception)
    def handle_any_error(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify(error=e.description, code=e.name.lower().replace(" ", "_")), e.code
        db.session.rollback()
        app.logger.exception("[app] unhandled error on %s %s", request.method, request.path)
        return jsonify(error="Internal server error", code="internal_error"), 500

    # Register blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(user_bp)
    app.register_blueprint(cafeteria_bp)
    app.register_blueprint(ring_bp)
    app.register_blueprint(appointments_bp)

    # CLI: bootstrap the first admin account
    @app.cli.command("create-admin")
    @click.argument("email")
    @click.argument("password")
    def create_admin_cmd(email, password):
        from services.users import bootstrap_admin

        user = bootstrap_admin(db.session, email.strip().lower(), password)
        print(f"Admin ready: {user.email} ({user.id})")

    return app


# Optional local entrypoint (useful for quick dev runs)
if __name__ == "__main__":
    app = create_app()
    app.run(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "5000")),
        debug=bool(os.environ.get("FLASK_DEBUG", "")),
    )
