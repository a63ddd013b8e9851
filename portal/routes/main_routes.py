from __future__ import annotations

from flask import Blueprint, current_app, session
from flask_login import login_user, logout_user
from flask_wtf.csrf import generate_csrf

from portal.access import approved_required, current_principal
from portal.extensions import db
from portal.models import User
from portal.routes.common import payload, principal, respond
from portal.serializers import user_to_dict
from portal.settings_service import public_settings
from portal.store import get_or_404
from portal.user_service import authenticate, change_password, register_user, update_profile

main_bp = Blueprint("main", __name__, url_prefix="/api")


@main_bp.route("/health", methods=["GET"])
def health():
    return respond({"status": "ok"})


@main_bp.route("/auth/csrf-token", methods=["GET"])
def csrf_token():
    return respond(csrf_token=generate_csrf())


@main_bp.route("/auth/register", methods=["POST"])
def register():
    user = register_user(payload())
    current_app.logger.info("New registration from %s", user.email)
    return respond(
        user_to_dict(user),
        status=201,
        message="Registration received. An administrator will review your account.",
    )


@main_bp.route("/auth/login", methods=["POST"])
def login():
    data = payload()
    authenticated = authenticate(data.get("email", ""), data.get("password", ""))
    user = get_or_404(User, authenticated.id, "User")
    session.permanent = True
    login_user(user, remember=bool(data.get("remember")))
    return respond(user_to_dict(user))


@main_bp.route("/auth/logout", methods=["POST"])
def logout():
    logout_user()
    session.clear()
    return respond(message="Signed out.")


@main_bp.route("/auth/me", methods=["GET"])
@approved_required
def me():
    user = db.session.get(User, current_principal().id)
    return respond(user_to_dict(user))


@main_bp.route("/profile", methods=["PUT"])
@approved_required
def profile_update():
    user = update_profile(principal(), payload())
    return respond(user_to_dict(user))


@main_bp.route("/profile/password", methods=["PUT"])
@approved_required
def password_update():
    change_password(principal(), payload())
    return respond(message="Password updated.")


@main_bp.route("/system/settings", methods=["GET"])
def system_settings():
    return respond(public_settings())
