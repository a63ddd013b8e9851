from __future__ import annotations

import logging

from flask import current_app

from .email_service import seed_default_templates
from .extensions import db
from .models import AdminRole, User, UserStatus

logger = logging.getLogger(__name__)


def upsert_super_admin(email: str, password: str, *, first_name: str = "Portal", last_name: str = "Admin") -> User:
    """Create an approved super admin, or promote the existing account with that email."""
    email = email.strip().lower()
    user = User.query.filter_by(email=email).first()
    if user is None:
        user = User(first_name=first_name, last_name=last_name, email=email)
        user.set_password(password)
        db.session.add(user)
    user.status = UserStatus.APPROVED
    user.admin_role = AdminRole.SUPER_ADMIN
    db.session.commit()
    logger.info("Super admin %s ready", email)
    return user


def ensure_super_admin() -> User | None:
    """Create the configured super admin when the portal has none."""
    existing = User.query.filter_by(admin_role=AdminRole.SUPER_ADMIN).order_by(User.id.asc()).first()
    if existing is not None:
        return existing

    cfg = current_app.config
    email = (cfg.get("SUPERADMIN_EMAIL") or "").strip()
    password = cfg.get("SUPERADMIN_PASSWORD")
    if not email or not password:
        logger.warning("No super admin exists and SUPERADMIN_EMAIL/SUPERADMIN_PASSWORD are not set")
        return None
    return upsert_super_admin(
        email,
        password,
        first_name=cfg.get("SUPERADMIN_FIRST_NAME", "Portal"),
        last_name=cfg.get("SUPERADMIN_LAST_NAME", "Admin"),
    )


def bootstrap_portal() -> None:
    created = seed_default_templates()
    if created:
        logger.info("Seeded %s default email template(s)", created)
    if current_app.config.get("BOOTSTRAP_SUPERADMIN"):
        ensure_super_admin()


__all__ = ["upsert_super_admin", "ensure_super_admin", "bootstrap_portal"]
