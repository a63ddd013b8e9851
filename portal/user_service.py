"""Authentication, account status workflow and super admin role management."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping

from flask import current_app
from sqlalchemy import or_

from .access import Principal, require_approved, require_owner_or_admin, require_super_admin
from .audit import record_activity
from .email_service import notify
from .errors import DuplicateKey, Forbidden, InvalidTransition, LastAdminError, Unauthorized, UserInUse, ValidationError
from .extensions import db
from .forms import AdminUserForm, LoginForm, PasswordChangeForm, ProfileForm, RegisterForm, UserStatusForm, load_form
from .models import (
    AdminRole,
    Asset,
    Invoice,
    InvoicePayment,
    SystemSetting,
    Ticket,
    TicketMessage,
    User,
    UserStatus,
)
from .settings_service import get_setting
from .store import commit, get_or_404

logger = logging.getLogger(__name__)

DUPLICATE_EMAIL = "An account with this email already exists."


def _allowed_transitions() -> dict[UserStatus, set[UserStatus]]:
    return {
        UserStatus.PENDING: {UserStatus.APPROVED, UserStatus.REJECTED},
        UserStatus.APPROVED: {UserStatus.SUSPENDED},
        UserStatus.SUSPENDED: {UserStatus.APPROVED},
        UserStatus.REJECTED: set(),
    }


def _normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def _email_taken(email: str, exclude_id: int | None = None) -> bool:
    query = User.query.filter(User.email == email)
    if exclude_id is not None:
        query = query.filter(User.id != exclude_id)
    return db.session.query(query.exists()).scalar()


def _locked_super_admins() -> list[User]:
    return User.query.filter_by(admin_role=AdminRole.SUPER_ADMIN).with_for_update().all()


def _would_remove_last_admin(target: User) -> bool:
    if not target.is_super_admin:
        return False
    return len(_locked_super_admins()) <= 1


def _notification_context(user: User) -> dict[str, object]:
    return {
        "first_name": user.first_name,
        "last_name": user.last_name,
        "full_name": user.full_name,
        "email": user.email,
        "company_name": get_setting("company_name"),
    }


def _admin_recipient() -> str | None:
    return current_app.config.get("MAIL_ADMIN_RECIPIENT") or get_setting("contact_email") or None


def _new_user(form: RegisterForm, *, status: UserStatus, admin_role: AdminRole | None = None) -> User:
    email = _normalize_email(form.email.data)
    if _email_taken(email):
        raise DuplicateKey(DUPLICATE_EMAIL)
    user = User(
        first_name=form.first_name.data.strip(),
        last_name=form.last_name.data.strip(),
        email=email,
        status=status,
        admin_role=admin_role,
    )
    user.set_password(form.password.data)
    db.session.add(user)
    return user


def authenticate(email: str, password: str) -> Principal:
    load_form(LoginForm, {"email": email, "password": password})
    user = User.query.filter_by(email=_normalize_email(email)).first()
    if user is None:
        raise Unauthorized("Invalid email or password.")
    if user.is_locked:
        raise Unauthorized("Too many failed sign-in attempts. Try again later.")

    if not user.check_password(password):
        user.record_failed_login(
            current_app.config.get("LOGIN_MAX_FAILURES", 10),
            current_app.config.get("LOGIN_LOCK_MINUTES", 15),
        )
        commit("user")
        logger.info("Failed sign-in for %s", user.email)
        raise Unauthorized("Invalid email or password.")

    if user.status == UserStatus.SUSPENDED:
        raise Forbidden("Your account has been suspended. Contact support.")
    principal = require_approved(Principal.from_user(user))

    user.reset_login_failures()
    user.last_login = datetime.utcnow()
    commit("user")
    logger.info("User %s signed in", user.email)
    return principal


def register_user(payload: Mapping) -> User:
    form = load_form(RegisterForm, payload)
    user = _new_user(form, status=UserStatus.PENDING)
    commit("user", duplicate_message=DUPLICATE_EMAIL)
    logger.info("Registered user %s (pending approval)", user.email)

    context = _notification_context(user)
    notify("registration_received", user.email, context)
    notify("admin_new_registration", _admin_recipient(), context)
    return user


def create_user_as_admin(actor: Principal, payload: Mapping) -> User:
    require_super_admin(actor)
    form = load_form(AdminUserForm, payload)
    status = UserStatus(form.status.data) if form.status.data else UserStatus.APPROVED
    user = _new_user(form, status=status)
    db.session.flush()
    record_activity(actor, "user_created", entity_type="user", entity_id=user.id,
                    new_values={"email": user.email, "status": user.status})
    commit("user", duplicate_message=DUPLICATE_EMAIL)
    logger.info("Admin %s created user %s (%s)", actor.email, user.email, user.status.value)
    return user


def create_super_admin(actor: Principal, payload: Mapping) -> User:
    require_super_admin(actor)
    form = load_form(RegisterForm, payload)
    user = _new_user(form, status=UserStatus.APPROVED, admin_role=AdminRole.SUPER_ADMIN)
    db.session.flush()
    record_activity(actor, "super_admin_created", entity_type="user", entity_id=user.id,
                    new_values={"email": user.email})
    commit("user", duplicate_message=DUPLICATE_EMAIL)
    logger.info("Admin %s created super admin %s", actor.email, user.email)
    return user


def set_user_status(actor: Principal, target_user_id: int, new_status) -> User:
    require_super_admin(actor)
    form = load_form(UserStatusForm, {"status": new_status})
    target_status = UserStatus(form.status.data)
    user = get_or_404(User, target_user_id, "User")

    if target_status == user.status:
        return user
    if target_status not in _allowed_transitions().get(user.status, set()):
        raise InvalidTransition(
            f"Cannot change account status from {user.status.value} to {target_status.value}."
        )
    if user.is_super_admin:
        raise InvalidTransition("Demote the super admin before changing their account status.")

    previous = user.status
    user.status = target_status
    record_activity(actor, "user_status_changed", entity_type="user", entity_id=user.id,
                    old_values={"status": previous}, new_values={"status": target_status})
    commit("user")
    logger.info("User %s status %s -> %s by %s", user.email, previous.value, target_status.value, actor.email)

    if target_status == UserStatus.APPROVED and previous == UserStatus.PENDING:
        notify("account_approved", user.email, _notification_context(user))
    elif target_status == UserStatus.REJECTED:
        notify("account_rejected", user.email, _notification_context(user))
    return user


def promote_to_super_admin(actor: Principal, target_user_id: int) -> User:
    require_super_admin(actor)
    user = get_or_404(User, target_user_id, "User")
    if user.is_super_admin:
        return user
    if user.status != UserStatus.APPROVED:
        raise InvalidTransition("Only approved users can be promoted to super admin.")

    user.admin_role = AdminRole.SUPER_ADMIN
    record_activity(actor, "super_admin_promoted", entity_type="user", entity_id=user.id,
                    new_values={"admin_role": AdminRole.SUPER_ADMIN})
    commit("user")
    logger.info("User %s promoted to super admin by %s", user.email, actor.email)
    return user


def demote_super_admin(actor: Principal, target_user_id: int) -> User:
    require_super_admin(actor)
    user = get_or_404(User, target_user_id, "User")
    if not user.is_super_admin:
        return user
    if _would_remove_last_admin(user):
        raise LastAdminError("Cannot demote the last remaining super admin.")

    user.admin_role = None
    record_activity(actor, "super_admin_demoted", entity_type="user", entity_id=user.id,
                    old_values={"admin_role": AdminRole.SUPER_ADMIN})
    commit("user")
    logger.info("Super admin %s demoted by %s", user.email, actor.email)
    return user


def list_users(actor: Principal, *, status: str | None = None, search: str | None = None) -> list[User]:
    require_super_admin(actor)
    query = User.query
    if status:
        try:
            query = query.filter(User.status == UserStatus(status))
        except ValueError as exc:
            raise ValidationError("Unknown status filter.", errors={"status": [status]}) from exc
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(User.email.ilike(pattern), User.first_name.ilike(pattern), User.last_name.ilike(pattern))
        )
    return query.order_by(User.created_at.desc(), User.id.desc()).all()


def list_super_admins(actor: Principal) -> list[User]:
    require_super_admin(actor)
    return User.query.filter_by(admin_role=AdminRole.SUPER_ADMIN).order_by(User.created_at.asc()).all()


def get_user(actor: Principal, user_id: int) -> User:
    require_owner_or_admin(actor, user_id, resource="account")
    return get_or_404(User, user_id, "User")


def delete_user(actor: Principal, target_user_id: int) -> None:
    require_super_admin(actor)
    user = get_or_404(User, target_user_id, "User")
    if user.id == actor.id:
        raise Forbidden("You cannot delete your own account.")
    if _would_remove_last_admin(user):
        raise LastAdminError("Cannot delete the last remaining super admin.")

    references = {
        "assets": Asset.query.filter_by(user_id=user.id).count(),
        "tickets": Ticket.query.filter_by(user_id=user.id).count(),
        "invoices": Invoice.query.filter_by(user_id=user.id).count(),
        "ticket_messages": TicketMessage.query.filter_by(sender_id=user.id).count(),
        "invoices_created": Invoice.query.filter_by(created_by_id=user.id).count(),
        "payments_recorded": InvoicePayment.query.filter_by(recorded_by_id=user.id).count(),
        "settings_updated": SystemSetting.query.filter_by(updated_by_id=user.id).count(),
    }
    if any(references.values()):
        raise UserInUse(
            "The user still owns or authored records. Suspend the account instead of deleting it.",
            references=references,
        )

    record_activity(actor, "user_deleted", entity_type="user", entity_id=user.id,
                    old_values={"email": user.email, "status": user.status})
    db.session.delete(user)
    commit("user")
    logger.info("User %s deleted by %s", user.email, actor.email)


def update_profile(actor: Principal, payload: Mapping) -> User:
    require_approved(actor)
    user = get_or_404(User, actor.id, "User")
    form = load_form(ProfileForm, payload)
    email = _normalize_email(form.email.data)
    if _email_taken(email, exclude_id=user.id):
        raise DuplicateKey("Email is already in use by another account.")

    user.first_name = form.first_name.data.strip()
    user.last_name = form.last_name.data.strip()
    user.email = email
    commit("profile", duplicate_message="Email is already in use by another account.")
    return user


def change_password(actor: Principal, payload: Mapping) -> None:
    require_approved(actor)
    user = get_or_404(User, actor.id, "User")
    form = load_form(PasswordChangeForm, payload)
    if not user.check_password(form.current_password.data):
        raise ValidationError("Current password is incorrect.", errors={"current_password": ["Incorrect password."]})
    if form.current_password.data == form.new_password.data:
        raise ValidationError(
            "Choose a password you have not used here.",
            errors={"new_password": ["New password must differ from the current one."]},
        )
    user.set_password(form.new_password.data)
    commit("user")
    logger.info("User %s changed their password", user.email)


__all__ = [
    "authenticate",
    "register_user",
    "create_user_as_admin",
    "create_super_admin",
    "set_user_status",
    "promote_to_super_admin",
    "demote_super_admin",
    "list_users",
    "list_super_admins",
    "get_user",
    "delete_user",
    "update_profile",
    "change_password",
]
