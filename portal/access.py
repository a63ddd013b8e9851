"""Principals and the authorization predicates every lifecycle operation runs.

A ``Principal`` is the immutable view of an authenticated actor: its id, its
role (``client`` or ``super_admin``) and its account status. Services take a
principal as their first argument and call ``require_approved`` or
``require_role`` before reading or mutating anything; the route decorators
below apply the same predicates earlier so unauthenticated requests never
reach request parsing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Callable, TypeVar

from flask import g
from flask_login import current_user

from .errors import Forbidden, Unauthorized
from .models import User, UserStatus

T = TypeVar("T")


class Role(str, Enum):
    CLIENT = "client"
    SUPER_ADMIN = "super_admin"


@dataclass(frozen=True)
class Principal:
    id: int | None
    role: Role
    status: UserStatus
    email: str | None = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    @property
    def is_system(self) -> bool:
        return self.id is None

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        role = Role.SUPER_ADMIN if user.is_super_admin else Role.CLIENT
        return cls(id=user.id, role=role, status=user.status, email=user.email)


# Scheduled jobs act as this principal; it has no backing user row.
SYSTEM_PRINCIPAL = Principal(id=None, role=Role.SUPER_ADMIN, status=UserStatus.APPROVED, email=None)


def require_approved(principal: Principal | None) -> Principal:
    if principal is None:
        raise Unauthorized("Authentication required.")
    if principal.status == UserStatus.PENDING:
        raise Unauthorized("Your account is awaiting approval.")
    if principal.status != UserStatus.APPROVED:
        raise Unauthorized(f"Your account is {principal.status.value}.")
    return principal


def require_role(principal: Principal | None, role: Role) -> Principal:
    require_approved(principal)
    if principal.role != role:
        raise Forbidden("Super admin access required." if role == Role.SUPER_ADMIN else "Insufficient permissions.")
    return principal


def require_super_admin(principal: Principal | None) -> Principal:
    return require_role(principal, Role.SUPER_ADMIN)


def require_owner_or_admin(principal: Principal | None, owner_id: int, *, resource: str = "resource") -> Principal:
    require_approved(principal)
    if principal.is_super_admin or principal.id == owner_id:
        return principal
    raise Forbidden(f"You do not have access to this {resource}.")


def current_principal() -> Principal | None:
    if current_user and current_user.is_authenticated:
        principal = Principal.from_user(current_user)
        g.principal = principal
        return principal
    return None


def approved_required(func: Callable[..., T]) -> Callable[..., T]:
    @wraps(func)
    def wrapper(*args, **kwargs):
        require_approved(current_principal())
        return func(*args, **kwargs)

    return wrapper


def role_required(role: Role) -> Callable[[Callable[..., T]], Callable[..., T]]:
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs):
            require_role(current_principal(), role)
            return func(*args, **kwargs)

        return wrapper

    return decorator


superadmin_required = role_required(Role.SUPER_ADMIN)


__all__ = [
    "Role",
    "Principal",
    "SYSTEM_PRINCIPAL",
    "require_approved",
    "require_role",
    "require_super_admin",
    "require_owner_or_admin",
    "current_principal",
    "approved_required",
    "role_required",
    "superadmin_required",
]
