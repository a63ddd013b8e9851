"""Error taxonomy shared by lifecycle services and the HTTP layer.

Services raise these; the app factory maps every ``PortalError`` to a JSON
body of the form ``{"error": code, "message": text, ...details}`` using the
class ``status_code``.
"""

from __future__ import annotations


class PortalError(Exception):
    status_code = 400
    code = "error"
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None, **details) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class Unauthorized(PortalError):
    status_code = 401
    code = "unauthorized"
    default_message = "Please sign in with an approved account."


class Forbidden(PortalError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action."


class NotFound(PortalError):
    status_code = 404
    code = "not_found"
    default_message = "The requested resource does not exist."


class ValidationError(PortalError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid input."

    def __init__(self, message: str | None = None, errors: dict | None = None, **details) -> None:
        super().__init__(message, errors=errors or {}, **details)

    @property
    def errors(self) -> dict:
        return self.details["errors"]


class InvalidTransition(PortalError):
    status_code = 409
    code = "invalid_transition"
    default_message = "That status change is not allowed from the current state."


class ConflictingState(PortalError):
    status_code = 409
    code = "conflicting_state"
    default_message = "This record was changed by someone else. Refresh and try again."


class DuplicateKey(PortalError):
    status_code = 409
    code = "duplicate_key"
    default_message = "A record with the same unique value already exists."


class DuplicateInvoiceNumber(DuplicateKey):
    code = "duplicate_invoice_number"
    default_message = "That invoice number is already in use."


class LastAdminError(PortalError):
    status_code = 409
    code = "last_admin"
    default_message = "At least one super admin must remain."


class AlreadyPaid(PortalError):
    status_code = 409
    code = "already_paid"
    default_message = "This invoice has already been paid."


class ResourceInUse(PortalError):
    status_code = 409
    code = "resource_in_use"
    default_message = "The resource is still referenced and cannot be deleted."


class CategoryInUse(ResourceInUse):
    code = "category_in_use"
    default_message = "Cannot delete a category that still has packages."


class PackageInUse(ResourceInUse):
    code = "package_in_use"
    default_message = "Cannot delete a package that assets are subscribed to."


class AssetInUse(ResourceInUse):
    code = "asset_in_use"
    default_message = "The asset has open invoices or tickets."


class UserInUse(ResourceInUse):
    code = "user_in_use"
    default_message = "The user still owns assets, tickets or invoices."


class ExternalServiceError(PortalError):
    status_code = 502
    code = "external_service_error"
    default_message = "An external service failed. The primary action was not affected."


__all__ = [
    "PortalError",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "ValidationError",
    "InvalidTransition",
    "ConflictingState",
    "DuplicateKey",
    "DuplicateInvoiceNumber",
    "LastAdminError",
    "AlreadyPaid",
    "ResourceInUse",
    "CategoryInUse",
    "PackageInUse",
    "AssetInUse",
    "UserInUse",
    "ExternalServiceError",
]
