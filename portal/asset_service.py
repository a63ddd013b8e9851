"""Asset lifecycle: client-owned billable services bound to a package."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping

from .access import Principal, require_approved, require_owner_or_admin, require_super_admin
from .audit import record_activity
from .errors import AssetInUse, Forbidden, NotFound, ValidationError
from .extensions import db
from .forms import AssetForm, AssetStatusForm, field_given, load_form
from .models import (
    OPEN_TICKET_STATUSES,
    UNPAID_INVOICE_STATUSES,
    Asset,
    AssetStatus,
    Category,
    Invoice,
    Package,
    Ticket,
    User,
    UserStatus,
)
from .store import commit, get_or_404

logger = logging.getLogger(__name__)

BILLING_FIELDS = ("business_name", "vat_number", "billing_email", "billing_address", "billing_phone")


def _snapshot(asset: Asset) -> dict:
    data = {
        "name": asset.name,
        "status": asset.status,
        "category_id": asset.category_id,
        "package_id": asset.package_id,
        "subscribed_price": asset.subscribed_price,
    }
    for name in BILLING_FIELDS:
        data[name] = getattr(asset, name)
    return data


def _active_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise ValidationError("Unknown category.", errors={"category_id": ["Category does not exist."]})
    return category


def _active_package(package_id: int, category: Category) -> Package:
    package = db.session.get(Package, package_id)
    if package is None or not package.is_active:
        raise ValidationError("Unknown package.", errors={"package_id": ["Package does not exist or is inactive."]})
    if package.category_id != category.id:
        raise ValidationError(
            "Package does not belong to the selected category.",
            errors={"package_id": ["Choose a package from the selected category."]},
        )
    return package


def _resolve_owner(actor: Principal, owner_id: int | None) -> User:
    if owner_id is None or owner_id == actor.id:
        if actor.is_super_admin and owner_id is None:
            raise ValidationError("Owner is required.", errors={"user_id": ["Choose the client who owns this asset."]})
        return get_or_404(User, actor.id, "User")
    if not actor.is_super_admin:
        raise Forbidden("Clients can only create assets for themselves.")
    owner = get_or_404(User, owner_id, "User")
    if owner.status != UserStatus.APPROVED:
        raise ValidationError("Owner account is not approved.", errors={"user_id": ["The client must be approved."]})
    return owner


def _check_status_change(actor: Principal, asset: Asset | None, new_status: AssetStatus) -> None:
    """Owners may switch between active and inactive; suspension and archive are admin decisions."""
    if actor.is_super_admin:
        return
    if asset is not None and asset.archived_at is not None:
        raise Forbidden("Only an administrator can reactivate an archived asset.")
    if new_status == AssetStatus.SUSPENDED or (asset is not None and asset.status == AssetStatus.SUSPENDED):
        raise Forbidden("Only an administrator can suspend an asset or lift a suspension.")


def _apply_billing_profile(asset: Asset, form: AssetForm, *, creating: bool) -> None:
    for name in BILLING_FIELDS:
        field = getattr(form, name)
        if creating or field_given(field):
            value = (field.data or "").strip()
            setattr(asset, name, value or None)


def create_asset(actor: Principal, owner_id: int | None, payload: Mapping) -> Asset:
    require_approved(actor)
    owner = _resolve_owner(actor, owner_id)
    form = load_form(AssetForm, payload)
    category = _active_category(form.category_id.data)
    package = _active_package(form.package_id.data, category)

    status = AssetStatus(form.status.data) if form.status.data else AssetStatus.ACTIVE
    _check_status_change(actor, None, status)

    asset = Asset(
        name=form.name.data.strip(),
        description=(form.description.data or "").strip() or None,
        status=status,
        owner=owner,
        category=category,
        package=package,
        subscribed_price=package.price,
    )
    _apply_billing_profile(asset, form, creating=True)
    db.session.add(asset)
    db.session.flush()
    record_activity(actor, "asset_created", entity_type="asset", entity_id=asset.id, new_values=_snapshot(asset))
    commit("asset")
    logger.info("Asset %s created for user %s on package %s", asset.id, owner.id, package.id)
    return asset


def update_asset(actor: Principal, asset_id: int, payload: Mapping) -> Asset:
    require_approved(actor)
    asset = get_or_404(Asset, asset_id, "Asset")
    require_owner_or_admin(actor, asset.user_id, resource="asset")
    if asset.archived_at is not None:
        raise ValidationError("Archived assets cannot be edited.", errors={"asset": ["Asset is archived."]})

    form = load_form(AssetForm, payload)
    new_status = AssetStatus(form.status.data) if form.status.data else asset.status
    if new_status != asset.status:
        _check_status_change(actor, asset, new_status)
    before = _snapshot(asset)

    category = _active_category(form.category_id.data)
    if form.package_id.data != asset.package_id or category.id != asset.category_id:
        package = _active_package(form.package_id.data, category)
        asset.package = package
        asset.subscribed_price = package.price
    asset.category = category

    asset.name = form.name.data.strip()
    if field_given(form.description):
        asset.description = (form.description.data or "").strip() or None
    _apply_billing_profile(asset, form, creating=False)

    asset.status = new_status

    record_activity(actor, "asset_updated", entity_type="asset", entity_id=asset.id,
                    old_values=before, new_values=_snapshot(asset))
    commit("asset")
    return asset


def set_asset_status(actor: Principal, asset_id: int, status) -> Asset:
    require_approved(actor)
    asset = get_or_404(Asset, asset_id, "Asset")
    if asset.user_id != actor.id:
        require_super_admin(actor)
    form = load_form(AssetStatusForm, {"status": status})
    new_status = AssetStatus(form.status.data)
    if new_status == asset.status:
        return asset
    _check_status_change(actor, asset, new_status)

    previous = asset.status
    asset.status = new_status
    if new_status == AssetStatus.ACTIVE:
        asset.archived_at = None
    record_activity(actor, "asset_status_changed", entity_type="asset", entity_id=asset.id,
                    old_values={"status": previous}, new_values={"status": new_status})
    commit("asset")
    logger.info("Asset %s status %s -> %s", asset.id, previous.value, new_status.value)
    return asset


def delete_asset(actor: Principal, asset_id: int) -> str:
    """Delete or archive an asset; returns ``"deleted"`` or ``"archived"``.

    Assets with unpaid invoices or unresolved tickets are blocked. Assets whose
    only history is settled invoices or closed tickets are archived so that
    history keeps its foreign keys.
    """
    require_super_admin(actor)
    asset = get_or_404(Asset, asset_id, "Asset")

    open_invoices = Invoice.query.filter(
        Invoice.asset_id == asset.id, Invoice.status.in_(UNPAID_INVOICE_STATUSES)
    ).count()
    open_tickets = Ticket.query.filter(
        Ticket.asset_id == asset.id, Ticket.status.in_(OPEN_TICKET_STATUSES)
    ).count()
    if open_invoices or open_tickets:
        raise AssetInUse(
            "Settle open invoices and close open tickets before deleting this asset.",
            open_invoices=open_invoices,
            open_tickets=open_tickets,
        )

    has_history = (
        Invoice.query.filter_by(asset_id=asset.id).count() + Ticket.query.filter_by(asset_id=asset.id).count()
    ) > 0
    before = _snapshot(asset)
    if has_history:
        asset.status = AssetStatus.INACTIVE
        asset.archived_at = datetime.utcnow()
        outcome = "archived"
    else:
        db.session.delete(asset)
        outcome = "deleted"

    record_activity(actor, f"asset_{outcome}", entity_type="asset", entity_id=asset_id, old_values=before)
    commit("asset")
    logger.info("Asset %s %s", asset_id, outcome)
    return outcome


def list_assets(
    actor: Principal,
    *,
    user_id: int | None = None,
    status: str | None = None,
    include_archived: bool = False,
) -> list[Asset]:
    require_approved(actor)
    query = Asset.query
    if actor.is_super_admin:
        if user_id is not None:
            query = query.filter(Asset.user_id == user_id)
    else:
        query = query.filter(Asset.user_id == actor.id)
    if status:
        try:
            query = query.filter(Asset.status == AssetStatus(status))
        except ValueError as exc:
            raise ValidationError("Unknown status filter.", errors={"status": [status]}) from exc
    if not include_archived:
        query = query.filter(Asset.archived_at.is_(None))
    return query.order_by(Asset.created_at.desc(), Asset.id.desc()).all()


def get_asset(actor: Principal, asset_id: int) -> Asset:
    require_approved(actor)
    asset = db.session.get(Asset, asset_id)
    # Do not reveal other clients' assets
    if asset is None or (not actor.is_super_admin and asset.user_id != actor.id):
        raise NotFound("Asset not found.")
    return asset


__all__ = [
    "create_asset",
    "update_asset",
    "set_asset_status",
    "delete_asset",
    "list_assets",
    "get_asset",
]
