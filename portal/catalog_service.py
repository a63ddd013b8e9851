from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from .access import Principal, require_approved, require_super_admin
from .audit import record_activity
from .errors import CategoryInUse, DuplicateKey, NotFound, PackageInUse
from .extensions import db
from .forms import CategoryForm, PackageForm, field_given, list_values, load_form
from .models import Asset, AssetStatus, BillingCycle, Category, Package, User
from .settings_service import currency as default_currency
from .store import commit, get_or_404

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")


def _category_snapshot(category: Category) -> dict:
    return {"name": category.name, "color": category.color, "description": category.description}


def _package_snapshot(package: Package) -> dict:
    return {
        "name": package.name,
        "price": package.price,
        "billing_cycle": package.billing_cycle,
        "category_id": package.category_id,
        "is_active": package.is_active,
    }


def _ensure_unique_category_name(name: str, exclude_id: int | None = None) -> None:
    query = Category.query.filter(db.func.lower(Category.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first():
        raise DuplicateKey("A category with that name already exists.")


def list_categories(actor: Principal) -> list[Category]:
    require_approved(actor)
    return Category.query.order_by(Category.name.asc()).all()


def create_category(actor: Principal, payload: Mapping) -> Category:
    require_super_admin(actor)
    form = load_form(CategoryForm, payload)
    name = form.name.data.strip()
    _ensure_unique_category_name(name)

    category = Category(
        name=name,
        color=(form.color.data or "gray").strip(),
        description=(form.description.data or "").strip() or None,
    )
    db.session.add(category)
    db.session.flush()
    record_activity(actor, "category_created", entity_type="category", entity_id=category.id,
                    new_values=_category_snapshot(category))
    commit("category", duplicate_message="A category with that name already exists.")
    logger.info("Category %s created", category.name)
    return category


def update_category(actor: Principal, category_id: int, payload: Mapping) -> Category:
    require_super_admin(actor)
    category = get_or_404(Category, category_id, "Category")
    form = load_form(CategoryForm, payload)
    name = form.name.data.strip()
    _ensure_unique_category_name(name, exclude_id=category.id)

    before = _category_snapshot(category)
    category.name = name
    if field_given(form.color):
        category.color = form.color.data.strip() or category.color
    if field_given(form.description):
        category.description = form.description.data.strip() or None
    record_activity(actor, "category_updated", entity_type="category", entity_id=category.id,
                    old_values=before, new_values=_category_snapshot(category))
    commit("category", duplicate_message="A category with that name already exists.")
    return category


def delete_category(actor: Principal, category_id: int) -> None:
    require_super_admin(actor)
    category = get_or_404(Category, category_id, "Category")

    package_count = Package.query.filter_by(category_id=category.id).count()
    asset_count = Asset.query.filter_by(category_id=category.id).count()
    if package_count or asset_count:
        raise CategoryInUse(
            f"Category '{category.name}' is still used by {package_count} package(s) and {asset_count} asset(s).",
            packages=package_count,
            assets=asset_count,
        )

    record_activity(actor, "category_deleted", entity_type="category", entity_id=category.id,
                    old_values=_category_snapshot(category))
    db.session.delete(category)
    commit("category")
    logger.info("Category %s deleted", category.name)


def list_packages(actor: Principal, *, include_inactive: bool = False, category_id: int | None = None) -> list[Package]:
    require_approved(actor)
    query = Package.query
    # Clients only ever see the active catalog
    if not (include_inactive and actor.is_super_admin):
        query = query.filter(Package.is_active.is_(True))
    if category_id is not None:
        query = query.filter(Package.category_id == category_id)
    return query.order_by(Package.price.asc(), Package.name.asc()).all()


def get_package(actor: Principal, package_id: int) -> Package:
    require_approved(actor)
    package = get_or_404(Package, package_id, "Package")
    if not package.is_active and not actor.is_super_admin:
        raise NotFound("Package not found.")
    return package


def _apply_package_form(package: Package, form: PackageForm, *, creating: bool) -> None:
    category = get_or_404(Category, form.category_id.data, "Category")
    package.name = form.name.data.strip()
    package.category_id = category.id
    package.price = Decimal(form.price.data).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    if creating or field_given(form.description):
        package.description = (form.description.data or "").strip() or None
    if creating or field_given(form.currency):
        package.currency = (form.currency.data or "").strip().upper() or default_currency()
    if creating or field_given(form.billing_cycle):
        package.billing_cycle = BillingCycle(form.billing_cycle.data or BillingCycle.MONTHLY.value)
    if creating or field_given(form.features):
        package.features = list_values(form.features)
    if field_given(form.is_active):
        package.is_active = bool(form.is_active.data)
    elif creating:
        package.is_active = True


def create_package(actor: Principal, payload: Mapping) -> Package:
    require_super_admin(actor)
    form = load_form(PackageForm, payload)
    package = Package()
    _apply_package_form(package, form, creating=True)
    db.session.add(package)
    db.session.flush()
    record_activity(actor, "package_created", entity_type="package", entity_id=package.id,
                    new_values=_package_snapshot(package))
    commit("package")
    logger.info("Package %s created at %s %s", package.name, package.price, package.currency)
    return package


def update_package(actor: Principal, package_id: int, payload: Mapping) -> Package:
    require_super_admin(actor)
    package = get_or_404(Package, package_id, "Package")
    form = load_form(PackageForm, payload)
    before = _package_snapshot(package)
    _apply_package_form(package, form, creating=False)
    record_activity(actor, "package_updated", entity_type="package", entity_id=package.id,
                    old_values=before, new_values=_package_snapshot(package))
    commit("package")
    return package


def delete_package(actor: Principal, package_id: int) -> None:
    require_super_admin(actor)
    package = get_or_404(Package, package_id, "Package")
    subscribers = Asset.query.filter_by(package_id=package.id).count()
    if subscribers:
        raise PackageInUse(
            f"Package '{package.name}' has {subscribers} subscribed asset(s). Deactivate it instead.",
            assets=subscribers,
        )
    record_activity(actor, "package_deleted", entity_type="package", entity_id=package.id,
                    old_values=_package_snapshot(package))
    db.session.delete(package)
    commit("package")
    logger.info("Package %s deleted", package.name)


def package_subscribers(actor: Principal, package_id: int) -> list[dict]:
    """Assets on a package with their owners, newest first."""
    require_super_admin(actor)
    package = get_or_404(Package, package_id, "Package")
    rows = (
        db.session.query(Asset, User)
        .join(User, Asset.user_id == User.id)
        .filter(Asset.package_id == package.id)
        .order_by(Asset.created_at.desc())
        .all()
    )
    return [
        {
            "asset_id": asset.id,
            "asset_name": asset.name,
            "asset_status": asset.status.value,
            "subscribed_price": asset.subscribed_price,
            "user_id": user.id,
            "user_name": user.full_name,
            "user_email": user.email,
            "active": asset.status == AssetStatus.ACTIVE,
        }
        for asset, user in rows
    ]


__all__ = [
    "list_categories",
    "create_category",
    "update_category",
    "delete_category",
    "list_packages",
    "get_package",
    "create_package",
    "update_package",
    "delete_package",
    "package_subscribers",
]
