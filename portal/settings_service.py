from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from flask import current_app

from .access import Principal, require_super_admin
from .audit import record_activity
from .extensions import db
from .forms import SettingsForm, field_given, load_form
from .models import SystemSetting
from .store import commit

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

# Keys clients may read without being an admin
PUBLIC_KEYS = (
    "company_name",
    "currency",
    "payment_terms",
    "vat_rate",
    "contact_email",
    "ticket_price_with_package",
    "ticket_price_without_package",
)


def _defaults() -> dict[str, Any]:
    cfg = current_app.config
    return {
        "vat_rate": str(normalize_vat_rate(cfg.get("DEFAULT_VAT_RATE", "24"))),
        "payment_terms": int(cfg.get("DEFAULT_PAYMENT_TERMS_DAYS", 30)),
        "currency": cfg.get("DEFAULT_CURRENCY", "EUR"),
        "company_name": "KubikPortal",
        "bank_iban": "",
        "bank_holder": "",
        "contact_email": cfg.get("MAIL_ADMIN_RECIPIENT") or "",
        "ticket_price_with_package": str(cfg.get("DEFAULT_TICKET_PRICE_WITH_PACKAGE", "25.00")),
        "ticket_price_without_package": str(cfg.get("DEFAULT_TICKET_PRICE_WITHOUT_PACKAGE", "75.00")),
    }


def normalize_vat_rate(value) -> Decimal:
    """Return the VAT rate as a percentage with two decimals.

    Values below 1 are read as fractions, so ``0.24`` and ``24`` both mean 24%.
    """
    rate = Decimal(str(value))
    if rate < 0 or rate > 100:
        raise ValueError("VAT rate must be between 0 and 100")
    if 0 < rate < 1:
        rate = rate * 100
    return rate.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def get_settings() -> dict[str, Any]:
    values = _defaults()
    for row in SystemSetting.query.all():
        values[row.key] = row.value
    return values


def public_settings() -> dict[str, Any]:
    values = get_settings()
    return {key: values[key] for key in PUBLIC_KEYS if key in values}


def get_setting(key: str, default: Any = None) -> Any:
    row = SystemSetting.query.filter_by(key=key).first()
    if row is not None:
        return row.value
    return _defaults().get(key, default)


def vat_rate() -> Decimal:
    return normalize_vat_rate(get_setting("vat_rate"))


def payment_terms_days() -> int:
    return int(get_setting("payment_terms") or 0)


def currency() -> str:
    return str(get_setting("currency") or "EUR")


def ticket_price(price_type: str) -> Decimal:
    key = f"ticket_price_{price_type}"
    return Decimal(str(get_setting(key) or "0")).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def payment_instructions() -> dict[str, Any]:
    values = get_settings()
    return {
        "bank_iban": values.get("bank_iban") or "",
        "bank_holder": values.get("bank_holder") or "",
        "contact_email": values.get("contact_email") or "",
        "currency": values.get("currency"),
        "payment_terms": values.get("payment_terms"),
    }


def update_settings(actor: Principal, payload: Mapping) -> dict[str, Any]:
    require_super_admin(actor)
    form = load_form(SettingsForm, payload)

    changes: dict[str, Any] = {}
    for name, field in form._fields.items():
        if not field_given(field) or field.data is None:
            continue
        value = field.data
        if name == "vat_rate":
            value = str(normalize_vat_rate(value))
        elif isinstance(value, Decimal):
            value = str(value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))
        elif isinstance(value, str):
            value = value.strip()
        changes[name] = value

    previous = get_settings()
    for key, value in changes.items():
        row = SystemSetting.query.filter_by(key=key).first()
        if row is None:
            row = SystemSetting(key=key)
            db.session.add(row)
        row.value = value
        row.updated_by_id = actor.id

    record_activity(
        actor,
        "settings_updated",
        entity_type="settings",
        old_values={key: previous.get(key) for key in changes},
        new_values=changes,
    )
    commit("settings")
    logger.info("System settings updated: %s", ", ".join(sorted(changes)) or "no changes")
    return get_settings()


__all__ = [
    "normalize_vat_rate",
    "get_settings",
    "public_settings",
    "get_setting",
    "vat_rate",
    "payment_terms_days",
    "currency",
    "ticket_price",
    "payment_instructions",
    "update_settings",
]
