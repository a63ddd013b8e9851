from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from .models import (
    ActivityLog,
    Asset,
    Category,
    EmailTemplate,
    Invoice,
    InvoiceLineItem,
    InvoicePayment,
    Package,
    Ticket,
    TicketAttachment,
    TicketMessage,
    User,
)


def _value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "full_name": user.full_name,
        "email": user.email,
        "status": _value(user.status),
        "admin_role": _value(user.admin_role),
        "role": "super_admin" if user.is_super_admin else "client",
        "created_at": _value(user.created_at),
        "last_login": _value(user.last_login),
    }


def category_to_dict(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "description": category.description,
    }


def package_to_dict(package: Package) -> dict:
    return {
        "id": package.id,
        "name": package.name,
        "description": package.description,
        "price": _value(package.price),
        "currency": package.currency,
        "billing_cycle": _value(package.billing_cycle),
        "features": list(package.features or []),
        "is_active": package.is_active,
        "category_id": package.category_id,
        "category_name": package.category.name if package.category else None,
        "category_color": package.category.color if package.category else None,
    }


def asset_to_dict(asset: Asset) -> dict:
    package = asset.package
    return {
        "id": asset.id,
        "user_id": asset.user_id,
        "owner_name": asset.owner.full_name if asset.owner else None,
        "owner_email": asset.owner.email if asset.owner else None,
        "name": asset.name,
        "description": asset.description,
        "status": _value(asset.status),
        "category_id": asset.category_id,
        "category_name": asset.category.name if asset.category else None,
        "package_id": asset.package_id,
        "package_name": package.name if package else None,
        "package_price": _value(package.price) if package else None,
        "billing_cycle": _value(package.billing_cycle) if package else None,
        "subscribed_price": _value(asset.subscribed_price),
        "business_name": asset.business_name,
        "vat_number": asset.vat_number,
        "billing_email": asset.billing_email,
        "billing_address": asset.billing_address,
        "billing_phone": asset.billing_phone,
        "registration_date": _value(asset.registration_date),
        "next_due_date": _value(asset.next_due_date),
        "archived_at": _value(asset.archived_at),
        "created_at": _value(asset.created_at),
    }


def attachment_to_dict(attachment: TicketAttachment) -> dict:
    return {
        "id": attachment.id,
        "filename": attachment.filename,
        "file_size": attachment.file_size,
        "mimetype": attachment.mimetype,
        "created_at": _value(attachment.created_at),
    }


def message_to_dict(message: TicketMessage) -> dict:
    return {
        "id": message.id,
        "ticket_id": message.ticket_id,
        "sender_type": _value(message.sender_type),
        "sender_id": message.sender_id,
        "sender_name": message.sender.full_name if message.sender else None,
        "content": message.content,
        "attachments": [attachment_to_dict(item) for item in message.attachments],
        "created_at": _value(message.created_at),
    }


def ticket_to_dict(ticket: Ticket, *, with_messages: bool = False) -> dict:
    data = {
        "id": ticket.id,
        "user_id": ticket.user_id,
        "client_name": ticket.client.full_name if ticket.client else None,
        "client_email": ticket.client.email if ticket.client else None,
        "asset_id": ticket.asset_id,
        "asset_name": ticket.asset.name if ticket.asset else None,
        "title": ticket.title,
        "description": ticket.description,
        "category": _value(ticket.category),
        "priority": _value(ticket.priority),
        "price_type": _value(ticket.price_type),
        "price": _value(ticket.price),
        "status": _value(ticket.status),
        "resolved_at": _value(ticket.resolved_at),
        "closed_at": _value(ticket.closed_at),
        "created_at": _value(ticket.created_at),
        "updated_at": _value(ticket.updated_at),
    }
    if with_messages:
        data["messages"] = [message_to_dict(message) for message in ticket.messages]
        data["attachments"] = [attachment_to_dict(item) for item in ticket.attachments]
    return data


def line_item_to_dict(item: InvoiceLineItem) -> dict:
    return {
        "description": item.description,
        "quantity": _value(item.quantity),
        "unit_price": _value(item.unit_price),
        "total": _value(item.total),
    }


def payment_to_dict(payment: InvoicePayment) -> dict:
    return {
        "id": payment.id,
        "amount": _value(payment.amount),
        "payment_date": _value(payment.payment_date),
        "method": payment.method,
        "reference": payment.reference,
        "notes": payment.notes,
        "created_at": _value(payment.created_at),
    }


def invoice_to_dict(invoice: Invoice, *, with_details: bool = False) -> dict:
    data = {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "billing_period": invoice.billing_period,
        "user_id": invoice.user_id,
        "client_name": invoice.user.full_name if invoice.user else None,
        "client_email": invoice.user.email if invoice.user else None,
        "asset_id": invoice.asset_id,
        "asset_name": invoice.asset.name if invoice.asset else None,
        "description": invoice.description,
        "amount": _value(invoice.amount),
        "vat_rate": _value(invoice.vat_rate),
        "vat_amount": _value(invoice.vat_amount),
        "total_amount": _value(invoice.total_amount),
        "currency": invoice.currency,
        "status": _value(invoice.status),
        "due_date": _value(invoice.due_date),
        "paid_date": _value(invoice.paid_date),
        "payment_method": invoice.payment_method,
        "payment_reference": invoice.payment_reference,
        "has_pdf": invoice.has_pdf,
        "created_at": _value(invoice.created_at),
    }
    if with_details:
        data["payment_notes"] = invoice.payment_notes
        data["items"] = [line_item_to_dict(item) for item in invoice.items]
        data["payments"] = [payment_to_dict(payment) for payment in invoice.payments]
        data["amount_paid"] = _value(invoice.amount_paid)
        data["balance_due"] = _value(invoice.balance_due)
    return data


def template_to_dict(template: EmailTemplate) -> dict:
    return {
        "id": template.id,
        "name": template.name,
        "subject": template.subject,
        "body": template.body,
        "variables": list(template.variables or []),
        "is_active": template.is_active,
        "updated_at": _value(template.updated_at),
    }


def activity_to_dict(entry: ActivityLog) -> dict:
    return {
        "id": entry.id,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "actor_id": entry.actor_id,
        "actor_email": entry.actor_email,
        "old_values": entry.old_values,
        "new_values": entry.new_values,
        "ip_address": entry.ip_address,
        "created_at": _value(entry.created_at),
    }


def jsonable(value: Any) -> Any:
    """Recursively convert service return values (dicts of Decimals, dates) for ``jsonify``."""
    if isinstance(value, dict):
        return {key: jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    return _value(value)
