from __future__ import annotations

from collections import defaultdict
from decimal import Decimal

from flask import Blueprint
from sqlalchemy import func

from portal.access import approved_required, superadmin_required
from portal.billing_service import monthly_cost, reclassify_overdue
from portal.extensions import db
from portal.models import (
    OPEN_TICKET_STATUSES,
    UNPAID_INVOICE_STATUSES,
    Asset,
    AssetStatus,
    Invoice,
    InvoiceStatus,
    Ticket,
    User,
    UserStatus,
)
from portal.routes.common import principal, respond
from portal.serializers import invoice_to_dict, ticket_to_dict, user_to_dict

dashboard_bp = Blueprint("dashboard", __name__, url_prefix="/api")

RECENT_LIMIT = 5


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def _asset_status_counts(user_id: int) -> dict[str, int]:
    counts: dict[str, int] = defaultdict(int)
    rows = (
        db.session.query(Asset.status, func.count(Asset.id))
        .filter(Asset.user_id == user_id, Asset.archived_at.is_(None))
        .group_by(Asset.status)
        .all()
    )
    for status, count in rows:
        counts[status.value] += count
    return {status.value: counts.get(status.value, 0) for status in AssetStatus}


@dashboard_bp.route("/dashboard", methods=["GET"])
@approved_required
def client_overview():
    actor = principal()
    reclassify_overdue()

    asset_counts = _asset_status_counts(actor.id)
    open_tickets = Ticket.query.filter(Ticket.user_id == actor.id, Ticket.status.in_(OPEN_TICKET_STATUSES)).count()
    unpaid = Invoice.query.filter(
        Invoice.user_id == actor.id,
        Invoice.status.in_([InvoiceStatus.PENDING, InvoiceStatus.OVERDUE]),
    )
    unpaid_total = unpaid.with_entities(func.coalesce(func.sum(Invoice.total_amount), 0)).scalar()
    recent_tickets = (
        Ticket.query.filter(Ticket.user_id == actor.id)
        .order_by(Ticket.updated_at.desc(), Ticket.id.desc())
        .limit(RECENT_LIMIT)
        .all()
    )

    return respond(
        {
            "assets": {"total": sum(asset_counts.values()), **asset_counts},
            "monthly_cost": monthly_cost(actor.id),
            "open_tickets": open_tickets,
            "unpaid_invoices": unpaid.count(),
            "unpaid_total": _money(unpaid_total),
            "recent_tickets": [ticket_to_dict(ticket) for ticket in recent_tickets],
        }
    )


@dashboard_bp.route("/admin/dashboard", methods=["GET"])
@superadmin_required
def admin_overview():
    reclassify_overdue()

    def _invoice_count(status: InvoiceStatus) -> int:
        return Invoice.query.filter(Invoice.status == status).count()

    total_revenue = (
        db.session.query(func.coalesce(func.sum(Invoice.total_amount), 0))
        .filter(Invoice.status == InvoiceStatus.PAID)
        .scalar()
    )
    outstanding = (
        db.session.query(func.coalesce(func.sum(Invoice.total_amount), 0))
        .filter(Invoice.status.in_(UNPAID_INVOICE_STATUSES), Invoice.status != InvoiceStatus.DRAFT)
        .scalar()
    )
    latest_registrations = User.query.order_by(User.created_at.desc(), User.id.desc()).limit(RECENT_LIMIT).all()
    latest_invoices = Invoice.query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(RECENT_LIMIT).all()

    return respond(
        {
            "active_clients": User.query.filter(User.status == UserStatus.APPROVED, User.admin_role.is_(None)).count(),
            "pending_registrations": User.query.filter(User.status == UserStatus.PENDING).count(),
            "active_assets": Asset.query.filter(Asset.status == AssetStatus.ACTIVE).count(),
            "total_revenue": _money(total_revenue),
            "outstanding_amount": _money(outstanding),
            "pending_invoices": _invoice_count(InvoiceStatus.PENDING),
            "overdue_invoices": _invoice_count(InvoiceStatus.OVERDUE),
            "draft_invoices": _invoice_count(InvoiceStatus.DRAFT),
            "open_tickets": Ticket.query.filter(Ticket.status.in_(OPEN_TICKET_STATUSES)).count(),
            "latest_registrations": [user_to_dict(user) for user in latest_registrations],
            "latest_invoices": [invoice_to_dict(invoice) for invoice in latest_invoices],
        }
    )
