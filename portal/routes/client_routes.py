"""Client self-service endpoints: assets, tickets, billing and the service catalog.

Super admins can call these too; services scope every query to the caller's
own records unless the principal is an admin.
"""

from __future__ import annotations

from io import BytesIO

from flask import Blueprint, request, send_file
from sqlalchemy import func

from portal.access import approved_required
from portal.asset_service import create_asset, get_asset, list_assets, set_asset_status, update_asset
from portal.billing_service import (
    download_invoice_pdf,
    get_invoice,
    invoice_statistics,
    list_invoices,
    monthly_cost,
    payment_instructions,
    submit_payment_notice,
)
from portal.catalog_service import list_categories, list_packages
from portal.extensions import db
from portal.models import Asset, AssetStatus, Category, Package
from portal.routes.common import payload, principal, query_int, respond
from portal.serializers import (
    asset_to_dict,
    category_to_dict,
    invoice_to_dict,
    message_to_dict,
    package_to_dict,
    ticket_to_dict,
)
from portal.ticket_service import append_message, create_ticket, get_attachment, get_ticket, list_tickets, ticket_pricing

client_bp = Blueprint("client", __name__, url_prefix="/api")


# Assets

@client_bp.route("/assets", methods=["GET"])
@approved_required
def assets_index():
    assets = list_assets(principal(), status=request.args.get("status"))
    return respond([asset_to_dict(asset) for asset in assets])


@client_bp.route("/assets", methods=["POST"])
@approved_required
def assets_create():
    actor = principal()
    asset = create_asset(actor, actor.id, payload())
    return respond(asset_to_dict(asset), status=201)


@client_bp.route("/assets/<int:asset_id>", methods=["GET"])
@approved_required
def assets_show(asset_id: int):
    return respond(asset_to_dict(get_asset(principal(), asset_id)))


@client_bp.route("/assets/<int:asset_id>", methods=["PUT"])
@approved_required
def assets_update(asset_id: int):
    actor = principal()
    get_asset(actor, asset_id)
    return respond(asset_to_dict(update_asset(actor, asset_id, payload())))


@client_bp.route("/assets/<int:asset_id>/status", methods=["PUT"])
@approved_required
def assets_status(asset_id: int):
    actor = principal()
    get_asset(actor, asset_id)
    asset = set_asset_status(actor, asset_id, payload().get("status"))
    return respond(asset_to_dict(asset))


# Tickets

@client_bp.route("/tickets", methods=["GET"])
@approved_required
def tickets_index():
    tickets = list_tickets(principal(), status=request.args.get("status"), asset_id=query_int("asset_id"))
    return respond([ticket_to_dict(ticket) for ticket in tickets])


@client_bp.route("/tickets", methods=["POST"])
@approved_required
def tickets_create():
    ticket = create_ticket(principal(), payload(), request.files.getlist("attachments"))
    return respond(ticket_to_dict(ticket, with_messages=True), status=201)


@client_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
@approved_required
def tickets_show(ticket_id: int):
    return respond(ticket_to_dict(get_ticket(principal(), ticket_id), with_messages=True))


@client_bp.route("/tickets/<int:ticket_id>/messages", methods=["POST"])
@approved_required
def tickets_reply(ticket_id: int):
    message = append_message(
        principal(), ticket_id, payload().get("content"), request.files.getlist("attachments")
    )
    return respond(message_to_dict(message), status=201)


@client_bp.route("/tickets/<int:ticket_id>/attachments/<int:attachment_id>", methods=["GET"])
@approved_required
def tickets_attachment(ticket_id: int, attachment_id: int):
    attachment, path = get_attachment(principal(), ticket_id, attachment_id)
    return send_file(
        path,
        mimetype=attachment.mimetype or "application/octet-stream",
        as_attachment=True,
        download_name=attachment.filename,
    )


# Billing

@client_bp.route("/billing/invoices", methods=["GET"])
@approved_required
def invoices_index():
    invoices = list_invoices(principal(), status=request.args.get("status"), asset_id=query_int("asset_id"))
    return respond([invoice_to_dict(invoice) for invoice in invoices])


@client_bp.route("/billing/invoices/<int:invoice_id>", methods=["GET"])
@approved_required
def invoices_show(invoice_id: int):
    return respond(invoice_to_dict(get_invoice(principal(), invoice_id), with_details=True))


@client_bp.route("/billing/invoices/<int:invoice_id>/payment-notice", methods=["POST"])
@approved_required
def invoices_payment_notice(invoice_id: int):
    invoice = submit_payment_notice(principal(), invoice_id, payload())
    return respond(
        invoice_to_dict(invoice, with_details=True),
        message="Payment information recorded. An administrator will verify it.",
    )


@client_bp.route("/billing/invoices/<int:invoice_id>/pdf", methods=["GET"])
@approved_required
def invoices_pdf(invoice_id: int):
    invoice, content = download_invoice_pdf(principal(), invoice_id)
    return send_file(
        BytesIO(content),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=invoice.pdf_filename or f"{invoice.invoice_number}.pdf",
    )


@client_bp.route("/billing/statistics", methods=["GET"])
@approved_required
def billing_statistics():
    return respond(invoice_statistics(principal()))


@client_bp.route("/billing/payment-instructions", methods=["GET"])
@approved_required
def billing_payment_instructions():
    return respond(payment_instructions(principal()))


# Service catalog

@client_bp.route("/services/packages", methods=["GET"])
@approved_required
def services_packages():
    packages = list_packages(principal(), category_id=query_int("category_id"))
    return respond([package_to_dict(package) for package in packages])


@client_bp.route("/services/categories", methods=["GET"])
@approved_required
def services_categories():
    return respond([category_to_dict(category) for category in list_categories(principal())])


@client_bp.route("/services/my-services", methods=["GET"])
@approved_required
def services_mine():
    assets = list_assets(principal(), status=AssetStatus.ACTIVE.value)
    return respond([asset_to_dict(asset) for asset in assets])


@client_bp.route("/services/statistics", methods=["GET"])
@approved_required
def services_statistics():
    actor = principal()
    base = (
        db.session.query(Asset)
        .join(Package, Asset.package_id == Package.id)
        .filter(Asset.user_id == actor.id, Asset.status == AssetStatus.ACTIVE)
    )
    by_category = (
        base.join(Category, Asset.category_id == Category.id)
        .with_entities(Category.name, func.count(Asset.id))
        .group_by(Category.name)
        .all()
    )
    return respond(
        {
            "total_services": base.count(),
            "services_by_category": [{"category": name, "count": count} for name, count in by_category],
            "monthly_cost": monthly_cost(actor.id),
        }
    )


@client_bp.route("/services/pricing", methods=["GET"])
@approved_required
def services_pricing():
    return respond(ticket_pricing())
