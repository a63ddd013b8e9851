from __future__ import annotations

from io import BytesIO

from flask import Blueprint, current_app, request, send_file

from portal.access import superadmin_required
from portal.asset_service import create_asset, delete_asset, get_asset, list_assets, set_asset_status, update_asset
from portal.billing_service import (
    create_manual_invoice,
    download_invoice_pdf,
    generate_monthly_invoices,
    get_invoice,
    issue_invoice,
    list_invoices,
    invoice_statistics,
    record_manual_payment,
    send_invoice_email,
)
from portal.catalog_service import (
    create_category,
    create_package,
    delete_category,
    delete_package,
    list_categories,
    list_packages,
    package_subscribers,
    update_category,
    update_package,
)
from portal.errors import ValidationError
from portal.routes.common import json_field, payload, principal, query_flag, query_int, respond
from portal.serializers import (
    asset_to_dict,
    category_to_dict,
    invoice_to_dict,
    message_to_dict,
    package_to_dict,
    ticket_to_dict,
    user_to_dict,
)
from portal.ticket_service import append_message, delete_ticket, get_ticket, list_tickets, set_ticket_status
from portal.user_service import create_user_as_admin, delete_user, get_user, list_users, set_user_status

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


# Users

@admin_bp.route("/users", methods=["GET"])
@superadmin_required
def users_index():
    users = list_users(principal(), status=request.args.get("status"), search=request.args.get("q"))
    return respond([user_to_dict(user) for user in users])


@admin_bp.route("/users", methods=["POST"])
@superadmin_required
def users_create():
    user = create_user_as_admin(principal(), payload())
    return respond(user_to_dict(user), status=201)


@admin_bp.route("/users/<int:user_id>", methods=["GET"])
@superadmin_required
def users_show(user_id: int):
    return respond(user_to_dict(get_user(principal(), user_id)))


@admin_bp.route("/users/<int:user_id>/status", methods=["PUT"])
@superadmin_required
def users_status(user_id: int):
    user = set_user_status(principal(), user_id, payload().get("status"))
    current_app.logger.info("User %s is now %s", user.id, user.status.value)
    return respond(user_to_dict(user))


@admin_bp.route("/users/<int:user_id>", methods=["DELETE"])
@superadmin_required
def users_delete(user_id: int):
    delete_user(principal(), user_id)
    return respond(message="User deleted.")


# Assets

@admin_bp.route("/assets", methods=["GET"])
@superadmin_required
def assets_index():
    assets = list_assets(
        principal(),
        user_id=query_int("user_id"),
        status=request.args.get("status"),
        include_archived=query_flag("include_archived"),
    )
    return respond([asset_to_dict(asset) for asset in assets])


@admin_bp.route("/assets", methods=["POST"])
@superadmin_required
def assets_create():
    data = payload()
    owner_id = data.pop("user_id", None)
    try:
        owner_id = int(owner_id) if owner_id not in (None, "") else None
    except (TypeError, ValueError) as exc:
        raise ValidationError("'user_id' must be an integer.", errors={"user_id": ["Not a valid integer."]}) from exc
    asset = create_asset(principal(), owner_id, data)
    return respond(asset_to_dict(asset), status=201)


@admin_bp.route("/assets/<int:asset_id>", methods=["GET"])
@superadmin_required
def assets_show(asset_id: int):
    return respond(asset_to_dict(get_asset(principal(), asset_id)))


@admin_bp.route("/assets/<int:asset_id>", methods=["PUT"])
@superadmin_required
def assets_update(asset_id: int):
    return respond(asset_to_dict(update_asset(principal(), asset_id, payload())))


@admin_bp.route("/assets/<int:asset_id>/status", methods=["PUT"])
@superadmin_required
def assets_status(asset_id: int):
    return respond(asset_to_dict(set_asset_status(principal(), asset_id, payload().get("status"))))


@admin_bp.route("/assets/<int:asset_id>", methods=["DELETE"])
@superadmin_required
def assets_delete(asset_id: int):
    outcome = delete_asset(principal(), asset_id)
    return respond(outcome=outcome, message=f"Asset {outcome}.")


# Billing

@admin_bp.route("/billing/invoices", methods=["GET"])
@superadmin_required
def invoices_index():
    invoices = list_invoices(
        principal(),
        status=request.args.get("status"),
        user_id=query_int("user_id"),
        asset_id=query_int("asset_id"),
    )
    return respond([invoice_to_dict(invoice) for invoice in invoices])


@admin_bp.route("/billing/invoices", methods=["POST"])
@superadmin_required
def invoices_create():
    data = payload()
    items = json_field(data, "items")
    invoice = create_manual_invoice(principal(), data, items=items, pdf=request.files.get("pdf_file"))
    return respond(invoice_to_dict(invoice, with_details=True), status=201)


@admin_bp.route("/billing/invoices/<int:invoice_id>", methods=["GET"])
@superadmin_required
def invoices_show(invoice_id: int):
    return respond(invoice_to_dict(get_invoice(principal(), invoice_id), with_details=True))


@admin_bp.route("/billing/invoices/<int:invoice_id>/issue", methods=["POST"])
@superadmin_required
def invoices_issue(invoice_id: int):
    return respond(invoice_to_dict(issue_invoice(principal(), invoice_id), with_details=True))


@admin_bp.route("/billing/invoices/<int:invoice_id>/payments", methods=["POST"])
@superadmin_required
def invoices_payment(invoice_id: int):
    invoice = record_manual_payment(principal(), invoice_id, payload())
    return respond(invoice_to_dict(invoice, with_details=True), status=201)


@admin_bp.route("/billing/invoices/<int:invoice_id>/send", methods=["POST"])
@superadmin_required
def invoices_send(invoice_id: int):
    invoice = send_invoice_email(principal(), invoice_id)
    return respond(invoice_to_dict(invoice), message="Invoice emailed.")


@admin_bp.route("/billing/invoices/<int:invoice_id>/pdf", methods=["GET"])
@superadmin_required
def invoices_pdf(invoice_id: int):
    invoice, content = download_invoice_pdf(principal(), invoice_id)
    return send_file(
        BytesIO(content),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=invoice.pdf_filename or f"{invoice.invoice_number}.pdf",
    )


@admin_bp.route("/billing/generate-monthly", methods=["POST"])
@superadmin_required
def invoices_generate():
    result = generate_monthly_invoices(principal())
    return respond(result.as_dict())


@admin_bp.route("/billing/statistics", methods=["GET"])
@superadmin_required
def billing_statistics():
    return respond(invoice_statistics(principal(), user_id=query_int("user_id")))


# Tickets

@admin_bp.route("/tickets", methods=["GET"])
@superadmin_required
def tickets_index():
    tickets = list_tickets(
        principal(),
        status=request.args.get("status"),
        user_id=query_int("user_id"),
        asset_id=query_int("asset_id"),
    )
    return respond([ticket_to_dict(ticket) for ticket in tickets])


@admin_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
@superadmin_required
def tickets_show(ticket_id: int):
    return respond(ticket_to_dict(get_ticket(principal(), ticket_id), with_messages=True))


@admin_bp.route("/tickets/<int:ticket_id>/reply", methods=["POST"])
@superadmin_required
def tickets_reply(ticket_id: int):
    message = append_message(
        principal(), ticket_id, payload().get("content"), request.files.getlist("attachments")
    )
    return respond(message_to_dict(message), status=201)


@admin_bp.route("/tickets/<int:ticket_id>/status", methods=["PUT"])
@superadmin_required
def tickets_status(ticket_id: int):
    ticket = set_ticket_status(principal(), ticket_id, payload().get("status"))
    return respond(ticket_to_dict(ticket))


@admin_bp.route("/tickets/<int:ticket_id>", methods=["DELETE"])
@superadmin_required
def tickets_delete(ticket_id: int):
    delete_ticket(principal(), ticket_id)
    return respond(message="Ticket deleted.")


# Catalog

@admin_bp.route("/packages", methods=["GET"])
@superadmin_required
def packages_index():
    packages = list_packages(principal(), include_inactive=True, category_id=query_int("category_id"))
    return respond([package_to_dict(package) for package in packages])


@admin_bp.route("/packages", methods=["POST"])
@superadmin_required
def packages_create():
    return respond(package_to_dict(create_package(principal(), payload())), status=201)


@admin_bp.route("/packages/<int:package_id>", methods=["PUT"])
@superadmin_required
def packages_update(package_id: int):
    return respond(package_to_dict(update_package(principal(), package_id, payload())))


@admin_bp.route("/packages/<int:package_id>", methods=["DELETE"])
@superadmin_required
def packages_delete(package_id: int):
    delete_package(principal(), package_id)
    return respond(message="Package deleted.")


@admin_bp.route("/packages/<int:package_id>/subscribers", methods=["GET"])
@superadmin_required
def packages_subscribers(package_id: int):
    return respond(package_subscribers(principal(), package_id))


@admin_bp.route("/categories", methods=["GET"])
@superadmin_required
def categories_index():
    return respond([category_to_dict(category) for category in list_categories(principal())])


@admin_bp.route("/categories", methods=["POST"])
@superadmin_required
def categories_create():
    return respond(category_to_dict(create_category(principal(), payload())), status=201)


@admin_bp.route("/categories/<int:category_id>", methods=["PUT"])
@superadmin_required
def categories_update(category_id: int):
    return respond(category_to_dict(update_category(principal(), category_id, payload())))


@admin_bp.route("/categories/<int:category_id>", methods=["DELETE"])
@superadmin_required
def categories_delete(category_id: int):
    delete_category(principal(), category_id)
    return respond(message="Category deleted.")
