from __future__ import annotations

from flask import Blueprint, current_app, request

from portal.access import superadmin_required
from portal.audit import list_activity
from portal.email_service import (
    create_template,
    delete_template,
    get_template,
    list_templates,
    send_test_email,
    update_template,
)
from portal.routes.common import payload, principal, query_int, respond
from portal.serializers import activity_to_dict, template_to_dict, user_to_dict
from portal.settings_service import get_settings, update_settings
from portal.user_service import create_super_admin, demote_super_admin, list_super_admins, promote_to_super_admin

super_admin_bp = Blueprint("super_admin", __name__, url_prefix="/api/admin")


@super_admin_bp.route("/super-admins", methods=["GET"])
@superadmin_required
def super_admins_index():
    return respond([user_to_dict(user) for user in list_super_admins(principal())])


@super_admin_bp.route("/super-admins", methods=["POST"])
@superadmin_required
def super_admins_create():
    user = create_super_admin(principal(), payload())
    current_app.logger.info("Super admin account created for %s", user.email)
    return respond(user_to_dict(user), status=201)


@super_admin_bp.route("/super-admins/<int:user_id>", methods=["PUT"])
@superadmin_required
def super_admins_promote(user_id: int):
    return respond(user_to_dict(promote_to_super_admin(principal(), user_id)))


@super_admin_bp.route("/super-admins/<int:user_id>", methods=["DELETE"])
@superadmin_required
def super_admins_demote(user_id: int):
    return respond(user_to_dict(demote_super_admin(principal(), user_id)))


# System settings

@super_admin_bp.route("/settings", methods=["GET"])
@superadmin_required
def settings_show():
    principal()
    return respond(get_settings())


@super_admin_bp.route("/settings", methods=["PUT"])
@superadmin_required
def settings_update():
    return respond(update_settings(principal(), payload()))


@super_admin_bp.route("/settings/test-email", methods=["POST"])
@superadmin_required
def settings_test_email():
    recipient = send_test_email(principal(), payload().get("recipient"))
    return respond(message=f"Test email sent to {recipient}.")


# Email templates

@super_admin_bp.route("/email-templates", methods=["GET"])
@superadmin_required
def templates_index():
    return respond([template_to_dict(template) for template in list_templates(principal())])


@super_admin_bp.route("/email-templates", methods=["POST"])
@superadmin_required
def templates_create():
    return respond(template_to_dict(create_template(principal(), payload())), status=201)


@super_admin_bp.route("/email-templates/<int:template_id>", methods=["GET"])
@superadmin_required
def templates_show(template_id: int):
    return respond(template_to_dict(get_template(principal(), template_id)))


@super_admin_bp.route("/email-templates/<int:template_id>", methods=["PUT"])
@superadmin_required
def templates_update(template_id: int):
    return respond(template_to_dict(update_template(principal(), template_id, payload())))


@super_admin_bp.route("/email-templates/<int:template_id>", methods=["DELETE"])
@superadmin_required
def templates_delete(template_id: int):
    delete_template(principal(), template_id)
    return respond(message="Email template deleted.")


@super_admin_bp.route("/activity", methods=["GET"])
@superadmin_required
def activity_index():
    entries = list_activity(principal(), limit=query_int("limit") or 100, action=request.args.get("action"))
    return respond([activity_to_dict(entry) for entry in entries])
