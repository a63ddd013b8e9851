from __future__ import annotations

import re
import smtplib
import ssl
from email.message import EmailMessage
from typing import Iterable, Mapping

from flask import current_app, g
from markupsafe import escape

from .access import Principal, require_super_admin
from .audit import record_activity
from .errors import DuplicateKey, ExternalServiceError, ValidationError
from .extensions import db
from .forms import EmailTemplateForm, field_given, list_values, load_form
from .models import EmailTemplate
from .settings_service import get_setting
from .store import commit, get_or_404

PLACEHOLDER = re.compile(r"\{(\w+)\}")
WARNINGS_KEY = "notification_warnings"

# (filename, payload, mimetype)
Attachment = tuple[str, bytes, str]

DEFAULT_TEMPLATES: dict[str, dict[str, object]] = {
    "registration_received": {
        "subject": "We received your registration",
        "body": "Hello {first_name},\n\nThanks for registering with {company_name}. "
        "An administrator will review your account shortly.",
        "variables": ["first_name", "company_name"],
    },
    "admin_new_registration": {
        "subject": "New client registration: {email}",
        "body": "{full_name} ({email}) registered and is waiting for approval.",
        "variables": ["full_name", "email"],
    },
    "account_approved": {
        "subject": "Your account has been approved",
        "body": "Hello {first_name},\n\nYour {company_name} account is active. You can sign in now.",
        "variables": ["first_name", "company_name"],
    },
    "account_rejected": {
        "subject": "Your registration was not approved",
        "body": "Hello {first_name},\n\nWe could not approve your {company_name} registration. "
        "Reply to this email if you think this is a mistake.",
        "variables": ["first_name", "company_name"],
    },
    "ticket_reply": {
        "subject": "New reply on ticket #{ticket_id}: {ticket_title}",
        "body": "Hello {first_name},\n\nThere is a new reply on your ticket \"{ticket_title}\":\n\n{message}",
        "variables": ["first_name", "ticket_id", "ticket_title", "message"],
    },
    "ticket_status_changed": {
        "subject": "Ticket #{ticket_id} is now {status}",
        "body": "Hello {first_name},\n\nYour ticket \"{ticket_title}\" moved to {status}.",
        "variables": ["first_name", "ticket_id", "ticket_title", "status"],
    },
    "invoice_issued": {
        "subject": "Invoice {invoice_number} from {company_name}",
        "body": "Hello {first_name},\n\nInvoice {invoice_number} for {asset_name} totals {total_amount} {currency} "
        "and is due on {due_date}.\n\nBank transfer: {bank_holder} / {bank_iban}",
        "variables": [
            "first_name",
            "invoice_number",
            "asset_name",
            "total_amount",
            "currency",
            "due_date",
            "bank_holder",
            "bank_iban",
            "company_name",
        ],
    },
    "payment_received": {
        "subject": "Payment received for invoice {invoice_number}",
        "body": "Hello {first_name},\n\nWe recorded your payment of {amount} {currency} for invoice {invoice_number}.",
        "variables": ["first_name", "invoice_number", "amount", "currency"],
    },
}


class MailDeliveryError(RuntimeError):
    pass


def _build_message(
    *,
    subject: str,
    recipient: str,
    text: str,
    html: str | None = None,
    attachments: Iterable[Attachment] = (),
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = current_app.config.get("MAIL_SENDER", "no-reply@kubikportal.local")
    msg["To"] = recipient
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")
    for filename, payload, mimetype in attachments:
        maintype, _, subtype = (mimetype or "application/octet-stream").partition("/")
        msg.add_attachment(payload, maintype=maintype, subtype=subtype or "octet-stream", filename=filename)
    return msg


def _smtp_config() -> dict:
    return {
        "host": current_app.config.get("MAIL_SMTP_HOST"),
        "port": current_app.config.get("MAIL_SMTP_PORT", 587),
        "username": current_app.config.get("MAIL_SMTP_USERNAME"),
        "password": current_app.config.get("MAIL_SMTP_PASSWORD"),
        "use_tls": current_app.config.get("MAIL_USE_TLS", True),
        "use_ssl": current_app.config.get("MAIL_USE_SSL", False),
        "timeout": current_app.config.get("MAIL_TIMEOUT", 20),
    }


def send_email(
    subject: str,
    recipient: str,
    *,
    text: str,
    html: str | None = None,
    attachments: Iterable[Attachment] = (),
) -> None:
    attachments = list(attachments)
    cfg = _smtp_config()
    if not cfg["host"]:
        if current_app.config.get("MAIL_CONSOLE_FALLBACK"):
            current_app.logger.warning("SMTP host not configured; delivering email to console for %s", recipient)
            print("\n=== DEV EMAIL (console fallback) ===")
            print(f"To: {recipient}")
            print(f"Subject: {subject}")
            print("Body:\n" + (text or "<no body>"))
            for filename, payload, _ in attachments:
                print(f"Attachment: {filename} ({len(payload)} bytes)")
            print("=== END DEV EMAIL ===\n")
            return
        raise MailDeliveryError("SMTP host not configured; set MAIL_SMTP_HOST to send emails.")

    msg = _build_message(subject=subject, recipient=recipient, text=text, html=html, attachments=attachments)

    try:
        if cfg["use_ssl"]:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(cfg["host"], cfg["port"], timeout=cfg["timeout"], context=context) as server:
                if cfg["username"]:
                    server.login(cfg["username"], cfg["password"] or "")
                server.send_message(msg)
        else:
            with smtplib.SMTP(cfg["host"], cfg["port"], timeout=cfg["timeout"]) as server:
                server.ehlo()
                if cfg["use_tls"]:
                    server.starttls(context=ssl.create_default_context())
                if cfg["username"]:
                    server.login(cfg["username"], cfg["password"] or "")
                server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        current_app.logger.exception("Email delivery failed: %s", exc)
        raise MailDeliveryError(str(exc)) from exc


def render_placeholders(text: str, variables: Mapping[str, object]) -> str:
    """Replace ``{name}`` placeholders; unknown names are left untouched."""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER.sub(_replace, text or "")


def _as_html(text: str) -> str:
    paragraphs = [str(escape(chunk)).replace("\n", "<br>") for chunk in text.split("\n\n")]
    return "".join(f"<p>{chunk}</p>" for chunk in paragraphs)


def render_template_email(template_key: str, variables: Mapping[str, object]) -> tuple[str, str]:
    template = EmailTemplate.query.filter_by(name=template_key, is_active=True).first()
    if template is None:
        raise MailDeliveryError(f"Email template '{template_key}' is missing or inactive.")
    return render_placeholders(template.subject, variables), render_placeholders(template.body, variables)


def send_templated_email(
    template_key: str,
    recipient: str,
    variables: Mapping[str, object],
    *,
    attachments: Iterable[Attachment] = (),
) -> None:
    subject, body = render_template_email(template_key, variables)
    send_email(subject, recipient, text=body, html=_as_html(body), attachments=attachments)


def notify(template_key: str, recipient: str | None, variables: Mapping[str, object]) -> bool:
    """Best-effort notification; failures are logged and surfaced as request warnings."""
    if not recipient:
        return False
    try:
        send_templated_email(template_key, recipient, variables)
        return True
    except MailDeliveryError as exc:
        current_app.logger.exception("Failed to send %s notification to %s", template_key, recipient)
        add_warning(f"Notification '{template_key}' to {recipient} was not sent: {exc}")
        return False


def add_warning(message: str) -> None:
    g.setdefault(WARNINGS_KEY, []).append(message)


def pop_warnings() -> list[str]:
    return g.pop(WARNINGS_KEY, [])


def send_test_email(actor: Principal, recipient: str | None = None) -> str:
    require_super_admin(actor)
    recipient = (recipient or "").strip() or actor.email
    if not recipient:
        raise ValidationError("A recipient address is required.", errors={"recipient": ["This field is required."]})
    company = get_setting("company_name", "KubikPortal")
    try:
        send_email(
            f"{company} test email",
            recipient,
            text=f"This is a test email from {company}. Your mail settings work.",
        )
    except MailDeliveryError as exc:
        raise ExternalServiceError(f"Test email could not be sent: {exc}") from exc
    record_activity(actor, "test_email_sent", entity_type="settings", new_values={"recipient": recipient})
    commit("activity log")
    return recipient


def list_templates(actor: Principal) -> list[EmailTemplate]:
    require_super_admin(actor)
    return EmailTemplate.query.order_by(EmailTemplate.name.asc()).all()


def get_template(actor: Principal, template_id: int) -> EmailTemplate:
    require_super_admin(actor)
    return get_or_404(EmailTemplate, template_id, "Email template")


def _apply_template_form(template: EmailTemplate, form: EmailTemplateForm) -> None:
    template.name = form.name.data.strip()
    template.subject = form.subject.data.strip()
    template.body = form.body.data
    template.variables = list_values(form.variables) or sorted(
        set(PLACEHOLDER.findall(template.subject)) | set(PLACEHOLDER.findall(template.body))
    )
    if field_given(form.is_active):
        template.is_active = bool(form.is_active.data)


def create_template(actor: Principal, payload: Mapping) -> EmailTemplate:
    require_super_admin(actor)
    form = load_form(EmailTemplateForm, payload)
    if EmailTemplate.query.filter_by(name=form.name.data.strip()).first():
        raise DuplicateKey("An email template with that name already exists.")
    template = EmailTemplate(is_active=True)
    _apply_template_form(template, form)
    db.session.add(template)
    db.session.flush()
    record_activity(actor, "email_template_created", entity_type="email_template", entity_id=template.id,
                    new_values={"name": template.name})
    commit("email template")
    return template


def update_template(actor: Principal, template_id: int, payload: Mapping) -> EmailTemplate:
    require_super_admin(actor)
    template = get_or_404(EmailTemplate, template_id, "Email template")
    form = load_form(EmailTemplateForm, payload)
    clash = EmailTemplate.query.filter(EmailTemplate.name == form.name.data.strip(), EmailTemplate.id != template.id).first()
    if clash:
        raise DuplicateKey("An email template with that name already exists.")
    before = {"name": template.name, "subject": template.subject, "is_active": template.is_active}
    _apply_template_form(template, form)
    record_activity(actor, "email_template_updated", entity_type="email_template", entity_id=template.id,
                    old_values=before,
                    new_values={"name": template.name, "subject": template.subject, "is_active": template.is_active})
    commit("email template")
    return template


def delete_template(actor: Principal, template_id: int) -> None:
    require_super_admin(actor)
    template = get_or_404(EmailTemplate, template_id, "Email template")
    record_activity(actor, "email_template_deleted", entity_type="email_template", entity_id=template.id,
                    old_values={"name": template.name})
    db.session.delete(template)
    commit("email template")


def seed_default_templates() -> int:
    created = 0
    for name, defaults in DEFAULT_TEMPLATES.items():
        if EmailTemplate.query.filter_by(name=name).first():
            continue
        db.session.add(
            EmailTemplate(
                name=name,
                subject=defaults["subject"],
                body=defaults["body"],
                variables=list(defaults["variables"]),
                is_active=True,
            )
        )
        created += 1
    if created:
        db.session.commit()
    return created


__all__ = [
    "MailDeliveryError",
    "DEFAULT_TEMPLATES",
    "send_email",
    "render_placeholders",
    "render_template_email",
    "send_templated_email",
    "notify",
    "send_test_email",
    "add_warning",
    "pop_warnings",
    "list_templates",
    "get_template",
    "create_template",
    "update_template",
    "delete_template",
    "seed_default_templates",
]
