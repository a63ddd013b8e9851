from datetime import date, timedelta
from io import BytesIO

import pytest
from werkzeug.datastructures import FileStorage

from portal.billing_service import create_manual_invoice, send_invoice_email
from portal.email_service import (
    DEFAULT_TEMPLATES,
    create_template,
    delete_template,
    list_templates,
    notify,
    pop_warnings,
    render_placeholders,
    render_template_email,
    send_test_email,
    update_template,
)
from portal.errors import DuplicateKey, ExternalServiceError, Forbidden, ValidationError
from portal.models import ActivityLog, EmailTemplate


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def ehlo(self):
        pass

    def starttls(self, context=None):
        pass

    def login(self, username, password):
        pass

    def send_message(self, message):
        FakeSMTP.sent.append(message)


@pytest.fixture()
def smtp(app, monkeypatch):
    FakeSMTP.sent = []
    monkeypatch.setattr("portal.email_service.smtplib.SMTP", FakeSMTP)
    app.config["MAIL_SMTP_HOST"] = "smtp.example.com"
    return FakeSMTP


class TestTemplates:
    def test_defaults_are_seeded(self, admin):
        names = {template.name for template in list_templates(admin)}
        assert set(DEFAULT_TEMPLATES) <= names

    def test_placeholders(self):
        assert render_placeholders("Hi {first_name}, {unknown}", {"first_name": "Ana"}) == "Hi Ana, {unknown}"

    def test_render_seeded_template(self, app):
        subject, body = render_template_email("payment_received", {"invoice_number": "INV-2026-00001",
                                                                   "first_name": "Ana"})
        assert subject == "Payment received for invoice INV-2026-00001"
        assert body.startswith("Hello Ana,")

    def test_create_derives_variables(self, admin):
        template = create_template(admin, {"name": "welcome_back", "subject": "Hi {first_name}",
                                           "body": "Your code is {code}."})

        assert template.variables == ["code", "first_name"]
        assert template.is_active is True

    def test_duplicate_name(self, admin):
        with pytest.raises(DuplicateKey):
            create_template(admin, {"name": "ticket_reply", "subject": "x", "body": "y"})

    def test_name_format(self, admin):
        with pytest.raises(ValidationError):
            create_template(admin, {"name": "Ticket Reply", "subject": "x", "body": "y"})

    def test_update_and_delete(self, admin):
        template = EmailTemplate.query.filter_by(name="ticket_reply").one()

        updated = update_template(admin, template.id, {"name": "ticket_reply", "subject": "Reply on #{ticket_id}",
                                                       "body": "{message}", "is_active": False})
        assert updated.is_active is False

        delete_template(admin, template.id)
        assert EmailTemplate.query.filter_by(name="ticket_reply").first() is None

    def test_clients_cannot_manage_templates(self, client):
        with pytest.raises(Forbidden):
            list_templates(client)


class TestNotify:
    def test_missing_smtp_becomes_a_warning(self, app):
        assert notify("account_approved", "ana@example.com", {"first_name": "Ana"}) is False

        warnings = pop_warnings()
        assert len(warnings) == 1
        assert "account_approved" in warnings[0]
        assert pop_warnings() == []

    def test_no_recipient_is_skipped(self, app):
        assert notify("account_approved", None, {}) is False
        assert pop_warnings() == []

    def test_inactive_template_becomes_a_warning(self, app, smtp):
        template = EmailTemplate.query.filter_by(name="account_approved").one()
        template.is_active = False

        assert notify("account_approved", "ana@example.com", {}) is False
        assert smtp.sent == []
        assert pop_warnings()

    def test_delivered_notification(self, app, smtp):
        assert notify("account_approved", "ana@example.com", {"first_name": "Ana", "company_name": "Kubik"}) is True

        message = smtp.sent[0]
        assert message["To"] == "ana@example.com"
        assert message["Subject"] == "Your account has been approved"

    def test_console_fallback(self, app, capsys):
        app.config["MAIL_CONSOLE_FALLBACK"] = True

        assert notify("account_approved", "ana@example.com", {"first_name": "Ana"}) is True
        assert "ana@example.com" in capsys.readouterr().out


class TestInvoiceEmail:
    def test_invoice_email_carries_the_pdf(self, admin, asset, smtp):
        pdf = FileStorage(stream=BytesIO(b"%PDF-1.4 body"), filename="invoice.pdf", content_type="application/pdf")
        invoice = create_manual_invoice(
            admin,
            {"user_id": asset.user_id, "asset_id": asset.id, "amount": "99.99",
             "due_date": (date.today() + timedelta(days=30)).isoformat()},
            pdf=pdf,
        )

        send_invoice_email(admin, invoice.id)

        message = smtp.sent[0]
        assert message["To"] == "client@example.com"
        assert invoice.invoice_number in message["Subject"]
        attachments = list(message.iter_attachments())
        assert [part.get_filename() for part in attachments] == ["invoice.pdf"]
        assert ActivityLog.query.filter_by(action="invoice_emailed").count() == 1


class TestTestEmail:
    def test_defaults_to_the_admin_address(self, admin, smtp):
        assert send_test_email(admin) == "admin@example.com"
        assert smtp.sent[0]["To"] == "admin@example.com"

    def test_failure_is_reported(self, admin):
        with pytest.raises(ExternalServiceError):
            send_test_email(admin, "ops@example.com")

    def test_admin_only(self, client):
        with pytest.raises(Forbidden):
            send_test_email(client)
