from decimal import Decimal
from io import BytesIO

import pytest
from sqlalchemy import text
from werkzeug.datastructures import FileStorage

from conftest import ticket_payload
from portal.email_service import pop_warnings
from portal.errors import ConflictingState, Forbidden, InvalidTransition, NotFound, ValidationError
from portal.extensions import db
from portal.models import PriceType, SenderType, Ticket, TicketMessage, TicketStatus
from portal.store import commit
from portal.ticket_service import (
    append_message,
    can_transition,
    create_ticket,
    delete_ticket,
    get_attachment,
    get_ticket,
    list_tickets,
    set_ticket_status,
    ticket_pricing,
)


def _upload(name="error.log", content=b"Traceback (most recent call last)", mimetype="text/plain"):
    return FileStorage(stream=BytesIO(content), filename=name, content_type=mimetype)


class TestCreateTicket:
    def test_opening_message_is_the_description(self, client):
        ticket = create_ticket(client, ticket_payload())

        assert ticket.status == TicketStatus.OPEN
        assert len(ticket.messages) == 1
        opening = ticket.messages[0]
        assert opening.content == ticket.description
        assert opening.sender_type == SenderType.CLIENT
        assert opening.sender_id == client.id

    def test_price_is_snapshotted_from_settings(self, client):
        ticket = create_ticket(client, ticket_payload(price_type="without_package"))

        assert ticket.price_type == PriceType.WITHOUT_PACKAGE
        assert ticket.price == Decimal("75.00")
        assert ticket_pricing() == {"with_package": "25.00", "without_package": "75.00"}

    def test_ticket_on_own_asset(self, client, asset):
        ticket = create_ticket(client, ticket_payload(asset_id=asset.id))
        assert ticket.asset_id == asset.id

    def test_ticket_on_foreign_asset_is_rejected(self, other, asset):
        with pytest.raises(ValidationError) as excinfo:
            create_ticket(other, ticket_payload(asset_id=asset.id))
        assert "asset_id" in excinfo.value.errors

    def test_short_title_is_rejected(self, client):
        with pytest.raises(ValidationError) as excinfo:
            create_ticket(client, ticket_payload(title="Help"))
        assert "title" in excinfo.value.errors

    def test_unknown_category(self, client):
        with pytest.raises(ValidationError):
            create_ticket(client, ticket_payload(category="complaint"))


class TestTicketStatus:
    def test_open_to_in_progress_to_resolved(self, admin, client):
        ticket = create_ticket(client, ticket_payload())

        assert set_ticket_status(admin, ticket.id, "in_progress").status == TicketStatus.IN_PROGRESS
        resolved = set_ticket_status(admin, ticket.id, "resolved")

        assert resolved.status == TicketStatus.RESOLVED
        assert resolved.resolved_at is not None

    def test_open_cannot_jump_to_resolved(self, admin, client):
        ticket = create_ticket(client, ticket_payload())

        with pytest.raises(InvalidTransition):
            set_ticket_status(admin, ticket.id, "resolved")

        assert db.session.get(Ticket, ticket.id).status == TicketStatus.OPEN

    def test_closed_ticket_can_only_be_reopened(self, admin, client):
        ticket = create_ticket(client, ticket_payload())
        set_ticket_status(admin, ticket.id, "in_progress")
        closed = set_ticket_status(admin, ticket.id, "closed")
        assert closed.closed_at is not None

        with pytest.raises(InvalidTransition):
            set_ticket_status(admin, ticket.id, "in_progress")

        reopened = set_ticket_status(admin, ticket.id, "open")
        assert reopened.status == TicketStatus.OPEN
        assert reopened.closed_at is None
        assert reopened.resolved_at is None

    def test_same_status_is_a_noop(self, admin, client):
        ticket = create_ticket(client, ticket_payload())
        assert set_ticket_status(admin, ticket.id, "open").status == TicketStatus.OPEN

    def test_stale_version_raises_conflict(self, admin, client):
        ticket = create_ticket(client, ticket_payload())
        assert ticket.status == TicketStatus.OPEN
        # Another admin moved the ticket after it was loaded here
        db.session.execute(text("UPDATE tickets SET version_id = version_id + 1 WHERE id = :id"), {"id": ticket.id})

        with pytest.raises(ConflictingState):
            set_ticket_status(admin, ticket.id, "in_progress")

        assert db.session.get(Ticket, ticket.id).status == TicketStatus.OPEN

    def test_transition_table(self):
        assert can_transition(TicketStatus.PENDING, TicketStatus.IN_PROGRESS)
        assert can_transition(TicketStatus.RESOLVED, TicketStatus.CLOSED)
        assert can_transition(TicketStatus.RESOLVED, TicketStatus.OPEN)
        assert not can_transition(TicketStatus.RESOLVED, TicketStatus.IN_PROGRESS)
        assert not can_transition(TicketStatus.CLOSED, TicketStatus.RESOLVED)

    def test_clients_cannot_change_status(self, client):
        ticket = create_ticket(client, ticket_payload())
        with pytest.raises(Forbidden):
            set_ticket_status(client, ticket.id, "closed")

    def test_status_change_notifies_client(self, admin, client):
        ticket = create_ticket(client, ticket_payload())
        set_ticket_status(admin, ticket.id, "in_progress")

        assert any("ticket_status_changed" in warning for warning in pop_warnings())


class TestThread:
    def test_admin_reply(self, admin, client):
        ticket = create_ticket(client, ticket_payload())

        reply = append_message(admin, ticket.id, "We are looking into it.")

        assert reply.sender_type == SenderType.ADMIN
        assert [m.id for m in get_ticket(client, ticket.id).messages][-1] == reply.id
        assert any("ticket_reply" in warning for warning in pop_warnings())

    def test_client_reply_keeps_ticket_version(self, client):
        ticket = create_ticket(client, ticket_payload())
        version = ticket.version_id

        append_message(client, ticket.id, "Still broken this morning.")

        db.session.expire_all()
        refreshed = db.session.get(Ticket, ticket.id)
        assert refreshed.version_id == version
        assert len(refreshed.messages) == 2

    def test_foreign_ticket_is_not_found(self, client, other):
        ticket = create_ticket(client, ticket_payload())

        with pytest.raises(NotFound):
            append_message(other, ticket.id, "Let me in")
        with pytest.raises(NotFound):
            get_ticket(other, ticket.id)

    def test_empty_reply_is_rejected(self, client):
        ticket = create_ticket(client, ticket_payload())
        with pytest.raises(ValidationError):
            append_message(client, ticket.id, "")

    def test_messages_are_append_only(self, client):
        ticket = create_ticket(client, ticket_payload())
        message = db.session.get(TicketMessage, ticket.messages[0].id)

        message.content = "Rewritten history"
        with pytest.raises(InvalidTransition):
            commit("ticket message")

        assert db.session.get(TicketMessage, message.id).content == ticket_payload()["description"]

    def test_listing_is_scoped(self, admin, client, other):
        mine = create_ticket(client, ticket_payload())
        create_ticket(other, ticket_payload(title="Other problem"))

        assert [t.id for t in list_tickets(client)] == [mine.id]
        assert len(list_tickets(admin)) == 2
        assert [t.id for t in list_tickets(admin, status="open", user_id=client.id)] == [mine.id]


class TestAttachments:
    def test_attachments_are_stored_with_the_message(self, client):
        ticket = create_ticket(client, ticket_payload(), [_upload()])

        attachment = ticket.messages[0].attachments[0]
        assert attachment.filename == "error.log"
        assert attachment.file_size == len(b"Traceback (most recent call last)")

        found, path = get_attachment(client, ticket.id, attachment.id)
        assert found.id == attachment.id
        assert path.read_bytes() == b"Traceback (most recent call last)"

    def test_disallowed_extension(self, client):
        with pytest.raises(ValidationError):
            create_ticket(client, ticket_payload(), [_upload(name="setup.exe")])
        assert Ticket.query.count() == 0

    def test_attachment_limit(self, app, client):
        uploads = [_upload(name=f"log{i}.txt") for i in range(app.config["MAX_TICKET_ATTACHMENTS"] + 1)]
        with pytest.raises(ValidationError):
            create_ticket(client, ticket_payload(), uploads)

    def test_other_clients_cannot_download(self, client, other):
        ticket = create_ticket(client, ticket_payload(), [_upload()])
        attachment_id = ticket.messages[0].attachments[0].id

        with pytest.raises(NotFound):
            get_attachment(other, ticket.id, attachment_id)

    def test_delete_ticket_removes_files(self, admin, client):
        ticket = create_ticket(client, ticket_payload(), [_upload()])
        ticket_id = ticket.id
        _, path = get_attachment(admin, ticket_id, ticket.messages[0].attachments[0].id)

        delete_ticket(admin, ticket_id)

        assert db.session.get(Ticket, ticket_id) is None
        assert not path.exists()
