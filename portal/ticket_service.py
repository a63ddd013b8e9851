from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Mapping

from flask import current_app
from werkzeug.datastructures import FileStorage

from .access import Principal, require_approved, require_super_admin
from .audit import record_activity
from .email_service import notify
from .errors import InvalidTransition, NotFound, ValidationError
from .extensions import db
from .forms import TicketForm, TicketMessageForm, TicketStatusForm, load_form
from .models import (
    Asset,
    PriceType,
    SenderType,
    Ticket,
    TicketAttachment,
    TicketCategory,
    TicketMessage,
    TicketPriority,
    TicketStatus,
)
from .settings_service import ticket_price
from .storage import TICKET_FOLDER, StoredFile, discard, resolve, save_upload
from .store import commit, get_or_404

logger = logging.getLogger(__name__)


def _allowed_transitions() -> dict[TicketStatus, set[TicketStatus]]:
    return {
        TicketStatus.PENDING: {TicketStatus.OPEN, TicketStatus.IN_PROGRESS},
        TicketStatus.OPEN: {TicketStatus.IN_PROGRESS},
        TicketStatus.IN_PROGRESS: {TicketStatus.RESOLVED, TicketStatus.CLOSED},
        TicketStatus.RESOLVED: {TicketStatus.CLOSED},
        TicketStatus.CLOSED: set(),
    }


def can_transition(current: TicketStatus, target: TicketStatus) -> bool:
    # Admins can always reopen
    if target == TicketStatus.OPEN:
        return True
    return target in _allowed_transitions().get(current, set())


def ticket_pricing() -> dict[str, str]:
    return {price_type.value: str(ticket_price(price_type.value)) for price_type in PriceType}


def _uploads(files: Iterable[FileStorage] | None) -> list[FileStorage]:
    uploads = [upload for upload in (files or []) if upload and upload.filename]
    limit = current_app.config.get("MAX_TICKET_ATTACHMENTS", 5)
    if len(uploads) > limit:
        raise ValidationError(
            f"You can attach up to {limit} files.",
            errors={"attachments": [f"Too many files ({len(uploads)})."]},
        )
    return uploads


def _store_attachments(message: TicketMessage, uploads: list[FileStorage]) -> list[StoredFile]:
    stored: list[StoredFile] = []
    try:
        for upload in uploads:
            stored.append(save_upload(upload, folder=TICKET_FOLDER))
    except Exception:
        for item in stored:
            discard(item.reference)
        raise
    for item in stored:
        message.attachments.append(
            TicketAttachment(
                filename=item.filename,
                storage_reference=item.reference,
                file_size=item.size,
                mimetype=item.mimetype,
            )
        )
    return stored


def _commit_with_files(label: str, stored: list[StoredFile]) -> None:
    try:
        commit(label)
    except Exception:
        for item in stored:
            discard(item.reference)
        raise


def _visible_ticket(actor: Principal, ticket_id: int) -> Ticket:
    ticket = db.session.get(Ticket, ticket_id)
    if ticket is None or (not actor.is_super_admin and ticket.user_id != actor.id):
        raise NotFound("Ticket not found.")
    return ticket


def create_ticket(actor: Principal, payload: Mapping, attachments: Iterable[FileStorage] | None = None) -> Ticket:
    require_approved(actor)
    form = load_form(TicketForm, payload)
    uploads = _uploads(attachments)

    asset = None
    if form.asset_id.data is not None:
        asset = db.session.get(Asset, form.asset_id.data)
        if asset is None or asset.user_id != actor.id:
            raise ValidationError("Unknown asset.", errors={"asset_id": ["Choose one of your own assets."]})

    price_type = PriceType(form.price_type.data)
    ticket = Ticket(
        title=form.title.data.strip(),
        description=form.description.data.strip(),
        category=TicketCategory(form.category.data),
        priority=TicketPriority(form.priority.data),
        price_type=price_type,
        price=ticket_price(price_type.value),
        status=TicketStatus.OPEN,
        user_id=actor.id,
        asset=asset,
    )
    opening = TicketMessage(content=ticket.description, sender_type=SenderType.CLIENT, sender_id=actor.id)
    ticket.messages.append(opening)
    stored = _store_attachments(opening, uploads)
    db.session.add(ticket)
    _commit_with_files("ticket", stored)
    logger.info("Ticket %s opened by user %s (%s, %s)", ticket.id, actor.id, ticket.category.value, ticket.priority.value)
    return ticket


def append_message(
    actor: Principal,
    ticket_id: int,
    content,
    attachments: Iterable[FileStorage] | None = None,
) -> TicketMessage:
    require_approved(actor)
    ticket = _visible_ticket(actor, ticket_id)
    form = load_form(TicketMessageForm, {"content": content})
    uploads = _uploads(attachments)

    sender_type = SenderType.ADMIN if actor.is_super_admin else SenderType.CLIENT
    message = TicketMessage(
        ticket_id=ticket.id,
        content=form.content.data.strip(),
        sender_type=sender_type,
        sender_id=actor.id,
    )
    stored = _store_attachments(message, uploads)
    db.session.add(message)
    # Touch updated_at without bumping version_id
    Ticket.query.filter(Ticket.id == ticket.id).update(
        {Ticket.updated_at: datetime.utcnow()}, synchronize_session=False
    )
    _commit_with_files("ticket message", stored)

    if sender_type == SenderType.ADMIN and ticket.user_id != actor.id:
        notify(
            "ticket_reply",
            ticket.client.email,
            {
                "first_name": ticket.client.first_name,
                "ticket_id": ticket.id,
                "ticket_title": ticket.title,
                "message": message.content,
            },
        )
    return message


def set_ticket_status(actor: Principal, ticket_id: int, new_status) -> Ticket:
    require_super_admin(actor)
    ticket = get_or_404(Ticket, ticket_id, "Ticket")
    form = load_form(TicketStatusForm, {"status": new_status})
    target = TicketStatus(form.status.data)

    if target == ticket.status:
        return ticket
    if not can_transition(ticket.status, target):
        raise InvalidTransition(f"Cannot move a ticket from {ticket.status.value} to {target.value}.")

    previous = ticket.status
    ticket.status = target
    now = datetime.utcnow()
    if target == TicketStatus.RESOLVED:
        ticket.resolved_at = now
    elif target == TicketStatus.CLOSED:
        ticket.closed_at = now
    elif target == TicketStatus.OPEN:
        ticket.resolved_at = None
        ticket.closed_at = None

    record_activity(actor, "ticket_status_changed", entity_type="ticket", entity_id=ticket.id,
                    old_values={"status": previous}, new_values={"status": target})
    commit("ticket")
    logger.info("Ticket %s status %s -> %s by %s", ticket.id, previous.value, target.value, actor.email)

    notify(
        "ticket_status_changed",
        ticket.client.email if ticket.client else None,
        {
            "first_name": ticket.client.first_name if ticket.client else "",
            "ticket_id": ticket.id,
            "ticket_title": ticket.title,
            "status": target.value.replace("_", " "),
        },
    )
    return ticket


def delete_ticket(actor: Principal, ticket_id: int) -> None:
    require_super_admin(actor)
    ticket = get_or_404(Ticket, ticket_id, "Ticket")
    references = [attachment.storage_reference for attachment in ticket.attachments]
    record_activity(actor, "ticket_deleted", entity_type="ticket", entity_id=ticket.id,
                    old_values={"title": ticket.title, "status": ticket.status, "user_id": ticket.user_id})
    db.session.delete(ticket)
    commit("ticket")
    for reference in references:
        discard(reference)
    logger.info("Ticket %s deleted by %s", ticket_id, actor.email)


def list_tickets(
    actor: Principal,
    *,
    status: str | None = None,
    user_id: int | None = None,
    asset_id: int | None = None,
) -> list[Ticket]:
    require_approved(actor)
    query = Ticket.query
    if actor.is_super_admin:
        if user_id is not None:
            query = query.filter(Ticket.user_id == user_id)
    else:
        query = query.filter(Ticket.user_id == actor.id)
    if asset_id is not None:
        query = query.filter(Ticket.asset_id == asset_id)
    if status:
        try:
            query = query.filter(Ticket.status == TicketStatus(status))
        except ValueError as exc:
            raise ValidationError("Unknown status filter.", errors={"status": [status]}) from exc
    return query.order_by(Ticket.updated_at.desc(), Ticket.id.desc()).all()


def get_ticket(actor: Principal, ticket_id: int) -> Ticket:
    require_approved(actor)
    return _visible_ticket(actor, ticket_id)


def get_attachment(actor: Principal, ticket_id: int, attachment_id: int) -> tuple[TicketAttachment, Path]:
    require_approved(actor)
    ticket = _visible_ticket(actor, ticket_id)
    attachment = db.session.get(TicketAttachment, attachment_id)
    if attachment is None or attachment.message.ticket_id != ticket.id:
        raise NotFound("Attachment not found.")
    return attachment, resolve(attachment.storage_reference)


__all__ = [
    "can_transition",
    "ticket_pricing",
    "create_ticket",
    "append_message",
    "set_ticket_status",
    "delete_ticket",
    "list_tickets",
    "get_ticket",
    "get_attachment",
]
