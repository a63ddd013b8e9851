from __future__ import annotations

import logging
from typing import Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConflictingState, DuplicateKey, InvalidTransition, NotFound, PortalError
from .extensions import db
from .models import InvoiceSequence

logger = logging.getLogger(__name__)

M = TypeVar("M")


def get_or_404(model: Type[M], record_id: int | None, label: str | None = None) -> M:
    record = db.session.get(model, record_id) if record_id is not None else None
    if record is None:
        raise NotFound(f"{label or model.__name__} not found.")
    return record


def commit(
    label: str,
    *,
    on_duplicate: Type[PortalError] = DuplicateKey,
    duplicate_message: str | None = None,
) -> None:
    """Commit the session, translating store failures into portal errors.

    A stale ``version_id`` means another request changed the row after we
    loaded it; the whole unit of work is rolled back and ``ConflictingState``
    is raised so the caller can refresh. Unique constraint violations become
    ``on_duplicate``. Model guards raise ``ValueError`` during flush.
    """
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent modification detected on %s", label)
        raise ConflictingState(f"The {label} was changed by another request. Refresh and try again.") from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.info("Integrity error while saving %s: %s", label, exc.orig)
        raise on_duplicate(duplicate_message or f"The {label} conflicts with an existing record.") from exc
    except ValueError as exc:
        db.session.rollback()
        raise InvalidTransition(str(exc)) from exc


def _locked_counter(name: str) -> InvoiceSequence | None:
    return db.session.execute(
        select(InvoiceSequence)
        .where(InvoiceSequence.name == name)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def next_sequence_value(name: str) -> int:
    """Allocate the next value of a named counter.

    The counter row stays locked until the caller commits, so concurrent
    allocations serialize. Call this before staging other objects: losing
    the race to create a brand new counter rolls back the session.
    """
    counter = _locked_counter(name)
    if counter is None:
        try:
            counter = InvoiceSequence(name=name, current_value=1)
            db.session.add(counter)
            db.session.flush()
            logger.debug("Sequence %s started at 1", name)
            return 1
        except IntegrityError:
            db.session.rollback()
            counter = _locked_counter(name)
            if counter is None:
                raise
    counter.current_value += 1
    db.session.flush()
    logger.debug("Sequence %s allocated %s", name, counter.current_value)
    return counter.current_value


__all__ = ["get_or_404", "commit", "next_sequence_value"]
