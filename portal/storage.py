from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from .errors import ExternalServiceError, NotFound, ValidationError

logger = logging.getLogger(__name__)

TICKET_FOLDER = "tickets"
INVOICE_FOLDER = "invoices"


@dataclass(frozen=True)
class StoredFile:
    reference: str
    filename: str
    size: int
    mimetype: str | None


def _upload_root() -> Path:
    root = Path(current_app.config["UPLOAD_FOLDER"]).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def allowed_file(filename: str, extensions: Iterable[str] | None = None) -> bool:
    allowed = set(extensions or current_app.config.get("ALLOWED_ATTACHMENT_EXTENSIONS", ()))
    if "." not in filename:
        return False
    return filename.rsplit(".", 1)[1].lower() in allowed


def save_upload(upload: FileStorage, *, folder: str, extensions: Iterable[str] | None = None) -> StoredFile:
    original = upload.filename or ""
    safe_name = secure_filename(original)
    if not safe_name:
        raise ValidationError("Uploaded file has no usable name.", errors={"file": ["A file name is required."]})
    if not allowed_file(safe_name, extensions):
        raise ValidationError("File type not allowed.", errors={"file": [f"{original} has an unsupported extension."]})

    reference = f"{folder}/{uuid.uuid4().hex}-{safe_name}"
    target = _upload_root() / reference
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        upload.save(str(target))
        size = target.stat().st_size
    except OSError as exc:
        logger.exception("Failed to store upload %s", original)
        raise ExternalServiceError("File storage is unavailable. Try again later.") from exc

    return StoredFile(reference=reference, filename=original, size=size, mimetype=upload.mimetype)


def resolve(reference: str) -> Path:
    root = _upload_root()
    path = (root / reference).resolve()
    if root not in path.parents or not path.is_file():
        raise NotFound("File not found.")
    return path


def read_bytes(reference: str) -> bytes:
    path = resolve(reference)
    try:
        return path.read_bytes()
    except OSError as exc:
        logger.exception("Failed to read stored file %s", reference)
        raise ExternalServiceError("File storage is unavailable. Try again later.") from exc


def discard(reference: str | None) -> None:
    if not reference:
        return
    try:
        (_upload_root() / reference).unlink(missing_ok=True)
    except OSError:
        logger.exception("Failed to remove stored file %s", reference)


__all__ = [
    "StoredFile",
    "TICKET_FOLDER",
    "INVOICE_FOLDER",
    "allowed_file",
    "save_upload",
    "resolve",
    "read_bytes",
    "discard",
]
