from __future__ import annotations

import hashlib
import uuid

from werkzeug.utils import secure_filename

from app.docvault.modules.documents.errors import ValidationFailed

RELEASED_PREFIX = "released"


def normalize_title(title: str | None) -> str:
    if title is not None and not isinstance(title, str):
        raise ValidationFailed("title must be a string.")
    t = (title or "").strip()
    if not t:
        raise ValidationFailed("title is required.")
    if len(t) > 255:
        raise ValidationFailed("title must be at most 255 characters.")
    return t


def normalize_description(
    description: str | None,
    *,
    max_length: int | None = None,
    field: str = "description",
) -> str | None:
    if description is not None and not isinstance(description, str):
        raise ValidationFailed(f"{field} must be a string.")
    d = (description or "").strip()
    if not d:
        return None
    if max_length is not None and len(d) > max_length:
        raise ValidationFailed(f"{field} must be at most {max_length} characters.")
    return d


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str | None) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def build_storage_key(department_id: int, document_id: int, filename: str) -> str:
    """
    Unique per upload; a random component keeps re-uploads of the same name apart.
    """
    return f"documents/{department_id}/{document_id}/{uuid.uuid4().hex}_{sanitize_upload_filename(filename)}"


def released_key(storage_key: str) -> str:
    return f"{RELEASED_PREFIX}/{storage_key}"
