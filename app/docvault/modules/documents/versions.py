"""
Version store: durable, ordered storage of a document's binary versions.

The store never commits. Every method runs inside the caller's transaction and
binds its storage side effects to that transaction's outcome with
on_commit()/on_rollback(), so a rolled-back operation leaves no stray objects
and a committed delete never leaves a record without content.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, BinaryIO

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.docvault.db import on_commit, on_rollback
from app.docvault.storage import Storage, StorageError

from .errors import ContentReleaseFailed, DocumentNotFound, IntegrityFailure, LastVersionConflict, VersionNotFound
from .models import DELETED, Document, DocumentVersion
from .service import (
    build_storage_key,
    file_digest_and_bytes,
    normalize_description,
    released_key,
    sanitize_upload_filename,
)

if TYPE_CHECKING:
    from app.docvault.models import User

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 1000


@dataclass(frozen=True)
class VersionContent:
    fileobj: BinaryIO
    sha256: str
    filename: str
    content_type: str
    size_bytes: int


class VersionStore:
    def __init__(self, s: Session, storage: Storage) -> None:
        self.s = s
        self.storage = storage

    def create_version(
        self,
        document: Document | None,
        *,
        content: bytes,
        uploader: User,
        filename: str | None,
        content_type: str | None = None,
        description: str | None = None,
        expected_sha256: str | None = None,
    ) -> DocumentVersion:
        """Store content and append it as the document's next version number."""
        if document is None or document.status == DELETED:
            raise DocumentNotFound("Document not found.")

        sha256, size_bytes = file_digest_and_bytes(content)
        if expected_sha256 and expected_sha256.strip().lower() != sha256:
            raise IntegrityFailure("Uploaded content does not match the supplied sha256.")

        filename = sanitize_upload_filename(filename)
        content_type = (content_type or "application/octet-stream").strip()
        storage_key = build_storage_key(document.department_id, document.id, filename)

        self.storage.put_bytes(storage_key, content, content_type=content_type)
        on_rollback(self.s, lambda: self._discard(storage_key))

        stored_sha256, _ = file_digest_and_bytes(self.storage.read_bytes(storage_key))
        if stored_sha256 != sha256:
            logger.error("Write verification failed for %s (expected %s, stored %s)", storage_key, sha256, stored_sha256)
            raise IntegrityFailure("Stored content does not match the uploaded content.")

        number = document.next_version_number or 1
        version = DocumentVersion(
            document_id=document.id,
            version_number=number,
            description=normalize_description(description, max_length=DESCRIPTION_MAX_LENGTH),
            storage_key=storage_key,
            filename=filename,
            content_type=content_type,
            sha256=sha256,
            size_bytes=size_bytes,
            uploaded_by_user_id=uploader.id,
        )
        document.next_version_number = number + 1
        document.updated_at = datetime.utcnow()
        self.s.add(version)
        self.s.flush()
        return version

    def list_versions(self, document_id: int) -> list[DocumentVersion]:
        return (
            self.s.query(DocumentVersion)
            .filter(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.version_number.desc())
            .all()
        )

    def count_versions(self, document_id: int) -> int:
        return (
            self.s.query(func.count(DocumentVersion.id))
            .filter(DocumentVersion.document_id == document_id)
            .scalar()
            or 0
        )

    def get_version(self, version_id: int) -> DocumentVersion:
        v = self.s.get(DocumentVersion, version_id)
        if v is None or v.document is None or v.document.status == DELETED:
            raise VersionNotFound("Document version not found.")
        return v

    def update_description(self, version_id: int, new_description: str | None) -> DocumentVersion:
        v = self.get_version(version_id)
        v.description = normalize_description(new_description, max_length=DESCRIPTION_MAX_LENGTH)
        v.document.updated_at = datetime.utcnow()
        self.s.flush()
        return v

    def delete_version(self, version_id: int) -> None:
        v = self.get_version(version_id)
        if self.count_versions(v.document_id) <= 1:
            raise LastVersionConflict(
                "Cannot delete the only remaining version; request deletion of the document instead."
            )
        storage_key = v.storage_key
        v.document.updated_at = datetime.utcnow()
        self.s.delete(v)
        self.s.flush()
        on_commit(self.s, lambda: self.storage.delete(storage_key))

    def fetch_content(self, version_id: int) -> VersionContent:
        v = self.get_version(version_id)
        data = self.storage.read_bytes(v.storage_key)
        sha256, size_bytes = file_digest_and_bytes(data)
        if sha256 != v.sha256:
            logger.error("Read verification failed for version %s (%s)", v.id, v.storage_key)
            raise IntegrityFailure("Stored content does not match the recorded sha256.")
        return VersionContent(
            fileobj=io.BytesIO(data),
            sha256=sha256,
            filename=v.filename,
            content_type=v.content_type,
            size_bytes=size_bytes,
        )

    def release_all(self, document: Document) -> int:
        """
        Release every version of a document: content is staged under the
        released/ prefix, restored if staging or the transaction fails, and
        purged once the transaction commits. Version rows are deleted.
        """
        versions = self.list_versions(document.id)
        staged: list[tuple[str, str]] = []
        try:
            for v in versions:
                dst = released_key(v.storage_key)
                self.storage.move(v.storage_key, dst)
                staged.append((v.storage_key, dst))
        except StorageError as e:
            self._restore(staged)
            raise ContentReleaseFailed(f"Could not release content for document {document.id}: {e}") from e

        on_rollback(self.s, lambda: self._restore(staged))
        on_commit(self.s, lambda: self._purge(staged))

        for v in versions:
            self.s.delete(v)
        self.s.flush()
        return len(versions)

    def _restore(self, staged: list[tuple[str, str]]) -> None:
        for src, dst in reversed(staged):
            try:
                self.storage.move(dst, src)
            except StorageError:
                logger.exception("Failed to restore staged content %s -> %s", dst, src)

    def _purge(self, staged: list[tuple[str, str]]) -> None:
        for _src, dst in staged:
            try:
                self.storage.delete(dst)
            except StorageError:
                logger.exception("Failed to purge released content %s", dst)

    def _discard(self, storage_key: str) -> None:
        try:
            self.storage.delete(storage_key)
        except StorageError:
            logger.exception("Failed to discard uncommitted content %s", storage_key)
