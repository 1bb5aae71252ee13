"""
Document catalog: identity, metadata, department scoping and the latest-version
pointer. The catalog is the only writer of Document.status; transition() is
reserved for the deletion workflow.
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.docvault.audit import record_event
from app.docvault.db import atomic
from app.docvault.models import Department
from app.docvault.storage import Storage

from .access import AccessScope, RbacAccessScope
from .errors import (
    DocumentLocked,
    DocumentNotFound,
    DocumentServiceError,
    Forbidden,
    ForbiddenOperation,
    InvalidStateTransition,
    ValidationFailed,
    VersionNotFound,
)
from .models import ACTIVE, DELETED, DELETION_PENDING, Document, DocumentVersion
from .service import normalize_description, normalize_title, sanitize_upload_filename
from .versions import VersionContent, VersionStore

if TYPE_CHECKING:
    from app.docvault.models import User

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    ACTIVE: {DELETION_PENDING},
    DELETION_PENDING: {DELETED, ACTIVE},
    DELETED: set(),
}


@contextmanager
def transaction(
    s: Session,
    conflict: type[DocumentServiceError] = DocumentLocked,
) -> Generator[Session, None, None]:
    """
    atomic() plus translation of optimistic-lock failures: a concurrent writer
    bumped Document.lock_version between our read and our write.
    """
    try:
        with atomic(s):
            yield s
    except StaleDataError as e:
        raise conflict("Document was changed by a concurrent operation; reload and retry.") from e


@dataclass(frozen=True)
class DocumentDetails:
    document: Document
    versions: list[DocumentVersion]

    @property
    def latest_version(self) -> DocumentVersion | None:
        for v in self.versions:
            if v.id == self.document.latest_version_id:
                return v
        return None


class DocumentCatalog:
    def __init__(self, s: Session, storage: Storage, access: AccessScope | None = None) -> None:
        self.s = s
        self.versions = VersionStore(s, storage)
        self.access = access if access is not None else RbacAccessScope(s)

    # ---------- loading ----------
    def load(self, document_id: int, *, for_update: bool = False) -> Document | None:
        q = self.s.query(Document).filter(Document.id == document_id)
        if for_update:
            q = q.with_for_update().populate_existing()
        return q.one_or_none()

    def _live(self, document_id: int, *, for_update: bool = False) -> Document:
        d = self.load(document_id, for_update=for_update)
        if d is None or d.status == DELETED:
            raise DocumentNotFound(f"Document {document_id} not found.")
        return d

    def _writable(self, document_id: int) -> Document:
        d = self._live(document_id, for_update=True)
        if d.status != ACTIVE:
            raise DocumentLocked(f"Document {document_id} is {d.status} and cannot be modified.")
        return d

    def _department_of(self, document_id: int) -> int | None:
        d = self.s.get(Document, document_id)
        return d.department_id if d else None

    def _department_of_version(self, version_id: int) -> int | None:
        v = self.s.get(DocumentVersion, version_id)
        return v.document.department_id if v and v.document else None

    def _details(self, d: Document) -> DocumentDetails:
        return DocumentDetails(document=d, versions=self.versions.list_versions(d.id))

    @staticmethod
    def _require(allowed: bool, message: str) -> None:
        if not allowed:
            raise Forbidden(message)

    # ---------- documents ----------
    def create_document(
        self,
        *,
        title: str,
        description: str | None,
        department_id: int,
        content: bytes,
        filename: str | None,
        user: User,
        content_type: str | None = None,
        version_description: str | None = None,
        expected_sha256: str | None = None,
    ) -> DocumentDetails:
        """
        Create an ACTIVE document together with its version 1. Either both rows
        (and the stored content) exist afterwards or none of them do.
        """
        with transaction(self.s):
            self._require(
                self.access.can_upload_to_department(user.id, department_id),
                "You do not have permission to upload to this department.",
            )
            title = normalize_title(title)
            if self.s.get(Department, department_id) is None:
                raise ValidationFailed(f"Unknown department {department_id}.")

            now = datetime.utcnow()
            d = Document(
                title=title,
                description=normalize_description(description),
                original_filename=sanitize_upload_filename(filename),
                department_id=department_id,
                status=ACTIVE,
                next_version_number=1,
                created_at=now,
                updated_at=now,
                created_by_user_id=user.id,
            )
            self.s.add(d)
            self.s.flush()

            v = self.versions.create_version(
                d,
                content=content,
                uploader=user,
                filename=filename,
                content_type=content_type,
                description=version_description,
                expected_sha256=expected_sha256,
            )
            d.latest_version_id = v.id
            self.s.flush()

            record_event(
                self.s,
                actor=user,
                action="doc.create",
                entity_type="Document",
                entity_id=str(d.id),
                metadata={
                    "title": d.title,
                    "department_id": d.department_id,
                    "filename": v.filename,
                    "version_number": v.version_number,
                    "sha256": v.sha256,
                },
            )
            details = self._details(d)
        logger.info("Document %s created in department %s by user %s", d.id, d.department_id, user.id)
        return details

    def add_version(
        self,
        document_id: int,
        *,
        content: bytes,
        filename: str | None,
        user: User,
        content_type: str | None = None,
        description: str | None = None,
        expected_sha256: str | None = None,
    ) -> DocumentDetails:
        with transaction(self.s):
            self._require(
                self.access.can_upload_to_department(user.id, self._department_of(document_id)),
                "You do not have permission to update this document.",
            )
            d = self._writable(document_id)
            v = self.versions.create_version(
                d,
                content=content,
                uploader=user,
                filename=filename,
                content_type=content_type,
                description=description,
                expected_sha256=expected_sha256,
            )
            d.latest_version_id = v.id
            self.s.flush()

            record_event(
                self.s,
                actor=user,
                action="doc.version.create",
                entity_type="DocumentVersion",
                entity_id=str(v.id),
                metadata={
                    "doc_id": d.id,
                    "version_number": v.version_number,
                    "filename": v.filename,
                    "sha256": v.sha256,
                },
            )
            details = self._details(d)
        logger.info("Document %s: version %s added by user %s", d.id, v.version_number, user.id)
        return details

    def update_metadata(
        self,
        document_id: int,
        *,
        user: User,
        title: str | None = None,
        description: str | None = None,
    ) -> Document:
        """Partial update. Rejected unless the document is ACTIVE."""
        with transaction(self.s):
            self._require(
                self.access.can_edit_department(user.id, self._department_of(document_id)),
                "You do not have permission to update this document.",
            )
            d = self._writable(document_id)
            changes = {}
            if title is not None:
                new_title = normalize_title(title)
                if new_title != d.title:
                    changes["title"] = {"from": d.title, "to": new_title}
                    d.title = new_title
            if description is not None:
                new_description = normalize_description(description)
                if new_description != d.description:
                    changes["description"] = {"from": d.description, "to": new_description}
                    d.description = new_description

            if changes:
                d.updated_at = datetime.utcnow()
                self.s.flush()
                record_event(
                    self.s,
                    actor=user,
                    action="doc.update",
                    entity_type="Document",
                    entity_id=str(d.id),
                    metadata={"changes": changes},
                )
        return d

    def list_by_department(
        self,
        department_id: int,
        *,
        user: User,
        uploaded_by: int | None = None,
    ) -> list[Document]:
        """
        Non-deleted documents of one department, newest first. uploaded_by
        narrows the list to documents whose latest version that user uploaded.
        """
        with transaction(self.s):
            self._require(
                self.access.can_view_department(user.id, department_id),
                "You do not have permission to view this department's documents.",
            )
            q = self.s.query(Document).filter(
                Document.department_id == department_id,
                Document.status != DELETED,
            )
            if uploaded_by is not None:
                q = q.join(DocumentVersion, DocumentVersion.id == Document.latest_version_id).filter(
                    DocumentVersion.uploaded_by_user_id == uploaded_by
                )
            return q.order_by(Document.created_at.desc(), Document.id.desc()).all()

    def get_details(self, document_id: int, *, user: User) -> DocumentDetails:
        with transaction(self.s):
            self._require(
                self.access.can_view_department(user.id, self._department_of(document_id)),
                "You do not have permission to view this document.",
            )
            return self._details(self._live(document_id))

    # ---------- versions ----------
    def delete_version_of(self, document_id: int, version_id: int, *, user: User) -> DocumentDetails:
        with transaction(self.s):
            self._require(
                self.access.can_edit_department(user.id, self._department_of(document_id)),
                "You do not have permission to update this document.",
            )
            return self._delete_version_of(document_id, version_id, user=user)

    def delete_version(self, version_id: int, *, user: User) -> DocumentDetails:
        """Delete by version id alone; the owning document is resolved first."""
        with transaction(self.s):
            self._require(
                self.access.can_edit_department(user.id, self._department_of_version(version_id)),
                "You do not have permission to update this document.",
            )
            v = self.versions.get_version(version_id)
            return self._delete_version_of(v.document_id, version_id, user=user)

    def _delete_version_of(self, document_id: int, version_id: int, *, user: User) -> DocumentDetails:
        d = self._writable(document_id)
        v = self.s.get(DocumentVersion, version_id)
        if v is None:
            raise VersionNotFound("Document version not found.")
        if v.document_id != d.id:
            raise ForbiddenOperation(f"Version {version_id} does not belong to document {document_id}.")

        version_number = v.version_number
        self.versions.delete_version(version_id)
        remaining = self.versions.list_versions(d.id)
        d.latest_version_id = remaining[0].id
        self.s.flush()

        record_event(
            self.s,
            actor=user,
            action="doc.version.delete",
            entity_type="DocumentVersion",
            entity_id=str(version_id),
            metadata={"doc_id": d.id, "version_number": version_number},
        )
        logger.info("Document %s: version %s deleted by user %s", d.id, version_number, user.id)
        return DocumentDetails(document=d, versions=remaining)

    def update_version_description(self, version_id: int, description: str | None, *, user: User) -> DocumentVersion:
        with transaction(self.s):
            self._require(
                self.access.can_edit_department(user.id, self._department_of_version(version_id)),
                "You do not have permission to update this document.",
            )
            v = self.versions.get_version(version_id)
            self._writable(v.document_id)
            previous = v.description
            v = self.versions.update_description(version_id, description)
            record_event(
                self.s,
                actor=user,
                action="doc.version.update",
                entity_type="DocumentVersion",
                entity_id=str(v.id),
                metadata={"doc_id": v.document_id, "description": {"from": previous, "to": v.description}},
            )
        return v

    def fetch_content(self, version_id: int, *, user: User) -> VersionContent:
        with transaction(self.s):
            self._require(
                self.access.can_view_department(user.id, self._department_of_version(version_id)),
                "You do not have permission to download this file.",
            )
            content = self.versions.fetch_content(version_id)
            v = self.versions.get_version(version_id)
            record_event(
                self.s,
                actor=user,
                action="doc.download",
                entity_type="DocumentVersion",
                entity_id=str(v.id),
                metadata={"doc_id": v.document_id, "version_number": v.version_number, "filename": v.filename},
            )
        return content

    # ---------- status ----------
    def transition(self, d: Document, new_status: str) -> str:
        """
        Move a document along the status graph. Returns the previous status.
        Only the deletion workflow calls this.
        """
        if new_status not in STATUS_TRANSITIONS.get(d.status, set()):
            raise InvalidStateTransition(f"Document {d.id}: {d.status} -> {new_status} is not allowed.")
        previous = d.status
        d.status = new_status
        if new_status == DELETED:
            d.latest_version_id = None
        d.updated_at = datetime.utcnow()
        self.s.flush()
        return previous
