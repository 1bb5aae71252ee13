"""
Deletion workflow: a document is only destroyed after one user requests it and
a second, distinct user with resolve rights approves it.

    ACTIVE --request--> DELETION_PENDING --approve--> DELETED
                                         --reject---> ACTIVE

Requests are never deleted; resolved rows are the audit history.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.docvault.audit import record_event
from app.docvault.storage import Storage

from .access import AccessScope, RbacAccessScope
from .catalog import DocumentCatalog, transaction
from .errors import (
    AlreadyRequested,
    AlreadyResolved,
    DeletionRequestNotFound,
    DocumentLocked,
    DocumentNotFound,
    Forbidden,
)
from .models import ACTIVE, APPROVED, DELETED, DELETION_PENDING, PENDING, REJECTED, DeletionRequest, Document
from .service import normalize_description

if TYPE_CHECKING:
    from app.docvault.models import User

logger = logging.getLogger(__name__)


class DeletionWorkflow:
    def __init__(self, s: Session, storage: Storage, access: AccessScope | None = None) -> None:
        self.s = s
        self.access = access if access is not None else RbacAccessScope(s)
        self.catalog = DocumentCatalog(s, storage, self.access)

    def _pending_for(self, document_id: int) -> DeletionRequest | None:
        return (
            self.s.query(DeletionRequest)
            .filter(DeletionRequest.document_id == document_id, DeletionRequest.resolution == PENDING)
            .one_or_none()
        )

    def _load_request(self, request_id: int) -> DeletionRequest | None:
        return (
            self.s.query(DeletionRequest)
            .filter(DeletionRequest.id == request_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )

    def request_deletion(self, document_id: int, *, user: User, reason: str | None = None) -> DeletionRequest:
        """
        Open a PENDING request and flip the document to DELETION_PENDING in
        the same transaction. A racing second request fails with AlreadyRequested.
        """
        try:
            with transaction(self.s, conflict=AlreadyRequested):
                if not self.access.can_request_deletion(user.id, document_id):
                    raise Forbidden("You do not have permission to delete this document.")

                d = self.catalog.load(document_id, for_update=True)
                if d is None or d.status == DELETED:
                    raise DocumentNotFound(f"Document {document_id} not found.")
                if self._pending_for(d.id) is not None:
                    raise AlreadyRequested(f"Deletion of document {document_id} is already pending approval.")
                if d.status != ACTIVE:
                    raise DocumentLocked(f"Document {document_id} is {d.status}.")

                req = DeletionRequest(
                    document_id=d.id,
                    requested_by_user_id=user.id,
                    requested_at=datetime.utcnow(),
                    reason=normalize_description(reason, max_length=512, field="reason"),
                    resolution=PENDING,
                )
                self.s.add(req)
                self.catalog.transition(d, DELETION_PENDING)

                record_event(
                    self.s,
                    actor=user,
                    action="doc.deletion.request",
                    entity_type="Document",
                    entity_id=str(d.id),
                    reason=req.reason,
                    metadata={"request_id": req.id, "title": d.title},
                )
        except IntegrityError as e:
            # uq_deletion_requests_one_pending: another request won the race.
            raise AlreadyRequested(f"Deletion of document {document_id} is already pending approval.") from e
        logger.info("Deletion of document %s requested by user %s (request %s)", document_id, user.id, req.id)
        return req

    def list_pending(self, department_id: int | None = None, *, user: User) -> list[DeletionRequest]:
        """
        PENDING requests, oldest first. Without a department the queue holds
        every department the caller may resolve.
        """
        with transaction(self.s):
            if department_id is not None and not self.access.can_resolve_deletion(user.id, department_id):
                raise Forbidden("You do not have permission to review this department's deletions.")

            q = (
                self.s.query(DeletionRequest)
                .join(Document, Document.id == DeletionRequest.document_id)
                .filter(DeletionRequest.resolution == PENDING)
            )
            if department_id is not None:
                q = q.filter(Document.department_id == department_id)
            rows = q.order_by(DeletionRequest.requested_at.asc(), DeletionRequest.id.asc()).all()
            if department_id is not None:
                return rows

            allowed: dict[int, bool] = {}
            out = []
            for r in rows:
                dept = r.document.department_id
                if dept not in allowed:
                    allowed[dept] = self.access.can_resolve_deletion(user.id, dept)
                if allowed[dept]:
                    out.append(r)
            return out

    def _resolvable(self, request_id: int, user: User) -> tuple[DeletionRequest, Document]:
        req = self._load_request(request_id)
        dept = req.document.department_id if req is not None else None
        if not self.access.can_resolve_deletion(user.id, dept):
            raise Forbidden("You do not have permission to resolve this deletion request.")
        if req is None:
            raise DeletionRequestNotFound(f"Deletion request {request_id} not found.")
        if req.resolution != PENDING:
            raise AlreadyResolved(f"Deletion request {request_id} is already {req.resolution}.")
        d = self.catalog.load(req.document_id, for_update=True)
        if d is None:
            raise DocumentNotFound(f"Document {req.document_id} not found.")
        return req, d

    def approve(self, request_id: int, *, user: User, note: str | None = None) -> DeletionRequest:
        """
        Resolve APPROVED: the document becomes DELETED and every version's
        record and content is released. All or nothing.
        """
        with transaction(self.s, conflict=AlreadyResolved):
            req, d = self._resolvable(request_id, user)
            if req.requested_by_user_id == user.id:
                raise Forbidden("A deletion request must be approved by someone other than its requester.")

            req.resolution = APPROVED
            req.resolved_by_user_id = user.id
            req.resolved_at = datetime.utcnow()
            req.resolution_note = normalize_description(note, max_length=512, field="note")
            self.catalog.transition(d, DELETED)
            released = self.catalog.versions.release_all(d)

            record_event(
                self.s,
                actor=user,
                action="doc.deletion.approve",
                entity_type="Document",
                entity_id=str(d.id),
                reason=req.resolution_note,
                metadata={
                    "request_id": req.id,
                    "title": d.title,
                    "requested_by_user_id": req.requested_by_user_id,
                    "versions_released": released,
                },
            )
        logger.info("Deletion request %s approved by user %s; document %s deleted", req.id, user.id, d.id)
        return req

    def reject(self, request_id: int, *, user: User, note: str | None = None) -> DeletionRequest:
        """Resolve REJECTED: the document returns to ACTIVE with its versions untouched."""
        with transaction(self.s, conflict=AlreadyResolved):
            req, d = self._resolvable(request_id, user)

            req.resolution = REJECTED
            req.resolved_by_user_id = user.id
            req.resolved_at = datetime.utcnow()
            req.resolution_note = normalize_description(note, max_length=512, field="note")
            self.catalog.transition(d, ACTIVE)

            record_event(
                self.s,
                actor=user,
                action="doc.deletion.reject",
                entity_type="Document",
                entity_id=str(d.id),
                reason=req.resolution_note,
                metadata={"request_id": req.id, "title": d.title},
            )
        logger.info("Deletion request %s rejected by user %s", req.id, user.id)
        return req

    def history(self, document_id: int, *, user: User) -> list[DeletionRequest]:
        """All deletion requests for a document, newest first, including DELETED documents."""
        with transaction(self.s):
            d = self.s.get(Document, document_id)
            if not self.access.can_view_department(user.id, d.department_id if d else None):
                raise Forbidden("You do not have permission to view this document.")
            if d is None:
                raise DocumentNotFound(f"Document {document_id} not found.")
            return (
                self.s.query(DeletionRequest)
                .filter(DeletionRequest.document_id == document_id)
                .order_by(DeletionRequest.requested_at.desc(), DeletionRequest.id.desc())
                .all()
            )
