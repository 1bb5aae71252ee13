"""
Caller-visible failures of the document service.

Every class maps to one HTTP status and a stable machine-readable code. None of
them are retried internally; only StorageError (app.docvault.storage) is
transient.
"""

from __future__ import annotations


class DocumentServiceError(RuntimeError):
    status_code = 500
    code = "document_service_error"


class ValidationFailed(DocumentServiceError):
    status_code = 400
    code = "validation_failed"


class NotFound(DocumentServiceError):
    status_code = 404
    code = "not_found"


class DocumentNotFound(NotFound):
    code = "document_not_found"


class VersionNotFound(NotFound):
    code = "version_not_found"


class DeletionRequestNotFound(NotFound):
    code = "deletion_request_not_found"


class Forbidden(DocumentServiceError):
    status_code = 403
    code = "forbidden"


class ForbiddenOperation(Forbidden):
    code = "forbidden_operation"


class InvalidStateTransition(DocumentServiceError):
    status_code = 409
    code = "invalid_state_transition"


class DocumentLocked(InvalidStateTransition):
    code = "document_locked"


class AlreadyRequested(DocumentServiceError):
    status_code = 409
    code = "already_requested"


class AlreadyResolved(DocumentServiceError):
    status_code = 409
    code = "already_resolved"


class LastVersionConflict(DocumentServiceError):
    status_code = 409
    code = "last_version_conflict"


class IntegrityFailure(DocumentServiceError):
    status_code = 422
    code = "integrity_failure"


class ContentReleaseFailed(DocumentServiceError):
    status_code = 503
    code = "content_release_failed"
