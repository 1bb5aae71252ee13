"""
Access scope: which user may see or act on which department's documents.

The document service only consumes the AccessScope protocol. RbacAccessScope is
the shim that answers those questions from the host application's role and
permission tables plus the user's department assignment.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy.orm import Session

from app.docvault.models import User
from app.docvault.rbac import user_has_permission

from .models import Document

PERM_VIEW = "docs.view"
PERM_UPLOAD = "docs.upload"
PERM_EDIT = "docs.edit"
PERM_DELETE_REQUEST = "docs.delete_request"
PERM_DELETE_APPROVE = "docs.delete_approve"
PERM_ALL_DEPARTMENTS = "docs.all_departments"


class AccessScope(Protocol):
    def can_view_department(self, user_id: int, department_id: int | None) -> bool: ...

    def can_upload_to_department(self, user_id: int, department_id: int | None) -> bool: ...

    def can_edit_department(self, user_id: int, department_id: int | None) -> bool: ...

    def can_request_deletion(self, user_id: int, document_id: int) -> bool: ...

    def can_resolve_deletion(self, user_id: int, department_id: int | None) -> bool: ...


class RbacAccessScope:
    """
    A capability is granted when the user is active, holds the permission key,
    and either belongs to the department or holds docs.all_departments.

    A department of None means the target does not exist. Department-scoped
    users are refused in that case so a Forbidden answer cannot be told apart
    from a missing document.
    """

    def __init__(self, s: Session) -> None:
        self.s = s

    def _user(self, user_id: int) -> User | None:
        u = self.s.get(User, user_id)
        if u is None or not u.is_active:
            return None
        return u

    def _granted(self, user_id: int, permission_key: str, department_id: int | None) -> bool:
        u = self._user(user_id)
        if u is None or not user_has_permission(u, permission_key):
            return False
        if user_has_permission(u, PERM_ALL_DEPARTMENTS):
            return True
        return department_id is not None and u.department_id == department_id

    def can_view_department(self, user_id: int, department_id: int | None) -> bool:
        return self._granted(user_id, PERM_VIEW, department_id)

    def can_upload_to_department(self, user_id: int, department_id: int | None) -> bool:
        return self._granted(user_id, PERM_UPLOAD, department_id)

    def can_edit_department(self, user_id: int, department_id: int | None) -> bool:
        return self._granted(user_id, PERM_EDIT, department_id)

    def can_request_deletion(self, user_id: int, document_id: int) -> bool:
        d = self.s.get(Document, document_id)
        return self._granted(user_id, PERM_DELETE_REQUEST, d.department_id if d else None)

    def can_resolve_deletion(self, user_id: int, department_id: int | None) -> bool:
        return self._granted(user_id, PERM_DELETE_APPROVE, department_id)
