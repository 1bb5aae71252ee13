from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.docvault.db import db_session
from app.docvault.models import User
from app.docvault.modules.documents.catalog import DocumentCatalog, DocumentDetails
from app.docvault.modules.documents.deletion import DeletionWorkflow
from app.docvault.modules.documents.errors import DocumentServiceError, ValidationFailed
from app.docvault.modules.documents.models import DeletionRequest, Document, DocumentVersion
from app.docvault.rbac import require_permission
from app.docvault.storage import StorageError, storage_from_config

bp = Blueprint("documents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _catalog() -> DocumentCatalog:
    return DocumentCatalog(db_session(), storage_from_config(current_app.config))


def _workflow() -> DeletionWorkflow:
    return DeletionWorkflow(db_session(), storage_from_config(current_app.config))


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def _int_arg(raw: str | None, name: str) -> int | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationFailed(f"{name} must be an integer.")


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _uploaded_file():
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationFailed("file is required.")
    return f


def version_json(v: DocumentVersion) -> dict:
    return {
        "id": v.id,
        "document_id": v.document_id,
        "version_number": v.version_number,
        "description": v.description,
        "filename": v.filename,
        "content_type": v.content_type,
        "sha256": v.sha256,
        "size_bytes": v.size_bytes,
        "uploaded_at": _iso(v.uploaded_at),
        "uploaded_by_user_id": v.uploaded_by_user_id,
        "uploaded_by_email": v.uploaded_by.email if v.uploaded_by else None,
    }


def document_json(d: Document) -> dict:
    return {
        "id": d.id,
        "title": d.title,
        "description": d.description,
        "original_filename": d.original_filename,
        "department_id": d.department_id,
        "status": d.status,
        "latest_version_id": d.latest_version_id,
        "created_at": _iso(d.created_at),
        "updated_at": _iso(d.updated_at),
        "created_by_user_id": d.created_by_user_id,
    }


def details_json(details: DocumentDetails) -> dict:
    out = document_json(details.document)
    latest = details.latest_version
    out["latest_version"] = version_json(latest) if latest else None
    out["versions"] = [version_json(v) for v in details.versions]
    return out


def request_json(r: DeletionRequest) -> dict:
    d = r.document
    return {
        "id": r.id,
        "document_id": r.document_id,
        "document_title": d.title if d else None,
        "department_id": d.department_id if d else None,
        "department_name": d.department.name if d and d.department else None,
        "requested_by_user_id": r.requested_by_user_id,
        "requested_by_email": r.requested_by.email if r.requested_by else None,
        "requested_at": _iso(r.requested_at),
        "reason": r.reason,
        "resolution": r.resolution,
        "resolved_by_user_id": r.resolved_by_user_id,
        "resolved_at": _iso(r.resolved_at),
        "resolution_note": r.resolution_note,
    }


@bp.errorhandler(DocumentServiceError)
def _service_error(e: DocumentServiceError):
    if e.status_code >= 500:
        current_app.logger.error("Document service failure (%s): %s request_id=%s", e.code, e, getattr(g, "request_id", None))
    else:
        current_app.logger.info("Document request rejected (%s): %s", e.code, e)
    return jsonify({"error": e.code, "message": str(e)}), e.status_code


@bp.errorhandler(StorageError)
def _storage_error(e: StorageError):
    current_app.logger.exception("Storage unavailable request_id=%s", getattr(g, "request_id", None))
    return jsonify({"error": "storage_unavailable", "message": "File storage is temporarily unavailable; retry later."}), 503


# ---------- documents ----------
@bp.post("/")
@require_permission("docs.upload")
def create_document():
    u = _current_user()
    f = _uploaded_file()
    department_id = _int_arg(request.form.get("department_id"), "department_id")
    if department_id is None:
        department_id = u.department_id
    if department_id is None:
        raise ValidationFailed("department_id is required.")

    details = _catalog().create_document(
        title=request.form.get("title") or "",
        description=request.form.get("description"),
        department_id=department_id,
        content=f.read(),
        filename=f.filename,
        content_type=f.mimetype,
        version_description=request.form.get("version_description"),
        expected_sha256=request.form.get("sha256"),
        user=u,
    )
    return jsonify(details_json(details)), 201


@bp.get("/")
@require_permission("docs.view")
def list_documents():
    u = _current_user()
    department_id = _int_arg(request.args.get("department_id"), "department_id")
    if department_id is None:
        department_id = u.department_id
    if department_id is None:
        raise ValidationFailed("department_id is required.")
    mine = (request.args.get("mine") or "").strip().lower() in ("1", "true", "yes")

    docs = _catalog().list_by_department(department_id, user=u, uploaded_by=u.id if mine else None)
    return jsonify({"documents": [document_json(d) for d in docs]})


@bp.get("/<int:doc_id>")
@require_permission("docs.view")
def get_document(doc_id: int):
    details = _catalog().get_details(doc_id, user=_current_user())
    return jsonify(details_json(details))


@bp.patch("/<int:doc_id>")
@require_permission("docs.edit")
def update_document(doc_id: int):
    body = _json_body()
    d = _catalog().update_metadata(
        doc_id,
        user=_current_user(),
        title=body.get("title"),
        description=body.get("description"),
    )
    return jsonify(document_json(d))


# ---------- versions ----------
@bp.post("/<int:doc_id>/versions")
@require_permission("docs.upload")
def add_version(doc_id: int):
    f = _uploaded_file()
    details = _catalog().add_version(
        doc_id,
        content=f.read(),
        filename=f.filename,
        content_type=f.mimetype,
        description=request.form.get("description"),
        expected_sha256=request.form.get("sha256"),
        user=_current_user(),
    )
    return jsonify(details_json(details)), 201


@bp.patch("/versions/<int:version_id>")
@require_permission("docs.edit")
def update_version(version_id: int):
    body = _json_body()
    v = _catalog().update_version_description(version_id, body.get("description"), user=_current_user())
    return jsonify(version_json(v))


@bp.delete("/versions/<int:version_id>")
@require_permission("docs.edit")
def delete_version(version_id: int):
    details = _catalog().delete_version(version_id, user=_current_user())
    return jsonify(details_json(details))


@bp.get("/versions/<int:version_id>/download")
@require_permission("docs.download")
def download_version(version_id: int):
    content = _catalog().fetch_content(version_id, user=_current_user())
    resp = send_file(
        content.fileobj,
        mimetype=content.content_type,
        as_attachment=True,
        download_name=content.filename,
        max_age=0,
    )
    resp.headers["X-Content-SHA256"] = content.sha256
    return resp


# ---------- deletion ----------
@bp.delete("/<int:doc_id>/request-deletion")
@require_permission("docs.delete_request")
def request_deletion(doc_id: int):
    body = _json_body()
    r = _workflow().request_deletion(doc_id, user=_current_user(), reason=body.get("reason"))
    return jsonify(request_json(r)), 201


@bp.get("/<int:doc_id>/deletion-requests")
@require_permission("docs.view")
def deletion_history(doc_id: int):
    rows = _workflow().history(doc_id, user=_current_user())
    return jsonify({"requests": [request_json(r) for r in rows]})


@bp.get("/pending-deletion")
@require_permission("docs.delete_approve")
def pending_deletion():
    department_id = _int_arg(request.args.get("department_id"), "department_id")
    rows = _workflow().list_pending(department_id, user=_current_user())
    return jsonify({"requests": [request_json(r) for r in rows]})


@bp.post("/deletion-requests/<int:request_id>/approve")
@require_permission("docs.delete_approve")
def approve_deletion(request_id: int):
    _workflow().approve(request_id, user=_current_user(), note=_json_body().get("note"))
    return "", 204


@bp.post("/deletion-requests/<int:request_id>/reject")
@require_permission("docs.delete_approve")
def reject_deletion(request_id: int):
    _workflow().reject(request_id, user=_current_user(), note=_json_body().get("note"))
    return "", 204
