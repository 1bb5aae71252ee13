import threading
from dataclasses import dataclass, field

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.docvault.audit import verify_chain
from app.docvault.models import AuditEvent, Permission, Role, User
from app.docvault.modules.documents.catalog import DocumentCatalog
from app.docvault.modules.documents.deletion import DeletionWorkflow
from app.docvault.modules.documents.errors import (
    AlreadyRequested,
    AlreadyResolved,
    ContentReleaseFailed,
    DocumentLocked,
    DocumentNotFound,
    Forbidden,
    ForbiddenOperation,
    IntegrityFailure,
    InvalidStateTransition,
    LastVersionConflict,
    NotFound,
    ValidationFailed,
    VersionNotFound,
)
from app.docvault.modules.documents.models import (
    ACTIVE,
    APPROVED,
    DELETED,
    DELETION_PENDING,
    PENDING,
    REJECTED,
    DeletionRequest,
    Document,
    DocumentVersion,
)
from app.docvault.modules.documents.service import file_digest_and_bytes
from app.docvault.storage import LocalStorage, StorageError
from scripts import verify_audit


@dataclass(frozen=True)
class FailingReleaseStorage(LocalStorage):
    """Moves into released/ succeed fail_after times, then raise."""

    fail_after: int = 1
    moved: list = field(default_factory=list)

    def move(self, src: str, dst: str) -> None:
        if dst.startswith("released/") and len(self.moved) >= self.fail_after:
            raise StorageError(f"injected failure moving {src}")
        super().move(src, dst)
        if dst.startswith("released/"):
            self.moved.append(src)


@dataclass(frozen=True)
class HookedStorage(LocalStorage):
    """Runs queued callables just before the next write."""

    before_put: list = field(default_factory=list)

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        while self.before_put:
            self.before_put.pop(0)()
        super().put_bytes(key, data, content_type=content_type)


@dataclass(frozen=True)
class CorruptingStorage(LocalStorage):
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        super().put_bytes(key, data + b"\x00", content_type=content_type)


def _files(root):
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


def _create(catalog, user, dept_id, title="Budget.xlsx", content=b"F1"):
    return catalog.create_document(
        title=title,
        description="Quarterly budget",
        department_id=dept_id,
        content=content,
        filename=title,
        user=user,
    )


def test_budget_scenario_request_then_approve(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    alice, bob = users["alice"], users["bob"]
    d1 = depts["Finance"]

    details = _create(catalog, alice, d1)
    doc = details.document
    assert doc.status == ACTIVE
    assert [v.version_number for v in details.versions] == [1]
    assert doc.latest_version_id == details.versions[0].id

    details = catalog.add_version(doc.id, content=b"F2", filename="Budget.xlsx", user=alice)
    assert [v.version_number for v in details.versions] == [2, 1]
    assert details.document.latest_version_id == details.versions[0].id
    assert details.latest_version.version_number == 2
    version_ids = [v.id for v in details.versions]

    req = wf.request_deletion(doc.id, user=alice, reason="Superseded")
    assert catalog.load(doc.id).status == DELETION_PENDING
    assert [r.id for r in wf.list_pending(d1, user=bob)] == [req.id]

    with pytest.raises(AlreadyRequested):
        wf.request_deletion(doc.id, user=alice)

    wf.approve(req.id, user=bob)
    assert catalog.load(doc.id).status == DELETED
    assert db.get(DeletionRequest, req.id).resolution == APPROVED
    assert db.get(DeletionRequest, req.id).resolved_by_user_id == bob.id

    for vid in version_ids:
        with pytest.raises(VersionNotFound):
            catalog.versions.fetch_content(vid)
        with pytest.raises(NotFound):
            catalog.fetch_content(vid, user=users["admin"])
    assert _files(storage.root) == []
    assert wf.list_pending(d1, user=bob) == []


def test_version_numbers_are_never_reused(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    alice = users["alice"]

    doc = _create(catalog, alice, depts["Finance"]).document
    catalog.add_version(doc.id, content=b"v2", filename="b.xlsx", user=alice)
    details = catalog.add_version(doc.id, content=b"v3", filename="b.xlsx", user=alice)
    v3 = details.latest_version

    details = catalog.delete_version(v3.id, user=alice)
    assert [v.version_number for v in details.versions] == [2, 1]
    assert details.document.latest_version_id == details.versions[0].id

    details = catalog.add_version(doc.id, content=b"v4", filename="b.xlsx", user=alice)
    assert [v.version_number for v in details.versions] == [4, 2, 1]

    v1 = details.versions[-1]
    details = catalog.delete_version_of(doc.id, v1.id, user=alice)
    assert [v.version_number for v in details.versions] == [4, 2]
    assert details.latest_version.version_number == 4


def test_deleting_the_only_version_is_rejected(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    alice = users["alice"]
    details = _create(catalog, alice, depts["Finance"])
    only = details.versions[0]

    with pytest.raises(LastVersionConflict):
        catalog.delete_version(only.id, user=alice)

    details = catalog.get_details(details.document.id, user=alice)
    assert [v.id for v in details.versions] == [only.id]
    assert catalog.fetch_content(only.id, user=alice).fileobj.read() == b"F1"


def test_deleting_a_version_through_another_document_is_forbidden(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    alice = users["alice"]
    a = _create(catalog, alice, depts["Finance"], title="A.pdf").document
    b = _create(catalog, alice, depts["Finance"], title="B.pdf").document
    b_details = catalog.add_version(b.id, content=b"B2", filename="B.pdf", user=alice)

    with pytest.raises(ForbiddenOperation):
        catalog.delete_version_of(a.id, b_details.versions[0].id, user=alice)
    assert catalog.versions.count_versions(b.id) == 2


def test_concurrent_deletion_requests_one_wins(app, db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    doc = _create(catalog, users["alice"], depts["Finance"]).document

    sm = app.extensions["sqlalchemy_sessionmaker"]
    barrier = threading.Barrier(2)
    results: list[str] = []
    lock = threading.Lock()

    def worker(email: str) -> None:
        s = sm()
        try:
            user = s.query(User).filter(User.email == email).one()
            wf = DeletionWorkflow(s, storage)
            barrier.wait()
            try:
                wf.request_deletion(doc.id, user=user)
                outcome = "ok"
            except AlreadyRequested:
                outcome = "already"
            with lock:
                results.append(outcome)
        finally:
            s.close()

    threads = [threading.Thread(target=worker, args=(e,)) for e in ("alice@example.com", "carol@example.com")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(results) == ["already", "ok"]
    db.expire_all()
    assert catalog.load(doc.id).status == DELETION_PENDING
    pending = db.query(DeletionRequest).filter(
        DeletionRequest.document_id == doc.id, DeletionRequest.resolution == PENDING
    ).count()
    assert pending == 1


def test_approve_with_release_failure_changes_nothing(db, tmp_path, users, depts):
    storage = FailingReleaseStorage(root=tmp_path / "storage", fail_after=1)
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    alice, bob = users["alice"], users["bob"]

    doc = _create(catalog, alice, depts["Finance"], content=b"first").document
    details = catalog.add_version(doc.id, content=b"second", filename="Budget.xlsx", user=alice)
    req = wf.request_deletion(doc.id, user=alice)

    with pytest.raises(ContentReleaseFailed):
        wf.approve(req.id, user=bob)

    assert catalog.load(doc.id).status == DELETION_PENDING
    assert db.get(DeletionRequest, req.id).resolution == PENDING
    expected = {v.id: v.sha256 for v in details.versions}
    for vid, sha in expected.items():
        content = catalog.fetch_content(vid, user=bob)
        assert content.sha256 == sha
    assert _files(tmp_path / "storage" / "released") == []


def test_reject_restores_active_and_keeps_versions(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    alice, bob = users["alice"], users["bob"]

    doc = _create(catalog, alice, depts["Finance"]).document
    before = [(v.id, v.version_number, v.sha256) for v in catalog.get_details(doc.id, user=alice).versions]

    req = wf.request_deletion(doc.id, user=alice)
    wf.reject(req.id, user=bob, note="Still in use")

    assert catalog.load(doc.id).status == ACTIVE
    after = [(v.id, v.version_number, v.sha256) for v in catalog.get_details(doc.id, user=alice).versions]
    assert after == before

    with pytest.raises(AlreadyResolved):
        wf.approve(req.id, user=bob)

    again = wf.request_deletion(doc.id, user=alice)
    history = wf.history(doc.id, user=alice)
    assert [r.id for r in history] == [again.id, req.id]
    assert history[1].resolution == REJECTED
    assert history[1].resolution_note == "Still in use"


def test_requester_cannot_approve_own_request(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    carol = users["carol"]
    doc = _create(catalog, carol, depts["Finance"]).document
    req = wf.request_deletion(doc.id, user=carol)

    with pytest.raises(Forbidden):
        wf.approve(req.id, user=carol)
    with pytest.raises(Forbidden):
        wf.approve(req.id, user=users["dave"])
    assert catalog.load(doc.id).status == DELETION_PENDING

    wf.approve(req.id, user=users["bob"])
    assert catalog.load(doc.id).status == DELETED


def test_access_is_checked_before_existence(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    doc = _create(catalog, users["alice"], depts["Finance"]).document

    with pytest.raises(Forbidden):
        wf.request_deletion(999999, user=users["dave"])
    with pytest.raises(DocumentNotFound):
        wf.request_deletion(999999, user=users["admin"])
    with pytest.raises(Forbidden):
        wf.request_deletion(doc.id, user=users["dave"])
    with pytest.raises(Forbidden):
        wf.request_deletion(doc.id, user=users["bob"])
    with pytest.raises(Forbidden):
        catalog.get_details(doc.id, user=users["dave"])
    with pytest.raises(Forbidden):
        catalog.list_by_department(depts["Finance"], user=users["dave"])
    with pytest.raises(Forbidden):
        _create(catalog, users["alice"], depts["Legal"])


def test_pending_document_is_locked(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    alice = users["alice"]
    details = _create(catalog, alice, depts["Finance"])
    doc = details.document
    wf.request_deletion(doc.id, user=alice)

    with pytest.raises(DocumentLocked):
        catalog.add_version(doc.id, content=b"late", filename="late.xlsx", user=alice)
    with pytest.raises(DocumentLocked):
        catalog.update_metadata(doc.id, user=alice, title="Renamed")
    with pytest.raises(DocumentLocked):
        catalog.update_version_description(details.versions[0].id, "note", user=alice)
    assert catalog.versions.count_versions(doc.id) == 1


def test_content_round_trip_and_integrity_checks(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    alice = users["alice"]
    payload = b"col1,col2\n1,2\n" * 100
    sha, size = file_digest_and_bytes(payload)

    details = catalog.create_document(
        title="Data",
        description=None,
        department_id=depts["Finance"],
        content=payload,
        filename="data.csv",
        content_type="text/csv",
        expected_sha256=sha.upper(),
        user=alice,
    )
    v = details.versions[0]
    assert (v.sha256, v.size_bytes) == (sha, size)

    content = catalog.fetch_content(v.id, user=alice)
    assert content.fileobj.read() == payload
    assert content.sha256 == sha
    assert (content.filename, content.content_type) == ("data.csv", "text/csv")

    with pytest.raises(IntegrityFailure):
        catalog.add_version(details.document.id, content=b"other", filename="x.csv", expected_sha256=sha, user=alice)
    assert catalog.versions.count_versions(details.document.id) == 1

    (storage.root / v.storage_key).write_bytes(b"tampered")
    with pytest.raises(IntegrityFailure):
        catalog.fetch_content(v.id, user=alice)


def test_failed_write_verification_leaves_no_content(db, tmp_path, users, depts):
    storage = CorruptingStorage(root=tmp_path / "storage")
    catalog = DocumentCatalog(db, storage)

    with pytest.raises(IntegrityFailure):
        _create(catalog, users["alice"], depts["Finance"])

    assert db.query(Document).count() == 0
    assert db.query(DocumentVersion).count() == 0
    assert _files(tmp_path / "storage") == []


def test_metadata_update_and_listing(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    alice, carol = users["alice"], users["carol"]
    finance = depts["Finance"]

    a = _create(catalog, alice, finance, title="A.pdf").document
    b = _create(catalog, alice, finance, title="B.pdf").document
    catalog.add_version(b.id, content=b"B2", filename="B.pdf", user=carol)

    with pytest.raises(ValidationFailed):
        catalog.update_metadata(a.id, user=alice, title="   ")
    d = catalog.update_metadata(a.id, user=alice, title="A (final).pdf", description="Signed")
    assert (d.title, d.description) == ("A (final).pdf", "Signed")

    listed = catalog.list_by_department(finance, user=alice)
    assert {x.id for x in listed} == {a.id, b.id}
    mine = catalog.list_by_department(finance, user=alice, uploaded_by=alice.id)
    assert [x.id for x in mine] == [a.id]
    assert catalog.list_by_department(depts["Legal"], user=users["dave"]) == []


def test_pending_queue_is_scoped_and_fifo(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    first = _create(catalog, users["alice"], depts["Finance"], title="1.pdf").document
    second = _create(catalog, users["dave"], depts["Legal"], title="2.pdf").document
    third = _create(catalog, users["alice"], depts["Finance"], title="3.pdf").document

    r1 = wf.request_deletion(first.id, user=users["alice"])
    r2 = wf.request_deletion(second.id, user=users["dave"])
    r3 = wf.request_deletion(third.id, user=users["alice"])

    assert [r.id for r in wf.list_pending(user=users["admin"])] == [r1.id, r2.id, r3.id]
    assert [r.id for r in wf.list_pending(user=users["bob"])] == [r1.id, r3.id]
    assert [r.id for r in wf.list_pending(depts["Legal"], user=users["dave"])] == [r2.id]
    with pytest.raises(Forbidden):
        wf.list_pending(depts["Legal"], user=users["bob"])


def test_audit_trail_is_chained(app, db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    alice, bob = users["alice"], users["bob"]

    doc = _create(catalog, alice, depts["Finance"]).document
    catalog.add_version(doc.id, content=b"F2", filename="Budget.xlsx", user=alice)
    req = wf.request_deletion(doc.id, user=alice)
    wf.approve(req.id, user=bob)

    actions = [e.action for e in db.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]
    assert actions == ["doc.create", "doc.version.create", "doc.deletion.request", "doc.deletion.approve"]
    assert verify_chain(db) is None
    assert verify_audit.check_chain(database_url=app.config["DATABASE_URL"]) is None

    second = db.query(AuditEvent).order_by(AuditEvent.id.asc()).all()[1]
    db.execute(update(AuditEvent).where(AuditEvent.id == second.id).values(reason="edited"))
    db.commit()
    assert verify_chain(db) == second.id
    assert verify_audit.check_chain(database_url=app.config["DATABASE_URL"]) == second.id
    with pytest.raises(SystemExit) as exc:
        verify_audit.main()
    assert exc.value.code == 1


def test_add_version_racing_a_deletion_request_is_locked(app, db, tmp_path, users, depts):
    storage = HookedStorage(root=tmp_path / "storage")
    catalog = DocumentCatalog(db, storage)
    doc = _create(catalog, users["alice"], depts["Finance"]).document

    def request_from_another_session() -> None:
        s = app.extensions["sqlalchemy_sessionmaker"]()
        try:
            carol = s.query(User).filter(User.email == "carol@example.com").one()
            DeletionWorkflow(s, storage).request_deletion(doc.id, user=carol)
        finally:
            s.close()

    # The document is read as ACTIVE, then the request commits before our write.
    storage.before_put.append(request_from_another_session)
    with pytest.raises(DocumentLocked):
        catalog.add_version(doc.id, content=b"F2", filename="Budget.xlsx", user=users["alice"])

    db.expire_all()
    assert catalog.load(doc.id).status == DELETION_PENDING
    assert catalog.versions.count_versions(doc.id) == 1
    assert len(_files(storage.root)) == 1


def test_resolving_twice_is_rejected(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    alice, bob = users["alice"], users["bob"]
    kept = _create(catalog, alice, depts["Finance"], title="Kept.pdf").document
    gone = _create(catalog, alice, depts["Finance"], title="Gone.pdf").document

    rejected = wf.request_deletion(kept.id, user=alice)
    wf.reject(rejected.id, user=bob)
    approved = wf.request_deletion(gone.id, user=alice)
    wf.approve(approved.id, user=bob)
    events = db.query(AuditEvent).count()

    with pytest.raises(AlreadyResolved):
        wf.reject(rejected.id, user=bob)
    with pytest.raises(AlreadyResolved):
        wf.approve(approved.id, user=bob)
    with pytest.raises(AlreadyResolved):
        wf.reject(approved.id, user=bob)

    assert db.query(AuditEvent).count() == events
    assert catalog.load(kept.id).status == ACTIVE
    assert catalog.load(gone.id).status == DELETED
    assert db.get(DeletionRequest, rejected.id).resolution == REJECTED
    assert db.get(DeletionRequest, approved.id).resolution == APPROVED


def test_transition_only_follows_the_status_graph(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    alice = users["alice"]
    doc = _create(catalog, alice, depts["Finance"]).document

    for target in (DELETED, ACTIVE):
        with pytest.raises(InvalidStateTransition):
            catalog.transition(catalog.load(doc.id), target)
    assert catalog.load(doc.id).status == ACTIVE

    req = wf.request_deletion(doc.id, user=alice)
    with pytest.raises(InvalidStateTransition):
        catalog.transition(catalog.load(doc.id), DELETION_PENDING)

    wf.approve(req.id, user=users["bob"])
    for target in (ACTIVE, DELETION_PENDING):
        with pytest.raises(InvalidStateTransition):
            catalog.transition(catalog.load(doc.id), target)
    db.rollback()
    assert catalog.load(doc.id).status == DELETED


def test_unknown_status_values_are_refused_by_the_database(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    doc = _create(catalog, users["alice"], depts["Finance"]).document
    req = DeletionWorkflow(db, storage).request_deletion(doc.id, user=users["alice"])

    with pytest.raises(IntegrityError):
        db.execute(update(Document).where(Document.id == doc.id).values(status="ARCHIVED"))
        db.commit()
    db.rollback()
    with pytest.raises(IntegrityError):
        db.execute(update(DeletionRequest).where(DeletionRequest.id == req.id).values(resolution="WITHDRAWN"))
        db.commit()
    db.rollback()

    db.expire_all()
    assert catalog.load(doc.id).status == DELETION_PENDING
    assert db.get(DeletionRequest, req.id).resolution == PENDING


def test_edit_rights_are_separate_from_upload_rights(db, storage, depts):
    perms = {p.key: p for p in db.query(Permission).all()}
    editor_role = Role(key="editor", name="Editor")
    editor_role.permissions.extend([perms["docs.view"], perms["docs.edit"]])
    uploader_role = Role(key="uploader", name="Uploader")
    uploader_role.permissions.extend([perms["docs.view"], perms["docs.upload"]])
    editor = User(email="erin@example.com", password_hash="x", is_active=True, department_id=depts["Finance"])
    editor.roles.append(editor_role)
    uploader = User(email="uma@example.com", password_hash="x", is_active=True, department_id=depts["Finance"])
    uploader.roles.append(uploader_role)
    db.add_all([editor_role, uploader_role, editor, uploader])
    db.commit()

    catalog = DocumentCatalog(db, storage)
    details = _create(catalog, uploader, depts["Finance"])
    doc = details.document
    details = catalog.add_version(doc.id, content=b"F2", filename="Budget.xlsx", user=uploader)
    v2, v1 = details.versions

    assert catalog.update_metadata(doc.id, user=editor, title="Budget (final).xlsx").title == "Budget (final).xlsx"
    assert catalog.update_version_description(v2.id, "Checked", user=editor).description == "Checked"
    with pytest.raises(Forbidden):
        catalog.add_version(doc.id, content=b"F3", filename="Budget.xlsx", user=editor)

    with pytest.raises(Forbidden):
        catalog.update_metadata(doc.id, user=uploader, title="Other.xlsx")
    with pytest.raises(Forbidden):
        catalog.update_version_description(v2.id, "Mine", user=uploader)
    with pytest.raises(Forbidden):
        catalog.delete_version(v1.id, user=uploader)
    with pytest.raises(Forbidden):
        catalog.delete_version_of(doc.id, v1.id, user=uploader)

    details = catalog.delete_version(v1.id, user=editor)
    assert [v.id for v in details.versions] == [v2.id]


def test_non_string_text_fields_are_rejected(db, storage, users, depts):
    catalog = DocumentCatalog(db, storage)
    wf = DeletionWorkflow(db, storage)
    alice = users["alice"]
    doc = _create(catalog, alice, depts["Finance"]).document

    with pytest.raises(ValidationFailed):
        catalog.update_metadata(doc.id, user=alice, title=123)
    with pytest.raises(ValidationFailed):
        catalog.update_metadata(doc.id, user=alice, description={"text": "x"})
    with pytest.raises(ValidationFailed, match="reason"):
        wf.request_deletion(doc.id, user=alice, reason=["x"])
    assert catalog.load(doc.id).status == ACTIVE
    assert catalog.load(doc.id).title == "Budget.xlsx"
