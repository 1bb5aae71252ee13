import pytest
from werkzeug.security import generate_password_hash

from app.docvault import create_app
from app.docvault.db import session_scope
from app.docvault.models import Base, Department, Permission, Role, User
from app.docvault.storage import LocalStorage

PERMS = [
    ("docs.view", "Docs: view"),
    ("docs.upload", "Docs: upload"),
    ("docs.edit", "Docs: edit"),
    ("docs.download", "Docs: download"),
    ("docs.delete_request", "Docs: request deletion"),
    ("docs.delete_approve", "Docs: approve deletion"),
    ("docs.all_departments", "Docs: all departments"),
]

ROLES = {
    "admin": [k for k, _ in PERMS],
    "contributor": ["docs.view", "docs.upload", "docs.edit", "docs.download", "docs.delete_request"],
    "approver": ["docs.view", "docs.download", "docs.delete_approve"],
}

# email -> (department, roles)
USERS = {
    "alice@example.com": ("Finance", ["contributor"]),
    "bob@example.com": ("Finance", ["approver"]),
    "carol@example.com": ("Finance", ["contributor", "approver"]),
    "dave@example.com": ("Legal", ["contributor", "approver"]),
    "admin@example.com": (None, ["admin"]),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {k: Permission(key=k, name=n) for k, n in PERMS}
        roles = {}
        for key, perm_keys in ROLES.items():
            r = Role(key=key, name=key.title())
            r.permissions.extend(perms[k] for k in perm_keys)
            roles[key] = r
        depts = {name: Department(name=name) for name in ("Finance", "Legal")}
        users = []
        for email, (dept, role_keys) in USERS.items():
            u = User(email=email, password_hash=generate_password_hash("pw"), is_active=True)
            u.department = depts[dept] if dept else None
            u.roles.extend(roles[k] for k in role_keys)
            users.append(u)
        s.add_all(list(perms.values()) + list(roles.values()) + list(depts.values()) + users)

    yield app
    engine.dispose()


@pytest.fixture()
def db(app):
    s = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(root=tmp_path / "storage")


@pytest.fixture()
def users(db):
    return {u.email.split("@")[0]: u for u in db.query(User).all()}


@pytest.fixture()
def depts(db):
    return {d.name: d.id for d in db.query(Department).all()}
