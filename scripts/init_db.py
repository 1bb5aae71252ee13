import sys
from pathlib import Path
import os

from werkzeug.security import generate_password_hash
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from contextlib import contextmanager

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docvault.config import normalize_database_url
from app.docvault.models import Department, Permission, Role, User

PERMISSIONS = {
    "docs.view": "Docs: view",
    "docs.upload": "Docs: upload documents and versions",
    "docs.edit": "Docs: edit metadata and versions",
    "docs.download": "Docs: download",
    "docs.delete_request": "Docs: request deletion",
    "docs.delete_approve": "Docs: approve or reject deletion",
    "docs.all_departments": "Docs: act on every department",
}

ROLES = {
    "admin": ("Administrator", tuple(PERMISSIONS)),
    "contributor": (
        "Contributor",
        ("docs.view", "docs.upload", "docs.edit", "docs.download", "docs.delete_request"),
    ),
    "approver": ("Deletion approver", ("docs.view", "docs.download", "docs.delete_approve")),
}


@contextmanager
def _session_scope(database_url: str):
    engine = create_engine(database_url, future=True)
    sm = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/default department/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@docvault.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    department_name = (os.environ.get("DEFAULT_DEPARTMENT") or "General").strip()

    db_url = normalize_database_url((database_url or os.environ.get("DATABASE_URL") or "sqlite:///docvault.db").strip())

    with _session_scope(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in PERMISSIONS.items():
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        roles: dict[str, Role] = {}
        for key, (name, keys) in ROLES.items():
            role = s.query(Role).filter(Role.key == key).one_or_none()
            if not role:
                role = Role(key=key, name=name)
                s.add(role)
            for k in keys:
                if perms[k] not in role.permissions:
                    role.permissions.append(perms[k])
            roles[key] = role

        dept = s.query(Department).filter(Department.name == department_name).one_or_none()
        if not dept:
            dept = Department(name=department_name)
            s.add(dept)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if user.department is None:
            user.department = dept
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print(f"Default department: {department_name}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
