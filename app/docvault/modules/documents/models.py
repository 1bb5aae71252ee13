from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.docvault.models import Base, Department, User

ACTIVE = "ACTIVE"
DELETION_PENDING = "DELETION_PENDING"
DELETED = "DELETED"
DOCUMENT_STATUSES = (ACTIVE, DELETION_PENDING, DELETED)

PENDING = "PENDING"
APPROVED = "APPROVED"
REJECTED = "REJECTED"
RESOLUTIONS = (PENDING, APPROVED, REJECTED)


def _one_of(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_department_status", "department_id", "status"),
        CheckConstraint(_one_of("status", DOCUMENT_STATUSES), name="ck_documents_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)

    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False)

    # ACTIVE -> DELETION_PENDING -> DELETED, DELETION_PENDING -> ACTIVE
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=ACTIVE)

    latest_version_id: Mapped[int | None] = mapped_column(
        ForeignKey(
            "document_versions.id",
            ondelete="SET NULL",
            use_alter=True,
            name="fk_documents_latest_version_id",
        ),
        nullable=True,
    )
    # High-water mark; numbers are never handed out twice.
    next_version_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    lock_version: Mapped[int] = mapped_column(Integer, nullable=False)

    department: Mapped[Department] = relationship("Department", lazy="selectin")
    created_by: Mapped[User] = relationship("User", foreign_keys=[created_by_user_id], lazy="selectin")
    latest_version: Mapped["DocumentVersion | None"] = relationship(
        "DocumentVersion",
        foreign_keys=[latest_version_id],
        lazy="selectin",
        viewonly=True,
    )

    __mapper_args__ = {"version_id_col": lock_version}


class DocumentVersion(Base):
    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    document: Mapped[Document] = relationship(
        "Document",
        foreign_keys=[document_id],
        lazy="selectin",
    )
    uploaded_by: Mapped[User] = relationship("User", foreign_keys=[uploaded_by_user_id], lazy="selectin")


class DeletionRequest(Base):
    __tablename__ = "deletion_requests"
    __table_args__ = (
        # At most one open request per document, enforced by the database too.
        Index(
            "uq_deletion_requests_one_pending",
            "document_id",
            unique=True,
            sqlite_where=text("resolution = 'PENDING'"),
            postgresql_where=text("resolution = 'PENDING'"),
        ),
        Index("idx_deletion_requests_resolution_requested", "resolution", "requested_at"),
        CheckConstraint(_one_of("resolution", RESOLUTIONS), name="ck_deletion_requests_resolution"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)

    requested_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # PENDING -> APPROVED | REJECTED
    resolution: Mapped[str] = mapped_column(String(16), nullable=False, default=PENDING)
    resolved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(String(512), nullable=True)

    document: Mapped[Document] = relationship("Document", lazy="selectin")
    requested_by: Mapped[User] = relationship("User", foreign_keys=[requested_by_user_id], lazy="selectin")
    resolved_by: Mapped[User | None] = relationship("User", foreign_keys=[resolved_by_user_id], lazy="selectin")
