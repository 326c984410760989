import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AuthToken(Base):
    __tablename__ = "auth_tokens"

    token: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class StoredRecord(Base):
    """One leaf of the hierarchical record store, e.g. ``schedules/<childId>/<scheduleId>``."""

    __tablename__ = "records"

    path: Mapped[str] = mapped_column(String, primary_key=True)
    parent: Mapped[str] = mapped_column(String, index=True)
    # Top-level segment of the path: children, schedules, vaccinations.
    collection: Mapped[str] = mapped_column(String, index=True)

    payload_json: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_account_id: Mapped[str | None] = mapped_column(String, ForeignKey("accounts.id"), nullable=True, index=True)

    action: Mapped[str] = mapped_column(String, index=True)
    entity_type: Mapped[str] = mapped_column(String, index=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    ip: Mapped[str | None] = mapped_column(String, nullable=True)

    ts: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    # Tamper detection: hash chain
    prev_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    entry_hash: Mapped[str] = mapped_column(String, index=True)
