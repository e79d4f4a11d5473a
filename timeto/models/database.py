"""SQLModel database table models."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Return current UTC time as naive datetime for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


class StoredDocument(SQLModel, table=True):
    """One document of the hierarchical store, addressed by its full path."""

    __tablename__ = "documents"

    path: str = Field(primary_key=True)  # e.g. organizations/{org}/members/{uid}
    collection: str = Field(index=True)  # path minus the final segment
    doc_id: str = Field(index=True)
    data_json: str
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class SessionValue(SQLModel, table=True):
    """Per-user session continuity values (lastOrg_*, currentOrg_*)."""

    __tablename__ = "session_values"

    key: str = Field(primary_key=True)
    value_json: str
    updated_at: datetime = Field(default_factory=_utc_now)
