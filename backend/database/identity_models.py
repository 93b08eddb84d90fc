"""
Club Identity Core - SQLAlchemy Database Models

All identity collections share one JSONB document table. The account
invariants are enforced with partial unique indexes over the JSON fields;
provider subjects live in an array, so they are claimed in a side table.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, Index, text
from sqlalchemy.dialects.postgresql import JSONB

from database.connection import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IdentityDocumentDB(Base):
    """
    One document of one identity collection (accounts, merge_jobs, ...).
    ``version`` starts at 1 and is bumped by every update.
    """
    __tablename__ = "identity_documents"

    collection = Column(String(64), primary_key=True)
    id = Column(String(128), primary_key=True)
    data = Column(JSONB, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('ix_identity_documents_data', 'data', postgresql_using='gin'),
        Index(
            'uq_accounts_email',
            text("(data->>'email')"),
            unique=True,
            postgresql_where=text(
                "collection = 'accounts' AND data->>'status' <> 'merged' "
                "AND coalesce(data->>'email', '') <> ''"
            ),
        ),
        Index(
            'uq_accounts_phone',
            text("(data->>'phone')"),
            unique=True,
            postgresql_where=text(
                "collection = 'accounts' AND data->>'status' <> 'merged' "
                "AND coalesce(data->>'phone', '') <> ''"
            ),
        ),
        Index(
            'uq_accounts_member_id',
            text("(data->>'member_id')"),
            unique=True,
            postgresql_where=text(
                "collection = 'accounts' AND coalesce(data->>'member_id', '') <> ''"
            ),
        ),
    )


class IdentityUniqueKeyDB(Base):
    """
    One element of an array-valued unique field (provider subjects) claimed
    by a live document. Rows are replaced together with the document write.
    """
    __tablename__ = "identity_unique_keys"

    collection = Column(String(64), primary_key=True)
    doc_id = Column(String(128), primary_key=True)
    index_name = Column(String(64), primary_key=True)
    key = Column(String(512), primary_key=True)

    __table_args__ = (
        Index(
            'uq_accounts_provider_key',
            'key',
            unique=True,
            postgresql_where=text("index_name = 'uq_accounts_provider_key'"),
        ),
    )
