"""
Identity Core - Database Storage Layer

PostgreSQL-backed document store. Every collection lives in the
``identity_documents`` table; equality lookups use JSONB containment and
conditional writes use ``UPDATE ... WHERE version = :expected``.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any
import logging

from sqlalchemy import select, update, delete, and_, cast, DateTime
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database.identity_models import IdentityDocumentDB, IdentityUniqueKeyDB
from .errors import VersionConflict, DocumentExists, DocumentMissing, UniqueIndexViolation
from .models import ACCOUNTS
from .storage import DocumentStore, Document, ACCOUNT_UNIQUE_INDEXES, apply_changes

logger = logging.getLogger(__name__)

# Unconditional updates re-read and retry this many times on a version race
MAX_UNGUARDED_RETRIES = 3

UNIQUE_INDEX_NAMES = [index.name for index in ACCOUNT_UNIQUE_INDEXES]

# Array-valued unique fields cannot be expression indexes; their elements are
# claimed as rows of identity_unique_keys in the same transaction.
ARRAY_UNIQUE_INDEXES = {ACCOUNTS: [index for index in ACCOUNT_UNIQUE_INDEXES if index.is_array]}


# ==================== CONVERSION HELPERS ====================

def db_to_document(db_obj: IdentityDocumentDB) -> Document:
    """Convert database row to a store document"""
    return Document(
        collection=db_obj.collection,
        id=db_obj.id,
        data=dict(db_obj.data or {}),
        version=db_obj.version,
    )


def containment_for(path: str, value: Any) -> Dict[str, Any]:
    """
    Build the JSONB containment document for a field path.

    ``referral.referrals[]`` -> {"referral": {"referrals": [value]}}
    ``participants[].user_id`` -> {"participants": [{"user_id": value}]}
    """
    parts = path.split(".")
    inner: Any = value
    for segment in reversed(parts):
        if segment.endswith("[]"):
            inner = {segment[:-2]: [inner]}
        else:
            inner = {segment: inner}
    return inner


def _translate_integrity_error(error: IntegrityError, collection: str, doc_id: str) -> Exception:
    message = str(error.orig) if error.orig is not None else str(error)
    for name in UNIQUE_INDEX_NAMES:
        if name in message:
            return UniqueIndexViolation(collection, name)
    return DocumentExists(collection, doc_id)


class SqlDocumentStore(DocumentStore):
    """Repository over the identity_documents table"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _sync_unique_keys(self, session, collection: str, doc_id: str, data: Optional[Dict[str, Any]]):
        """Replace the claimed array keys of one document (``data=None`` releases them)."""
        for index in ARRAY_UNIQUE_INDEXES.get(collection, []):
            await session.execute(
                delete(IdentityUniqueKeyDB).where(
                    and_(
                        IdentityUniqueKeyDB.collection == collection,
                        IdentityUniqueKeyDB.doc_id == doc_id,
                        IdentityUniqueKeyDB.index_name == index.name,
                    )
                )
            )
            if data is None:
                continue
            for key in sorted(index.keys_for(data)):
                session.add(IdentityUniqueKeyDB(
                    index_name=index.name, key=key, collection=collection, doc_id=doc_id,
                ))

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdentityDocumentDB).where(
                    and_(
                        IdentityDocumentDB.collection == collection,
                        IdentityDocumentDB.id == doc_id,
                    )
                )
            )
            db_obj = result.scalar_one_or_none()
            return db_to_document(db_obj) if db_obj else None

    async def find(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> List[Document]:
        query = (
            select(IdentityDocumentDB)
            .where(
                and_(
                    IdentityDocumentDB.collection == collection,
                    IdentityDocumentDB.data.contains(containment_for(field, value)),
                )
            )
            .order_by(IdentityDocumentDB.id)
        )
        if limit:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [db_to_document(row) for row in result.scalars().all()]

    async def all(self, collection: str) -> List[Document]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdentityDocumentDB)
                .where(IdentityDocumentDB.collection == collection)
                .order_by(IdentityDocumentDB.id)
            )
            return [db_to_document(row) for row in result.scalars().all()]

    async def insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        async with self.session_factory() as session:
            db_obj = IdentityDocumentDB(collection=collection, id=doc_id, data=data, version=1)
            session.add(db_obj)
            try:
                await self._sync_unique_keys(session, collection, doc_id, data)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise _translate_integrity_error(e, collection, doc_id)
            return Document(collection, doc_id, dict(data), 1)

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Document:
        attempts = 1 if expected_version is not None else MAX_UNGUARDED_RETRIES
        for _ in range(attempts):
            current = await self.get(collection, doc_id)
            if current is None:
                raise DocumentMissing(collection, doc_id)
            guard = expected_version if expected_version is not None else current.version
            if current.version != guard:
                raise VersionConflict(collection, doc_id, guard, current.version)

            data = apply_changes(current.data, changes)
            async with self.session_factory() as session:
                try:
                    result = await session.execute(
                        update(IdentityDocumentDB)
                        .where(
                            and_(
                                IdentityDocumentDB.collection == collection,
                                IdentityDocumentDB.id == doc_id,
                                IdentityDocumentDB.version == guard,
                            )
                        )
                        .values(data=data, version=guard + 1)
                    )
                    if result.rowcount == 1:
                        await self._sync_unique_keys(session, collection, doc_id, data)
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    raise _translate_integrity_error(e, collection, doc_id)

            if result.rowcount == 1:
                return Document(collection, doc_id, data, guard + 1)
            logger.debug(f"Version race on {collection}/{doc_id} at version {guard}")

        latest = await self.get(collection, doc_id)
        raise VersionConflict(
            collection, doc_id, expected_version, latest.version if latest else None
        )

    async def delete(
        self, collection: str, doc_id: str, expected_version: Optional[int] = None
    ) -> bool:
        conditions = [
            IdentityDocumentDB.collection == collection,
            IdentityDocumentDB.id == doc_id,
        ]
        if expected_version is not None:
            conditions.append(IdentityDocumentDB.version == expected_version)

        async with self.session_factory() as session:
            result = await session.execute(delete(IdentityDocumentDB).where(and_(*conditions)))
            if result.rowcount:
                await self._sync_unique_keys(session, collection, doc_id, None)
            await session.commit()

        if result.rowcount == 0 and expected_version is not None:
            current = await self.get(collection, doc_id)
            if current is not None:
                raise VersionConflict(collection, doc_id, expected_version, current.version)
        return result.rowcount > 0

    async def delete_expired(self, collection: str, field: str, before: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(IdentityDocumentDB).where(
                    and_(
                        IdentityDocumentDB.collection == collection,
                        cast(IdentityDocumentDB.data[field].astext, DateTime(timezone=True)) < before,
                    )
                )
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"Purged {result.rowcount} expired documents from {collection}")
        return result.rowcount
