"""
Identity Core - Document Store

Async document store interface used by every identity component, plus the
in-memory implementation used for development and tests. The PostgreSQL
implementation lives in ``db_storage.py``.

Field paths are dotted (``referral.referred_by_user_id``). A ``[]`` suffix
marks an array: ``referral.referrals[]`` matches when the value is one of
the elements, ``participants[].user_id`` matches any element's ``user_id``.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any, Callable, Set, Tuple
import logging

from .errors import VersionConflict, DocumentExists, DocumentMissing, UniqueIndexViolation
from .models import ACCOUNTS, AccountStatus, parse_datetime

logger = logging.getLogger(__name__)


@dataclass
class Document:
    collection: str
    id: str
    data: Dict[str, Any]
    version: int = 1


@dataclass
class UniqueIndex:
    """
    Unique constraint over one field of a collection.

    ``applies`` restricts the index to part of the collection (a partial
    index); empty values are never indexed. An array field (``[]`` suffix)
    indexes every element, so no element may appear in two documents.
    """
    name: str
    field: str
    applies: Optional[Callable[[Dict[str, Any]], bool]] = None

    @property
    def is_array(self) -> bool:
        return self.field.endswith("[]")

    def keys_for(self, data: Dict[str, Any]) -> Set[Any]:
        if self.applies is not None and not self.applies(data):
            return set()
        return {value for value in values_at(data, self.field) if value is not None and value != ""}


def _not_merged(data: Dict[str, Any]) -> bool:
    return data.get("status") != AccountStatus.MERGED.value


# Email, phone and provider subject are unique among live accounts; member
# ids are never reused.
ACCOUNT_UNIQUE_INDEXES = [
    UniqueIndex("uq_accounts_email", "email", _not_merged),
    UniqueIndex("uq_accounts_phone", "phone", _not_merged),
    UniqueIndex("uq_accounts_member_id", "member_id"),
    UniqueIndex("uq_accounts_provider_key", "provider_keys[]", _not_merged),
]

DEFAULT_UNIQUE_INDEXES = {ACCOUNTS: ACCOUNT_UNIQUE_INDEXES}


# ==================== PATH HELPERS ====================

def _split_path(path: str) -> List[Tuple[str, bool]]:
    parts = []
    for segment in path.split("."):
        if segment.endswith("[]"):
            parts.append((segment[:-2], True))
        else:
            parts.append((segment, False))
    return parts


def values_at(data: Any, path: str) -> List[Any]:
    """All values reachable at ``path``, flattening marked arrays."""
    current = [data]
    for name, is_array in _split_path(path):
        found = []
        for node in current:
            if not isinstance(node, dict) or name not in node:
                continue
            value = node[name]
            if is_array:
                if isinstance(value, list):
                    found.extend(value)
            else:
                found.append(value)
        current = found
    return current


def matches(data: Dict[str, Any], path: str, value: Any) -> bool:
    return value in values_at(data, path)


def apply_changes(data: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with dotted-path ``changes`` set."""
    result = copy.deepcopy(data)
    for path, value in changes.items():
        node = result
        parts = path.split(".")
        for name in parts[:-1]:
            child = node.get(name)
            if not isinstance(child, dict):
                child = {}
                node[name] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)
    return result


# ==================== INTERFACE ====================

class DocumentStore(ABC):
    """Async document store with conditional (version-guarded) writes."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def find(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> List[Document]:
        """Equality lookup on one field path, ordered by document id."""
        ...

    @abstractmethod
    async def all(self, collection: str) -> List[Document]:
        ...

    @abstractmethod
    async def insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        """
        Raises:
            DocumentExists: If the id is taken
            UniqueIndexViolation: If a unique index would be broken
        """
        ...

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Document:
        """
        Apply ``changes`` and bump the version.

        With ``expected_version`` the write only lands if the stored version
        still matches.

        Raises:
            DocumentMissing: If the document does not exist
            VersionConflict: If the stored version moved on
            UniqueIndexViolation: If a unique index would be broken
        """
        ...

    @abstractmethod
    async def delete(
        self, collection: str, doc_id: str, expected_version: Optional[int] = None
    ) -> bool:
        ...

    @abstractmethod
    async def delete_expired(self, collection: str, field: str, before: datetime) -> int:
        """Delete documents whose timestamp at ``field`` is earlier than ``before``."""
        ...


# ==================== IN-MEMORY IMPLEMENTATION ====================

class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed store.

    Every operation yields to the event loop before taking the lock, so
    concurrent callers interleave the same way they would against a real
    database.
    """

    def __init__(self, unique_indexes: Optional[Dict[str, List[UniqueIndex]]] = None):
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._indexes = DEFAULT_UNIQUE_INDEXES if unique_indexes is None else unique_indexes
        self._lock = asyncio.Lock()

    def _collection(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    @staticmethod
    def _copy(doc: Document) -> Document:
        return Document(doc.collection, doc.id, copy.deepcopy(doc.data), doc.version)

    def _check_unique(self, collection: str, doc_id: str, data: Dict[str, Any]):
        for index in self._indexes.get(collection, []):
            keys = index.keys_for(data)
            if not keys:
                continue
            for other in self._collection(collection).values():
                if other.id != doc_id and keys & index.keys_for(other.data):
                    raise UniqueIndexViolation(collection, index.name)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        await asyncio.sleep(0)
        async with self._lock:
            doc = self._collection(collection).get(doc_id)
            return self._copy(doc) if doc else None

    async def find(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> List[Document]:
        await asyncio.sleep(0)
        async with self._lock:
            docs = sorted(self._collection(collection).values(), key=lambda d: d.id)
            found = [self._copy(d) for d in docs if matches(d.data, field, value)]
        return found[:limit] if limit else found

    async def all(self, collection: str) -> List[Document]:
        await asyncio.sleep(0)
        async with self._lock:
            docs = sorted(self._collection(collection).values(), key=lambda d: d.id)
            return [self._copy(d) for d in docs]

    async def insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        await asyncio.sleep(0)
        async with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise DocumentExists(collection, doc_id)
            self._check_unique(collection, doc_id, data)
            doc = Document(collection, doc_id, copy.deepcopy(data), 1)
            docs[doc_id] = doc
            return self._copy(doc)

    async def update(
        self,
        collection: str,
        doc_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Document:
        await asyncio.sleep(0)
        async with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            if current is None:
                raise DocumentMissing(collection, doc_id)
            if expected_version is not None and current.version != expected_version:
                raise VersionConflict(collection, doc_id, expected_version, current.version)
            data = apply_changes(current.data, changes)
            self._check_unique(collection, doc_id, data)
            doc = Document(collection, doc_id, data, current.version + 1)
            docs[doc_id] = doc
            return self._copy(doc)

    async def delete(
        self, collection: str, doc_id: str, expected_version: Optional[int] = None
    ) -> bool:
        await asyncio.sleep(0)
        async with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            if current is None:
                return False
            if expected_version is not None and current.version != expected_version:
                raise VersionConflict(collection, doc_id, expected_version, current.version)
            del docs[doc_id]
            return True

    async def delete_expired(self, collection: str, field: str, before: datetime) -> int:
        await asyncio.sleep(0)
        async with self._lock:
            docs = self._collection(collection)
            expired = []
            for doc in docs.values():
                values = values_at(doc.data, field)
                stamp = parse_datetime(values[0]) if values else None
                if stamp is not None and stamp < before:
                    expired.append(doc.id)
            for doc_id in expired:
                del docs[doc_id]
        if expired:
            logger.info(f"Purged {len(expired)} expired documents from {collection}")
        return len(expired)
