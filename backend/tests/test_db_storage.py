"""
Unit Tests for the PostgreSQL Document Store

Runs against mocked SQLAlchemy sessions; no database required.

Run with: pytest tests/test_db_storage.py -v
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.exc import IntegrityError

from database.identity_models import IdentityDocumentDB, IdentityUniqueKeyDB
from identity.db_storage import SqlDocumentStore, containment_for, _translate_integrity_error
from identity.errors import DocumentExists, DocumentMissing, UniqueIndexViolation, VersionConflict
from identity.storage import Document


def make_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


def make_session(result=None, commit_error=None):
    session = MagicMock()
    session.execute = AsyncMock(return_value=result)
    session.commit = AsyncMock(side_effect=commit_error)
    session.rollback = AsyncMock()
    return session


def integrity_error(message):
    return IntegrityError("INSERT INTO identity_documents", {}, Exception(message))


class TestContainment:

    def test_plain_field(self):
        assert containment_for("email", "a@example.com") == {"email": "a@example.com"}

    def test_nested_field(self):
        assert containment_for("referral.referred_by_user_id", "a") == {
            "referral": {"referred_by_user_id": "a"}
        }

    def test_array_of_values(self):
        assert containment_for("referral.referrals[]", "a") == {"referral": {"referrals": ["a"]}}

    def test_array_of_objects(self):
        assert containment_for("participants[].user_id", "a") == {"participants": [{"user_id": "a"}]}


class TestIntegrityErrors:

    def test_unique_index_named_in_message(self):
        error = _translate_integrity_error(
            integrity_error('duplicate key value violates unique constraint "uq_accounts_phone"'),
            "accounts", "a",
        )

        assert isinstance(error, UniqueIndexViolation)
        assert error.index == "uq_accounts_phone"

    def test_provider_key_claim_collision(self):
        error = _translate_integrity_error(
            integrity_error('duplicate key value violates unique constraint "uq_accounts_provider_key"'),
            "accounts", "b",
        )

        assert isinstance(error, UniqueIndexViolation)
        assert error.index == "uq_accounts_provider_key"

    def test_primary_key_collision(self):
        error = _translate_integrity_error(
            integrity_error('duplicate key value violates unique constraint "identity_documents_pkey"'),
            "merge_jobs", "b",
        )

        assert isinstance(error, DocumentExists)


class TestSqlDocumentStore:

    @pytest.mark.asyncio
    async def test_get_converts_row(self):
        row = IdentityDocumentDB(collection="accounts", id="a", data={"email": "a@example.com"}, version=3)
        result = MagicMock()
        result.scalar_one_or_none.return_value = row
        store = SqlDocumentStore(make_factory(make_session(result)))

        doc = await store.get("accounts", "a")

        assert doc == Document("accounts", "a", {"email": "a@example.com"}, 3)

    @pytest.mark.asyncio
    async def test_get_missing(self):
        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        store = SqlDocumentStore(make_factory(make_session(result)))

        assert await store.get("accounts", "a") is None

    @pytest.mark.asyncio
    async def test_insert_unique_violation(self):
        session = make_session(commit_error=integrity_error('violates unique constraint "uq_accounts_email"'))
        store = SqlDocumentStore(make_factory(session))

        with pytest.raises(UniqueIndexViolation):
            await store.insert("accounts", "a", {"email": "a@example.com"})

        session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_insert_returns_version_one(self):
        store = SqlDocumentStore(make_factory(make_session()))

        doc = await store.insert("accounts", "a", {"email": "a@example.com"})

        assert doc.version == 1

    @pytest.mark.asyncio
    async def test_update_missing(self):
        store = SqlDocumentStore(make_factory(make_session()))

        with patch.object(store, "get", AsyncMock(return_value=None)):
            with pytest.raises(DocumentMissing):
                await store.update("accounts", "a", {"phone": "+60123456789"})

    @pytest.mark.asyncio
    async def test_update_stale_version_skips_write(self):
        session = make_session()
        store = SqlDocumentStore(make_factory(session))
        current = Document("accounts", "a", {}, 2)

        with patch.object(store, "get", AsyncMock(return_value=current)):
            with pytest.raises(VersionConflict):
                await store.update("accounts", "a", {"phone": "+60123456789"}, expected_version=1)

        session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_applies_changes(self):
        result = MagicMock(rowcount=1)
        store = SqlDocumentStore(make_factory(make_session(result)))
        current = Document("accounts", "a", {"membership": {"points": 1}}, 1)

        with patch.object(store, "get", AsyncMock(return_value=current)):
            doc = await store.update("accounts", "a", {"membership.points": 5}, expected_version=1)

        assert doc.version == 2
        assert doc.data == {"membership": {"points": 5}}

    @pytest.mark.asyncio
    async def test_update_lost_race(self):
        result = MagicMock(rowcount=0)
        store = SqlDocumentStore(make_factory(make_session(result)))
        current = Document("accounts", "a", {}, 1)

        with patch.object(store, "get", AsyncMock(return_value=current)):
            with pytest.raises(VersionConflict):
                await store.update("accounts", "a", {"phone": "+60123456789"}, expected_version=1)

    @pytest.mark.asyncio
    async def test_insert_claims_provider_keys(self):
        session = make_session()
        store = SqlDocumentStore(make_factory(session))

        await store.insert("accounts", "a", {"status": "active", "provider_keys": ["google:g1"]})

        added = [call.args[0] for call in session.add.call_args_list]
        claims = [row for row in added if isinstance(row, IdentityUniqueKeyDB)]
        assert [(row.index_name, row.key, row.doc_id) for row in claims] == [
            ("uq_accounts_provider_key", "google:g1", "a")
        ]

    @pytest.mark.asyncio
    async def test_tombstone_releases_provider_keys(self):
        result = MagicMock(rowcount=1)
        session = make_session(result)
        store = SqlDocumentStore(make_factory(session))
        current = Document("accounts", "a", {"status": "active", "provider_keys": ["google:g1"]}, 1)

        with patch.object(store, "get", AsyncMock(return_value=current)):
            await store.update("accounts", "a", {"status": "merged"}, expected_version=1)

        added = [call.args[0] for call in session.add.call_args_list]
        assert not any(isinstance(row, IdentityUniqueKeyDB) for row in added)
        # The document update and the release of its old claims
        assert session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_other_collections_claim_nothing(self):
        session = make_session()
        store = SqlDocumentStore(make_factory(session))

        await store.insert("merge_jobs", "b", {"job_id": "j1"})

        session.execute.assert_not_called()
