"""
Unit Tests for the In-Memory Document Store

Tests:
- Conditional writes and versioning
- Array path lookups
- Partial unique indexes, including array fields
- Expiry purge

Run with: pytest tests/test_document_store.py -v
"""

import asyncio
import pytest
from datetime import timedelta

from identity.errors import VersionConflict, DocumentExists, DocumentMissing, UniqueIndexViolation
from identity.models import ACCOUNTS, EVENTS, LINK_HOLDS, utcnow, to_iso
from identity.storage import InMemoryDocumentStore, apply_changes, values_at


@pytest.fixture
def store():
    return InMemoryDocumentStore()


class TestPathHelpers:

    def test_values_at_nested(self):
        data = {"referral": {"referred_by_user_id": "a"}}
        assert values_at(data, "referral.referred_by_user_id") == ["a"]
        assert values_at(data, "referral.missing") == []

    def test_values_at_arrays(self):
        data = {
            "participants": [{"user_id": "a"}, {"user_id": "b"}],
            "referral": {"referrals": ["x", "y"]},
        }
        assert values_at(data, "participants[].user_id") == ["a", "b"]
        assert values_at(data, "referral.referrals[]") == ["x", "y"]

    def test_apply_changes_does_not_mutate_input(self):
        data = {"membership": {"points": 1}}
        result = apply_changes(data, {"membership.points": 5, "referral.total_referred": 2})

        assert data == {"membership": {"points": 1}}
        assert result == {"membership": {"points": 5}, "referral": {"total_referred": 2}}


class TestConditionalWrites:

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        doc = await store.insert(ACCOUNTS, "a", {"email": "a@example.com"})

        assert doc.version == 1
        fetched = await store.get(ACCOUNTS, "a")
        assert fetched.data["email"] == "a@example.com"

    @pytest.mark.asyncio
    async def test_insert_duplicate_id(self, store):
        await store.insert(ACCOUNTS, "a", {})
        with pytest.raises(DocumentExists):
            await store.insert(ACCOUNTS, "a", {})

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, store):
        await store.insert(ACCOUNTS, "a", {"display_name": "A"})

        doc = await store.update(ACCOUNTS, "a", {"display_name": "B"}, expected_version=1)

        assert doc.version == 2
        assert doc.data["display_name"] == "B"

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, store):
        await store.insert(ACCOUNTS, "a", {"display_name": "A"})
        await store.update(ACCOUNTS, "a", {"display_name": "B"}, expected_version=1)

        with pytest.raises(VersionConflict) as exc_info:
            await store.update(ACCOUNTS, "a", {"display_name": "C"}, expected_version=1)

        assert exc_info.value.actual == 2
        assert (await store.get(ACCOUNTS, "a")).data["display_name"] == "B"

    @pytest.mark.asyncio
    async def test_concurrent_guarded_writes_one_wins(self, store):
        await store.insert(ACCOUNTS, "a", {"display_name": "A"})

        results = await asyncio.gather(
            store.update(ACCOUNTS, "a", {"display_name": "B"}, expected_version=1),
            store.update(ACCOUNTS, "a", {"display_name": "C"}, expected_version=1),
            return_exceptions=True,
        )

        assert sum(isinstance(r, VersionConflict) for r in results) == 1

    @pytest.mark.asyncio
    async def test_update_missing(self, store):
        with pytest.raises(DocumentMissing):
            await store.update(ACCOUNTS, "nope", {"x": 1})

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, store):
        await store.insert(ACCOUNTS, "a", {"referral": {"referrals": []}})

        doc = await store.get(ACCOUNTS, "a")
        doc.data["referral"]["referrals"].append("x")

        assert (await store.get(ACCOUNTS, "a")).data["referral"]["referrals"] == []


class TestFind:

    @pytest.mark.asyncio
    async def test_find_by_array_of_objects(self, store):
        await store.insert(EVENTS, "e1", {"participants": [{"user_id": "a"}]})
        await store.insert(EVENTS, "e2", {"participants": [{"user_id": "b"}]})

        docs = await store.find(EVENTS, "participants[].user_id", "a")

        assert [d.id for d in docs] == ["e1"]

    @pytest.mark.asyncio
    async def test_find_ordered_and_limited(self, store):
        for doc_id in ("c", "a", "b"):
            await store.insert(ACCOUNTS, doc_id, {"status": "active"})

        docs = await store.find(ACCOUNTS, "status", "active", limit=2)

        assert [d.id for d in docs] == ["a", "b"]


class TestUniqueIndexes:

    @pytest.mark.asyncio
    async def test_live_email_unique(self, store):
        await store.insert(ACCOUNTS, "a", {"email": "x@example.com", "status": "active"})

        with pytest.raises(UniqueIndexViolation) as exc_info:
            await store.insert(ACCOUNTS, "b", {"email": "x@example.com", "status": "active"})

        assert exc_info.value.index == "uq_accounts_email"

    @pytest.mark.asyncio
    async def test_tombstone_releases_phone(self, store):
        await store.insert(ACCOUNTS, "a", {
            "phone": "+60123456789", "status": "merged", "merged_into": "c",
        })

        await store.insert(ACCOUNTS, "b", {"phone": "+60123456789", "status": "active"})

    @pytest.mark.asyncio
    async def test_member_id_unique_across_tombstones(self, store):
        await store.insert(ACCOUNTS, "a", {"member_id": "C00001", "status": "merged", "merged_into": "c"})

        with pytest.raises(UniqueIndexViolation):
            await store.insert(ACCOUNTS, "b", {"member_id": "C00001", "status": "active"})

    @pytest.mark.asyncio
    async def test_empty_values_not_indexed(self, store):
        await store.insert(ACCOUNTS, "a", {"email": None, "phone": "", "status": "active"})
        await store.insert(ACCOUNTS, "b", {"email": None, "phone": "", "status": "active"})

    @pytest.mark.asyncio
    async def test_provider_key_unique_per_element(self, store):
        await store.insert(ACCOUNTS, "a", {"provider_keys": ["google:g1", "apple:a1"], "status": "active"})

        with pytest.raises(UniqueIndexViolation) as exc_info:
            await store.insert(ACCOUNTS, "b", {"provider_keys": ["google:g2", "apple:a1"], "status": "active"})

        assert exc_info.value.index == "uq_accounts_provider_key"

    @pytest.mark.asyncio
    async def test_provider_key_added_by_update_checked(self, store):
        await store.insert(ACCOUNTS, "a", {"provider_keys": ["google:g1"], "status": "active"})
        await store.insert(ACCOUNTS, "b", {"provider_keys": [], "status": "active"})

        with pytest.raises(UniqueIndexViolation):
            await store.update(ACCOUNTS, "b", {"provider_keys": ["google:g1"]})

    @pytest.mark.asyncio
    async def test_tombstone_releases_provider_key(self, store):
        await store.insert(ACCOUNTS, "a", {
            "provider_keys": ["google:g1"], "status": "merged", "merged_into": "c",
        })

        await store.insert(ACCOUNTS, "b", {"provider_keys": ["google:g1"], "status": "active"})


class TestExpiry:

    @pytest.mark.asyncio
    async def test_delete_expired(self, store):
        now = utcnow()
        await store.insert(LINK_HOLDS, "old", {"expires_at": to_iso(now - timedelta(seconds=1))})
        await store.insert(LINK_HOLDS, "new", {"expires_at": to_iso(now + timedelta(minutes=5))})

        purged = await store.delete_expired(LINK_HOLDS, "expires_at", now)

        assert purged == 1
        assert await store.get(LINK_HOLDS, "old") is None
        assert await store.get(LINK_HOLDS, "new") is not None
