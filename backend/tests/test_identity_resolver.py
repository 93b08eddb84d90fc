"""
Unit Tests for Identity Resolution

Tests:
- Lookup by email, phone, provider subject and member id
- Tombstones never answer a lookup
- Probe classification (NoMatch, UniqueMatch, Conflict)

Run with: pytest tests/test_identity_resolver.py -v
"""

import pytest

from identity.errors import ValidationError, UniquenessConflict, NotFoundError
from identity.models import (
    ACCOUNTS, Account, AccountStatus, IdentityClaims, NoMatch, UniqueMatch, Conflict, ProviderLink,
)
from identity.resolver import IdentityResolver
from identity.storage import InMemoryDocumentStore


@pytest.fixture
def store():
    # No unique indexes so broken invariants can be staged
    return InMemoryDocumentStore(unique_indexes={})


@pytest.fixture
def resolver(store):
    return IdentityResolver(store)


async def add_account(store, account_id, **fields):
    account = Account(id=account_id, **fields)
    await store.insert(ACCOUNTS, account_id, account.to_data())
    return account


class TestResolveBy:

    @pytest.mark.asyncio
    async def test_by_email_normalises_input(self, store, resolver):
        await add_account(store, "a", email="foo@bar.com")

        account = await resolver.resolve_by_email("  FOO@bar.com")

        assert account.id == "a"

    @pytest.mark.asyncio
    async def test_by_phone_normalises_input(self, store, resolver):
        await add_account(store, "a", phone="+60123456789")

        account = await resolver.resolve_by_phone("012-345 6789")

        assert account.id == "a"

    @pytest.mark.asyncio
    async def test_not_found_returns_none(self, resolver):
        assert await resolver.resolve_by_email("nobody@bar.com") is None

    @pytest.mark.asyncio
    async def test_tombstone_is_ignored(self, store, resolver):
        await add_account(
            store, "old", phone="+60123456789",
            status=AccountStatus.MERGED, merged_into="new",
        )
        await add_account(store, "new", phone="+60123456789")

        account = await resolver.resolve_by_phone("+60123456789")

        assert account.id == "new"

    @pytest.mark.asyncio
    async def test_two_live_holders_is_a_conflict(self, store, resolver):
        await add_account(store, "a", email="dup@bar.com")
        await add_account(store, "b", email="dup@bar.com")

        with pytest.raises(UniquenessConflict):
            await resolver.resolve_by_email("dup@bar.com")

    @pytest.mark.asyncio
    async def test_by_provider_subject(self, store, resolver):
        await add_account(store, "a", provider_links=[ProviderLink("google", "sub-1")])

        assert (await resolver.resolve_by_provider_subject("Google", "sub-1")).id == "a"
        assert await resolver.resolve_by_provider_subject("google", "sub-2") is None

    @pytest.mark.asyncio
    async def test_by_member_id_follows_tombstone(self, store, resolver):
        await add_account(
            store, "old", member_id="COLD01",
            status=AccountStatus.MERGED, merged_into="new",
        )
        await add_account(store, "new", member_id="CNEW01")

        account = await resolver.resolve_by_member_id(" cold01 ")

        assert account.id == "new"

    @pytest.mark.asyncio
    async def test_get_account_missing(self, resolver):
        with pytest.raises(NotFoundError):
            await resolver.get_account("missing")


class TestProbe:

    @pytest.mark.asyncio
    async def test_no_match(self, resolver):
        result = await resolver.probe(IdentityClaims(email="new@bar.com"))
        assert isinstance(result, NoMatch)

    @pytest.mark.asyncio
    async def test_unique_match_on_several_claims(self, store, resolver):
        await add_account(store, "a", email="foo@bar.com", phone="+60123456789")

        result = await resolver.probe(IdentityClaims(email="foo@bar.com", phone="+60123456789"))

        assert isinstance(result, UniqueMatch)
        assert result.account.id == "a"
        assert result.matched_on == ["email", "phone"]

    @pytest.mark.asyncio
    async def test_email_and_phone_on_different_accounts(self, store, resolver):
        await add_account(store, "a", email="foo@bar.com")
        await add_account(store, "b", phone="+60123456789")

        result = await resolver.probe(IdentityClaims(email="foo@bar.com", phone="+60123456789"))

        assert isinstance(result, Conflict)
        assert {result.account_a.id, result.account_b.id} == {"a", "b"}
        assert result.to_dict()["result"] == "conflict"

    @pytest.mark.asyncio
    async def test_provider_claim(self, store, resolver):
        await add_account(store, "a", provider_links=[ProviderLink("google", "sub-1")])

        result = await resolver.probe(IdentityClaims(provider="google", subject="sub-1"))

        assert isinstance(result, UniqueMatch)
        assert result.matched_on == ["provider"]

    @pytest.mark.asyncio
    async def test_validation_before_lookup(self, store, resolver):
        await add_account(store, "a", email="foo@bar.com")

        with pytest.raises(ValidationError):
            await resolver.probe(IdentityClaims(email="foo@bar.com", phone="not a phone"))

    @pytest.mark.asyncio
    async def test_provider_without_subject(self, resolver):
        with pytest.raises(ValidationError):
            await resolver.probe(IdentityClaims(provider="google"))

    @pytest.mark.asyncio
    async def test_empty_claims(self, resolver):
        with pytest.raises(ValidationError):
            await resolver.probe(IdentityClaims())
