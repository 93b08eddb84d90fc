"""
Unit Tests for the Identity Service

Tests:
- Registration and password login
- Phone binding eligibility and binding (direct and via merge)
- Member id backfill
- Invariant audit

Run with: pytest tests/test_identity_service.py -v
"""

import asyncio

import pytest

from config import Settings
from identity.errors import (
    AuthenticationFailed, PolicyViolation, UniquenessConflict, ValidationError,
)
from identity.member_id import member_id_for_seed
from identity.models import (
    ACCOUNTS, AUDIT_LOG, Account, AccountStatus, Membership, MergeStatus, ProviderLink,
)
from identity.service import IdentityService
from identity.storage import InMemoryDocumentStore

PASSWORD = "secret123"
PHONE = "+60123456789"


@pytest.fixture
def service():
    return IdentityService(InMemoryDocumentStore(), settings=Settings())


async def add_account(store, account_id, **fields):
    account = Account(id=account_id, **fields)
    await store.insert(ACCOUNTS, account_id, account.to_data())
    return account


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_with_email(self, service):
        account = await service.register(PASSWORD, email="New@Example.com", display_name="New")

        assert account.email == "new@example.com"
        assert account.member_id == member_id_for_seed(account.id)
        assert account.status == AccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_register_with_phone_normalises(self, service):
        account = await service.register(PASSWORD, phone="012-345 6789")

        assert account.phone == PHONE

    @pytest.mark.asyncio
    async def test_register_needs_an_identifier(self, service):
        with pytest.raises(ValidationError):
            await service.register(PASSWORD)

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, service):
        await service.register(PASSWORD, email="a@example.com")

        with pytest.raises(UniquenessConflict):
            await service.register(PASSWORD, email="A@example.com")

    @pytest.mark.asyncio
    async def test_duplicate_phone_rejected(self, service):
        await service.register(PASSWORD, phone=PHONE)

        with pytest.raises(UniquenessConflict):
            await service.register(PASSWORD, phone="0123456789")

    @pytest.mark.asyncio
    async def test_unknown_referral_code_ignored(self, service):
        account = await service.register(PASSWORD, email="a@example.com", referral_code="CZZZZZ")

        assert account.referral.referred_by is None

    @pytest.mark.asyncio
    async def test_concurrent_registrations_with_one_referral_code(self, service):
        referrer = await service.register(PASSWORD, email="ref@example.com")

        accounts = await asyncio.gather(*[
            service.register(PASSWORD, email=f"new{n}@example.com", referral_code=referrer.member_id)
            for n in range(3)
        ])

        assert all(account.referral.referred_by_user_id == referrer.id for account in accounts)
        stored = await service.accounts.get(referrer.id)
        assert sorted(stored.referral.referrals) == sorted(account.id for account in accounts)
        assert stored.referral.total_referred == 3
        assert stored.referral.active_referrals == 3


class TestLogin:

    @pytest.mark.asyncio
    async def test_login_with_email_and_phone(self, service):
        account = await service.register(PASSWORD, email="a@example.com", phone=PHONE)

        assert (await service.login_with_email("a@example.com", PASSWORD)).id == account.id
        assert (await service.login_with_phone("0123456789", PASSWORD)).id == account.id

    @pytest.mark.asyncio
    async def test_wrong_password(self, service):
        await service.register(PASSWORD, email="a@example.com")

        with pytest.raises(AuthenticationFailed) as exc_info:
            await service.login_with_email("a@example.com", "not-the-password")

        assert exc_info.value.message == "incorrect credentials"

    @pytest.mark.asyncio
    async def test_unknown_account_same_error(self, service):
        with pytest.raises(AuthenticationFailed) as exc_info:
            await service.login_with_email("nobody@example.com", PASSWORD)

        assert exc_info.value.message == "incorrect credentials"

    @pytest.mark.asyncio
    async def test_failed_login_audited(self, service):
        with pytest.raises(AuthenticationFailed):
            await service.login_with_phone(PHONE, PASSWORD)

        entries = [doc.data for doc in await service.store.all(AUDIT_LOG)]
        assert entries[0]["event"] == "account.login_failed"
        assert entries[0]["success"] is False


class TestPhoneBinding:

    @pytest.mark.asyncio
    async def test_free_phone_binds_directly(self, service):
        account = await service.register(PASSWORD, email="a@example.com")

        eligibility = await service.check_phone_binding(account.id, PHONE)
        binding = await service.bind_phone(account.id, "0123456789")

        assert eligibility.can_bind is True
        assert eligibility.needs_merge is False
        assert binding.merge is None
        assert binding.account.phone == PHONE

    @pytest.mark.asyncio
    async def test_phone_held_by_email_account(self, service):
        await service.register(PASSWORD, email="owner@example.com", phone=PHONE)
        account = await service.register(PASSWORD, email="a@example.com")

        eligibility = await service.check_phone_binding(account.id, PHONE)

        assert eligibility.can_bind is False
        with pytest.raises(UniquenessConflict):
            await service.bind_phone(account.id, PHONE)

    @pytest.mark.asyncio
    async def test_phone_held_by_phone_only_account_merges(self, service):
        phone_only = await service.register(PASSWORD, phone=PHONE)
        await service.store.update(ACCOUNTS, phone_only.id, {"membership.points": 50})
        account = await service.register(PASSWORD, email="a@example.com")

        eligibility = await service.check_phone_binding(account.id, PHONE)
        assert eligibility.needs_merge is True
        assert eligibility.existing_account_id == phone_only.id

        binding = await service.bind_phone(account.id, PHONE)
        assert binding.merge.status == MergeStatus.QUEUED
        assert binding.merge.duplicate_id == phone_only.id

        report = await service.run_merge(binding.merge.job_id)
        assert report.status == MergeStatus.COMPLETED

        survivor = await service.get_account(account.id)
        assert survivor.phone == PHONE
        assert survivor.membership.points == 50
        assert (await service.login_with_phone(PHONE, PASSWORD)).id == account.id

    @pytest.mark.asyncio
    async def test_own_phone_is_bindable(self, service):
        account = await service.register(PASSWORD, email="a@example.com", phone=PHONE)

        binding = await service.bind_phone(account.id, PHONE)

        assert binding.account.phone == PHONE

    @pytest.mark.asyncio
    async def test_merged_account_cannot_bind(self, service):
        await add_account(service.store, "live", email="a@example.com")
        await add_account(service.store, "old", status=AccountStatus.MERGED, merged_into="live")

        with pytest.raises(PolicyViolation):
            await service.check_phone_binding("old", PHONE)


class TestMemberIdBackfill:

    @pytest.mark.asyncio
    async def test_assigns_missing_ids(self, service):
        await add_account(service.store, "acct-1", email="a@example.com")
        await add_account(service.store, "acct-2", email="b@example.com", member_id="CEXIST")
        await add_account(service.store, "acct-3", status=AccountStatus.MERGED, merged_into="acct-1")

        stats = await service.backfill_member_ids()

        assert stats == {"assigned": 1, "skipped": 0}
        assert (await service.get_account("acct-1")).member_id == "CB6D4D"
        assert (await service.get_account("acct-3")).member_id is None


class TestInvariantAudit:

    @pytest.mark.asyncio
    async def test_clean_store(self, service):
        await service.register(PASSWORD, email="a@example.com")

        assert await service.find_invariant_violations() == []

    @pytest.mark.asyncio
    async def test_reports_broken_invariants(self):
        store = InMemoryDocumentStore(unique_indexes={})
        service = IdentityService(store, settings=Settings())
        await add_account(store, "a", email="dup@example.com", member_id="C00001")
        await add_account(store, "b", email="dup@example.com", member_id="C00001")
        await add_account(store, "c", phone=PHONE, membership=Membership(points=1))
        await add_account(store, "d", phone=PHONE)
        await add_account(store, "e", status=AccountStatus.MERGED, merged_into="missing")

        violations = await service.find_invariant_violations()

        by_name = {v["invariant"]: v["account_ids"] for v in violations}
        assert by_name == {
            "email_unique": ["a", "b"],
            "phone_unique": ["c", "d"],
            "member_id_unique": ["a", "b"],
            "merged_into_live_account": ["e"],
        }
        assert "dup@example.com" not in str(violations)

    @pytest.mark.asyncio
    async def test_reports_revived_tombstone_and_shared_provider(self):
        store = InMemoryDocumentStore(unique_indexes={})
        service = IdentityService(store, settings=Settings())
        await add_account(store, "a", provider_links=[ProviderLink("google", "g1")])
        await add_account(store, "b", provider_links=[ProviderLink("google", "g1")])
        await add_account(store, "c", merged_into="a")

        violations = await service.find_invariant_violations()

        by_name = {v["invariant"]: v["account_ids"] for v in violations}
        assert by_name == {
            "provider_subject_unique": ["a", "b"],
            "merged_into_only_on_tombstones": ["c"],
        }


class TestStatus:

    @pytest.mark.asyncio
    async def test_status(self, service):
        status = await service.status()

        assert status["store"] == "InMemoryDocumentStore"
        assert status["member_id_strategy"] == "hash"
        assert status["due_merge_jobs"] == 0
