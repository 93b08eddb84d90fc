"""
Identity Core - Account Repository

Reads and writes account documents. All account writes are conditional on
the version the caller read; store-level index violations surface as
``UniquenessConflict``.
"""

import uuid
from typing import Optional, Dict, Any, List
import logging

from .errors import (
    NotFoundError, UniquenessConflict, UniqueIndexViolation, GenerationExhausted, VersionConflict,
)
from .member_id import MemberIdGenerator
from .models import (
    ACCOUNTS, Account, AccountStatus, Membership, ProviderLink, Referral, utcnow, to_iso,
)
from .storage import DocumentStore

logger = logging.getLogger(__name__)

# New accounts retry this often when a concurrent writer takes their member id
MEMBER_ID_CLAIM_ATTEMPTS = 3

# The referrer's backlink is re-read and retried this often on version races
REFERRAL_BACKLINK_ATTEMPTS = 10


def _index_field(index_name: str) -> str:
    """'uq_accounts_member_id' -> 'member_id'"""
    return index_name.replace("uq_accounts_", "", 1)


class AccountRepository:

    def __init__(self, store: DocumentStore, member_ids: MemberIdGenerator):
        self.store = store
        self.member_ids = member_ids

    async def find(self, account_id: str) -> Optional[Account]:
        doc = await self.store.get(ACCOUNTS, account_id)
        return Account.from_document(doc.id, doc.data, doc.version) if doc else None

    async def get(self, account_id: str) -> Account:
        account = await self.find(account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    async def list_all(self) -> List[Account]:
        docs = await self.store.all(ACCOUNTS)
        return [Account.from_document(doc.id, doc.data, doc.version) for doc in docs]

    async def create(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        display_name: Optional[str] = None,
        provider_link: Optional[ProviderLink] = None,
    ) -> Account:
        """
        Insert a new active account with a freshly generated member id.

        Raises:
            UniquenessConflict: If the email or phone is already bound
            GenerationExhausted: If no member id could be claimed
        """
        account_id = str(uuid.uuid4())
        now = utcnow()
        account = Account(
            id=account_id,
            email=email,
            phone=phone,
            display_name=display_name,
            provider_links=[provider_link] if provider_link else [],
            membership=Membership(join_date=now, last_active=now),
            referral=Referral(),
            status=AccountStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )

        for attempt in range(MEMBER_ID_CLAIM_ATTEMPTS):
            account.member_id = await self.member_ids.generate(account_id)
            try:
                doc = await self.store.insert(ACCOUNTS, account_id, account.to_data())
            except UniqueIndexViolation as e:
                if e.index == "uq_accounts_member_id":
                    logger.warning(f"Member id {account.member_id} claimed concurrently, retrying")
                    continue
                raise UniquenessConflict(f"{_index_field(e.index)} is already bound to another account")
            account.version = doc.version
            logger.info(f"Created account {account_id} with member id {account.member_id}")
            return account

        raise GenerationExhausted("member id could not be claimed", attempts=MEMBER_ID_CLAIM_ATTEMPTS)

    async def save(self, account: Account, changes: Dict[str, Any]) -> Account:
        """
        Conditional write of ``changes`` against ``account.version``.

        Raises:
            VersionConflict: If the account changed since it was read
            UniquenessConflict: If a unique index would be broken
        """
        changes = dict(changes)
        changes.setdefault("updated_at", to_iso(utcnow()))
        try:
            doc = await self.store.update(ACCOUNTS, account.id, changes, expected_version=account.version)
        except UniqueIndexViolation as e:
            raise UniquenessConflict(f"{_index_field(e.index)} is already bound to another account")
        return Account.from_document(doc.id, doc.data, doc.version)

    async def record_referral(self, account: Account, referrer: Account) -> Account:
        """Link a new member to the member whose code they registered with."""
        if referrer.id == account.id:
            return account

        now = utcnow()
        updated = await self.save(account, {
            "referral.referred_by": referrer.member_id,
            "referral.referred_by_user_id": referrer.id,
            "referral.referral_date": to_iso(now),
        })

        for _ in range(REFERRAL_BACKLINK_ATTEMPTS):
            if referrer.is_merged and referrer.merged_into:
                referrer = await self.get(referrer.merged_into)
                continue
            if account.id in referrer.referral.referrals:
                break
            try:
                await self.save(referrer, {
                    "referral.referrals": referrer.referral.referrals + [account.id],
                    "referral.total_referred": referrer.referral.total_referred + 1,
                    "referral.active_referrals": referrer.referral.active_referrals + 1,
                })
                break
            except VersionConflict:
                referrer = await self.get(referrer.id)
        else:
            logger.error(f"Could not record {account.id} on referrer {referrer.id} after concurrent changes")
            raise UniquenessConflict("referrer changed concurrently, try again")
        logger.info(f"Recorded referral of {account.id} by {referrer.id}")
        return updated
