"""
Identity Core - Identity Resolution

Looks up the account an identifier belongs to. Merged accounts are
tombstones and never answer an email, phone or provider lookup.
"""

from typing import Optional, List
import logging

from .errors import UniquenessConflict, ValidationError, NotFoundError
from .member_id import normalize_member_id
from .models import (
    ACCOUNTS, Account, IdentityClaims, MatchResult, NoMatch, UniqueMatch, Conflict,
    provider_key,
)
from .normalization import normalize_email, normalize_phone, DEFAULT_REGION, mask_email, mask_phone
from .storage import DocumentStore

logger = logging.getLogger(__name__)

# Tombstone chains are repaired during merges; this only guards against bad data
MAX_MERGE_HOPS = 10


class IdentityResolver:

    def __init__(self, store: DocumentStore, default_region: str = DEFAULT_REGION):
        self.store = store
        self.default_region = default_region

    async def _resolve_live(self, field: str, value: str, label: str) -> Optional[Account]:
        docs = await self.store.find(ACCOUNTS, field, value)
        live = [
            Account.from_document(doc.id, doc.data, doc.version)
            for doc in docs
        ]
        live = [account for account in live if not account.is_merged]
        if len(live) > 1:
            logger.error(
                f"Uniqueness invariant broken: {len(live)} live accounts share {label}",
                extra={"account_ids": [a.id for a in live]},
            )
            raise UniquenessConflict(f"more than one account holds this {field}")
        return live[0] if live else None

    async def resolve_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        return await self._resolve_live("email", normalized, mask_email(normalized))

    async def resolve_by_phone(self, phone: str) -> Optional[Account]:
        normalized = normalize_phone(phone, self.default_region)
        return await self._resolve_live("phone", normalized, mask_phone(normalized))

    async def resolve_by_provider_subject(self, provider: str, subject: str) -> Optional[Account]:
        if not provider or not subject:
            raise ValidationError("provider and subject are required", parameter="provider")
        key = provider_key(provider, subject)
        return await self._resolve_live("provider_keys[]", key, f"provider {provider.lower()}")

    async def resolve_by_member_id(self, member_id: str) -> Optional[Account]:
        """
        Resolve a member id (as typed on a referral code). A merged account's
        id resolves to the account it was merged into.
        """
        code = normalize_member_id(member_id)
        docs = await self.store.find(ACCOUNTS, "member_id", code, limit=1)
        if not docs:
            return None
        account = Account.from_document(docs[0].id, docs[0].data, docs[0].version)

        hops = 0
        while account.is_merged:
            hops += 1
            if hops > MAX_MERGE_HOPS:
                logger.error(f"Merge chain from {code} exceeds {MAX_MERGE_HOPS} hops")
                return None
            account = await self.get_account(account.merged_into)
        return account

    async def get_account(self, account_id: str) -> Account:
        doc = await self.store.get(ACCOUNTS, account_id)
        if doc is None:
            raise NotFoundError("account not found")
        return Account.from_document(doc.id, doc.data, doc.version)

    async def probe(self, claims: IdentityClaims) -> MatchResult:
        """
        Classify a set of claims as NoMatch, UniqueMatch or Conflict.

        All claims are validated before the first lookup. Matches are
        considered in the order email, phone, provider subject.
        """
        email = normalize_email(claims.email) if claims.email else None
        phone = normalize_phone(claims.phone, self.default_region) if claims.phone else None
        if bool(claims.provider) != bool(claims.subject):
            raise ValidationError("provider and subject must be given together", parameter="provider")
        if not (email or phone or claims.provider):
            raise ValidationError("at least one claim is required")

        found: List[Account] = []
        matched_on: List[str] = []

        if email:
            account = await self._resolve_live("email", email, mask_email(email))
            if account:
                found.append(account)
                matched_on.append("email")
        if phone:
            account = await self._resolve_live("phone", phone, mask_phone(phone))
            if account:
                found.append(account)
                matched_on.append("phone")
        if claims.provider:
            account = await self.resolve_by_provider_subject(claims.provider, claims.subject)
            if account:
                found.append(account)
                matched_on.append("provider")

        distinct: List[Account] = []
        for account in found:
            if all(account.id != seen.id for seen in distinct):
                distinct.append(account)

        if not distinct:
            return NoMatch()
        if len(distinct) == 1:
            return UniqueMatch(account=distinct[0], matched_on=matched_on)

        logger.info(f"Probe found conflicting accounts on {matched_on}")
        return Conflict(account_a=distinct[0], account_b=distinct[1])
