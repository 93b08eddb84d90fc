"""
Identity Core - Service Layer

Business logic for club member identity:
- Member id generation
- Registration and password login (email or phone)
- Identity probing across email, phone and provider subject
- Provider linking (two-phase, via AccountLinker)
- Phone binding and account merging (via AccountMerger)
- Operator audits (invariant checks, member id backfill)
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Dict, Any, List

from config import Settings, get_settings

from .accounts import AccountRepository
from .audit import IdentityAuditLog, IdentityAuditEvent
from .credentials import CredentialProvider, LocalCredentialProvider, validate_password
from .errors import (
    ValidationError, AuthenticationFailed, UniquenessConflict, PolicyViolation,
    VersionConflict,
)
from .linker import AccountLinker
from .member_id import MemberIdGenerator, build_member_id_generator
from .merger import AccountMerger
from .models import (
    Account, IdentityClaims, LinkOutcome, LinkTicket, MatchResult, MergeHandle, MergeReport,
    PhoneBindingEligibility, ProviderAssertion,
)
from .normalization import normalize_optional_email, normalize_optional_phone, normalize_phone, DEFAULT_REGION
from .resolver import IdentityResolver
from .storage import DocumentStore, InMemoryDocumentStore

logger = logging.getLogger(__name__)


@dataclass
class PhoneBinding:
    """Result of bind_phone: either the updated account or a queued merge."""
    account: Account
    merge: Optional[MergeHandle] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account.to_dict(),
            "merge": self.merge.to_dict() if self.merge else None,
        }


class IdentityService:
    """
    Identity Service - entry point for every identity operation.

    Ensures:
    - One live account per email, per phone and per provider subject
    - Member ids are never reused
    - Every create, link, bind and merge is audited
    """

    def __init__(
        self,
        store: DocumentStore,
        credentials: Optional[CredentialProvider] = None,
        member_ids: Optional[MemberIdGenerator] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.settings = settings
        self.default_region = settings.DEFAULT_PHONE_REGION or DEFAULT_REGION
        self.credentials = credentials or LocalCredentialProvider(store)
        self.member_ids = member_ids or build_member_id_generator(settings, store)
        self.audit = IdentityAuditLog(store)
        self.accounts = AccountRepository(store, self.member_ids)
        self.resolver = IdentityResolver(store, default_region=self.default_region)
        self.linker = AccountLinker(
            store,
            self.resolver,
            self.accounts,
            self.credentials,
            self.audit,
            hold_ttl_seconds=settings.LINK_HOLD_TTL_SECONDS,
            default_region=self.default_region,
        )
        self.merger = AccountMerger(
            store,
            self.audit,
            batch_size=settings.MERGE_BATCH_SIZE,
            max_attempts=settings.MERGE_MAX_ATTEMPTS,
            retry_delays=settings.merge_retry_delays,
        )

    # ==================== MEMBER IDS ====================

    async def generate_member_id(self, seed: Optional[str] = None) -> str:
        return await self.member_ids.generate(seed)

    async def backfill_member_ids(self) -> Dict[str, int]:
        """Assign member ids to live accounts created before ids existed."""
        stats = {"assigned": 0, "skipped": 0}
        for account in await self.accounts.list_all():
            if account.member_id or account.is_merged:
                continue
            try:
                member_id = await self.member_ids.generate(account.id)
                await self.accounts.save(account, {"member_id": member_id})
            except (VersionConflict, UniquenessConflict) as e:
                logger.warning(f"Member id backfill skipped account {account.id}: {e}")
                stats["skipped"] += 1
                continue
            await self.audit.record(
                IdentityAuditEvent.MEMBER_ID_ASSIGNED, account.id, {"member_id": member_id}
            )
            stats["assigned"] += 1

        logger.info(f"Member id backfill: {stats}")
        return stats

    # ==================== RESOLUTION ====================

    async def get_account(self, account_id: str) -> Account:
        return await self.accounts.get(account_id)

    async def probe(self, claims: IdentityClaims) -> MatchResult:
        return await self.resolver.probe(claims)

    # ==================== REGISTRATION & LOGIN ====================

    async def register(
        self,
        password: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        display_name: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> Account:
        """
        Create an account with a password credential.

        Raises:
            ValidationError: Neither email nor phone given, or malformed input
            UniquenessConflict: Email or phone already registered
        """
        email = normalize_optional_email(email)
        phone = normalize_optional_phone(phone, self.default_region)
        if not email and not phone:
            raise ValidationError("email or phone is required")
        validate_password(password)

        if email and await self.resolver.resolve_by_email(email):
            raise UniquenessConflict("email is already registered")
        if phone and await self.resolver.resolve_by_phone(phone):
            raise UniquenessConflict("phone is already registered")

        account = await self.accounts.create(email=email, phone=phone, display_name=display_name)
        await self.credentials.set_password(account.id, password)

        if referral_code:
            referrer = await self.resolver.resolve_by_member_id(referral_code)
            if referrer is not None:
                account = await self.accounts.record_referral(account, referrer)
            else:
                logger.info("Referral code did not resolve to a member, ignoring")

        await self.audit.record(
            IdentityAuditEvent.ACCOUNT_CREATED, account.id,
            {"member_id": account.member_id, "via": "email" if email else "phone"},
        )
        return account

    async def _login(self, account: Optional[Account], password: str, via: str) -> Account:
        if account is None or not await self.credentials.verify_password(account.id, password):
            await self.audit.record(
                IdentityAuditEvent.ACCOUNT_LOGIN_FAILED,
                account.id if account else None,
                {"via": via},
                success=False,
            )
            raise AuthenticationFailed("incorrect credentials")

        await self.audit.record(IdentityAuditEvent.ACCOUNT_LOGIN, account.id, {"via": via})
        return account

    async def login_with_email(self, email: str, password: str) -> Account:
        account = await self.resolver.resolve_by_email(email)
        return await self._login(account, password, "email")

    async def login_with_phone(self, phone: str, password: str) -> Account:
        account = await self.resolver.resolve_by_phone(phone)
        return await self._login(account, password, "phone")

    # ==================== LINKING ====================

    async def begin_link(self, assertion: ProviderAssertion) -> LinkTicket:
        return await self.linker.begin_link(assertion)

    async def complete_link(
        self,
        token: str,
        phone: str,
        password: str,
        create_if_missing: bool = False,
        referral_code: Optional[str] = None,
    ) -> LinkOutcome:
        return await self.linker.complete_link(
            token, phone, password,
            create_if_missing=create_if_missing,
            referral_code=referral_code,
        )

    # ==================== PHONE BINDING ====================

    async def check_phone_binding(self, account_id: str, phone: str) -> PhoneBindingEligibility:
        """
        Decide whether ``phone`` can be bound to the account.

        A phone held by an account without an email can be taken over by
        merging that account away; a phone held by an email account cannot.
        """
        normalized = normalize_phone(phone, self.default_region)
        account = await self.accounts.get(account_id)
        if account.is_merged:
            raise PolicyViolation("merged accounts cannot be changed")

        holder = await self.resolver.resolve_by_phone(normalized)
        if holder is None or holder.id == account.id:
            return PhoneBindingEligibility(can_bind=True)

        if holder.has_email:
            return PhoneBindingEligibility(
                can_bind=False,
                reason="this phone number is used by another account",
            )

        return PhoneBindingEligibility(
            can_bind=True,
            needs_merge=True,
            existing_account_id=holder.id,
            reason="the account registered with this phone number will be merged into yours",
        )

    async def bind_phone(self, account_id: str, phone: str) -> PhoneBinding:
        """
        Bind ``phone`` to the account, queueing a merge when the phone
        belongs to a phone-only account.

        Raises:
            UniquenessConflict: The phone belongs to another email account,
                or the account changed concurrently
        """
        normalized = normalize_phone(phone, self.default_region)
        eligibility = await self.check_phone_binding(account_id, normalized)
        if not eligibility.can_bind:
            raise UniquenessConflict(eligibility.reason)

        account = await self.accounts.get(account_id)
        if eligibility.needs_merge:
            handle = await self.merger.start_merge(account.id, eligibility.existing_account_id)
            return PhoneBinding(account=account, merge=handle)

        if account.phone != normalized:
            try:
                account = await self.accounts.save(account, {"phone": normalized})
            except VersionConflict:
                raise UniquenessConflict("account changed concurrently, try again")
            await self.audit.record(IdentityAuditEvent.PHONE_BOUND, account.id, {})
        return PhoneBinding(account=account)

    # ==================== MERGING ====================

    async def start_merge(self, survivor_id: str, duplicate_id: str) -> MergeHandle:
        return await self.merger.start_merge(survivor_id, duplicate_id)

    async def run_merge(self, job_id: str) -> MergeReport:
        return await self.merger.run_job(job_id)

    async def merge(self, survivor_id: str, duplicate_id: str) -> MergeReport:
        return await self.merger.merge(survivor_id, duplicate_id)

    async def get_merge(self, job_id: str) -> MergeReport:
        return await self.merger.get_job(job_id)

    async def cancel_merge(self, job_id: str) -> MergeHandle:
        return await self.merger.cancel(job_id)

    # ==================== INVARIANT AUDIT ====================

    async def find_invariant_violations(self) -> List[Dict[str, Any]]:
        """
        Check the account invariants over the whole store.

        Reports account ids only, never the colliding values.
        """
        accounts = await self.accounts.list_all()
        by_id = {account.id: account for account in accounts}
        violations: List[Dict[str, Any]] = []

        emails = defaultdict(list)
        phones = defaultdict(list)
        member_ids = defaultdict(list)
        provider_keys = defaultdict(list)
        for account in accounts:
            if account.member_id:
                member_ids[account.member_id].append(account.id)
            if account.is_merged:
                target = by_id.get(account.merged_into)
                if target is None or target.is_merged:
                    violations.append({
                        "invariant": "merged_into_live_account",
                        "account_ids": [account.id],
                    })
                continue
            if account.email:
                emails[account.email].append(account.id)
            if account.phone:
                phones[account.phone].append(account.id)
            for link in account.provider_links:
                provider_keys[link.key].append(account.id)
            if account.merged_into:
                violations.append({
                    "invariant": "merged_into_only_on_tombstones",
                    "account_ids": [account.id],
                })

        for name, index in (
            ("email_unique", emails),
            ("phone_unique", phones),
            ("member_id_unique", member_ids),
            ("provider_subject_unique", provider_keys),
        ):
            for ids in index.values():
                if len(ids) > 1:
                    violations.append({"invariant": name, "account_ids": sorted(ids)})

        if violations:
            logger.error(f"Identity invariant audit found {len(violations)} violations")
        return violations

    async def status(self) -> Dict[str, Any]:
        return {
            "store": type(self.store).__name__,
            "member_id_strategy": self.settings.MEMBER_ID_STRATEGY,
            "link_hold_ttl_seconds": self.settings.LINK_HOLD_TTL_SECONDS,
            "due_merge_jobs": len(await self.merger.due_jobs()),
        }


def build_identity_service(settings: Optional[Settings] = None) -> IdentityService:
    """Wire the service to the configured document store."""
    settings = settings or get_settings()
    if settings.IDENTITY_STORE_BACKEND == "sql":
        from database.connection import get_session_factory
        from .db_storage import SqlDocumentStore

        store: DocumentStore = SqlDocumentStore(get_session_factory())
    else:
        store = InMemoryDocumentStore()
    logger.info(f"Identity service using {type(store).__name__}")
    return IdentityService(store, settings=settings)


@lru_cache(maxsize=1)
def get_identity_service() -> IdentityService:
    """FastAPI dependency: one service (and store) per process."""
    return build_identity_service()
