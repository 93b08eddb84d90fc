"""
Identity Core - Account Linking

Two-phase flow that binds a verified third-party identity (Google and the
like) to an account registered by phone:

1. ``begin_link``: the provider assertion is parked in a server-side hold
   addressed by an opaque token, and the provider session is revoked so no
   half-authenticated login survives.
2. ``complete_link``: the caller returns with the token, a phone number and
   a password. The phone decides which account the identity belongs to.

States: UNAUTHENTICATED -> PROVIDER_VERIFIED -> AWAITING_SECONDARY_IDENTIFIER
-> BOUND | CREATED | REJECTED.
"""

import secrets
from datetime import timedelta
from typing import Optional, Dict, Any
import logging

from .accounts import AccountRepository
from .audit import IdentityAuditLog, IdentityAuditEvent
from .credentials import CredentialProvider, validate_password
from .errors import (
    ValidationError, EphemeralExpired, ConflictingIdentity, AuthenticationFailed,
    UniquenessConflict, VersionConflict,
)
from .models import (
    LINK_HOLDS, Account, LinkOutcome, LinkState, LinkTicket, ProviderAssertion, ProviderLink,
    utcnow, to_iso, parse_datetime,
)
from .normalization import normalize_email, normalize_phone, DEFAULT_REGION, mask_phone
from .resolver import IdentityResolver
from .storage import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_HOLD_TTL_SECONDS = 600

# Adding a provider link to an already-bound account is retried on version races
PROVIDER_LINK_ATTEMPTS = 3


def provider_link_changes(account: Account, link: ProviderLink) -> Dict[str, Any]:
    """Field changes that append ``link`` to the account's provider links."""
    links = [existing.to_dict() for existing in account.provider_links]
    keys = [existing.key for existing in account.provider_links]
    if link.key not in keys:
        links.append(link.to_dict())
        keys.append(link.key)
    return {"provider_links": links, "provider_keys": keys}


class AccountLinker:

    def __init__(
        self,
        store: DocumentStore,
        resolver: IdentityResolver,
        accounts: AccountRepository,
        credentials: CredentialProvider,
        audit: IdentityAuditLog,
        hold_ttl_seconds: int = DEFAULT_HOLD_TTL_SECONDS,
        default_region: str = DEFAULT_REGION,
    ):
        self.store = store
        self.resolver = resolver
        self.accounts = accounts
        self.credentials = credentials
        self.audit = audit
        self.hold_ttl = timedelta(seconds=hold_ttl_seconds)
        self.default_region = default_region

    # ==================== PHASE 1 ====================

    async def begin_link(self, assertion: ProviderAssertion) -> LinkTicket:
        """
        Park a verified provider assertion and hand back a linking token.

        No account field is written here.
        """
        if not assertion.provider or not assertion.subject:
            raise ValidationError("provider and subject are required", parameter="provider")
        email = normalize_email(assertion.email)

        await self.credentials.revoke_provider_session(assertion.provider, assertion.subject)

        now = utcnow()
        expires_at = now + self.hold_ttl
        token = secrets.token_urlsafe(32)
        hold = {
            "assertion": {
                "provider": assertion.provider.lower(),
                "subject": assertion.subject,
                "email": email,
                "display_name": assertion.display_name,
                "photo_url": assertion.photo_url,
            },
            "state": LinkState.AWAITING_SECONDARY_IDENTIFIER.value,
            "created_at": to_iso(now),
            "expires_at": to_iso(expires_at),
        }
        await self.store.insert(LINK_HOLDS, token, hold)
        await self.audit.record(
            IdentityAuditEvent.LINK_STARTED, None, {"provider": assertion.provider.lower()}
        )

        return LinkTicket(token=token, state=LinkState.AWAITING_SECONDARY_IDENTIFIER, expires_at=expires_at)

    # ==================== PHASE 2 ====================

    async def complete_link(
        self,
        token: str,
        phone: str,
        password: str,
        *,
        create_if_missing: bool = False,
        referral_code: Optional[str] = None,
    ) -> LinkOutcome:
        """
        Resolve the account by phone and bind the held identity to it.

        Raises:
            ValidationError: Malformed phone or password (the hold is kept)
            EphemeralExpired: Unknown or expired token
            ConflictingIdentity: The phone's account has a different email
            AuthenticationFailed: Wrong password for an already-bound account
            UniquenessConflict: The email or provider identity is taken, or a
                concurrent link won
        """
        if not token:
            raise ValidationError("token is required", parameter="token")
        normalized_phone = normalize_phone(phone, self.default_region)
        validate_password(password)

        hold = await self.store.get(LINK_HOLDS, token)
        if hold is None:
            raise EphemeralExpired("linking session expired, sign in with the provider again")

        try:
            expires_at = parse_datetime(hold.data.get("expires_at"))
            if expires_at is None or expires_at <= utcnow():
                logger.info("Link hold expired before completion")
                raise EphemeralExpired("linking session expired, sign in with the provider again")

            assertion = ProviderAssertion.from_dict(hold.data["assertion"])
            return await self._complete(
                assertion, normalized_phone, password, create_if_missing, referral_code
            )
        finally:
            await self.store.delete(LINK_HOLDS, token)

    async def _complete(
        self,
        assertion: ProviderAssertion,
        phone: str,
        password: str,
        create_if_missing: bool,
        referral_code: Optional[str],
    ) -> LinkOutcome:
        link = ProviderLink(
            provider=assertion.provider,
            subject=assertion.subject,
            email=assertion.email,
            linked_at=utcnow(),
        )

        account = await self.resolver.resolve_by_phone(phone)

        if account is None:
            if not create_if_missing:
                logger.info(f"No account for phone {mask_phone(phone)}, registration needed")
                await self.audit.record(
                    IdentityAuditEvent.LINK_REJECTED, None, {"reason": "needs_registration"}
                )
                return LinkOutcome(state=LinkState.REJECTED, needs_registration=True)
            return await self._create(assertion, link, phone, password, referral_code)

        if account.has_email:
            return await self._login(account, assertion, link, password)

        return await self._bind_email(account, assertion, link, password)

    async def _create(
        self,
        assertion: ProviderAssertion,
        link: ProviderLink,
        phone: str,
        password: str,
        referral_code: Optional[str],
    ) -> LinkOutcome:
        if await self.resolver.resolve_by_email(assertion.email):
            raise UniquenessConflict("email is already bound to another account")
        await self._ensure_subject_free(link, None)

        account = await self.accounts.create(
            email=assertion.email,
            phone=phone,
            display_name=assertion.display_name,
            provider_link=link,
        )
        await self.credentials.set_password(account.id, password)

        if referral_code:
            referrer = await self.resolver.resolve_by_member_id(referral_code)
            if referrer is not None:
                account = await self.accounts.record_referral(account, referrer)
            else:
                logger.info("Referral code did not resolve to a member, ignoring")

        await self.audit.record(
            IdentityAuditEvent.LINK_CREATED, account.id,
            {"provider": link.provider, "member_id": account.member_id},
        )
        return LinkOutcome(state=LinkState.CREATED, account=account)

    async def _login(
        self,
        account: Account,
        assertion: ProviderAssertion,
        link: ProviderLink,
        password: str,
    ) -> LinkOutcome:
        if account.email != assertion.email:
            await self.audit.record(
                IdentityAuditEvent.LINK_REJECTED, account.id, {"reason": "email_mismatch"}, success=False
            )
            raise ConflictingIdentity("this phone number is bound to a different email")

        if not await self.credentials.verify_password(account.id, password):
            await self.audit.record(
                IdentityAuditEvent.ACCOUNT_LOGIN_FAILED, account.id, {"via": "link"}, success=False
            )
            raise AuthenticationFailed("incorrect password")

        if not account.has_provider(link.provider, link.subject):
            await self._ensure_subject_free(link, account.id)

        for _ in range(PROVIDER_LINK_ATTEMPTS):
            if account.has_provider(link.provider, link.subject):
                break
            try:
                account = await self.accounts.save(account, provider_link_changes(account, link))
            except VersionConflict:
                account = await self.accounts.get(account.id)

        await self.audit.record(IdentityAuditEvent.LINK_BOUND, account.id, {"provider": link.provider})
        return LinkOutcome(state=LinkState.BOUND, account=account)

    async def _bind_email(
        self,
        account: Account,
        assertion: ProviderAssertion,
        link: ProviderLink,
        password: str,
    ) -> LinkOutcome:
        owner = await self.resolver.resolve_by_email(assertion.email)
        if owner is not None and owner.id != account.id:
            await self.audit.record(
                IdentityAuditEvent.LINK_REJECTED, account.id, {"reason": "email_taken"}, success=False
            )
            raise UniquenessConflict("email is already bound to another account")
        await self._ensure_subject_free(link, account.id)

        changes = provider_link_changes(account, link)
        changes["email"] = assertion.email
        changes["display_name"] = assertion.display_name or account.display_name

        try:
            account = await self.accounts.save(account, changes)
        except VersionConflict:
            logger.info(f"Concurrent change on account {account.id} while binding email")
            raise UniquenessConflict("account was linked concurrently, try again")

        await self.credentials.set_password(account.id, password)
        await self.audit.record(
            IdentityAuditEvent.LINK_BOUND, account.id,
            {"provider": link.provider, "email_bound": True},
        )
        return LinkOutcome(state=LinkState.BOUND, account=account)

    async def _ensure_subject_free(self, link: ProviderLink, account_id: Optional[str]):
        owner = await self.resolver.resolve_by_provider_subject(link.provider, link.subject)
        if owner is not None and owner.id != account_id:
            await self.audit.record(
                IdentityAuditEvent.LINK_REJECTED, account_id, {"reason": "provider_taken"}, success=False
            )
            raise UniquenessConflict(f"this {link.provider} identity is already linked to another account")

    # ==================== MAINTENANCE ====================

    async def purge_expired_holds(self) -> int:
        return await self.store.delete_expired(LINK_HOLDS, "expires_at", utcnow())
