"""
Identity Core - Domain Models

Typed records for accounts and the results of identity operations.
Documents coming out of the store are validated here (``from_document``)
instead of trusting whatever shape the caller wrote.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Union

from .errors import ValidationError

ACCOUNTS = "accounts"
ORDERS = "orders"
POINTS_RECORDS = "points_records"
VISIT_SESSIONS = "visit_sessions"
EVENTS = "events"
LINK_HOLDS = "link_holds"
MERGE_JOBS = "merge_jobs"
OPERATOR_QUEUE = "operator_queue"
CREDENTIALS = "credentials"
COUNTERS = "counters"
AUDIT_LOG = "identity_audit_log"


class AccountStatus(str, Enum):
    """Account lifecycle status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    MERGED = "merged"


class MembershipLevel(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO timestamp from a document. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            raise ValidationError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _non_negative_int(value: Any, name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    if value < 0:
        raise ValidationError(f"{name} must not be negative")
    return int(value)


def _non_negative_number(value: Any, name: str) -> float:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    if value < 0:
        raise ValidationError(f"{name} must not be negative")
    return value


# ==================== ACCOUNT ====================

@dataclass
class ProviderLink:
    """A third-party identity bound to an account."""
    provider: str
    subject: str
    email: Optional[str] = None
    linked_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return provider_key(self.provider, self.subject)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "subject": self.subject,
            "email": self.email,
            "linked_at": to_iso(self.linked_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderLink":
        if not data.get("provider") or not data.get("subject"):
            raise ValidationError("provider link needs provider and subject")
        return cls(
            provider=data["provider"],
            subject=data["subject"],
            email=data.get("email"),
            linked_at=parse_datetime(data.get("linked_at")),
        )


def provider_key(provider: str, subject: str) -> str:
    return f"{provider.lower()}:{subject}"


@dataclass
class Membership:
    level: str = MembershipLevel.BRONZE.value
    points: int = 0
    referral_points: int = 0
    total_visit_hours: float = 0
    join_date: Optional[datetime] = None
    last_active: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "points": self.points,
            "referral_points": self.referral_points,
            "total_visit_hours": self.total_visit_hours,
            "join_date": to_iso(self.join_date),
            "last_active": to_iso(self.last_active),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Membership":
        data = data or {}
        return cls(
            level=data.get("level") or MembershipLevel.BRONZE.value,
            points=_non_negative_int(data.get("points"), "membership.points"),
            referral_points=_non_negative_int(data.get("referral_points"), "membership.referral_points"),
            total_visit_hours=_non_negative_number(data.get("total_visit_hours"), "membership.total_visit_hours"),
            join_date=parse_datetime(data.get("join_date")),
            last_active=parse_datetime(data.get("last_active")),
        )


@dataclass
class Referral:
    referred_by: Optional[str] = None  # referrer's member id
    referred_by_user_id: Optional[str] = None  # referrer's account id
    referral_date: Optional[datetime] = None
    referrals: List[str] = field(default_factory=list)  # account ids this member referred
    total_referred: int = 0
    active_referrals: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "referred_by": self.referred_by,
            "referred_by_user_id": self.referred_by_user_id,
            "referral_date": to_iso(self.referral_date),
            "referrals": list(self.referrals),
            "total_referred": self.total_referred,
            "active_referrals": self.active_referrals,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Referral":
        data = data or {}
        referrals = data.get("referrals") or []
        if not isinstance(referrals, list):
            raise ValidationError("referral.referrals must be a list")
        return cls(
            referred_by=data.get("referred_by"),
            referred_by_user_id=data.get("referred_by_user_id"),
            referral_date=parse_datetime(data.get("referral_date")),
            referrals=[str(r) for r in referrals],
            total_referred=_non_negative_int(data.get("total_referred"), "referral.total_referred"),
            active_referrals=_non_negative_int(data.get("active_referrals"), "referral.active_referrals"),
        )


@dataclass
class Account:
    """
    Account - the central identity record.

    ``version`` is maintained by the document store and is the guard for
    every conditional write on this account.
    """
    id: str
    member_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    display_name: Optional[str] = None
    provider_links: List[ProviderLink] = field(default_factory=list)
    membership: Membership = field(default_factory=Membership)
    referral: Referral = field(default_factory=Referral)
    status: AccountStatus = AccountStatus.ACTIVE
    merged_into: Optional[str] = None
    merged_at: Optional[datetime] = None
    applied_merges: List[str] = field(default_factory=list)
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_merged(self) -> bool:
        return self.status == AccountStatus.MERGED

    @property
    def has_email(self) -> bool:
        return bool(self.email and self.email.strip())

    def has_provider(self, provider: str, subject: str) -> bool:
        key = provider_key(provider, subject)
        return any(link.key == key for link in self.provider_links)

    def to_data(self) -> Dict[str, Any]:
        """Document body as stored (version lives outside the body)."""
        return {
            "member_id": self.member_id,
            "email": self.email,
            "phone": self.phone,
            "display_name": self.display_name,
            "provider_links": [link.to_dict() for link in self.provider_links],
            "provider_keys": [link.key for link in self.provider_links],
            "membership": self.membership.to_dict(),
            "referral": self.referral.to_dict(),
            "status": self.status.value,
            "merged_into": self.merged_into,
            "merged_at": to_iso(self.merged_at),
            "applied_merges": list(self.applied_merges),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Public representation for API responses."""
        return {
            "id": self.id,
            "member_id": self.member_id,
            "email": self.email,
            "phone": self.phone,
            "display_name": self.display_name,
            "providers": [link.provider for link in self.provider_links],
            "membership": self.membership.to_dict(),
            "referral": {
                "referred_by": self.referral.referred_by,
                "total_referred": self.referral.total_referred,
                "active_referrals": self.referral.active_referrals,
            },
            "status": self.status.value,
            "merged_into": self.merged_into,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any], version: int = 0) -> "Account":
        try:
            status = AccountStatus(data.get("status") or AccountStatus.ACTIVE.value)
        except ValueError:
            raise ValidationError(f"account {doc_id} has unknown status {data.get('status')!r}")

        merged_into = data.get("merged_into")
        if status == AccountStatus.MERGED and not merged_into:
            raise ValidationError(f"account {doc_id} is merged but has no merged_into")

        return cls(
            id=doc_id,
            member_id=data.get("member_id"),
            email=data.get("email") or None,
            phone=data.get("phone") or None,
            display_name=data.get("display_name"),
            provider_links=[ProviderLink.from_dict(link) for link in data.get("provider_links") or []],
            membership=Membership.from_dict(data.get("membership")),
            referral=Referral.from_dict(data.get("referral")),
            status=status,
            merged_into=merged_into if status == AccountStatus.MERGED else None,
            merged_at=parse_datetime(data.get("merged_at")),
            applied_merges=list(data.get("applied_merges") or []),
            version=version,
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )


# ==================== RESOLUTION ====================

@dataclass
class IdentityClaims:
    """Claims presented by a caller; any subset may be given."""
    email: Optional[str] = None
    phone: Optional[str] = None
    provider: Optional[str] = None
    subject: Optional[str] = None


@dataclass
class NoMatch:
    kind: str = "no_match"

    def to_dict(self) -> Dict[str, Any]:
        return {"result": self.kind}


@dataclass
class UniqueMatch:
    account: Account
    matched_on: List[str] = field(default_factory=list)
    kind: str = "unique_match"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.kind,
            "account_id": self.account.id,
            "member_id": self.account.member_id,
            "matched_on": list(self.matched_on),
        }


@dataclass
class Conflict:
    """Two claims identify two different accounts. Never resolved silently."""
    account_a: Account
    account_b: Account
    kind: str = "conflict"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.kind,
            "account_ids": [self.account_a.id, self.account_b.id],
        }


MatchResult = Union[NoMatch, UniqueMatch, Conflict]


# ==================== LINKING ====================

@dataclass
class ProviderAssertion:
    """Post-verification claims from the credential provider."""
    provider: str
    subject: str
    email: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "subject": self.subject,
            "email": self.email,
            "display_name": self.display_name,
            "photo_url": self.photo_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderAssertion":
        return cls(
            provider=data["provider"],
            subject=data["subject"],
            email=data["email"],
            display_name=data.get("display_name"),
            photo_url=data.get("photo_url"),
        )


class LinkState(str, Enum):
    """AccountLinker states. BOUND, CREATED and REJECTED are terminal."""
    UNAUTHENTICATED = "unauthenticated"
    PROVIDER_VERIFIED = "provider_verified"
    AWAITING_SECONDARY_IDENTIFIER = "awaiting_secondary_identifier"
    BOUND = "bound"
    CREATED = "created"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (LinkState.BOUND, LinkState.CREATED, LinkState.REJECTED)


@dataclass
class LinkTicket:
    """Returned by the first phase: the caller keeps the token for phase two."""
    token: str
    state: LinkState
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "state": self.state.value,
            "expires_at": to_iso(self.expires_at),
        }


@dataclass
class LinkOutcome:
    state: LinkState
    account: Optional[Account] = None
    needs_registration: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "needs_registration": self.needs_registration,
            "account": self.account.to_dict() if self.account else None,
        }


@dataclass
class PhoneBindingEligibility:
    can_bind: bool
    needs_merge: bool = False
    existing_account_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_bind": self.can_bind,
            "needs_merge": self.needs_merge,
            "reason": self.reason,
        }


# ==================== MERGING ====================

class MergeStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    FAILED = "failed"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ALREADY_MERGED = "already_merged"

    @property
    def is_finished(self) -> bool:
        return self in (MergeStatus.COMPLETED, MergeStatus.CANCELLED, MergeStatus.ALREADY_MERGED)


@dataclass
class MergeJob:
    """Durable saga state for one duplicate (document id = duplicate id)."""
    job_id: str
    survivor_id: str
    duplicate_id: str
    status: MergeStatus = MergeStatus.QUEUED
    cursor: int = -1  # index of the last completed step
    counts: Dict[str, int] = field(default_factory=dict)
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    def to_data(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "survivor_id": self.survivor_id,
            "duplicate_id": self.duplicate_id,
            "status": self.status.value,
            "cursor": self.cursor,
            "counts": dict(self.counts),
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "next_retry_at": to_iso(self.next_retry_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any], version: int = 0) -> "MergeJob":
        return cls(
            job_id=data["job_id"],
            survivor_id=data["survivor_id"],
            duplicate_id=data["duplicate_id"],
            status=MergeStatus(data.get("status") or MergeStatus.QUEUED.value),
            cursor=int(data.get("cursor", -1)),
            counts=dict(data.get("counts") or {}),
            consecutive_failures=int(data.get("consecutive_failures") or 0),
            last_error=data.get("last_error"),
            next_retry_at=parse_datetime(data.get("next_retry_at")),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            version=version,
        )


@dataclass
class MergeHandle:
    """What a caller polls while the saga runs in the background."""
    job_id: Optional[str]
    survivor_id: str
    duplicate_id: str
    status: MergeStatus
    cursor: int = -1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "survivor_id": self.survivor_id,
            "duplicate_id": self.duplicate_id,
            "status": self.status.value,
            "cursor": self.cursor,
        }


@dataclass
class MergeReport:
    job_id: Optional[str]
    survivor_id: str
    duplicate_id: str
    status: MergeStatus
    steps_completed: List[str] = field(default_factory=list)
    references_rewritten: Dict[str, int] = field(default_factory=dict)

    @property
    def already_merged(self) -> bool:
        return self.status == MergeStatus.ALREADY_MERGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "survivor_id": self.survivor_id,
            "duplicate_id": self.duplicate_id,
            "status": self.status.value,
            "steps_completed": list(self.steps_completed),
            "references_rewritten": dict(self.references_rewritten),
        }
