"""
Identity Core Module

Identity resolution and account consolidation for club members,
ensuring one live account per email, phone and provider identity.

Features:
- Member id generation (hash-derived or sequential)
- Identity probing across email, phone and provider subject
- Two-phase provider linking keyed by phone
- Phone binding with merge of phone-only duplicates
- Resumable account merge jobs with reference rewriting
"""

from .errors import (
    IdentityError,
    ValidationError,
    NotFoundError,
    UniquenessConflict,
    GenerationExhausted,
    PolicyViolation,
    ConflictingIdentity,
    EphemeralExpired,
    AuthenticationFailed,
    PartialMergeFailure,
)
from .models import (
    Account,
    AccountStatus,
    IdentityClaims,
    LinkState,
    MergeStatus,
    ProviderAssertion,
)
from .service import IdentityService, build_identity_service, get_identity_service

__all__ = [
    'IdentityError',
    'ValidationError',
    'NotFoundError',
    'UniquenessConflict',
    'GenerationExhausted',
    'PolicyViolation',
    'ConflictingIdentity',
    'EphemeralExpired',
    'AuthenticationFailed',
    'PartialMergeFailure',
    'Account',
    'AccountStatus',
    'IdentityClaims',
    'LinkState',
    'MergeStatus',
    'ProviderAssertion',
    'IdentityService',
    'build_identity_service',
    'get_identity_service',
]
