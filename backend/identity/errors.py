"""
Identity Core - Error Taxonomy

Every failure the identity core can surface to a caller. Each error carries a
stable ``code`` so the HTTP layer (and any other boundary) can map it without
string matching.

Messages are safe to show to the caller: they never contain another
account's email, phone or internal id.
"""

from typing import Optional


class IdentityError(Exception):
    """Base exception for identity core errors"""
    code = "identity_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(IdentityError):
    """Malformed phone, email, seed or claim. Raised before any lookup."""
    code = "validation_error"

    def __init__(self, message: str, parameter: Optional[str] = None):
        super().__init__(message)
        self.parameter = parameter


class NotFoundError(IdentityError):
    code = "not_found"


class UniquenessConflict(IdentityError):
    """Email/phone/member id already bound elsewhere, or a lost write race."""
    code = "uniqueness_conflict"


class GenerationExhausted(IdentityError):
    """Member id retries exhausted without finding a free id."""
    code = "generation_exhausted"


class PolicyViolation(IdentityError):
    """Operation refused by policy (e.g. merging an identity-bearing duplicate)."""
    code = "policy_violation"


class ConflictingIdentity(IdentityError):
    """Claims point to two different existing accounts."""
    code = "conflicting_identity"


class EphemeralExpired(IdentityError):
    """Linking token unknown or past its TTL. Restart from the first phase."""
    code = "ephemeral_expired"


class AuthenticationFailed(IdentityError):
    code = "authentication_failed"


class PartialMergeFailure(IdentityError):
    """
    One merge step failed. Retryable: steps are idempotent and the job
    resumes from ``cursor + 1``.
    """
    code = "partial_merge_failure"

    def __init__(self, message: str, job_id: str, cursor: int, step: Optional[str] = None):
        super().__init__(message, job_id=job_id, cursor=cursor, step=step)
        self.job_id = job_id
        self.cursor = cursor
        self.step = step


# ==================== STORE-LEVEL ERRORS ====================

class StoreError(Exception):
    """Base exception for document store errors"""
    pass


class VersionConflict(StoreError):
    """Conditional write lost: the document changed since it was read."""

    def __init__(self, collection: str, doc_id: str, expected: Optional[int], actual: Optional[int]):
        super().__init__(
            f"{collection}/{doc_id}: expected version {expected}, found {actual}"
        )
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual


class DocumentExists(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} already exists")
        self.collection = collection
        self.doc_id = doc_id


class DocumentMissing(StoreError):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id


class UniqueIndexViolation(StoreError):
    """A write would give two live documents the same indexed value."""

    def __init__(self, collection: str, index: str):
        super().__init__(f"{collection}: unique index {index} violated")
        self.collection = collection
        self.index = index
