"""
Identity Core - Credential Provider

The identity core never stores raw secrets. Password checks and provider
session handling go through a ``CredentialProvider``; the local provider
keeps passlib hashes in the ``credentials`` collection.
"""

from abc import ABC, abstractmethod
from typing import Optional, Set
import logging

from passlib.context import CryptContext

from .errors import ValidationError, DocumentExists
from .models import CREDENTIALS, utcnow, to_iso
from .storage import DocumentStore

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

# Password hashing
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def validate_password(password: Optional[str]) -> str:
    if not password:
        raise ValidationError("password is required", parameter="password")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            parameter="password",
        )
    return password


class CredentialProvider(ABC):

    @abstractmethod
    async def verify_password(self, account_id: str, password: str) -> bool:
        ...

    @abstractmethod
    async def set_password(self, account_id: str, password: str) -> None:
        ...

    @abstractmethod
    async def revoke_provider_session(self, provider: str, subject: str) -> None:
        """Sign out whatever session the provider opened during verification."""
        ...


class LocalCredentialProvider(CredentialProvider):
    """Password hashes in the document store, one document per account."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.revoked_sessions: Set[str] = set()

    async def verify_password(self, account_id: str, password: str) -> bool:
        doc = await self.store.get(CREDENTIALS, account_id)
        hashed = doc.data.get("password_hash") if doc else None
        if not hashed or not password:
            return False
        return pwd_context.verify(password, hashed)

    async def set_password(self, account_id: str, password: str) -> None:
        validate_password(password)
        data = {
            "password_hash": pwd_context.hash(password),
            "updated_at": to_iso(utcnow()),
        }
        try:
            await self.store.insert(CREDENTIALS, account_id, data)
        except DocumentExists:
            await self.store.update(CREDENTIALS, account_id, data)
        logger.info(f"Password credential set for account {account_id}")

    async def revoke_provider_session(self, provider: str, subject: str) -> None:
        # Local sessions are stateless; remember the revocation for auditing
        self.revoked_sessions.add(f"{provider}:{subject}")
        logger.info(f"Provider session revoked for {provider}")
