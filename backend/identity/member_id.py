"""
Identity Core - Member ID Generation

Public member ids are short, human-readable codes (``CBXHKW``) derived
deterministically from a seed, normally the account id. Generation only
reads the store; the id is claimed by the account write that stores it,
which the member_id unique index guards.
"""

from abc import ABC, abstractmethod
from typing import Optional
import logging

from .errors import ValidationError, GenerationExhausted, VersionConflict, DocumentExists
from .models import ACCOUNTS, COUNTERS
from .storage import DocumentStore

logger = logging.getLogger(__name__)

# Base-34: digits and capitals without I and O
MEMBER_ID_ALPHABET = "0123456789ABCDEFGHJKLMNPQRSTUVWXYZ"
DEFAULT_PREFIX = "C"
DEFAULT_LENGTH = 5
DEFAULT_MAX_ATTEMPTS = 5

MEMBER_ID_COUNTER = "member_id"


def rolling_hash(seed: str) -> int:
    """
    31-multiplier string hash over UTF-16 code units, wrapped to a signed
    32-bit integer, returned as its absolute value.
    """
    encoded = seed.encode("utf-16-le")
    h = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def encode_base34(value: int, length: int = DEFAULT_LENGTH) -> str:
    """Lowest ``length`` base-34 digits of ``value``, most significant first."""
    base = len(MEMBER_ID_ALPHABET)
    chars = []
    for _ in range(length):
        chars.append(MEMBER_ID_ALPHABET[value % base])
        value //= base
    return "".join(reversed(chars))


def member_id_for_seed(seed: str, prefix: str = DEFAULT_PREFIX, length: int = DEFAULT_LENGTH) -> str:
    return f"{prefix}{encode_base34(rolling_hash(seed), length)}"


def normalize_member_id(value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        raise ValidationError("member id is required", parameter="member_id")
    return "".join(str(value).split()).upper()


class MemberIdGenerator(ABC):

    def __init__(self, store: DocumentStore, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.store = store
        self.max_attempts = max_attempts

    @abstractmethod
    async def generate(self, seed: Optional[str] = None) -> str:
        ...

    async def is_free(self, member_id: str) -> bool:
        existing = await self.store.find(ACCOUNTS, "member_id", member_id, limit=1)
        return not existing


class HashMemberIdGenerator(MemberIdGenerator):
    """
    Deterministic ids: attempt 0 hashes the seed itself, attempt n hashes
    ``"{seed}_{n}"``.
    """

    def __init__(
        self,
        store: DocumentStore,
        prefix: str = DEFAULT_PREFIX,
        length: int = DEFAULT_LENGTH,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        super().__init__(store, max_attempts)
        self.prefix = prefix
        self.length = length

    def candidate(self, seed: str, attempt: int) -> str:
        source = seed if attempt == 0 else f"{seed}_{attempt}"
        return member_id_for_seed(source, self.prefix, self.length)

    async def generate(self, seed: Optional[str] = None) -> str:
        """
        Raises:
            ValidationError: If the seed is empty
            GenerationExhausted: If every candidate is already taken
        """
        if not seed:
            raise ValidationError("seed must not be empty", parameter="seed")

        for attempt in range(self.max_attempts):
            candidate = self.candidate(seed, attempt)
            if await self.is_free(candidate):
                if attempt:
                    logger.info(f"Member id collision resolved after {attempt} retries")
                return candidate
            logger.warning(f"Member id candidate {candidate} taken (attempt {attempt + 1})")

        raise GenerationExhausted(
            f"no free member id after {self.max_attempts} attempts",
            attempts=self.max_attempts,
        )


class SequentialMemberIdGenerator(MemberIdGenerator):
    """
    Zero-padded ids from a monotonic counter document, e.g. ``M000042``.
    The counter is advanced with a conditional write so two callers never
    draw the same number.
    """

    def __init__(
        self,
        store: DocumentStore,
        prefix: str = "M",
        width: int = 6,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        super().__init__(store, max_attempts)
        self.prefix = prefix
        self.width = width

    async def _counter(self):
        doc = await self.store.get(COUNTERS, MEMBER_ID_COUNTER)
        if doc is not None:
            return doc
        try:
            return await self.store.insert(COUNTERS, MEMBER_ID_COUNTER, {"value": 0})
        except DocumentExists:
            return await self.store.get(COUNTERS, MEMBER_ID_COUNTER)

    async def generate(self, seed: Optional[str] = None) -> str:
        for attempt in range(self.max_attempts):
            counter = await self._counter()
            next_value = int(counter.data.get("value", 0)) + 1
            try:
                await self.store.update(
                    COUNTERS, MEMBER_ID_COUNTER, {"value": next_value},
                    expected_version=counter.version,
                )
            except VersionConflict:
                logger.debug(f"Member id counter race on attempt {attempt + 1}")
                continue

            candidate = f"{self.prefix}{next_value:0{self.width}d}"
            if await self.is_free(candidate):
                return candidate
            logger.warning(f"Sequential member id {candidate} already assigned, skipping")

        raise GenerationExhausted(
            f"no free member id after {self.max_attempts} attempts",
            attempts=self.max_attempts,
        )


def build_member_id_generator(settings, store: DocumentStore) -> MemberIdGenerator:
    """Pick the generator named by MEMBER_ID_STRATEGY."""
    if settings.MEMBER_ID_STRATEGY == "sequential":
        return SequentialMemberIdGenerator(
            store,
            prefix=settings.SEQUENTIAL_MEMBER_ID_PREFIX,
            width=settings.SEQUENTIAL_MEMBER_ID_WIDTH,
            max_attempts=settings.MEMBER_ID_MAX_ATTEMPTS,
        )
    return HashMemberIdGenerator(
        store,
        prefix=settings.MEMBER_ID_PREFIX,
        length=settings.MEMBER_ID_LENGTH,
        max_attempts=settings.MEMBER_ID_MAX_ATTEMPTS,
    )
