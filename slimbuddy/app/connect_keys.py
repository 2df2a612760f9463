"""
Connect keys: short-lived, human-shareable credentials for a chat agent.

A key looks like ``SB-4F9K-2MX-G-7QH2``. The plaintext is handed to the user
exactly once; only its SHA-256 hex digest is stored. Issuing a key revokes the
owner's previous active keys, so at most one key per user is usable.
"""
import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from .key_store import KeyStore
from .logging_config import InvalidFormat, KeyConflict, StoreUnavailable, Unauthenticated
from .schemas import ConnectKeyRecord, IssuedKey, VerifiedKey

logger = logging.getLogger(__name__)

KEY_PREFIX = "SB"
KEY_GROUPS = (4, 3, 1, 4)
# No 0/O or 1/I so keys survive being read aloud or retyped
KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
KEY_PATTERN = re.compile(r"^SB-[A-Z0-9]{4}-[A-Z0-9]{3}-[A-Z0-9]-[A-Z0-9]{4}$")

DEFAULT_TTL = timedelta(minutes=30)
MAX_ISSUE_ATTEMPTS = 3

CONNECT_KEY_HEADER = "X-Connect-Key"
CONNECT_SCHEME = "connect "


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_key(plain_key: str) -> str:
    return hashlib.sha256(plain_key.encode("utf-8")).hexdigest()


def canonical_key(candidate: str) -> str:
    return candidate.strip().upper()


def is_well_formed(candidate: str) -> bool:
    return bool(KEY_PATTERN.match(candidate))


def extract_connect_key(headers: Mapping[str, str]) -> Optional[str]:
    """Pull a connect key from ``X-Connect-Key`` or ``Authorization: Connect <key>``."""
    value = headers.get(CONNECT_KEY_HEADER) or headers.get(CONNECT_KEY_HEADER.lower())
    if value and value.strip():
        return value.strip()

    auth = headers.get("Authorization") or headers.get("authorization") or ""
    if auth.lower().startswith(CONNECT_SCHEME):
        token = auth[len(CONNECT_SCHEME):].strip()
        return token or None
    return None


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


class ConnectKeyService:
    def __init__(self, key_store: KeyStore, clock: Callable[[], datetime] = utc_now, rng=None):
        self.key_store = key_store
        self.clock = clock
        self.rng = rng or secrets.SystemRandom()

    def generate_key(self) -> str:
        groups = [
            "".join(self.rng.choice(KEY_ALPHABET) for _ in range(length))
            for length in KEY_GROUPS
        ]
        return "-".join([KEY_PREFIX, *groups])

    def issue(self, owner_user_id: str, ttl: timedelta = DEFAULT_TTL) -> IssuedKey:
        """
        Issue a new key for ``owner_user_id`` valid for ``ttl``.

        Previous active keys are revoked first. A failed revoke is logged and
        issuance continues; a failed insert raises StoreUnavailable. When the
        store rejects the row because a concurrent request already holds the
        active slot, revoke and insert are retried.
        """
        if not owner_user_id:
            raise ValueError("owner_user_id is required")
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
            self._revoke_previous(owner_user_id)

            plain_key = self.generate_key()
            now = _aware(self.clock())
            record = ConnectKeyRecord(
                user_id=owner_user_id,
                key_hash=hash_key(plain_key),
                created_at=now,
                expires_at=now + ttl,
                active=True,
                revoked=False,
            )

            try:
                key_id = self.key_store.insert_key(record)
            except KeyConflict:
                logger.warning(
                    "Connect key insert conflicted with a concurrent issuance",
                    extra={"user_id": owner_user_id, "attempt": attempt}
                )
                continue
            except StoreUnavailable:
                raise
            except Exception as e:
                raise StoreUnavailable("insert", str(e)) from e

            logger.info(
                "Connect key issued",
                extra={
                    "user_id": owner_user_id,
                    "key_id": key_id,
                    "key_hash_prefix": record.key_hash[:8],
                }
            )
            return IssuedKey(plain_key=plain_key, expires_at=record.expires_at, key_id=key_id)

        raise StoreUnavailable("insert", f"connect key still conflicting after {MAX_ISSUE_ATTEMPTS} attempts")

    def _revoke_previous(self, owner_user_id: str) -> int:
        try:
            revoked = self.key_store.revoke_active_keys(owner_user_id)
        except Exception as e:
            # A stale key staying active beats refusing to issue a new one
            logger.warning(f"Revoking previous connect keys failed: {e}", extra={"user_id": owner_user_id})
            return 0
        if revoked:
            logger.info(f"Revoked {revoked} previous connect key(s)", extra={"user_id": owner_user_id})
        return revoked

    def verify(self, candidate: Optional[str], defer: Optional[Callable] = None) -> VerifiedKey:
        """
        Resolve a presented key to its owner.

        Raises InvalidFormat before any hashing or I/O when the shape is wrong,
        and Unauthenticated(reason) for unknown, revoked or expired keys. The
        last-used timestamp is written through ``defer`` when given (for
        example ``BackgroundTasks.add_task``), otherwise inline.
        """
        key = canonical_key(candidate or "")
        if not is_well_formed(key):
            raise InvalidFormat()

        key_hash = hash_key(key)
        try:
            record = self.key_store.find_by_hash(key_hash)
        except StoreUnavailable:
            raise
        except Exception as e:
            raise StoreUnavailable("select", str(e)) from e

        if record is None:
            raise self._reject("not_found", key_hash)
        if record.revoked or not record.active:
            raise self._reject("revoked", key_hash, record)

        now = _aware(self.clock())
        if now >= _aware(record.expires_at):
            raise self._reject("expired", key_hash, record)

        if defer is not None:
            defer(self.touch_last_used, key_hash, now)
        else:
            self.touch_last_used(key_hash, now)

        return VerifiedKey(owner_user_id=record.user_id, key_id=record.id, expires_at=record.expires_at)

    def touch_last_used(self, key_hash: str, at: datetime) -> None:
        try:
            self.key_store.touch_last_used(key_hash, at)
        except Exception as e:
            logger.warning(f"Updating connect key last_used_at failed: {e}", extra={"key_hash_prefix": key_hash[:8]})

    def _reject(self, reason: str, key_hash: str, record: Optional[ConnectKeyRecord] = None) -> Unauthenticated:
        logger.info(
            "Connect key rejected",
            extra={
                "reason": reason,
                "key_hash_prefix": key_hash[:8],
                "user_id": record.user_id if record else None,
            }
        )
        return Unauthenticated(reason)
