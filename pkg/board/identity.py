"""
Lightweight identity: a user is a display name plus a lucky number.

The user id is derived deterministically, so the same name and number
log into the same account from any client.
"""
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .docstore import DocumentStore
from .schema import USERS, ValidationError, utc_now

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 80
MAX_LUCKY_NUMBER = 9999


class NotAuthenticated(Exception):
    """Raised when no identity is available in time."""
    pass


@dataclass(frozen=True)
class Identity:
    user_id: str
    name: str
    lucky_number: int

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "name": self.name, "luckyNumber": self.lucky_number}


def compute_user_id(name: str, lucky_number: int) -> str:
    """SHA-256 hex of '<name, stripped and lower-cased>:<lucky number>'."""
    normalized = f"{name.strip().lower()}:{lucky_number}"
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def validate_login(name, lucky_number):
    """Return (name, lucky_number) cleaned up, or raise ValidationError."""
    name = str(name or "").strip()
    if not name:
        raise ValidationError("Name is required")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name must be at most {MAX_NAME_LENGTH} characters")
    try:
        lucky_number = int(lucky_number)
    except (TypeError, ValueError):
        raise ValidationError(f"Lucky number must be an integer, got: '{lucky_number}'")
    if not 1 <= lucky_number <= MAX_LUCKY_NUMBER:
        raise ValidationError(f"Lucky number must be between 1 and {MAX_LUCKY_NUMBER}")
    return name, lucky_number


async def upsert_user(store: DocumentStore, identity: Identity) -> None:
    """Create the users document, or refresh name and number on an existing one."""
    now = utc_now().isoformat()
    snap = await store.get(USERS, identity.user_id)
    data = {"name": identity.name, "luckyNumber": identity.lucky_number}
    if snap.exists:
        await store.set(USERS, identity.user_id, {**data, "updatedAt": now}, merge=True)
    else:
        await store.set(USERS, identity.user_id, {**data, "createdAt": now})


class IdentityProvider:
    """
    Holds the signed-in identity of one client.

    Code that needs a user awaits `ensure()`, which resolves as soon as
    `login()` completes or gives up after the timeout.
    """

    def __init__(self, store: Optional[DocumentStore] = None, timeout: float = 8.0):
        self.store = store
        self.timeout = timeout
        self._identity: Optional[Identity] = None
        self._ready = asyncio.Event()

    @property
    def current(self) -> Optional[Identity]:
        return self._identity

    async def login(self, name, lucky_number) -> Identity:
        name, lucky_number = validate_login(name, lucky_number)
        identity = Identity(compute_user_id(name, lucky_number), name, lucky_number)
        if self.store is not None:
            await upsert_user(self.store, identity)
        self._set(identity)
        logger.info(f"Signed in as {name} ({identity.user_id[:8]})")
        return identity

    def logout(self) -> None:
        self._identity = None
        self._ready.clear()

    def _set(self, identity: Identity) -> None:
        self._identity = identity
        self._ready.set()

    async def ensure(self, timeout: Optional[float] = None) -> Identity:
        """Wait for an identity; raises NotAuthenticated after `timeout` seconds."""
        timeout = self.timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            raise NotAuthenticated(f"No identity after {timeout:g}s")
        return self._identity
