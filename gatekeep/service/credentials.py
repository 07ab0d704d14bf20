from __future__ import annotations

import asyncio
import re
from datetime import datetime
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.storage.models import Account, Role

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 64
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.STANDARD,
        name: Optional[str] = None,
        is_active: bool = True,
        email_verified: bool = False,
    ) -> Account:
        ...

    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def get_account_by_email(self, email: str) -> Optional[Account]:
        ...

    def list_accounts(self, role: Optional[Role] = None) -> List[Account]:
        ...

    def update_password(self, account_id: str, password_hash: str) -> Account:
        ...

    def record_login_failure(
        self, account_id: str, *, max_attempts: int, lock_seconds: int, now: datetime
    ) -> Account:
        ...

    def reset_login_failures(self, account_id: str) -> Account:
        ...

    def record_login(self, account_id: str, now: datetime) -> Account:
        ...

    def set_refresh_token_hash(self, account_id: str, token_hash: Optional[str]) -> None:
        ...

    def swap_refresh_token_hash(
        self, account_id: str, expected: str, new_hash: str
    ) -> bool:
        ...

    def set_two_factor(
        self, account_id: str, *, secret: Optional[str], enabled: bool
    ) -> Account:
        ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        ...

    def set_active(self, account_id: str, is_active: bool) -> Account:
        ...

    def update_role(self, account_id: str, role: Role) -> Account:
        ...

    def delete_account(self, account_id: str) -> bool:
        ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def validate_password_strength(password: str) -> Optional[str]:
    """Return a human-readable reason the password is too weak, or None if acceptable."""
    if not isinstance(password, str):
        return "password is required"
    if len(password) < PASSWORD_MIN_LENGTH:
        return f"password must be at least {PASSWORD_MIN_LENGTH} characters"
    if len(password) > PASSWORD_MAX_LENGTH:
        return f"password must be at most {PASSWORD_MAX_LENGTH} characters"
    if not re.search(r"[a-z]", password) or not re.search(r"[A-Z]", password):
        return "password must contain upper and lower case letters"
    if not re.search(r"[\d\W_]", password):
        return "password must contain a number or special character"
    return None


class CredentialStore:
    """Salted argon2id hashing and verification of secrets bound to accounts.

    The same hasher verifies passwords and refresh tokens. Verification never
    raises on mismatch; it returns False.
    """

    def __init__(self, store: AccountStore, settings: Settings) -> None:
        self.store = store
        self._hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        # Verified against when the email is unknown so lookups cost the same
        self._dummy_hash = self._hasher.hash("gatekeep-timing-equalizer")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify_hash(self, stored_hash: Optional[str], plaintext: str) -> bool:
        if not stored_hash or plaintext is None:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify(self, email: str, plaintext: str) -> bool:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            self.verify_hash(self._dummy_hash, plaintext)
            return False
        return self.verify_hash(account.password_hash, plaintext)

    async def hash_async(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hash, plaintext)

    async def verify_hash_async(self, stored_hash: Optional[str], plaintext: str) -> bool:
        return await asyncio.to_thread(self.verify_hash, stored_hash, plaintext)

    async def verify_dummy_async(self, plaintext: str) -> None:
        """Spend one verification's worth of work without touching any account."""
        await asyncio.to_thread(self.verify_hash, self._dummy_hash, plaintext)

    def find_by_email(self, email: str) -> Optional[Account]:
        return self.store.get_account_by_email(normalize_email(email))
