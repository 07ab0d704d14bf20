from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from gatekeep.logging import get_logger
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Account, Role


class MemoryStore:
    """In-process account store.

    Accounts are handed out as copies; every mutation goes through a method
    that holds ``_data_lock`` so read-modify-write sequences (failure counters,
    refresh-hash swaps) are atomic.
    """

    def __init__(self, *, super_admin_email: str) -> None:
        self.logger = get_logger(__name__)
        self.super_admin_email = super_admin_email.strip().lower()
        self.accounts: Dict[str, Account] = {}
        self._data_lock = threading.RLock()

    def _get_locked(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return account

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
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if role == Role.SUPER_ADMIN:
                if email != self.super_admin_email:
                    raise ConstraintViolation(
                        "super admin role is reserved", {"field": "role"}
                    )
                if any(a.role == Role.SUPER_ADMIN for a in self.accounts.values()):
                    raise ConstraintViolation(
                        "super admin already exists", {"field": "role"}
                    )
            account = Account.new(
                email,
                password_hash,
                role=role,
                name=name,
                is_active=is_active,
                email_verified=email_verified,
            )
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == email), None)
            return replace(account) if account else None

    def list_accounts(self, role: Optional[Role] = None) -> List[Account]:
        with self._data_lock:
            results = [replace(a) for a in self.accounts.values() if role is None or a.role == role]
        return sorted(results, key=lambda a: a.created_at)

    def update_password(self, account_id: str, password_hash: str) -> Account:
        with self._data_lock:
            account = self._get_locked(account_id)
            account.password_hash = password_hash
            return replace(account)

    def record_login_failure(
        self, account_id: str, *, max_attempts: int, lock_seconds: int, now: datetime
    ) -> Account:
        """Increment the failure counter and lock the account once it reaches ``max_attempts``.

        A lock that has already expired is cleared first, so the counter
        restarts from zero after a served lockout.
        """
        with self._data_lock:
            account = self._get_locked(account_id)
            if account.locked_until is not None and account.locked_until <= now:
                account.locked_until = None
                account.failed_attempts = 0
            account.failed_attempts += 1
            if account.failed_attempts >= max_attempts:
                account.locked_until = now + timedelta(seconds=lock_seconds)
            return replace(account)

    def reset_login_failures(self, account_id: str) -> Account:
        with self._data_lock:
            account = self._get_locked(account_id)
            account.failed_attempts = 0
            account.locked_until = None
            return replace(account)

    def record_login(self, account_id: str, now: datetime) -> Account:
        with self._data_lock:
            account = self._get_locked(account_id)
            account.failed_attempts = 0
            account.locked_until = None
            account.last_login_at = now
            return replace(account)

    def set_refresh_token_hash(self, account_id: str, token_hash: Optional[str]) -> None:
        with self._data_lock:
            self._get_locked(account_id).refresh_token_hash = token_hash

    def swap_refresh_token_hash(
        self, account_id: str, expected: str, new_hash: str
    ) -> bool:
        """Replace the stored hash only if it still equals ``expected``."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.refresh_token_hash != expected:
                return False
            account.refresh_token_hash = new_hash
            return True

    def set_two_factor(
        self, account_id: str, *, secret: Optional[str], enabled: bool
    ) -> Account:
        with self._data_lock:
            account = self._get_locked(account_id)
            account.two_factor_secret = secret
            account.two_factor_enabled = enabled
            return replace(account)

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified = True
            return replace(account)

    def set_active(self, account_id: str, is_active: bool) -> Account:
        with self._data_lock:
            account = self._get_locked(account_id)
            account.is_active = is_active
            if not is_active:
                account.refresh_token_hash = None
            return replace(account)

    def update_role(self, account_id: str, role: Role) -> Account:
        with self._data_lock:
            account = self._get_locked(account_id)
            if role == Role.SUPER_ADMIN or account.role == Role.SUPER_ADMIN:
                raise ConstraintViolation("super admin role is reserved", {"field": "role"})
            account.role = role
            return replace(account)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return False
            if account.role == Role.SUPER_ADMIN:
                raise ConstraintViolation("super admin cannot be deleted", {"field": "role"})
            del self.accounts[account_id]
            return True
