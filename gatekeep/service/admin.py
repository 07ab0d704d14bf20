from __future__ import annotations

from typing import Optional, Union

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditAction, AuditLogger
from gatekeep.service.auth import TOTP_ATTEMPT_KIND
from gatekeep.service.credentials import (
    AccountStore,
    CredentialStore,
    is_valid_email,
    normalize_email,
    validate_password_strength,
)
from gatekeep.service.errors import AuthErrorCode, AuthFailure
from gatekeep.service.otp import OtpService, VerificationScope
from gatekeep.service.outcomes import AccountView, Completed
from gatekeep.service.two_factor import TwoFactorService
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Account, Role

logger = get_logger(__name__)


class AdminService:
    """Administrator management around the single reserved super admin.

    Only the super admin manages other accounts. New administrators are
    always SUB_ADMIN; SUPER_ADMIN is never granted, and the super-admin
    account itself cannot be demoted, deactivated or deleted.
    """

    def __init__(
        self,
        settings: Settings,
        store: AccountStore,
        *,
        credentials: CredentialStore,
        two_factor: TwoFactorService,
        otp: OtpService,
        audit: AuditLogger,
    ) -> None:
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self.two_factor = two_factor
        self.otp = otp
        self.audit = audit

    def _super_admin_actor(self, actor_id: str) -> Optional[Account]:
        actor = self.store.get_account(actor_id)
        if actor is None or not actor.is_active or actor.role != Role.SUPER_ADMIN:
            return None
        return actor

    async def bootstrap_super_admin(self, password: str) -> AccountView:
        """Create the reserved super-admin account if it does not exist yet."""
        email = self.settings.super_admin_email
        existing = self.store.get_account_by_email(email)
        if existing is not None:
            return AccountView.from_account(existing)
        weakness = validate_password_strength(password)
        if weakness:
            raise ValueError(f"super admin password rejected: {weakness}")
        password_hash = await self.credentials.hash_async(password)
        account = self.store.create_account(
            email, password_hash, role=Role.SUPER_ADMIN, name="Super Admin", email_verified=True
        )
        logger.info("super_admin_bootstrapped", account_id=account.id)
        return AccountView.from_account(account)

    async def create_sub_admin(
        self,
        actor_id: str,
        *,
        two_factor_code: str,
        verification_token: str,
        email: str,
        password: str,
        name: Optional[str] = None,
    ) -> Union[AccountView, AuthFailure]:
        """Create a SUB_ADMIN account.

        Requires a super-admin actor, a fresh TOTP code from that actor, and
        a verification window obtained through the password-change OTP flow.
        The window is consumed only when everything else checks out.
        """
        actor = self._super_admin_actor(actor_id)
        if actor is None:
            return AuthFailure.of(AuthErrorCode.FORBIDDEN, "only the super admin can create administrators")
        if not actor.two_factor_enabled:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "enable two-factor before creating administrators")

        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            return AuthFailure.of(AuthErrorCode.VALIDATION_ERROR, "invalid email address")
        weakness = validate_password_strength(password)
        if weakness:
            return AuthFailure.of(AuthErrorCode.VALIDATION_ERROR, weakness)
        if normalized == self.settings.super_admin_email or self.store.get_account_by_email(normalized):
            return AuthFailure.of(AuthErrorCode.EMAIL_TAKEN)

        refused = await self._confirm_actor(
            actor.id, two_factor_code, verification_token, require_window=True
        )
        if refused is not None:
            return refused

        password_hash = await self.credentials.hash_async(password)
        try:
            account = self.store.create_account(
                normalized,
                password_hash,
                role=Role.SUB_ADMIN,
                name=name.strip() if name else None,
                email_verified=True,
            )
        except ConstraintViolation:
            return AuthFailure.of(AuthErrorCode.EMAIL_TAKEN)
        self.audit.log_auth(
            AuditAction.ADMIN_CREATED, account_id=account.id, email=account.email, actor_id=actor.id
        )
        return AccountView.from_account(account)

    def _guard_target(self, actor_id: str, target_id: str) -> Union[Account, AuthFailure]:
        if self._super_admin_actor(actor_id) is None:
            return AuthFailure.of(AuthErrorCode.FORBIDDEN)
        target = self.store.get_account(target_id)
        if target is None:
            return AuthFailure.of(AuthErrorCode.NOT_FOUND, "account not found")
        if target.role == Role.SUPER_ADMIN:
            return AuthFailure.of(AuthErrorCode.FORBIDDEN, "the super admin account cannot be modified")
        return target

    async def _confirm_actor(
        self,
        actor_id: str,
        two_factor_code: str,
        verification_token: Optional[str],
        *,
        require_window: bool,
    ) -> Optional[AuthFailure]:
        """Check the actor's TOTP and, when required, consume a sensitive-action window.

        The window is only consumed once the TOTP code has been accepted.
        """
        actor = self._super_admin_actor(actor_id)
        if actor is None:
            return AuthFailure.of(AuthErrorCode.FORBIDDEN)
        if not actor.two_factor_enabled:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "enable two-factor before managing accounts")
        if require_window and not await self.otp.check_verification_token(
            actor.id, VerificationScope.SENSITIVE_ACTION, verification_token or ""
        ):
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        locked = await self.otp.check_attempt_lock(actor.id, TOTP_ATTEMPT_KIND)
        if locked is not None:
            return locked
        if not self.two_factor.verify_stored(actor.two_factor_secret, two_factor_code):
            locked = await self.otp.record_failed_attempt(actor.id, TOTP_ATTEMPT_KIND)
            return locked or AuthFailure.of(AuthErrorCode.INVALID_TWO_FACTOR_CODE)
        await self.otp.reset_attempts(actor.id, TOTP_ATTEMPT_KIND)
        if require_window and not await self.otp.consume_verification_token(
            actor.id, VerificationScope.SENSITIVE_ACTION, verification_token or ""
        ):
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        return None

    async def set_account_active(
        self,
        actor_id: str,
        target_id: str,
        is_active: bool,
        *,
        two_factor_code: str,
        verification_token: Optional[str] = None,
    ) -> Union[AccountView, AuthFailure]:
        """Activate or deactivate an account.

        Needs the super admin's TOTP code; a sub-admin target also needs a
        sensitive-action window.
        """
        target = self._guard_target(actor_id, target_id)
        if isinstance(target, AuthFailure):
            return target
        refused = await self._confirm_actor(
            actor_id,
            two_factor_code,
            verification_token,
            require_window=target.role == Role.SUB_ADMIN,
        )
        if refused is not None:
            return refused
        updated = self.store.set_active(target.id, is_active)
        self.audit.log_auth(
            AuditAction.ACCOUNT_UPDATED, account_id=target.id, actor_id=actor_id, is_active=is_active
        )
        return AccountView.from_account(updated)

    async def change_role(
        self, actor_id: str, target_id: str, role: Role | str
    ) -> Union[AccountView, AuthFailure]:
        target = self._guard_target(actor_id, target_id)
        if isinstance(target, AuthFailure):
            return target
        try:
            new_role = Role(role)
        except ValueError:
            return AuthFailure.of(AuthErrorCode.VALIDATION_ERROR, "unknown role")
        if new_role == Role.SUPER_ADMIN:
            return AuthFailure.of(AuthErrorCode.FORBIDDEN, "the super admin role cannot be granted")
        updated = self.store.update_role(target.id, new_role)
        self.audit.log_auth(
            AuditAction.ACCOUNT_UPDATED, account_id=target.id, actor_id=actor_id, role=new_role.value
        )
        return AccountView.from_account(updated)

    async def delete_account(
        self,
        actor_id: str,
        target_id: str,
        *,
        two_factor_code: str,
        verification_token: Optional[str] = None,
    ) -> Union[Completed, AuthFailure]:
        target = self._guard_target(actor_id, target_id)
        if isinstance(target, AuthFailure):
            return target
        refused = await self._confirm_actor(
            actor_id,
            two_factor_code,
            verification_token,
            require_window=target.role == Role.SUB_ADMIN,
        )
        if refused is not None:
            return refused
        self.store.delete_account(target.id)
        self.audit.log_auth(AuditAction.ACCOUNT_DELETED, account_id=target.id, actor_id=actor_id)
        return Completed("account deleted")
