from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Sequence, Union

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.audit import AuditAction, AuditLogger
from gatekeep.service.credentials import (
    AccountStore,
    CredentialStore,
    is_valid_email,
    normalize_email,
    validate_password_strength,
)
from gatekeep.service.email import EmailService
from gatekeep.service.errors import AuthErrorCode, AuthFailure
from gatekeep.service.lockout import LockoutGuard
from gatekeep.service.otp import OtpService, VerificationScope
from gatekeep.service.outcomes import (
    AccountView,
    Authenticated,
    Completed,
    EmailOtpRequired,
    LoginOutcome,
    OtpDispatched,
    RecoveryCodes,
    Registered,
    SecondFactorOutcome,
    TwoFactorEnrollment,
    TwoFactorRequired,
    TwoFactorSetupRequired,
    VerificationWindow,
)
from gatekeep.service.primitives import Clock
from gatekeep.service.session_policy import SessionPolicy
from gatekeep.service.tokens import TokenPair, TokenService
from gatekeep.service.two_factor import TwoFactorService
from gatekeep.storage.errors import ConstraintViolation, StoreUnavailableError
from gatekeep.storage.kv import KeyValueStore
from gatekeep.storage.models import Account, OtpPurpose, Role

logger = get_logger(__name__)

EMAIL_VERIFICATION_TTL_SECONDS = 24 * 3600
TOTP_ATTEMPT_KIND = "totp"
# How long an administrator may ask for a fresh login code after passing TOTP
EMAIL_OTP_STAGE_SECONDS = 900


class AuthOrchestrator:
    """Drives login and account-security flows across the auth services.

    Login moves ``Anonymous -> CredentialsChecked`` and then, depending on
    role and 2FA state, to ``TwoFactorSetupRequired``, ``TwoFactorRequired``
    or straight to ``Authenticated``. Administrator roles always pass through
    an emailed one-time code after TOTP. Every method returns a tagged
    outcome; expected failures come back as ``AuthFailure`` values.
    """

    def __init__(
        self,
        settings: Settings,
        store: AccountStore,
        kv: KeyValueStore,
        *,
        credentials: CredentialStore,
        lockout: LockoutGuard,
        policy: SessionPolicy,
        tokens: TokenService,
        two_factor: TwoFactorService,
        otp: OtpService,
        email_service: EmailService,
        audit: AuditLogger,
        clock: Clock,
    ) -> None:
        self.settings = settings
        self.store = store
        self.kv = kv
        self.credentials = credentials
        self.lockout = lockout
        self.policy = policy
        self.tokens = tokens
        self.two_factor = two_factor
        self.otp = otp
        self.email = email_service
        self.audit = audit
        self.clock = clock
        self.logger = logger

    # -- helpers --------------------------------------------------------------

    async def _notify(self, event: str, send: Callable[..., bool], *args: Any) -> None:
        """Run an email send off the event loop; delivery problems never fail the caller."""
        try:
            delivered = await asyncio.to_thread(send, *args)
        except Exception as exc:
            self.logger.error("email_delivery_failed", notification=event, error=str(exc))
            return
        if not delivered:
            self.logger.warning("email_delivery_failed", notification=event)

    def _active_account(self, account_id: str) -> Optional[Account]:
        account = self.store.get_account(account_id)
        if account is None or not account.is_active:
            return None
        return account

    async def _complete_login(self, account: Account) -> Authenticated:
        account = self.store.record_login(account.id, self.clock.now())
        pair = await self.tokens.issue_for(account)
        self.audit.log_auth(
            AuditAction.LOGIN, account_id=account.id, email=account.email, role=account.role.value
        )
        self.logger.info("login_completed", account_id=account.id, role=account.role.value)
        return Authenticated(
            account=AccountView.from_account(account),
            tokens=pair,
            timeouts=self.policy.timeouts_for(account.role),
        )

    async def _begin_email_otp(
        self, account: Account, recovery_codes: Sequence[str] = ()
    ) -> Union[EmailOtpRequired, AuthFailure]:
        issued = await self.otp.issue(account.id, OtpPurpose.LOGIN)
        if isinstance(issued, AuthFailure):
            return issued
        stage = await self.otp.issue_verification_token(
            account.id, VerificationScope.EMAIL_OTP_STAGE, EMAIL_OTP_STAGE_SECONDS
        )
        if isinstance(stage, AuthFailure):
            return stage
        await self._notify("login_otp", self.email.send_login_otp, account.email, issued.code, account.name)
        return EmailOtpRequired(
            account_id=account.id,
            expires_at=issued.expires_at,
            recovery_codes=tuple(recovery_codes),
        )

    async def _check_totp(self, account: Account, code: str) -> Optional[AuthFailure]:
        """Verify a TOTP code under the per-account attempt lock; None means accepted."""
        locked = await self.otp.check_attempt_lock(account.id, TOTP_ATTEMPT_KIND)
        if locked is not None:
            return locked
        valid = self.two_factor.verify_stored(account.two_factor_secret, code)
        if valid and account.two_factor_enabled:
            # An enabled factor accepts each code once inside its validity window
            valid = await self.otp.claim_totp_code(account.id, code)
        if not valid:
            locked = await self.otp.record_failed_attempt(account.id, TOTP_ATTEMPT_KIND)
            return locked or AuthFailure.of(AuthErrorCode.INVALID_TWO_FACTOR_CODE)
        await self.otp.reset_attempts(account.id, TOTP_ATTEMPT_KIND)
        return None

    async def _start_enrollment(self, account: Account) -> TwoFactorEnrollment:
        secret = self.two_factor.generate_secret()
        # Overwrites any abandoned pending secret
        self.store.set_two_factor(
            account.id, secret=self.two_factor.encrypt_secret(secret), enabled=False
        )
        return TwoFactorEnrollment(
            secret=secret,
            otpauth_uri=self.two_factor.provisioning_uri(account.email, secret),
            qr_code=self.two_factor.enrollment_payload(account.email, secret),
        )

    async def _enable_two_factor(self, account: Account) -> list[str]:
        self.store.set_two_factor(account.id, secret=account.two_factor_secret, enabled=True)
        codes = self.two_factor.generate_recovery_codes()
        await self._notify("two_factor_enabled", self.email.send_two_factor_enabled, account.email, account.name)
        self.audit.log_auth(AuditAction.TWO_FACTOR_ENABLED, account_id=account.id, email=account.email)
        return codes

    async def _send_verification_email(self, account: Account) -> None:
        token = self.otp.generate_token()
        try:
            await self.kv.set_with_ttl(
                f"email_verify:{token}", account.id, EMAIL_VERIFICATION_TTL_SECONDS
            )
        except StoreUnavailableError:
            self.logger.error("email_verification_token_store_failed", account_id=account.id)
            return
        await self._notify(
            "email_verification", self.email.send_verification_email, account.email, token, account.name
        )

    # -- registration ---------------------------------------------------------

    async def register(
        self, email: str, password: str, *, name: Optional[str] = None
    ) -> Union[Registered, AuthFailure]:
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            return AuthFailure.of(AuthErrorCode.VALIDATION_ERROR, "invalid email address")
        weakness = validate_password_strength(password)
        if weakness:
            return AuthFailure.of(AuthErrorCode.VALIDATION_ERROR, weakness)
        if name is not None and not (2 <= len(name.strip()) <= 100):
            return AuthFailure.of(AuthErrorCode.VALIDATION_ERROR, "name must be 2-100 characters")
        # The reserved super-admin mailbox is never available for self-service signup
        if normalized == self.settings.super_admin_email or self.store.get_account_by_email(normalized):
            return AuthFailure.of(AuthErrorCode.EMAIL_TAKEN)
        password_hash = await self.credentials.hash_async(password)
        try:
            account = self.store.create_account(
                normalized,
                password_hash,
                role=Role.STANDARD,
                name=name.strip() if name else None,
            )
        except ConstraintViolation:
            return AuthFailure.of(AuthErrorCode.EMAIL_TAKEN)
        account = self.store.record_login(account.id, self.clock.now())
        pair = await self.tokens.issue_for(account)
        await self._send_verification_email(account)
        self.audit.log_auth(AuditAction.REGISTER, account_id=account.id, email=account.email)
        return Registered(
            account=AccountView.from_account(account),
            tokens=pair,
            timeouts=self.policy.timeouts_for(account.role),
        )

    async def verify_email(self, token: str) -> Union[Completed, AuthFailure]:
        invalid = AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        if not token:
            return invalid
        try:
            account_id = await self.kv.get_and_delete(f"email_verify:{token}")
        except StoreUnavailableError:
            return invalid
        if account_id is None or self.store.mark_email_verified(account_id) is None:
            return invalid
        self.audit.log_auth(AuditAction.EMAIL_VERIFIED, account_id=account_id)
        return Completed("email verified")

    async def resend_verification_email(self, email: str) -> Union[Completed, AuthFailure]:
        """Re-send the verification link; the answer does not reveal whether the email exists."""
        generic = Completed("if the account exists and is unverified, a new link has been sent")
        account = self.credentials.find_by_email(email)
        if account is None or account.email_verified or not account.is_active:
            return generic
        refused = await self.otp.consume_request_quota(account.id)
        if refused is not None:
            return refused
        await self._send_verification_email(account)
        return generic

    # -- login ----------------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginOutcome:
        invalid = AuthFailure.of(AuthErrorCode.INVALID_CREDENTIALS)
        account = self.credentials.find_by_email(email)
        if account is None:
            await self.credentials.verify_dummy_async(password)
            self.audit.log_auth(AuditAction.LOGIN_FAILED, email=email, reason="unknown_email")
            return invalid

        lock = self.lockout.evaluate(account)
        if lock.locked:
            self.audit.log_auth(AuditAction.LOGIN_FAILED, account_id=account.id, reason="locked")
            minutes = max(1, -(-lock.remaining_seconds // 60))
            return AuthFailure.of(
                AuthErrorCode.ACCOUNT_LOCKED,
                f"account temporarily locked; try again in {minutes} minute(s)",
                wait_seconds=lock.remaining_seconds,
            )

        if not await self.credentials.verify_hash_async(account.password_hash, password):
            self.lockout.record_failure(account.id)
            self.audit.log_auth(AuditAction.LOGIN_FAILED, account_id=account.id, reason="bad_password")
            return invalid

        if not account.is_active:
            return AuthFailure.of(AuthErrorCode.ACCOUNT_INACTIVE)

        if account.two_factor_enabled:
            window = await self.otp.issue_verification_token(
                account.id, VerificationScope.LOGIN_CHALLENGE
            )
            if isinstance(window, AuthFailure):
                return window
            return TwoFactorRequired(account_id=account.id)

        if self.two_factor.is_mandatory(account.role):
            window = await self.otp.issue_verification_token(
                account.id, VerificationScope.TWO_FACTOR_SETUP
            )
            if isinstance(window, AuthFailure):
                return window
            self.logger.info("two_factor_setup_required", account_id=account.id)
            return TwoFactorSetupRequired(
                account_id=account.id, setup_token=window.token, expires_at=window.expires_at
            )

        return await self._complete_login(account)

    async def verify_two_factor(self, account_id: str, code: str) -> SecondFactorOutcome:
        account = self._active_account(account_id)
        if account is None or not account.two_factor_enabled:
            return AuthFailure.of(AuthErrorCode.INVALID_TWO_FACTOR_CODE)
        # Only reachable after a correct password in this login attempt
        if not await self.otp.window_open(account.id, VerificationScope.LOGIN_CHALLENGE):
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        failure = await self._check_totp(account, code)
        if failure is not None:
            return failure
        await self.otp.clear_verification_token(account.id, VerificationScope.LOGIN_CHALLENGE)
        if self.two_factor.is_mandatory(account.role):
            return await self._begin_email_otp(account)
        return await self._complete_login(account)

    async def verify_email_otp(self, account_id: str, code: str) -> Union[Authenticated, AuthFailure]:
        account = self._active_account(account_id)
        if account is None:
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_OTP)
        result = await self.otp.verify(account.id, OtpPurpose.LOGIN, code)
        if isinstance(result, AuthFailure):
            return result
        await self.otp.clear_verification_token(account.id, VerificationScope.EMAIL_OTP_STAGE)
        return await self._complete_login(account)

    async def resend_login_otp(self, account_id: str) -> Union[OtpDispatched, AuthFailure]:
        """Send a fresh login code to an administrator waiting on the email step.

        Counts against the hourly request quota like any other code.
        """
        account = self._active_account(account_id)
        if account is None:
            return AuthFailure.of(AuthErrorCode.NOT_FOUND, "account not found")
        if not self.two_factor.is_mandatory(account.role):
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "login codes are not used for this role")
        if not await self.otp.window_open(account.id, VerificationScope.EMAIL_OTP_STAGE):
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        issued = await self.otp.issue(account.id, OtpPurpose.LOGIN)
        if isinstance(issued, AuthFailure):
            return issued
        await self._notify("login_otp", self.email.send_login_otp, account.email, issued.code, account.name)
        self.logger.info("login_otp_resent", account_id=account.id)
        return OtpDispatched(expires_at=issued.expires_at)

    # -- session --------------------------------------------------------------

    async def refresh(self, account_id: str, refresh_token: str) -> Union[TokenPair, AuthFailure]:
        return await self.tokens.rotate(account_id, refresh_token)

    async def logout(self, account_id: str) -> Completed:
        if self.store.get_account(account_id) is not None:
            self.tokens.revoke(account_id)
            self.audit.log_auth(AuditAction.LOGOUT, account_id=account_id)
        return Completed("logged out")

    # -- password change ------------------------------------------------------

    async def request_password_change_otp(
        self, account_id: str
    ) -> Union[OtpDispatched, AuthFailure]:
        account = self._active_account(account_id)
        if account is None:
            return AuthFailure.of(AuthErrorCode.NOT_FOUND, "account not found")
        issued = await self.otp.issue(account.id, OtpPurpose.PASSWORD_CHANGE)
        if isinstance(issued, AuthFailure):
            return issued
        await self._notify(
            "password_change_otp", self.email.send_password_change_otp, account.email, issued.code, account.name
        )
        return OtpDispatched(expires_at=issued.expires_at)

    async def verify_password_change_otp(
        self, account_id: str, code: str
    ) -> Union[VerificationWindow, AuthFailure]:
        """Exchange a password-change code for a short verification window token.

        The token gates both the password change itself and administrator
        creation.
        """
        account = self._active_account(account_id)
        if account is None:
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_OTP)
        result = await self.otp.verify(account.id, OtpPurpose.PASSWORD_CHANGE, code)
        if isinstance(result, AuthFailure):
            return result
        return await self.otp.issue_verification_token(account.id, VerificationScope.SENSITIVE_ACTION)

    async def change_password(
        self,
        account_id: str,
        verification_token: str,
        current_password: str,
        new_password: str,
    ) -> Union[Completed, AuthFailure]:
        invalid_token = AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        account = self._active_account(account_id)
        if account is None:
            return invalid_token
        if not await self.otp.check_verification_token(
            account.id, VerificationScope.SENSITIVE_ACTION, verification_token
        ):
            return invalid_token
        weakness = validate_password_strength(new_password)
        if weakness:
            return AuthFailure.of(AuthErrorCode.VALIDATION_ERROR, weakness)
        if not await self.credentials.verify_hash_async(account.password_hash, current_password):
            return AuthFailure.of(AuthErrorCode.INVALID_CREDENTIALS, "current password is incorrect")
        if new_password == current_password:
            return AuthFailure.of(
                AuthErrorCode.VALIDATION_ERROR, "new password must differ from the current one"
            )
        if not await self.otp.consume_verification_token(
            account.id, VerificationScope.SENSITIVE_ACTION, verification_token
        ):
            return invalid_token
        self.store.update_password(account.id, await self.credentials.hash_async(new_password))
        self.audit.log_auth(AuditAction.PASSWORD_CHANGED, account_id=account.id, email=account.email)
        return Completed("password changed")

    # -- two-factor management ------------------------------------------------

    async def setup_two_factor(self, account_id: str) -> Union[TwoFactorEnrollment, AuthFailure]:
        account = self._active_account(account_id)
        if account is None:
            return AuthFailure.of(AuthErrorCode.NOT_FOUND, "account not found")
        if account.two_factor_enabled:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "two-factor is already enabled")
        return await self._start_enrollment(account)

    async def confirm_two_factor(self, account_id: str, code: str) -> Union[RecoveryCodes, AuthFailure]:
        account = self._active_account(account_id)
        if account is None:
            return AuthFailure.of(AuthErrorCode.NOT_FOUND, "account not found")
        if account.two_factor_enabled:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "two-factor is already enabled")
        if not account.two_factor_secret:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "two-factor setup not started")
        failure = await self._check_totp(account, code)
        if failure is not None:
            return failure
        return RecoveryCodes(codes=tuple(await self._enable_two_factor(account)))

    async def disable_two_factor(self, account_id: str, code: str) -> Union[Completed, AuthFailure]:
        account = self._active_account(account_id)
        if account is None:
            return AuthFailure.of(AuthErrorCode.NOT_FOUND, "account not found")
        if self.two_factor.is_mandatory(account.role):
            return AuthFailure.of(
                AuthErrorCode.FORBIDDEN, "two-factor authentication is mandatory for this role"
            )
        if not account.two_factor_enabled:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "two-factor is not enabled")
        failure = await self._check_totp(account, code)
        if failure is not None:
            return failure
        self.store.set_two_factor(account.id, secret=None, enabled=False)
        self.audit.log_auth(AuditAction.TWO_FACTOR_DISABLED, account_id=account.id, email=account.email)
        return Completed("two-factor disabled")

    # -- first-login enrollment for administrator roles -----------------------

    async def setup_two_factor_with_token(
        self, account_id: str, setup_token: str
    ) -> Union[TwoFactorEnrollment, AuthFailure]:
        if not await self.otp.check_verification_token(
            account_id, VerificationScope.TWO_FACTOR_SETUP, setup_token
        ):
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        account = self._active_account(account_id)
        if account is None:
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        if account.two_factor_enabled:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "two-factor is already enabled")
        return await self._start_enrollment(account)

    async def confirm_two_factor_setup(
        self, account_id: str, setup_token: str, code: str
    ) -> Union[EmailOtpRequired, Authenticated, AuthFailure]:
        """Finish first-login enrollment and continue the login it interrupted.

        The setup token survives a wrong code so the user can retry within
        its window; it is consumed only once the code checks out.
        """
        invalid_token = AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        if not await self.otp.check_verification_token(
            account_id, VerificationScope.TWO_FACTOR_SETUP, setup_token
        ):
            return invalid_token
        account = self._active_account(account_id)
        if account is None:
            return invalid_token
        if account.two_factor_enabled:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "two-factor is already enabled")
        if not account.two_factor_secret:
            return AuthFailure.of(AuthErrorCode.TWO_FACTOR_STATE, "two-factor setup not started")
        failure = await self._check_totp(account, code)
        if failure is not None:
            return failure
        if not await self.otp.consume_verification_token(
            account.id, VerificationScope.TWO_FACTOR_SETUP, setup_token
        ):
            return invalid_token
        codes = await self._enable_two_factor(account)
        if self.two_factor.is_mandatory(account.role):
            return await self._begin_email_otp(account, codes)
        return await self._complete_login(account)
