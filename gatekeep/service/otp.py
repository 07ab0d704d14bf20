from __future__ import annotations

import asyncio
import hmac
from datetime import timedelta
from enum import Enum
from typing import Optional, Union

from gatekeep.logging import get_logger
from gatekeep.service.errors import AuthErrorCode, AuthFailure
from gatekeep.service.outcomes import IssuedOtp, VerificationWindow, Verified
from gatekeep.service.primitives import Clock, RandomSource
from gatekeep.storage.errors import StoreUnavailableError
from gatekeep.storage.kv import KeyValueStore
from gatekeep.storage.models import OtpPurpose

logger = get_logger(__name__)

OTP_DIGITS = 6
OTP_TTL_SECONDS = 5 * 60
VERIFICATION_WINDOW_SECONDS = 3 * 60
MAX_REQUESTS_PER_WINDOW = 5
REQUEST_WINDOW_SECONDS = 60 * 60
MAX_VERIFY_ATTEMPTS = 5
VERIFY_LOCK_SECONDS = 15 * 60
TOTP_REPLAY_SECONDS = 90
VERIFICATION_TOKEN_BYTES = 32


class VerificationScope(str, Enum):
    """What a verification window unlocks."""

    SENSITIVE_ACTION = "sensitive_action"
    TWO_FACTOR_SETUP = "two_factor_setup"
    LOGIN_CHALLENGE = "login_challenge"
    EMAIL_OTP_STAGE = "email_otp_stage"


class OtpService:
    """Short-lived codes, request limits, verification locks and verification windows.

    All state lives in the injected ``KeyValueStore``; the service itself is
    stateless and safe to share. Store outages fail closed: issuance answers
    ``SERVICE_UNAVAILABLE`` and every verification answers "not verified".

    Keys::

        otp:{subject}:{purpose}                       the outstanding code
        otp:{subject}:password_verified:{scope}       verification window token
        otp_attempts:{subject}:request                request counter (1h window)
        otp_attempts:{subject}:verify_{kind}          failed verification counter
        otp_locked:{subject}:{kind}                   verification lock
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        clock: Clock,
        random_source: RandomSource,
        max_requests: int = MAX_REQUESTS_PER_WINDOW,
        max_verify_attempts: int = MAX_VERIFY_ATTEMPTS,
    ) -> None:
        self.kv = kv
        self.clock = clock
        self.random = random_source
        self.max_requests = max_requests
        self.max_verify_attempts = max_verify_attempts

    # -- keys -----------------------------------------------------------------

    @staticmethod
    def _code_key(subject: str, purpose: OtpPurpose) -> str:
        return f"otp:{subject}:{purpose.value}"

    @staticmethod
    def _window_key(subject: str, scope: VerificationScope) -> str:
        return f"otp:{subject}:{OtpPurpose.PASSWORD_VERIFIED.value}:{scope.value}"

    @staticmethod
    def _request_key(subject: str) -> str:
        return f"otp_attempts:{subject}:request"

    @staticmethod
    def _attempts_key(subject: str, kind: str) -> str:
        return f"otp_attempts:{subject}:verify_{kind}"

    @staticmethod
    def _lock_key(subject: str, kind: str) -> str:
        return f"otp_locked:{subject}:{kind}"

    # -- generation -----------------------------------------------------------

    def generate_code(self) -> str:
        # randbelow rejects out-of-range draws, so every code is equally likely
        return str(self.random.randbelow(10**OTP_DIGITS)).zfill(OTP_DIGITS)

    def generate_token(self) -> str:
        return self.random.token_bytes(VERIFICATION_TOKEN_BYTES).hex()

    async def consume_request_quota(self, subject: str) -> Optional[AuthFailure]:
        """Count one code request for ``subject``; return a failure once the hourly quota is spent."""
        request_key = self._request_key(subject)
        try:
            count = await self.kv.increment_with_ttl(request_key, REQUEST_WINDOW_SECONDS)
            if count <= self.max_requests:
                return None
            wait = await self.kv.ttl(request_key) or REQUEST_WINDOW_SECONDS
        except StoreUnavailableError:
            logger.error("otp_request_store_unavailable", subject=subject)
            return AuthFailure.of(AuthErrorCode.SERVICE_UNAVAILABLE)
        logger.warning("otp_request_rate_limited", subject=subject, wait_seconds=wait)
        return AuthFailure.of(
            AuthErrorCode.RATE_LIMITED,
            "too many code requests; try again later",
            wait_seconds=wait,
        )

    async def issue(
        self, subject: str, purpose: OtpPurpose
    ) -> Union[IssuedOtp, AuthFailure]:
        """Generate and store a code for ``(subject, purpose)``, replacing any previous one."""
        if purpose == OtpPurpose.PASSWORD_VERIFIED:
            raise ValueError("verification windows are issued with issue_verification_token")
        refused = await self.consume_request_quota(subject)
        if refused is not None:
            return refused
        code = self.generate_code()
        try:
            await self.kv.set_with_ttl(self._code_key(subject, purpose), code, OTP_TTL_SECONDS)
        except StoreUnavailableError:
            logger.error("otp_issue_store_unavailable", subject=subject, purpose=purpose.value)
            return AuthFailure.of(AuthErrorCode.SERVICE_UNAVAILABLE)
        logger.info("otp_issued", subject=subject, purpose=purpose.value)
        return IssuedOtp(
            code=code,
            expires_at=self.clock.now() + timedelta(seconds=OTP_TTL_SECONDS),
        )

    async def verify(
        self, subject: str, purpose: OtpPurpose, code: str
    ) -> Union[Verified, AuthFailure]:
        """Consume the stored code and compare it with ``code`` in constant time.

        The stored code is removed before comparison whatever the outcome, so
        a code can succeed at most once and a wrong guess burns it.
        """
        kind = purpose.value
        try:
            locked = await self._locked_for(subject, kind)
            if locked:
                return self._locked_failure(locked)
            stored = await self.kv.get_and_delete(self._code_key(subject, purpose))
            if stored is not None and self._codes_match(stored, code):
                await self._reset(subject, kind)
                logger.info("otp_verified", subject=subject, purpose=kind)
                return Verified()
            locked = await self._record_failure(subject, kind)
        except StoreUnavailableError:
            logger.error("otp_verify_store_unavailable", subject=subject, purpose=kind)
            return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_OTP)
        if locked:
            return self._locked_failure(locked)
        return AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_OTP)

    async def remaining_seconds(self, subject: str, purpose: OtpPurpose) -> Optional[int]:
        """Seconds until the outstanding code for ``(subject, purpose)`` expires."""
        try:
            return await self.kv.ttl(self._code_key(subject, purpose))
        except StoreUnavailableError:
            return None

    async def discard(self, subject: str, purpose: OtpPurpose) -> None:
        await self.kv.delete(self._code_key(subject, purpose))

    @staticmethod
    def _codes_match(stored: str, presented: str) -> bool:
        presented = (presented or "").strip()
        if len(presented) != OTP_DIGITS:
            return False
        return hmac.compare_digest(stored.zfill(OTP_DIGITS).encode(), presented.encode())

    # -- attempt locking ------------------------------------------------------

    async def _locked_for(self, subject: str, kind: str) -> int:
        return await self.kv.ttl(self._lock_key(subject, kind)) or 0

    async def _record_failure(self, subject: str, kind: str) -> int:
        """Count a failed attempt; return the lock duration if this failure triggered one."""
        attempts_key = self._attempts_key(subject, kind)
        attempts = await self.kv.increment_with_ttl(attempts_key, VERIFY_LOCK_SECONDS)
        if attempts < self.max_verify_attempts:
            logger.info(
                "otp_verification_failed",
                subject=subject,
                purpose=kind,
                attempts=attempts,
            )
            return 0
        await self.kv.set_with_ttl(self._lock_key(subject, kind), "1", VERIFY_LOCK_SECONDS)
        await self.kv.delete(attempts_key)
        logger.warning("otp_verification_locked", subject=subject, purpose=kind)
        return VERIFY_LOCK_SECONDS

    async def _reset(self, subject: str, kind: str) -> None:
        await self.kv.delete(self._attempts_key(subject, kind))

    @staticmethod
    def _locked_failure(wait_seconds: int) -> AuthFailure:
        return AuthFailure.of(
            AuthErrorCode.RATE_LIMITED,
            "too many failed attempts; try again later",
            wait_seconds=wait_seconds,
        )

    async def check_attempt_lock(self, subject: str, kind: str) -> Optional[AuthFailure]:
        """Return a RATE_LIMITED failure while ``(subject, kind)`` is locked, else None.

        Store outages count as locked.
        """
        try:
            locked = await self._locked_for(subject, kind)
        except StoreUnavailableError:
            return AuthFailure.of(AuthErrorCode.SERVICE_UNAVAILABLE)
        return self._locked_failure(locked) if locked else None

    async def record_failed_attempt(self, subject: str, kind: str) -> Optional[AuthFailure]:
        """Count a failed non-OTP verification (e.g. TOTP); return a failure once locked."""
        try:
            locked = await self._record_failure(subject, kind)
        except StoreUnavailableError:
            return AuthFailure.of(AuthErrorCode.SERVICE_UNAVAILABLE)
        return self._locked_failure(locked) if locked else None

    async def reset_attempts(self, subject: str, kind: str) -> None:
        try:
            await self._reset(subject, kind)
        except StoreUnavailableError:
            logger.error("otp_attempt_reset_failed", subject=subject, purpose=kind)

    async def claim_totp_code(self, subject: str, code: str) -> bool:
        """Mark a TOTP code as used; False if it was already accepted inside the replay window."""
        key = f"totp_used:{subject}:{code.strip()}"
        try:
            return await self.kv.increment_with_ttl(key, TOTP_REPLAY_SECONDS) == 1
        except StoreUnavailableError:
            return False

    # -- verification windows -------------------------------------------------

    async def issue_verification_token(
        self,
        subject: str,
        scope: VerificationScope,
        ttl_seconds: int = VERIFICATION_WINDOW_SECONDS,
    ) -> Union[VerificationWindow, AuthFailure]:
        token = self.generate_token()
        try:
            await self.kv.set_with_ttl(self._window_key(subject, scope), token, ttl_seconds)
        except StoreUnavailableError:
            logger.error("verification_window_store_unavailable", subject=subject)
            return AuthFailure.of(AuthErrorCode.SERVICE_UNAVAILABLE)
        return VerificationWindow(
            token=token,
            expires_at=self.clock.now() + timedelta(seconds=ttl_seconds),
        )

    async def check_verification_token(
        self, subject: str, scope: VerificationScope, token: str
    ) -> bool:
        """Check a verification token without consuming it."""
        if not token:
            return False
        try:
            stored = await self.kv.get(self._window_key(subject, scope))
        except StoreUnavailableError:
            return False
        return stored is not None and hmac.compare_digest(stored.encode(), token.encode())

    async def consume_verification_token(
        self, subject: str, scope: VerificationScope, token: str
    ) -> bool:
        """Atomically take the verification token; True only for the one caller that matches."""
        if not token:
            return False
        try:
            stored = await self.kv.get_and_delete(self._window_key(subject, scope))
        except StoreUnavailableError:
            return False
        return stored is not None and hmac.compare_digest(stored.encode(), token.encode())

    async def window_open(self, subject: str, scope: VerificationScope) -> bool:
        """True while a verification window of ``scope`` exists for ``subject``."""
        try:
            return await self.kv.get(self._window_key(subject, scope)) is not None
        except StoreUnavailableError:
            return False

    async def clear_verification_token(self, subject: str, scope: VerificationScope) -> None:
        try:
            await self.kv.delete(self._window_key(subject, scope))
        except StoreUnavailableError:
            logger.error("verification_window_clear_failed", subject=subject)

    # -- cleanup --------------------------------------------------------------

    async def sweep_expired(self) -> int:
        return await self.kv.sweep_expired()

    async def run_cleanup(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Sweep expired entries every ``interval_seconds`` until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                removed = await self.sweep_expired()
            except StoreUnavailableError:
                logger.error("otp_cleanup_failed")
                continue
            if removed:
                logger.info("otp_cleanup_completed", removed=removed)
