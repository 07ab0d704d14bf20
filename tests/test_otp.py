"""Tests for one-time codes, request limits, verification locks and windows."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import wrong_code
from gatekeep.service.errors import AuthErrorCode, AuthFailure
from gatekeep.service.otp import (
    OTP_TTL_SECONDS,
    REQUEST_WINDOW_SECONDS,
    TOTP_REPLAY_SECONDS,
    VERIFICATION_WINDOW_SECONDS,
    VERIFY_LOCK_SECONDS,
    OtpService,
    VerificationScope,
)
from gatekeep.service.outcomes import IssuedOtp, Verified
from gatekeep.storage.errors import StoreUnavailableError
from gatekeep.storage.models import OtpPurpose

SUBJECT = "account-1"


class UnavailableKV:
    """KV store whose backend is always down."""

    async def _fail(self, *args, **kwargs):
        raise StoreUnavailableError("down")

    get = set_with_ttl = get_and_delete = increment_with_ttl = ttl = delete = sweep_expired = _fail

    async def close(self):
        return None


class ScriptedRandom:
    def __init__(self, value):
        self.value = value

    def randbelow(self, upper):
        return self.value

    def token_bytes(self, nbytes):
        return b"\x01" * nbytes


@pytest.fixture
def otp(runtime):
    return runtime.otp


class TestIssueAndVerify:
    async def test_code_verifies_once(self, otp):
        issued = await otp.issue(SUBJECT, OtpPurpose.LOGIN)
        assert isinstance(issued, IssuedOtp)
        assert len(issued.code) == 6 and issued.code.isdigit()

        assert await otp.verify(SUBJECT, OtpPurpose.LOGIN, issued.code) == Verified()
        second = await otp.verify(SUBJECT, OtpPurpose.LOGIN, issued.code)
        assert second.code == AuthErrorCode.INVALID_OR_EXPIRED_OTP

    async def test_wrong_guess_burns_the_code(self, otp):
        issued = await otp.issue(SUBJECT, OtpPurpose.LOGIN)

        first = await otp.verify(SUBJECT, OtpPurpose.LOGIN, wrong_code(issued.code))
        assert first.code == AuthErrorCode.INVALID_OR_EXPIRED_OTP
        after = await otp.verify(SUBJECT, OtpPurpose.LOGIN, issued.code)
        assert after.code == AuthErrorCode.INVALID_OR_EXPIRED_OTP

    async def test_code_expires(self, otp, clock):
        issued = await otp.issue(SUBJECT, OtpPurpose.LOGIN)
        assert await otp.remaining_seconds(SUBJECT, OtpPurpose.LOGIN) == OTP_TTL_SECONDS

        clock.advance(OTP_TTL_SECONDS)
        result = await otp.verify(SUBJECT, OtpPurpose.LOGIN, issued.code)
        assert result.code == AuthErrorCode.INVALID_OR_EXPIRED_OTP

    async def test_purposes_are_separate(self, otp):
        issued = await otp.issue(SUBJECT, OtpPurpose.PASSWORD_CHANGE)

        result = await otp.verify(SUBJECT, OtpPurpose.LOGIN, issued.code)
        assert isinstance(result, AuthFailure)

    async def test_reissue_replaces_previous_code(self, otp):
        first = await otp.issue(SUBJECT, OtpPurpose.LOGIN)
        second = await otp.issue(SUBJECT, OtpPurpose.LOGIN)

        if first.code != second.code:
            assert isinstance(await otp.verify(SUBJECT, OtpPurpose.LOGIN, first.code), AuthFailure)
        else:
            assert await otp.verify(SUBJECT, OtpPurpose.LOGIN, second.code) == Verified()

    async def test_discard_removes_code(self, otp):
        issued = await otp.issue(SUBJECT, OtpPurpose.LOGIN)
        await otp.discard(SUBJECT, OtpPurpose.LOGIN)

        assert isinstance(await otp.verify(SUBJECT, OtpPurpose.LOGIN, issued.code), AuthFailure)

    async def test_concurrent_verification_succeeds_once(self, otp):
        issued = await otp.issue(SUBJECT, OtpPurpose.LOGIN)

        results = await asyncio.gather(
            *(otp.verify(SUBJECT, OtpPurpose.LOGIN, issued.code) for _ in range(10))
        )

        assert sum(result == Verified() for result in results) == 1

    async def test_verification_window_purpose_cannot_be_issued_as_code(self, otp):
        with pytest.raises(ValueError):
            await otp.issue(SUBJECT, OtpPurpose.PASSWORD_VERIFIED)

    async def test_known_code_for_numeric_subject(self, kv, clock):
        service = OtpService(kv, clock=clock, random_source=ScriptedRandom(482913))

        issued = await service.issue("42", OtpPurpose.LOGIN)
        assert issued.code == "482913"
        assert await service.verify("42", OtpPurpose.LOGIN, "482913") == Verified()
        assert isinstance(await service.verify("42", OtpPurpose.LOGIN, "482913"), AuthFailure)

    def test_codes_are_zero_padded(self, kv, clock):
        service = OtpService(kv, clock=clock, random_source=ScriptedRandom(42))

        assert service.generate_code() == "000042"
        assert service.generate_token() == "01" * 32


class TestRequestLimit:
    async def test_sixth_request_in_window_is_refused(self, otp, clock):
        for _ in range(5):
            assert isinstance(await otp.issue(SUBJECT, OtpPurpose.LOGIN), IssuedOtp)

        clock.advance(600)
        refused = await otp.issue(SUBJECT, OtpPurpose.PASSWORD_CHANGE)
        assert refused.code == AuthErrorCode.RATE_LIMITED
        assert refused.wait_seconds == REQUEST_WINDOW_SECONDS - 600

    async def test_window_resets_after_an_hour(self, otp, clock):
        for _ in range(6):
            await otp.issue(SUBJECT, OtpPurpose.LOGIN)

        clock.advance(REQUEST_WINDOW_SECONDS)
        assert isinstance(await otp.issue(SUBJECT, OtpPurpose.LOGIN), IssuedOtp)

    async def test_limit_is_per_subject(self, otp):
        for _ in range(6):
            await otp.issue(SUBJECT, OtpPurpose.LOGIN)

        assert isinstance(await otp.issue("account-2", OtpPurpose.LOGIN), IssuedOtp)


class TestVerifyLock:
    async def test_fifth_failure_locks(self, otp, clock):
        issued = await otp.issue(SUBJECT, OtpPurpose.LOGIN)
        bad = wrong_code(issued.code)

        for _ in range(4):
            result = await otp.verify(SUBJECT, OtpPurpose.LOGIN, bad)
            assert result.code == AuthErrorCode.INVALID_OR_EXPIRED_OTP

        locked = await otp.verify(SUBJECT, OtpPurpose.LOGIN, bad)
        assert locked.code == AuthErrorCode.RATE_LIMITED
        assert locked.wait_seconds == VERIFY_LOCK_SECONDS

        # Even a correct fresh code is refused while locked
        fresh = await otp.issue(SUBJECT, OtpPurpose.LOGIN)
        refused = await otp.verify(SUBJECT, OtpPurpose.LOGIN, fresh.code)
        assert refused.code == AuthErrorCode.RATE_LIMITED

        clock.advance(VERIFY_LOCK_SECONDS)
        fresh = await otp.issue(SUBJECT, OtpPurpose.LOGIN)
        assert await otp.verify(SUBJECT, OtpPurpose.LOGIN, fresh.code) == Verified()

    async def test_success_resets_failure_count(self, otp):
        for _ in range(4):
            await otp.verify(SUBJECT, OtpPurpose.LOGIN, "000000")
        issued = await otp.issue(SUBJECT, OtpPurpose.LOGIN)
        assert await otp.verify(SUBJECT, OtpPurpose.LOGIN, issued.code) == Verified()

        result = await otp.verify(SUBJECT, OtpPurpose.LOGIN, "000000")
        assert result.code == AuthErrorCode.INVALID_OR_EXPIRED_OTP

    async def test_generic_attempt_lock(self, otp):
        for _ in range(4):
            assert await otp.record_failed_attempt(SUBJECT, "totp") is None
        locked = await otp.record_failed_attempt(SUBJECT, "totp")

        assert locked.code == AuthErrorCode.RATE_LIMITED
        assert (await otp.check_attempt_lock(SUBJECT, "totp")).wait_seconds == VERIFY_LOCK_SECONDS
        assert await otp.check_attempt_lock(SUBJECT, "login") is None

    async def test_lock_read_uses_remaining_lifetime_only(self, otp, monkeypatch):
        for _ in range(5):
            await otp.record_failed_attempt(SUBJECT, "totp")
        monkeypatch.setattr(otp.kv, "get", AsyncMock(side_effect=AssertionError("unexpected get")))

        locked = await otp.check_attempt_lock(SUBJECT, "totp")
        assert locked.wait_seconds == VERIFY_LOCK_SECONDS
        assert await otp.check_attempt_lock(SUBJECT, "login") is None


class TestTotpReplay:
    async def test_code_claimed_once_per_window(self, otp, clock):
        assert await otp.claim_totp_code(SUBJECT, "123456")
        assert not await otp.claim_totp_code(SUBJECT, "123456")
        assert await otp.claim_totp_code("account-2", "123456")

        clock.advance(TOTP_REPLAY_SECONDS)
        assert await otp.claim_totp_code(SUBJECT, "123456")


class TestVerificationWindow:
    async def test_token_consumed_once(self, otp):
        window = await otp.issue_verification_token(SUBJECT, VerificationScope.SENSITIVE_ACTION)
        scope = VerificationScope.SENSITIVE_ACTION

        assert await otp.check_verification_token(SUBJECT, scope, window.token)
        assert await otp.window_open(SUBJECT, scope)
        assert await otp.consume_verification_token(SUBJECT, scope, window.token)
        assert not await otp.consume_verification_token(SUBJECT, scope, window.token)
        assert not await otp.window_open(SUBJECT, scope)

    async def test_wrong_token_does_not_consume(self, otp):
        window = await otp.issue_verification_token(SUBJECT, VerificationScope.TWO_FACTOR_SETUP)
        scope = VerificationScope.TWO_FACTOR_SETUP

        assert not await otp.check_verification_token(SUBJECT, scope, "f" * 64)
        assert not await otp.check_verification_token(SUBJECT, scope, "")
        assert await otp.check_verification_token(SUBJECT, scope, window.token)

    async def test_scopes_are_separate(self, otp):
        window = await otp.issue_verification_token(SUBJECT, VerificationScope.LOGIN_CHALLENGE)

        assert not await otp.check_verification_token(
            SUBJECT, VerificationScope.SENSITIVE_ACTION, window.token
        )

    async def test_window_expires(self, otp, clock):
        window = await otp.issue_verification_token(SUBJECT, VerificationScope.SENSITIVE_ACTION)

        clock.advance(VERIFICATION_WINDOW_SECONDS)
        assert not await otp.consume_verification_token(
            SUBJECT, VerificationScope.SENSITIVE_ACTION, window.token
        )

    async def test_clear(self, otp):
        await otp.issue_verification_token(SUBJECT, VerificationScope.LOGIN_CHALLENGE)
        await otp.clear_verification_token(SUBJECT, VerificationScope.LOGIN_CHALLENGE)

        assert not await otp.window_open(SUBJECT, VerificationScope.LOGIN_CHALLENGE)


class TestStoreOutage:
    @pytest.fixture
    def down(self, clock, rng):
        return OtpService(UnavailableKV(), clock=clock, random_source=rng)

    async def test_issue_reports_unavailable(self, down):
        result = await down.issue(SUBJECT, OtpPurpose.LOGIN)
        assert result.code == AuthErrorCode.SERVICE_UNAVAILABLE

    async def test_verification_fails_closed(self, down):
        assert (await down.verify(SUBJECT, OtpPurpose.LOGIN, "123456")).code == (
            AuthErrorCode.INVALID_OR_EXPIRED_OTP
        )
        assert not await down.check_verification_token(SUBJECT, VerificationScope.SENSITIVE_ACTION, "t")
        assert not await down.consume_verification_token(SUBJECT, VerificationScope.SENSITIVE_ACTION, "t")
        assert not await down.claim_totp_code(SUBJECT, "123456")
        assert (await down.check_attempt_lock(SUBJECT, "totp")).code == AuthErrorCode.SERVICE_UNAVAILABLE

    async def test_window_issue_reports_unavailable(self, down):
        result = await down.issue_verification_token(SUBJECT, VerificationScope.SENSITIVE_ACTION)
        assert result.code == AuthErrorCode.SERVICE_UNAVAILABLE


class TestCleanup:
    async def test_cleanup_loop_sweeps_until_stopped(self, otp, kv, clock):
        await kv.set_with_ttl("otp:gone:login", "123456", 1)
        await kv.set_with_ttl("otp:kept:login", "654321", 600)
        clock.advance(5)
        stop = asyncio.Event()

        task = asyncio.create_task(otp.run_cleanup(0.01, stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert len(kv) == 1
