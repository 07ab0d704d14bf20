from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from gatekeep.config import ConfigurationError, Settings
from gatekeep.logging import get_logger
from gatekeep.service.credentials import AccountStore, CredentialStore
from gatekeep.service.errors import AuthErrorCode, AuthFailure
from gatekeep.service.primitives import Clock, RandomSource, SecretStore
from gatekeep.service.session_policy import SessionPolicy
from gatekeep.storage.models import Account, Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """Issues, verifies and rotates HS256 access/refresh token pairs.

    Access and refresh tokens are signed with different secrets. Only an
    argon2 hash of the most recently issued refresh token is stored, so a
    rotated-out token can never be replayed.
    """

    def __init__(
        self,
        settings: Settings,
        store: AccountStore,
        credentials: CredentialStore,
        policy: SessionPolicy,
        *,
        clock: Clock,
        random_source: RandomSource,
        secret_store: Optional[SecretStore] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self.policy = policy
        self.clock = clock
        self.random = random_source
        secret_store = secret_store or settings
        self._access_secret = secret_store.resolve_secret("jwt_secret").encode()
        self._refresh_secret = secret_store.resolve_secret("jwt_refresh_secret").encode()
        if settings.is_production and hmac.compare_digest(
            self._access_secret, self._refresh_secret
        ):
            raise ConfigurationError("JWT_SECRET and JWT_REFRESH_SECRET must differ")

    def issue(self, account_id: str, email: str, role: Role | str) -> TokenPair:
        now = self.clock.now()
        timeouts = self.policy.timeouts_for(role)
        access_exp = now + timedelta(seconds=timeouts.idle_seconds)
        refresh_exp = now + timedelta(seconds=timeouts.absolute_seconds)
        role_value = Role.parse(role).value
        access = self._encode_jwt(
            self._claims(account_id, email, role_value, ACCESS, now, access_exp),
            self._access_secret,
        )
        refresh = self._encode_jwt(
            self._claims(account_id, email, role_value, REFRESH, now, refresh_exp),
            self._refresh_secret,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    async def issue_for(self, account: Account) -> TokenPair:
        """Issue a pair for ``account`` and persist the hash of its refresh token."""
        pair = self.issue(account.id, account.email, account.role)
        digest = await self.credentials.hash_async(pair.refresh_token)
        self.store.set_refresh_token_hash(account.id, digest)
        return pair

    async def rotate(self, account_id: str, presented: str) -> Union[TokenPair, AuthFailure]:
        """Exchange a valid refresh token for a new pair, invalidating the old one.

        Every failure reason yields the same ``INVALID_OR_EXPIRED_TOKEN``.
        """
        failure = AuthFailure.of(AuthErrorCode.INVALID_OR_EXPIRED_TOKEN)
        claims = self.decode_refresh_token(presented)
        if claims is None or claims.get("sub") != account_id:
            return failure
        account = self.store.get_account(account_id)
        if account is None or not account.is_active or not account.refresh_token_hash:
            return failure
        if self.policy.absolute_timeout_exceeded(
            account.role, account.last_login_at, self.clock.now()
        ):
            logger.info("refresh_absolute_timeout", account_id=account_id)
            return failure
        expected = account.refresh_token_hash
        if not await self.credentials.verify_hash_async(expected, presented):
            logger.warning("refresh_token_mismatch", account_id=account_id)
            return failure
        pair = self.issue(account.id, account.email, account.role)
        new_hash = await self.credentials.hash_async(pair.refresh_token)
        if not self.store.swap_refresh_token_hash(account.id, expected, new_hash):
            # A concurrent refresh already consumed this token
            logger.warning("refresh_rotation_conflict", account_id=account_id)
            return failure
        return pair

    def revoke(self, account_id: str) -> None:
        self.store.set_refresh_token_hash(account_id, None)

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token, self._access_secret, ACCESS)

    def decode_refresh_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token, self._refresh_secret, REFRESH)

    def _claims(
        self,
        account_id: str,
        email: str,
        role: str,
        token_type: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> dict[str, Any]:
        return {
            "sub": account_id,
            "email": email,
            "role": role,
            "token_type": token_type,
            "jti": self.random.token_bytes(16).hex(),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(
        self, token: str, secret: bytes, token_type: str
    ) -> Optional[dict[str, Any]]:
        if not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            return None
        if exp <= self.clock.now().timestamp():
            return None
        return payload
