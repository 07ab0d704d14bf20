from __future__ import annotations

import base64
import hashlib
import io
from enum import Enum
from typing import List, Optional

import pyotp
import qrcode
import qrcode.image.svg
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.primitives import Clock, RandomSource, SecretStore
from gatekeep.storage.models import Account, Role

logger = get_logger(__name__)

RECOVERY_CODE_COUNT = 8
_NONCE_BYTES = 12
_TAG_BYTES = 16
_MANDATORY_ROLES = frozenset({Role.SUB_ADMIN, Role.SUPER_ADMIN})


class TwoFactorState(str, Enum):
    DISABLED = "disabled"
    PENDING_VERIFICATION = "pending_verification"
    ENABLED = "enabled"


class TwoFactorSecretError(Exception):
    """Raised when a stored TOTP secret cannot be decrypted."""


class TwoFactorService:
    """TOTP secrets, enrollment payloads, code checks and secret encryption.

    Secrets are stored encrypted with AES-256-GCM as ``nonce:tag:ciphertext``
    in hex. Codes are 6 digits on a 30 second step, accepted one step either
    side of the current one.
    """

    VALID_WINDOW = 1

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock,
        random_source: RandomSource,
        secret_store: Optional[SecretStore] = None,
    ) -> None:
        self.issuer = settings.totp_issuer
        self.clock = clock
        self.random = random_source
        key_material = (secret_store or settings).resolve_secret("two_factor_encryption_key")
        self._cipher = AESGCM(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return hashlib.sha256(key_material.encode()).digest()

    def generate_secret(self) -> str:
        # 160-bit secret, base32 without padding
        return base64.b32encode(self.random.token_bytes(20)).decode().rstrip("=")

    def provisioning_uri(self, email: str, secret: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=self.issuer)

    def enrollment_payload(self, email: str, secret: str) -> str:
        """Render the provisioning URI as an SVG QR code data URL."""
        qr = qrcode.QRCode(
            version=None,
            box_size=10,
            border=4,
            image_factory=qrcode.image.svg.SvgPathImage,
        )
        qr.add_data(self.provisioning_uri(email, secret))
        qr.make(fit=True)
        buf = io.BytesIO()
        qr.make_image().save(buf)
        data = base64.b64encode(buf.getvalue()).decode()
        return f"data:image/svg+xml;base64,{data}"

    def verify(self, secret: str, code: str) -> bool:
        if not secret or not code:
            return False
        normalized = str(code).replace(" ", "").strip()
        if len(normalized) != 6 or not normalized.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(
                normalized, for_time=self.clock.now(), valid_window=self.VALID_WINDOW
            )
        except (ValueError, TypeError) as exc:
            # Malformed base32 secret
            logger.warning("totp_secret_invalid", error=str(exc))
            return False

    def encrypt_secret(self, secret: str) -> str:
        nonce = self.random.token_bytes(_NONCE_BYTES)
        sealed = self._cipher.encrypt(nonce, secret.encode(), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt_secret(self, stored: str) -> str:
        try:
            nonce_hex, tag_hex, ciphertext_hex = stored.split(":")
            nonce = bytes.fromhex(nonce_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except (AttributeError, ValueError) as exc:
            raise TwoFactorSecretError("malformed encrypted secret") from exc
        if len(nonce) != _NONCE_BYTES or len(tag) != _TAG_BYTES:
            raise TwoFactorSecretError("malformed encrypted secret")
        try:
            return self._cipher.decrypt(nonce, ciphertext + tag, None).decode()
        except InvalidTag as exc:
            raise TwoFactorSecretError("secret failed authentication") from exc

    def verify_stored(self, stored_secret: str | None, code: str) -> bool:
        """Verify ``code`` against an encrypted secret, failing closed on decrypt errors."""
        if not stored_secret:
            return False
        try:
            secret = self.decrypt_secret(stored_secret)
        except TwoFactorSecretError as exc:
            logger.error("totp_secret_decrypt_failed", error=str(exc))
            return False
        return self.verify(secret, code)

    def generate_recovery_codes(self, count: int = RECOVERY_CODE_COUNT) -> List[str]:
        codes = []
        for _ in range(count):
            raw = self.random.token_bytes(4).hex().upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    @staticmethod
    def is_mandatory(role: Role | str | None) -> bool:
        return Role.parse(role) in _MANDATORY_ROLES

    @staticmethod
    def state_of(account: Account) -> TwoFactorState:
        if account.two_factor_enabled:
            return TwoFactorState.ENABLED
        if account.two_factor_secret:
            return TwoFactorState.PENDING_VERIFICATION
        return TwoFactorState.DISABLED
