from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""


class RandomSource(Protocol):
    def randbelow(self, upper: int) -> int:
        """Return a uniformly distributed integer in ``[0, upper)``."""

    def token_bytes(self, nbytes: int) -> bytes:
        """Return ``nbytes`` cryptographically secure random bytes."""


class SecretStore(Protocol):
    def resolve_secret(self, name: str) -> str:
        """Return the named secret, raising ConfigurationError if it is unusable."""


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemRandomSource:
    """CSPRNG-backed randomness from the ``secrets`` module."""

    def randbelow(self, upper: int) -> int:
        return secrets.randbelow(upper)

    def token_bytes(self, nbytes: int) -> bytes:
        return secrets.token_bytes(nbytes)
