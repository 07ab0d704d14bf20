from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from gatekeep.storage.models import Role


@dataclass(frozen=True)
class SessionTimeouts:
    idle_seconds: int
    absolute_seconds: int


DEFAULT_TIMEOUTS: Mapping[Role, SessionTimeouts] = {
    Role.STANDARD: SessionTimeouts(idle_seconds=30 * 60, absolute_seconds=9 * 24 * 3600),
    Role.SUB_ADMIN: SessionTimeouts(idle_seconds=30 * 60, absolute_seconds=3 * 24 * 3600),
    Role.SUPER_ADMIN: SessionTimeouts(idle_seconds=15 * 60, absolute_seconds=12 * 3600),
}


class SessionPolicy:
    """Maps roles to idle/absolute session lifetimes.

    The idle timeout bounds the access token; the absolute timeout bounds how
    long refresh may keep a session alive after the last full login.
    """

    def __init__(self, timeouts: Optional[Mapping[Role, SessionTimeouts]] = None) -> None:
        self._timeouts = dict(timeouts or DEFAULT_TIMEOUTS)
        if Role.STANDARD not in self._timeouts:
            raise ValueError("session timeouts must define the standard role")

    def timeouts_for(self, role: Role | str | None) -> SessionTimeouts:
        return self._timeouts.get(Role.parse(role), self._timeouts[Role.STANDARD])

    def absolute_deadline(
        self, role: Role | str | None, last_login_at: Optional[datetime]
    ) -> Optional[datetime]:
        if last_login_at is None:
            return None
        return last_login_at + timedelta(seconds=self.timeouts_for(role).absolute_seconds)

    def absolute_timeout_exceeded(
        self, role: Role | str | None, last_login_at: Optional[datetime], now: datetime
    ) -> bool:
        # No recorded login means no session to extend
        deadline = self.absolute_deadline(role, last_login_at)
        return deadline is None or now > deadline
