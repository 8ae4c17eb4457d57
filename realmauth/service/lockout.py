"""Login lockout transitions.

Failed logins escalate ``Clear -> Warning -> TempBanned -> PermanentBanned``.
The functions here are pure: they take the current ``LoginLockout`` and the
time of the attempt and return a new record, leaving persistence to the
caller.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from realmauth.config import Settings
from realmauth.storage.models import LoginLockout


@dataclass(frozen=True)
class LockoutPolicy:
    ban_threshold: int = 4
    base_ban_minutes: int = 30
    ban_step_minutes: int = 30
    permanent_threshold: int = 9

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            ban_threshold=settings.lockout_ban_threshold,
            base_ban_minutes=settings.lockout_base_ban_minutes,
            ban_step_minutes=settings.lockout_ban_step_minutes,
            permanent_threshold=settings.lockout_permanent_threshold,
        )

    def ban_minutes(self, failed_attempts: int) -> Optional[int]:
        """Temporary ban length for a failure count, None below the threshold."""

        if failed_attempts < self.ban_threshold or failed_attempts >= self.permanent_threshold:
            return None
        return self.base_ban_minutes + self.ban_step_minutes * (
            failed_attempts - self.ban_threshold
        )


@dataclass(frozen=True)
class BanStatus:
    banned: bool
    permanent: bool = False
    unban_at: Optional[datetime] = None
    remaining_seconds: int = 0

    def describe(self) -> str:
        if self.permanent:
            return "Account is permanently banned"
        minutes, seconds = divmod(self.remaining_seconds, 60)
        return f"Account is temporarily banned for {minutes} minutes and {seconds} seconds"


def ban_status(lockout: Optional[LoginLockout], now: datetime) -> BanStatus:
    """Whether a login attempt at ``now`` is blocked. Expired temp bans are not."""

    if lockout is None:
        return BanStatus(banned=False)
    if lockout.permanent_banned:
        return BanStatus(banned=True, permanent=True)
    if lockout.temp_banned and lockout.unban_at is not None and now < lockout.unban_at:
        remaining = math.ceil((lockout.unban_at - now).total_seconds())
        return BanStatus(banned=True, unban_at=lockout.unban_at, remaining_seconds=remaining)
    return BanStatus(banned=False)


def register_failure(
    lockout: Optional[LoginLockout], now: datetime, policy: LockoutPolicy
) -> LoginLockout:
    attempts = (lockout.failed_attempts if lockout else 0) + 1
    if attempts >= policy.permanent_threshold:
        return LoginLockout(
            failed_attempts=attempts, temp_banned=True, permanent_banned=True, unban_at=None
        )
    minutes = policy.ban_minutes(attempts)
    if minutes is None:
        return LoginLockout(failed_attempts=attempts)
    return LoginLockout(
        failed_attempts=attempts,
        temp_banned=True,
        unban_at=now + timedelta(minutes=minutes),
    )


def register_success() -> LoginLockout:
    return LoginLockout()


def lift_ban(lockout: LoginLockout) -> LoginLockout:
    """Clear an expired temporary ban, keeping the failure count for escalation."""

    return LoginLockout(failed_attempts=lockout.failed_attempts)


def remaining_attempts(lockout: LoginLockout, policy: LockoutPolicy) -> int:
    return max(policy.ban_threshold - lockout.failed_attempts, 0)


__all__ = [
    "BanStatus",
    "LockoutPolicy",
    "ban_status",
    "lift_ban",
    "register_failure",
    "register_success",
    "remaining_attempts",
]
