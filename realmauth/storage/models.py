from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationState(str, Enum):
    """Where an account sits in the email verification workflow."""

    VERIFIED = "verified"
    # Unverified with a token issued at registration
    PENDING = "pending"
    # Unverified and no token: created before verification tokens existed
    LEGACY_UNVERIFIED = "legacy_unverified"


@dataclass
class PendingToken:
    token: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class LoginLockout:
    failed_attempts: int = 0
    temp_banned: bool = False
    permanent_banned: bool = False
    unban_at: Optional[datetime] = None


@dataclass
class EmailChangeRequest:
    previous_email: Optional[str] = None
    pending_email: Optional[str] = None
    change_token: Optional[PendingToken] = None
    last_change_at: Optional[datetime] = None


@dataclass
class Account:
    id: str
    email: Optional[str] = None
    wallet_address: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    unique_hash: Optional[str] = None
    verified: bool = False
    verification: Optional[PendingToken] = None
    lockout: Optional[LoginLockout] = None
    email_change: Optional[EmailChangeRequest] = None
    password_reset: Optional[PendingToken] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @classmethod
    def new(
        cls,
        *,
        email: Optional[str] = None,
        wallet_address: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        unique_hash: Optional[str] = None,
        verification: Optional[PendingToken] = None,
    ) -> "Account":
        if not email and not wallet_address:
            raise ValueError("an account needs an email or a wallet address")
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            wallet_address=wallet_address,
            password_hash=password_hash,
            password_algo=password_algo,
            unique_hash=unique_hash,
            verification=verification,
        )

    @property
    def verification_state(self) -> VerificationState:
        if self.verified:
            return VerificationState.VERIFIED
        if self.verification is not None:
            return VerificationState.PENDING
        return VerificationState.LEGACY_UNVERIFIED


@dataclass
class Redemption:
    redeemed_by: str
    redeemed_at: datetime


@dataclass
class InviteCode:
    code: str
    purpose: str
    expires_at: datetime
    multi_use: bool = False
    max_uses: int = 1
    times_used: int = 0
    redemptions: List[Redemption] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def redeemed(self) -> bool:
        return bool(self.redemptions)

    @property
    def exhausted(self) -> bool:
        if not self.multi_use:
            return self.redeemed
        return self.times_used >= self.max_uses
