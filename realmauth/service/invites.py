from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from realmauth.config import Settings
from realmauth.logging import get_logger
from realmauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from realmauth.service.passwords import normalize_email
from realmauth.service.results import service_operation
from realmauth.service.tokens import TokenEncoding, generate, tokens_match
from realmauth.storage.common import CredentialStore
from realmauth.storage.errors import ConstraintViolation
from realmauth.storage.models import InviteCode, Redemption, utcnow

MAX_REDEEM_ATTEMPTS = 5


def normalize_purpose(purpose: Optional[str]) -> str:
    """Purpose tag: whitespace removed and upper-cased."""
    return "".join((purpose or "").split()).upper()


def _invite_payload(invite: InviteCode) -> dict:
    return {
        "code": invite.code,
        "purpose": invite.purpose,
        "multi_use": invite.multi_use,
        "max_uses": invite.max_uses,
        "times_used": invite.times_used,
        "redeemed": invite.redeemed,
        "exhausted": invite.exhausted,
        "expires_at": invite.expires_at.isoformat(),
        "created_at": invite.created_at.isoformat(),
    }


class InviteCodeService:
    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = get_logger(__name__)

    def _check_admin(self, admin_secret: Optional[str]) -> None:
        if not self.settings.admin_secret:
            self.logger.warning("invite_generation_disabled")
            raise AuthenticationError("Invite generation is disabled")
        if not tokens_match(self.settings.admin_secret, admin_secret):
            self.logger.warning("invite_generation_unauthorized")
            raise AuthenticationError("Admin secret is incorrect")

    @service_operation
    async def generate(
        self,
        admin_secret: str,
        count: int,
        purpose: str,
        multi_use: bool = False,
        max_uses: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ):
        self._check_admin(admin_secret)
        if count <= 0 or count > self.settings.invite_max_batch:
            raise ValidationError(
                f"count must be between 1 and {self.settings.invite_max_batch}",
                detail={"field": "count"},
            )
        tag = normalize_purpose(purpose)
        if not tag:
            raise ValidationError("purpose is required", detail={"field": "purpose"})
        if max_uses is not None and max_uses <= 0:
            raise ValidationError("max_uses must be positive", detail={"field": "max_uses"})
        uses = (max_uses or 1) if multi_use else 1

        now = self._clock()
        if expires_at is None:
            expires_at = now + timedelta(days=self.settings.invite_default_ttl_days)
        else:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= now:
                raise ValidationError(
                    "expires_at must be in the future", detail={"field": "expires_at"}
                )

        codes = [
            InviteCode(
                code=f"{tag}-{generate(self.settings.invite_code_bytes, TokenEncoding.HEX)}",
                purpose=tag,
                expires_at=expires_at,
                multi_use=multi_use,
                max_uses=uses,
                created_at=now,
            )
            for _ in range(count)
        ]
        self.store.create_invite_codes(codes)
        self.logger.info(
            "invite_codes_generated", purpose=tag, count=count, multi_use=multi_use, max_uses=uses
        )
        return (
            {
                "codes": [c.code for c in codes],
                "purpose": tag,
                "multi_use": multi_use,
                "max_uses": uses,
                "expires_at": expires_at.isoformat(),
            },
            f"Generated {count} invite codes",
        )

    @service_operation
    async def redeem(self, code: str, email: str, unique_hash: str):
        if not unique_hash:
            raise ValidationError("unique_hash is required", detail={"field": "unique_hash"})
        code = (code or "").strip()
        for attempt in range(MAX_REDEEM_ATTEMPTS):
            invite = self.store.get_invite_code(code)
            if invite is None:
                raise NotFoundError("Invite code not found")
            now = self._clock()
            if now > invite.expires_at:
                raise ExpiredError("Invite code has expired")
            if not invite.multi_use and invite.redeemed:
                raise ConflictError(
                    "Invite code has already been redeemed", detail={"reason": "already_redeemed"}
                )
            if invite.multi_use and invite.times_used >= invite.max_uses:
                raise ConflictError(
                    "Invite code has reached its maximum uses", detail={"reason": "exhausted"}
                )
            account = self.store.get_account_by_email(normalize_email(email))
            if account is None:
                raise NotFoundError("Account not found")
            if self.store.has_redeemed_purpose(account.id, invite.purpose):
                raise ConflictError(
                    "Account already redeemed an invite code for this purpose",
                    detail={"reason": "purpose_already_redeemed"},
                )
            if not tokens_match(account.unique_hash, unique_hash):
                raise AuthenticationError("Unique hash is incorrect")
            try:
                updated = self.store.record_redemption(
                    invite.code,
                    invite.times_used,
                    Redemption(redeemed_by=account.id, redeemed_at=now),
                )
            except ConstraintViolation as exc:
                raise ConflictError(
                    "Account already redeemed an invite code for this purpose",
                    detail={"reason": "purpose_already_redeemed"},
                ) from exc
            if updated is not None:
                self.logger.info(
                    "invite_code_redeemed",
                    account_id=account.id,
                    purpose=updated.purpose,
                    times_used=updated.times_used,
                )
                return (
                    {"purpose": updated.purpose, "times_used": updated.times_used},
                    "Invite code redeemed",
                )
            self.logger.info("invite_redeem_conflict", attempt=attempt + 1)
        raise ConflictError("Invite code was redeemed concurrently, try again")

    @service_operation
    async def get(self, code: str):
        invite = self.store.get_invite_code((code or "").strip())
        if invite is None:
            raise NotFoundError("Invite code not found")
        return _invite_payload(invite)


__all__ = ["InviteCodeService", "MAX_REDEEM_ATTEMPTS", "normalize_purpose"]
