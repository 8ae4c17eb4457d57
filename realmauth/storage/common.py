"""Storage contract and record serialization shared by the memory and postgres backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from realmauth.storage.models import (
    Account,
    EmailChangeRequest,
    InviteCode,
    LoginLockout,
    PendingToken,
    Redemption,
)


class CredentialStore(Protocol):
    """Persistence contract for accounts and invite codes.

    Writes that depend on earlier reads are conditional: ``update_account`` and
    ``delete_account`` only apply when the stored version still matches, and
    ``record_redemption`` only applies when ``times_used`` still matches.
    """

    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_wallet(self, wallet_address: str) -> Optional[Account]: ...

    def get_account_by_reset_token(self, token: str) -> Optional[Account]: ...

    def update_account(
        self, account: Account, expected_version: int
    ) -> Optional[Account]: ...

    def delete_account(self, account_id: str, expected_version: int) -> bool: ...

    def list_expired_verifications(self, now: datetime) -> List[Account]: ...

    def list_expired_bans(self, now: datetime) -> List[Account]: ...

    def create_invite_codes(self, codes: Sequence[InviteCode]) -> None: ...

    def get_invite_code(self, code: str) -> Optional[InviteCode]: ...

    def record_redemption(
        self, code: str, expected_times_used: int, redemption: Redemption
    ) -> Optional[InviteCode]: ...

    def has_redeemed_purpose(self, account_id: str, purpose: str) -> bool: ...


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def _token_to_dict(token: Optional[PendingToken]) -> Optional[Dict[str, Any]]:
    if token is None:
        return None
    return {"token": token.token, "expires_at": _dt(token.expires_at)}


def _token_from_dict(data: Optional[Dict[str, Any]]) -> Optional[PendingToken]:
    if not data:
        return None
    return PendingToken(token=data["token"], expires_at=_parse_dt(data["expires_at"]))


def lockout_to_dict(lockout: Optional[LoginLockout]) -> Optional[Dict[str, Any]]:
    if lockout is None:
        return None
    return {
        "failed_attempts": lockout.failed_attempts,
        "temp_banned": lockout.temp_banned,
        "permanent_banned": lockout.permanent_banned,
        "unban_at": _dt(lockout.unban_at),
    }


def lockout_from_dict(data: Optional[Dict[str, Any]]) -> Optional[LoginLockout]:
    if not data:
        return None
    return LoginLockout(
        failed_attempts=int(data.get("failed_attempts", 0)),
        temp_banned=bool(data.get("temp_banned", False)),
        permanent_banned=bool(data.get("permanent_banned", False)),
        unban_at=_parse_dt(data.get("unban_at")),
    )


def email_change_to_dict(change: Optional[EmailChangeRequest]) -> Optional[Dict[str, Any]]:
    if change is None:
        return None
    return {
        "previous_email": change.previous_email,
        "pending_email": change.pending_email,
        "change_token": _token_to_dict(change.change_token),
        "last_change_at": _dt(change.last_change_at),
    }


def email_change_from_dict(data: Optional[Dict[str, Any]]) -> Optional[EmailChangeRequest]:
    if not data:
        return None
    return EmailChangeRequest(
        previous_email=data.get("previous_email"),
        pending_email=data.get("pending_email"),
        change_token=_token_from_dict(data.get("change_token")),
        last_change_at=_parse_dt(data.get("last_change_at")),
    )


def account_to_dict(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email,
        "wallet_address": account.wallet_address,
        "password_hash": account.password_hash,
        "password_algo": account.password_algo,
        "unique_hash": account.unique_hash,
        "verified": account.verified,
        "verification": _token_to_dict(account.verification),
        "lockout": lockout_to_dict(account.lockout),
        "email_change": email_change_to_dict(account.email_change),
        "password_reset": _token_to_dict(account.password_reset),
        "created_at": _dt(account.created_at),
        "updated_at": _dt(account.updated_at),
        "version": account.version,
    }


def account_from_dict(data: Dict[str, Any]) -> Account:
    return Account(
        id=data["id"],
        email=data.get("email"),
        wallet_address=data.get("wallet_address"),
        password_hash=data.get("password_hash"),
        password_algo=data.get("password_algo"),
        unique_hash=data.get("unique_hash"),
        verified=bool(data.get("verified", False)),
        verification=_token_from_dict(data.get("verification")),
        lockout=lockout_from_dict(data.get("lockout")),
        email_change=email_change_from_dict(data.get("email_change")),
        password_reset=_token_from_dict(data.get("password_reset")),
        created_at=_parse_dt(data.get("created_at")),
        updated_at=_parse_dt(data.get("updated_at")),
        version=int(data.get("version", 0)),
    )


def invite_to_dict(invite: InviteCode) -> Dict[str, Any]:
    return {
        "code": invite.code,
        "purpose": invite.purpose,
        "expires_at": _dt(invite.expires_at),
        "multi_use": invite.multi_use,
        "max_uses": invite.max_uses,
        "times_used": invite.times_used,
        "redemptions": [
            {"redeemed_by": r.redeemed_by, "redeemed_at": _dt(r.redeemed_at)}
            for r in invite.redemptions
        ],
        "created_at": _dt(invite.created_at),
    }


def invite_from_dict(data: Dict[str, Any]) -> InviteCode:
    return InviteCode(
        code=data["code"],
        purpose=data["purpose"],
        expires_at=_parse_dt(data["expires_at"]),
        multi_use=bool(data.get("multi_use", False)),
        max_uses=int(data.get("max_uses", 1)),
        times_used=int(data.get("times_used", 0)),
        redemptions=[
            Redemption(
                redeemed_by=r["redeemed_by"], redeemed_at=_parse_dt(r["redeemed_at"])
            )
            for r in data.get("redemptions", [])
        ],
        created_at=_parse_dt(data.get("created_at")),
    )
