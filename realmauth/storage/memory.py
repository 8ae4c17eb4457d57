from __future__ import annotations

import copy
import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from realmauth.logging import get_logger
from realmauth.storage.common import (
    account_from_dict,
    account_to_dict,
    invite_from_dict,
    invite_to_dict,
)
from realmauth.storage.errors import ConstraintViolation
from realmauth.storage.models import Account, InviteCode, Redemption, utcnow


class MemoryStore:
    """In-memory credential store for tests and single-process deployments.

    Records are copied on the way in and out so callers never hold a live
    reference; every conditional write is checked under one lock. When
    ``fs_root`` is given the state is snapshotted to JSON after each write and
    reloaded on startup.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.invite_codes: Dict[str, InviteCode] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    # accounts
    def _find_account(self, predicate) -> Optional[Account]:
        return next((a for a in self.accounts.values() if predicate(a)), None)

    def _check_unique(self, account: Account) -> None:
        for existing in self.accounts.values():
            if existing.id == account.id:
                continue
            if account.email and existing.email == account.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if account.wallet_address and existing.wallet_address == account.wallet_address:
                raise ConstraintViolation(
                    "wallet already linked", {"field": "wallet_address"}
                )

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id in self.accounts:
                raise ConstraintViolation("account id already exists", {"field": "id"})
            self._check_unique(account)
            stored = copy.deepcopy(account)
            self.accounts[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return copy.deepcopy(self.accounts.get(account_id))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return copy.deepcopy(self._find_account(lambda a: a.email == email))

    def get_account_by_wallet(self, wallet_address: str) -> Optional[Account]:
        with self._data_lock:
            return copy.deepcopy(
                self._find_account(lambda a: a.wallet_address == wallet_address)
            )

    def get_account_by_reset_token(self, token: str) -> Optional[Account]:
        with self._data_lock:
            return copy.deepcopy(
                self._find_account(
                    lambda a: a.password_reset is not None and a.password_reset.token == token
                )
            )

    def update_account(self, account: Account, expected_version: int) -> Optional[Account]:
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None or current.version != expected_version:
                return None
            if not account.email and not account.wallet_address:
                raise ConstraintViolation(
                    "account needs an email or a wallet", {"field": "email"}
                )
            self._check_unique(account)
            stored = replace(
                copy.deepcopy(account),
                version=expected_version + 1,
                updated_at=utcnow(),
            )
            self.accounts[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def delete_account(self, account_id: str, expected_version: int) -> bool:
        with self._data_lock:
            current = self.accounts.get(account_id)
            if current is None or current.version != expected_version:
                return False
            self.accounts.pop(account_id, None)
            self._persist_state()
            return True

    def list_expired_verifications(self, now: datetime) -> List[Account]:
        with self._data_lock:
            return [
                copy.deepcopy(a)
                for a in self.accounts.values()
                if not a.verified
                and a.verification is not None
                and a.verification.expires_at < now
            ]

    def list_expired_bans(self, now: datetime) -> List[Account]:
        with self._data_lock:
            return [
                copy.deepcopy(a)
                for a in self.accounts.values()
                if a.lockout is not None
                and a.lockout.temp_banned
                and not a.lockout.permanent_banned
                and a.lockout.unban_at is not None
                and a.lockout.unban_at <= now
            ]

    # invite codes
    def create_invite_codes(self, codes: Sequence[InviteCode]) -> None:
        with self._data_lock:
            seen = set()
            for invite in codes:
                if invite.code in self.invite_codes or invite.code in seen:
                    raise ConstraintViolation(
                        "invite code already exists", {"field": "code"}
                    )
                seen.add(invite.code)
            for invite in codes:
                self.invite_codes[invite.code] = copy.deepcopy(invite)
            self._persist_state()

    def get_invite_code(self, code: str) -> Optional[InviteCode]:
        with self._data_lock:
            return copy.deepcopy(self.invite_codes.get(code))

    def _purpose_redeemed_by(self, account_id: str, purpose: str) -> bool:
        return any(
            r.redeemed_by == account_id
            for invite in self.invite_codes.values()
            if invite.purpose == purpose
            for r in invite.redemptions
        )

    def has_redeemed_purpose(self, account_id: str, purpose: str) -> bool:
        with self._data_lock:
            return self._purpose_redeemed_by(account_id, purpose)

    def record_redemption(
        self, code: str, expected_times_used: int, redemption: Redemption
    ) -> Optional[InviteCode]:
        with self._data_lock:
            invite = self.invite_codes.get(code)
            if invite is None or invite.times_used != expected_times_used:
                return None
            if invite.times_used >= invite.max_uses:
                return None
            if self._purpose_redeemed_by(redemption.redeemed_by, invite.purpose):
                raise ConstraintViolation(
                    "purpose already redeemed by account",
                    {"field": "purpose", "purpose": invite.purpose},
                )
            invite.redemptions.append(copy.deepcopy(redemption))
            invite.times_used += 1
            self._persist_state()
            return copy.deepcopy(invite)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [account_to_dict(a) for a in self.accounts.values()],
            "invite_codes": [invite_to_dict(i) for i in self.invite_codes.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: account_from_dict(a) for a in data.get("accounts", [])
        }
        self.invite_codes = {
            i["code"]: invite_from_dict(i) for i in data.get("invite_codes", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            invite_codes=len(self.invite_codes),
        )
        return True
