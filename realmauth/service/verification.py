from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Tuple

from realmauth.config import Settings
from realmauth.logging import get_logger
from realmauth.service.concurrency import apply_account_update
from realmauth.service.errors import (
    AlreadyVerifiedError,
    ConflictError,
    ExpiredError,
    InvalidTokenError,
)
from realmauth.service.passwords import normalize_email
from realmauth.service.tokens import TokenEncoding, generate, tokens_match
from realmauth.storage.common import CredentialStore
from realmauth.storage.models import Account, PendingToken


class VerificationWorkflow:
    """Issues and confirms email verification tokens."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        clock: Callable[[], datetime],
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.logger = get_logger(__name__)

    def new_token(self) -> PendingToken:
        return PendingToken(
            token=generate(self.settings.verification_token_bytes, TokenEncoding.HEX),
            expires_at=self._clock()
            + timedelta(hours=self.settings.verification_token_ttl_hours),
        )

    def issue_token(self, account_id: str) -> Tuple[Account, str]:
        """Store a fresh token on an unverified account and return it for delivery.

        An expired pending token is replaced; a live one is a conflict.
        """

        def mutate(account: Account) -> str:
            if account.verified:
                raise AlreadyVerifiedError("Account is already verified")
            pending = account.verification
            if pending is not None and not pending.is_expired(self._clock()):
                raise ConflictError(
                    "A verification email was already sent",
                    detail={"expires_at": pending.expires_at.isoformat()},
                )
            account.verification = self.new_token()
            return account.verification.token

        account, token = apply_account_update(
            self.store, lambda: self.store.get_account(account_id), mutate
        )
        self.logger.info("verification_token_issued", account_id=account.id)
        return account, token

    def confirm_token(self, email: str, token: str) -> Account:
        normalized = normalize_email(email)

        def mutate(account: Account) -> None:
            if account.verified:
                raise AlreadyVerifiedError("Account is already verified")
            pending = account.verification
            if pending is None or not tokens_match(pending.token, token):
                raise InvalidTokenError("Verification token is invalid")
            if pending.is_expired(self._clock()):
                raise ExpiredError("Verification token has expired")
            account.verified = True
            account.verification = None

        account, _ = apply_account_update(
            self.store, lambda: self.store.get_account_by_email(normalized), mutate
        )
        self.logger.info("account_verified", account_id=account.id)
        return account


__all__ = ["VerificationWorkflow"]
