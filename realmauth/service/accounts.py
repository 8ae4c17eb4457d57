from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from realmauth.config import Settings
from realmauth.logging import get_logger
from realmauth.service.concurrency import apply_account_update
from realmauth.service.email import (
    DeliveryReceipt,
    EmailSender,
    email_change_message,
    password_reset_message,
    verification_message,
)
from realmauth.service.errors import (
    AccountBannedError,
    AccountNotVerifiedError,
    AuthenticationError,
    ConflictError,
    ExpiredError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from realmauth.service.invites import normalize_purpose
from realmauth.service.lockout import (
    LockoutPolicy,
    ban_status,
    register_failure,
    register_success,
    remaining_attempts,
)
from realmauth.service.passwords import (
    PasswordService,
    check_password_policy,
    normalize_email,
    validate_email,
)
from realmauth.service.results import service_operation
from realmauth.service.sessions import SessionTokenService
from realmauth.service.tokens import TokenEncoding, generate, tokens_match
from realmauth.service.verification import VerificationWorkflow
from realmauth.storage.common import CredentialStore
from realmauth.storage.errors import ConstraintViolation
from realmauth.storage.models import (
    Account,
    EmailChangeRequest,
    PendingToken,
    VerificationState,
    utcnow,
)

GENERIC_LOGIN_FAILURE = "Email or password incorrect"
RESET_REQUESTED_MESSAGE = "If an account exists for this email, a password reset link has been sent"


class OwnershipOracle(Protocol):
    def has_asset(self, wallet_address: str) -> bool: ...


def normalize_wallet(value: Optional[str]) -> str:
    wallet = (value or "").strip()
    if wallet.lower().startswith("0x"):
        return wallet.lower()
    return wallet


def _ban_detail(lockout, now: datetime) -> dict[str, Any]:
    status = ban_status(lockout, now)
    return {
        "permanent": status.permanent,
        "unban_at": status.unban_at.isoformat() if status.unban_at else None,
        "remaining_seconds": status.remaining_seconds,
    }


class AccountService:
    """Account lifecycle: registration, login, credentials, email and wallet changes."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        email_sender: EmailSender,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        ownership_oracle: Optional[OwnershipOracle] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email_sender
        self._clock = clock or utcnow
        self.oracle = ownership_oracle
        self.passwords = PasswordService()
        self.sessions = SessionTokenService(settings, self._clock)
        self.verification = VerificationWorkflow(store, settings, self._clock)
        self.policy = LockoutPolicy.from_settings(settings)
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    async def _deliver(self, to: str, subject: str, html_body: str) -> DeliveryReceipt:
        try:
            return await asyncio.to_thread(self.email.send, to, subject, html_body)
        except Exception as exc:
            self.logger.error("email_delivery_failed", error_type=type(exc).__name__, error=str(exc))
            return DeliveryReceipt(delivered=False, error=str(exc))

    async def _send_verification(self, email: str, token: str) -> DeliveryReceipt:
        subject, body = verification_message(
            self.settings.app_base_url,
            email,
            token,
            self.settings.verification_token_ttl_hours,
        )
        return await self._deliver(email, subject, body)

    def _require_account(self, email: str) -> Account:
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None:
            raise NotFoundError("Account not found")
        return account

    def _check_proof(
        self, account: Account, password: Optional[str], unique_hash: Optional[str]
    ) -> bool:
        if password and self.passwords.verify(
            account.password_hash, account.password_algo, password
        ):
            return True
        return tokens_match(account.unique_hash, unique_hash)

    @service_operation
    async def register(self, email: str, password: str):
        normalized = validate_email(email)
        check_password_policy(password, self.settings)
        if self.store.get_account_by_email(normalized) is not None:
            raise ConflictError("Email already registered", detail={"field": "email"})

        password_hash, algo = self.passwords.hash_password(password)
        verification = self.verification.new_token()
        account = Account.new(
            email=normalized,
            password_hash=password_hash,
            password_algo=algo,
            unique_hash=generate(self.settings.unique_hash_bytes, TokenEncoding.BASE64),
            verification=verification,
        )
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered", detail=exc.detail) from exc
        self.logger.info("account_registered", account_id=account.id)

        receipt = await self._send_verification(normalized, verification.token)
        if not receipt.delivered:
            self.logger.warning("verification_email_undelivered", account_id=account.id)
        return (
            {
                "account_id": account.id,
                "email": account.email,
                "verification_expires_at": verification.expires_at.isoformat(),
                "email_delivery": receipt.as_payload(),
            },
            "Account created, check your email to verify it",
        )

    @service_operation
    async def confirm_verification(self, email: str, token: str):
        account = self.verification.confirm_token(email, token)
        return {"account_id": account.id, "verified": True}, "Email verified"

    @service_operation
    async def resend_verification(
        self,
        email: str,
        password: Optional[str] = None,
        unique_hash: Optional[str] = None,
        session_token: Optional[str] = None,
    ):
        if not password and not unique_hash and not session_token:
            raise ValidationError("A password, unique hash or session token is required")
        account = self._require_account(email)
        proven = self._check_proof(account, password, unique_hash)
        if not proven and session_token:
            claims = self.sessions.decode(session_token)
            proven = bool(claims and claims.get("sub") == account.id)
        if not proven:
            raise AuthenticationError("Credentials are incorrect")
        account, token = self.verification.issue_token(account.id)
        receipt = await self._send_verification(account.email, token)
        return (
            {
                "verification_expires_at": account.verification.expires_at.isoformat(),
                "email_delivery": receipt.as_payload(),
            },
            "Verification email sent",
        )

    @service_operation
    async def login(self, email: str, password: str):
        normalized = normalize_email(email)
        # Unknown accounts answer like a first wrong password
        unknown_failure = AuthenticationError(
            GENERIC_LOGIN_FAILURE, detail={"remaining_attempts": self.policy.ban_threshold - 1}
        )
        if not normalized or not password:
            raise unknown_failure
        account = self.store.get_account_by_email(normalized)
        if account is None:
            self.logger.info("login_unknown_account")
            raise unknown_failure

        state = account.verification_state
        if state == VerificationState.LEGACY_UNVERIFIED:
            account, token = self.verification.issue_token(account.id)
            receipt = await self._send_verification(account.email, token)
            self.logger.info("legacy_account_verification_issued", account_id=account.id)
            raise AccountNotVerifiedError(
                "Account is not verified, a verification email has been sent",
                detail={"verification_sent": True, "email_delivery": receipt.as_payload()},
            )
        if state == VerificationState.PENDING:
            raise AccountNotVerifiedError(
                "Account is not verified, check your email for the verification link",
                detail={"verification_sent": False},
            )

        def attempt(current: Account) -> bool:
            if current.verification_state != VerificationState.VERIFIED:
                raise AccountNotVerifiedError("Account is not verified")
            now = self._now()
            status = ban_status(current.lockout, now)
            if status.banned:
                raise AccountBannedError(status.describe(), detail=_ban_detail(current.lockout, now))
            if self.passwords.verify(current.password_hash, current.password_algo, password):
                current.lockout = register_success()
                if self.passwords.needs_rehash(current.password_hash):
                    current.password_hash, current.password_algo = self.passwords.hash_password(
                        password
                    )
                return True
            current.lockout = register_failure(current.lockout, now, self.policy)
            return False

        account, succeeded = apply_account_update(
            self.store, lambda: self.store.get_account_by_email(normalized), attempt
        )
        lockout = account.lockout
        if not succeeded:
            now = self._now()
            if lockout.permanent_banned:
                self.logger.warning("login_permanently_banned", account_id=account.id)
                raise AccountBannedError(
                    "Account is permanently banned", detail=_ban_detail(lockout, now)
                )
            if lockout.temp_banned:
                status = ban_status(lockout, now)
                self.logger.warning(
                    "login_temp_banned",
                    account_id=account.id,
                    failed_attempts=lockout.failed_attempts,
                    unban_at=lockout.unban_at.isoformat(),
                )
                raise AccountBannedError(status.describe(), detail=_ban_detail(lockout, now))
            remaining = remaining_attempts(lockout, self.policy)
            self.logger.info(
                "login_failed_attempt",
                account_id=account.id,
                failed_attempts=lockout.failed_attempts,
            )
            raise AuthenticationError(
                GENERIC_LOGIN_FAILURE, detail={"remaining_attempts": remaining}
            )

        session_token, expires_at = self.sessions.issue(account.id)
        self.logger.info("login_succeeded", account_id=account.id)
        return (
            {
                "account_id": account.id,
                "session_token": session_token,
                "expires_at": expires_at.isoformat(),
                "unique_hash": account.unique_hash,
                "wallet_address": account.wallet_address,
            },
            "Login successful",
        )

    @service_operation
    async def verify_session_token(self, token: str):
        claims = self.sessions.decode(token) if token else None
        if not claims:
            raise AuthenticationError("Session token is invalid or expired")
        if self.store.get_account(str(claims.get("sub"))) is None:
            raise AuthenticationError("Session token is invalid or expired")
        return {"claims": claims}

    @service_operation
    async def change_password(self, email: str, current_password: str, new_password: str):
        normalized = normalize_email(email)
        self._require_account(normalized)

        def mutate(account: Account) -> None:
            if not self.passwords.verify(
                account.password_hash, account.password_algo, current_password or ""
            ):
                raise AuthenticationError("Current password is incorrect")
            check_password_policy(new_password, self.settings)
            account.password_hash, account.password_algo = self.passwords.hash_password(
                new_password
            )

        account, _ = apply_account_update(
            self.store, lambda: self.store.get_account_by_email(normalized), mutate
        )
        self.logger.info("password_changed", account_id=account.id)
        return {"account_id": account.id}, "Password changed"

    @service_operation
    async def change_email(self, email: str, password: str, new_email: str):
        normalized = normalize_email(email)
        self._require_account(normalized)
        cooldown = timedelta(days=self.settings.email_change_cooldown_days)

        def mutate(account: Account) -> tuple[str, PendingToken]:
            if not self.passwords.verify(
                account.password_hash, account.password_algo, password or ""
            ):
                raise AuthenticationError("Password is incorrect")
            target = validate_email(new_email)
            if target == account.email:
                raise ValidationError(
                    "New email must differ from the current email", detail={"field": "new_email"}
                )
            if self.store.get_account_by_email(target) is not None:
                raise ConflictError("Email already registered", detail={"field": "new_email"})
            now = self._now()
            change = account.email_change
            if change and change.last_change_at and now - change.last_change_at < cooldown:
                retry_after = change.last_change_at + cooldown - now
                raise RateLimitedError(
                    f"Email can only be changed once every {cooldown.days} days",
                    detail={"retry_after_seconds": int(retry_after.total_seconds())},
                )
            if change and change.change_token and not change.change_token.is_expired(now):
                raise ConflictError(
                    "An email change is already pending",
                    detail={"expires_at": change.change_token.expires_at.isoformat()},
                )
            pending = PendingToken(
                token=generate(self.settings.verification_token_bytes, TokenEncoding.HEX),
                expires_at=now + timedelta(hours=self.settings.email_change_token_ttl_hours),
            )
            account.email_change = EmailChangeRequest(
                previous_email=account.email,
                pending_email=target,
                change_token=pending,
                last_change_at=change.last_change_at if change else None,
            )
            return target, pending

        account, (target, pending) = apply_account_update(
            self.store, lambda: self.store.get_account_by_email(normalized), mutate
        )
        subject, body = email_change_message(
            self.settings.app_base_url,
            account.email,
            target,
            pending.token,
            self.settings.email_change_token_ttl_hours,
        )
        receipt = await self._deliver(target, subject, body)
        self.logger.info("email_change_requested", account_id=account.id)
        return (
            {
                "pending_email": target,
                "expires_at": pending.expires_at.isoformat(),
                "email_delivery": receipt.as_payload(),
            },
            "Check your new email address to confirm the change",
        )

    @service_operation
    async def confirm_email_change(self, previous_email: str, new_email: str, token: str):
        previous = normalize_email(previous_email)
        target = normalize_email(new_email)
        self._require_account(previous)

        def mutate(account: Account) -> None:
            change = account.email_change
            if (
                change is None
                or change.change_token is None
                or change.pending_email != target
                or not tokens_match(change.change_token.token, token)
            ):
                raise InvalidTokenError("Email change token is invalid")
            now = self._now()
            if change.change_token.is_expired(now):
                raise ExpiredError("Email change token has expired")
            existing = self.store.get_account_by_email(target)
            if existing is not None and existing.id != account.id:
                raise ConflictError("Email already registered", detail={"field": "new_email"})
            account.email = target
            account.email_change = EmailChangeRequest(
                previous_email=previous,
                pending_email=None,
                change_token=None,
                last_change_at=now,
            )

        account, _ = apply_account_update(
            self.store, lambda: self.store.get_account_by_email(previous), mutate
        )
        self.logger.info("email_changed", account_id=account.id)
        return {"account_id": account.id, "email": account.email}, "Email changed"

    @service_operation
    async def link_wallet(
        self,
        email: str,
        wallet: str,
        password: Optional[str] = None,
        unique_hash: Optional[str] = None,
    ):
        wallet_address = normalize_wallet(wallet)
        if not wallet_address:
            raise ValidationError("A wallet address is required", detail={"field": "wallet"})
        if not password and not unique_hash:
            raise ValidationError("A password or unique hash is required")
        normalized = normalize_email(email)
        self._require_account(normalized)

        def mutate(account: Account) -> None:
            if not self._check_proof(account, password, unique_hash):
                raise AuthenticationError("Credentials are incorrect")
            if account.wallet_address:
                raise ConflictError("Account already has a wallet linked")
            if self.store.get_account_by_wallet(wallet_address) is not None:
                raise ConflictError("Wallet is already linked to another account")
            account.wallet_address = wallet_address

        try:
            account, _ = apply_account_update(
                self.store, lambda: self.store.get_account_by_email(normalized), mutate
            )
        except ConstraintViolation as exc:
            raise ConflictError("Wallet is already linked to another account", detail=exc.detail) from exc
        self.logger.info("wallet_linked", account_id=account.id)
        return {"account_id": account.id, "wallet_address": account.wallet_address}, "Wallet linked"

    @service_operation
    async def request_password_reset(self, email: str):
        normalized = normalize_email(email)
        account = self.store.get_account_by_email(normalized) if normalized else None
        if account is None or not account.password_hash:
            self.logger.info("password_reset_requested_unknown")
            return {}, RESET_REQUESTED_MESSAGE

        def mutate(current: Account) -> PendingToken:
            current.password_reset = PendingToken(
                token=generate(self.settings.reset_token_bytes, TokenEncoding.HEX),
                expires_at=self._now()
                + timedelta(minutes=self.settings.password_reset_ttl_minutes),
            )
            return current.password_reset

        try:
            account, pending = apply_account_update(
                self.store, lambda: self.store.get_account_by_email(normalized), mutate
            )
        except NotFoundError:
            return {}, RESET_REQUESTED_MESSAGE
        subject, body = password_reset_message(
            self.settings.app_base_url, pending.token, self.settings.password_reset_ttl_minutes
        )
        receipt = await self._deliver(normalized, subject, body)
        self.logger.info(
            "password_reset_requested", account_id=account.id, delivered=receipt.delivered
        )
        return {}, RESET_REQUESTED_MESSAGE

    def _account_for_reset_token(self, token: str) -> Account:
        account = self.store.get_account_by_reset_token(token) if token else None
        if account is None:
            raise InvalidTokenError("Password reset token is invalid")
        return account

    @service_operation
    async def check_password_reset_token(self, token: str):
        account = self._account_for_reset_token(token)
        pending = account.password_reset
        if pending is None or not tokens_match(pending.token, token):
            raise InvalidTokenError("Password reset token is invalid")
        if pending.is_expired(self._now()):
            raise ExpiredError("Password reset token has expired")
        return {"valid": True, "expires_at": pending.expires_at.isoformat()}

    @service_operation
    async def reset_password(self, token: str, new_password: str, confirm_password: str):
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match", detail={"field": "confirm_password"})
        check_password_policy(new_password, self.settings)

        def mutate(account: Account) -> None:
            pending = account.password_reset
            if pending is None or not tokens_match(pending.token, token):
                raise InvalidTokenError("Password reset token is invalid")
            if pending.is_expired(self._now()):
                raise ExpiredError("Password reset token has expired")
            account.password_hash, account.password_algo = self.passwords.hash_password(
                new_password
            )
            account.password_reset = None

        account, _ = apply_account_update(
            self.store, lambda: self._account_for_reset_token(token), mutate
        )
        self.logger.info("password_reset_completed", account_id=account.id)
        return {"account_id": account.id}, "Password reset"

    @service_operation
    async def account_status(self, email: str):
        account = self._require_account(email)
        pending_email = None
        if account.email_change and account.email_change.change_token:
            pending_email = account.email_change.pending_email
        return {
            "verified": account.verified,
            "verification_state": account.verification_state.value,
            "verification_pending": account.verification_state == VerificationState.PENDING,
            "has_wallet": bool(account.wallet_address),
            "pending_email": pending_email,
        }

    @service_operation
    async def check_alpha_access(self, email: str):
        account = self._require_account(email)
        purpose = normalize_purpose(self.settings.alpha_access_purpose)
        if self.store.has_redeemed_purpose(account.id, purpose):
            return {"granted": True, "via": "invite_code"}
        if account.wallet_address and self.oracle is not None:
            owns_asset = await asyncio.to_thread(self.oracle.has_asset, account.wallet_address)
            if owns_asset:
                return {"granted": True, "via": "asset_ownership"}
        return {"granted": False, "via": None}


__all__ = [
    "AccountService",
    "GENERIC_LOGIN_FAILURE",
    "OwnershipOracle",
    "RESET_REQUESTED_MESSAGE",
    "normalize_wallet",
]
