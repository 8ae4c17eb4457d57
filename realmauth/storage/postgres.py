from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from realmauth.logging import get_logger
from realmauth.storage.common import email_change_from_dict, email_change_to_dict
from realmauth.storage.errors import ConstraintViolation
from realmauth.storage.models import (
    Account,
    InviteCode,
    LoginLockout,
    PendingToken,
    Redemption,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT,
        wallet_address TEXT,
        password_hash TEXT,
        password_algo TEXT,
        unique_hash TEXT,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        verification_token TEXT,
        verification_expires_at TIMESTAMPTZ,
        failed_attempts INTEGER,
        temp_banned BOOLEAN,
        permanent_banned BOOLEAN,
        unban_at TIMESTAMPTZ,
        email_change JSONB,
        password_reset_token TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        version INTEGER NOT NULL DEFAULT 0,
        CONSTRAINT account_email_key UNIQUE (email),
        CONSTRAINT account_wallet_address_key UNIQUE (wallet_address),
        CONSTRAINT account_identity_check CHECK (email IS NOT NULL OR wallet_address IS NOT NULL)
    )
    """,
    "CREATE INDEX IF NOT EXISTS account_verification_expiry_idx ON account (verification_expires_at) WHERE NOT verified",
    "CREATE INDEX IF NOT EXISTS account_unban_idx ON account (unban_at) WHERE temp_banned",
    "CREATE INDEX IF NOT EXISTS account_reset_token_idx ON account (password_reset_token)",
    """
    CREATE TABLE IF NOT EXISTS invite_code (
        code TEXT PRIMARY KEY,
        purpose TEXT NOT NULL,
        multi_use BOOLEAN NOT NULL DEFAULT FALSE,
        max_uses INTEGER NOT NULL CHECK (max_uses >= 1),
        times_used INTEGER NOT NULL DEFAULT 0 CHECK (times_used >= 0),
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invite_redemption (
        code TEXT NOT NULL REFERENCES invite_code (code),
        purpose TEXT NOT NULL,
        redeemed_by TEXT NOT NULL,
        redeemed_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT invite_redemption_purpose_account_key UNIQUE (purpose, redeemed_by)
    )
    """,
]

_CONSTRAINT_FIELDS = {
    "account_pkey": "id",
    "account_email_key": "email",
    "account_wallet_address_key": "wallet_address",
    "invite_code_pkey": "code",
    "invite_redemption_purpose_account_key": "purpose",
}


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, "unknown")
    messages = {
        "email": "email already exists",
        "wallet_address": "wallet already linked",
        "code": "invite code already exists",
        "purpose": "purpose already redeemed by account",
    }
    return ConstraintViolation(
        messages.get(field, "unique constraint violated"), {"field": field}
    )


class PostgresStore:
    """Postgres-backed credential store.

    Conditional writes are expressed in the WHERE clause so the database
    re-checks the version (or ``times_used``) at write time.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # row mapping
    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        verification = None
        if row.get("verification_token"):
            verification = PendingToken(
                token=row["verification_token"],
                expires_at=row["verification_expires_at"],
            )
        password_reset = None
        if row.get("password_reset_token"):
            password_reset = PendingToken(
                token=row["password_reset_token"],
                expires_at=row["password_reset_expires_at"],
            )
        lockout = None
        if row.get("failed_attempts") is not None:
            lockout = LoginLockout(
                failed_attempts=int(row["failed_attempts"]),
                temp_banned=bool(row.get("temp_banned")),
                permanent_banned=bool(row.get("permanent_banned")),
                unban_at=row.get("unban_at"),
            )
        return Account(
            id=str(row["id"]),
            email=row.get("email"),
            wallet_address=row.get("wallet_address"),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            unique_hash=row.get("unique_hash"),
            verified=bool(row.get("verified")),
            verification=verification,
            lockout=lockout,
            email_change=email_change_from_dict(row.get("email_change")),
            password_reset=password_reset,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=int(row["version"]),
        )

    @staticmethod
    def _account_params(account: Account) -> Dict[str, Any]:
        lockout = account.lockout
        email_change = email_change_to_dict(account.email_change)
        return {
            "id": account.id,
            "email": account.email,
            "wallet_address": account.wallet_address,
            "password_hash": account.password_hash,
            "password_algo": account.password_algo,
            "unique_hash": account.unique_hash,
            "verified": account.verified,
            "verification_token": account.verification.token if account.verification else None,
            "verification_expires_at": (
                account.verification.expires_at if account.verification else None
            ),
            "failed_attempts": lockout.failed_attempts if lockout else None,
            "temp_banned": lockout.temp_banned if lockout else None,
            "permanent_banned": lockout.permanent_banned if lockout else None,
            "unban_at": lockout.unban_at if lockout else None,
            "email_change": Jsonb(email_change) if email_change else None,
            "password_reset_token": (
                account.password_reset.token if account.password_reset else None
            ),
            "password_reset_expires_at": (
                account.password_reset.expires_at if account.password_reset else None
            ),
            "created_at": account.created_at,
        }

    # accounts
    def create_account(self, account: Account) -> Account:
        params = self._account_params(account)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, email, wallet_address, password_hash, password_algo, unique_hash,
                        verified, verification_token, verification_expires_at,
                        failed_attempts, temp_banned, permanent_banned, unban_at,
                        email_change, password_reset_token, password_reset_expires_at,
                        created_at, updated_at, version
                    ) VALUES (
                        %(id)s, %(email)s, %(wallet_address)s, %(password_hash)s,
                        %(password_algo)s, %(unique_hash)s, %(verified)s,
                        %(verification_token)s, %(verification_expires_at)s,
                        %(failed_attempts)s, %(temp_banned)s, %(permanent_banned)s,
                        %(unban_at)s, %(email_change)s, %(password_reset_token)s,
                        %(password_reset_expires_at)s, %(created_at)s, now(), 0
                    )
                    RETURNING *
                    """,
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._row_to_account(row)

    def _fetch_account(self, where: str, value: Any) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {where} = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("email", email)

    def get_account_by_wallet(self, wallet_address: str) -> Optional[Account]:
        return self._fetch_account("wallet_address", wallet_address)

    def get_account_by_reset_token(self, token: str) -> Optional[Account]:
        return self._fetch_account("password_reset_token", token)

    def update_account(self, account: Account, expected_version: int) -> Optional[Account]:
        params = self._account_params(account)
        params["expected_version"] = expected_version
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE account SET
                        email = %(email)s,
                        wallet_address = %(wallet_address)s,
                        password_hash = %(password_hash)s,
                        password_algo = %(password_algo)s,
                        unique_hash = %(unique_hash)s,
                        verified = %(verified)s,
                        verification_token = %(verification_token)s,
                        verification_expires_at = %(verification_expires_at)s,
                        failed_attempts = %(failed_attempts)s,
                        temp_banned = %(temp_banned)s,
                        permanent_banned = %(permanent_banned)s,
                        unban_at = %(unban_at)s,
                        email_change = %(email_change)s,
                        password_reset_token = %(password_reset_token)s,
                        password_reset_expires_at = %(password_reset_expires_at)s,
                        updated_at = now(),
                        version = version + 1
                    WHERE id = %(id)s AND version = %(expected_version)s
                    RETURNING *
                    """,
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        except errors.CheckViolation as exc:
            raise ConstraintViolation(
                "account needs an email or a wallet", {"field": "email"}
            ) from exc
        if not row:
            return None
        return self._row_to_account(row)

    def delete_account(self, account_id: str, expected_version: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM account WHERE id = %s AND version = %s",
                (account_id, expected_version),
            )
            return result.rowcount > 0

    def list_expired_verifications(self, now: datetime) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM account
                WHERE NOT verified
                  AND verification_token IS NOT NULL
                  AND verification_expires_at < %s
                """,
                (now,),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def list_expired_bans(self, now: datetime) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM account
                WHERE temp_banned
                  AND NOT COALESCE(permanent_banned, FALSE)
                  AND unban_at IS NOT NULL
                  AND unban_at <= %s
                """,
                (now,),
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    # invite codes
    def create_invite_codes(self, codes: Sequence[InviteCode]) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                with conn.cursor() as cur:
                    cur.executemany(
                        """
                        INSERT INTO invite_code (code, purpose, multi_use, max_uses, times_used, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        [
                            (
                                c.code,
                                c.purpose,
                                c.multi_use,
                                c.max_uses,
                                c.times_used,
                                c.expires_at,
                                c.created_at,
                            )
                            for c in codes
                        ],
                    )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc

    def _load_redemptions(self, conn, code: str) -> List[Redemption]:
        rows = conn.execute(
            "SELECT redeemed_by, redeemed_at FROM invite_redemption WHERE code = %s ORDER BY redeemed_at",
            (code,),
        ).fetchall()
        return [
            Redemption(redeemed_by=row["redeemed_by"], redeemed_at=row["redeemed_at"])
            for row in rows
        ]

    @staticmethod
    def _row_to_invite(row: Dict[str, Any], redemptions: List[Redemption]) -> InviteCode:
        return InviteCode(
            code=row["code"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            multi_use=bool(row["multi_use"]),
            max_uses=int(row["max_uses"]),
            times_used=int(row["times_used"]),
            redemptions=redemptions,
            created_at=row["created_at"],
        )

    def get_invite_code(self, code: str) -> Optional[InviteCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invite_code WHERE code = %s", (code,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_invite(row, self._load_redemptions(conn, code))

    def has_redeemed_purpose(self, account_id: str, purpose: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM invite_redemption WHERE purpose = %s AND redeemed_by = %s",
                (purpose, account_id),
            ).fetchone()
        return row is not None

    def record_redemption(
        self, code: str, expected_times_used: int, redemption: Redemption
    ) -> Optional[InviteCode]:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE invite_code SET times_used = times_used + 1
                        WHERE code = %s AND times_used = %s AND times_used < max_uses
                        RETURNING *
                        """,
                        (code, expected_times_used),
                    ).fetchone()
                    if not row:
                        return None
                    conn.execute(
                        """
                        INSERT INTO invite_redemption (code, purpose, redeemed_by, redeemed_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (code, row["purpose"], redemption.redeemed_by, redemption.redeemed_at),
                    )
                return self._row_to_invite(row, self._load_redemptions(conn, code))
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
