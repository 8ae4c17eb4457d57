from __future__ import annotations

from typing import Callable, Optional, Tuple, TypeVar

from realmauth.logging import get_logger
from realmauth.service.errors import ConflictError, NotFoundError
from realmauth.storage.common import CredentialStore
from realmauth.storage.models import Account

logger = get_logger(__name__)

MAX_WRITE_ATTEMPTS = 5

T = TypeVar("T")


def apply_account_update(
    store: CredentialStore,
    load: Callable[[], Optional[Account]],
    mutate: Callable[[Account], T],
    *,
    attempts: int = MAX_WRITE_ATTEMPTS,
    not_found: str = "Account not found",
) -> Tuple[Account, T]:
    """Read, mutate and conditionally write an account.

    ``mutate`` runs against a fresh copy on every attempt, so all of its checks
    are re-evaluated after a lost race. It may raise ``ServiceError`` to abort
    without writing.
    """

    for attempt in range(attempts):
        account = load()
        if account is None:
            raise NotFoundError(not_found)
        expected_version = account.version
        outcome = mutate(account)
        updated = store.update_account(account, expected_version)
        if updated is not None:
            return updated, outcome
        logger.info(
            "account_write_conflict",
            account_id=account.id,
            attempt=attempt + 1,
        )
    raise ConflictError("account was modified concurrently, try again")


__all__ = ["MAX_WRITE_ATTEMPTS", "apply_account_update"]
