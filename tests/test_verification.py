from datetime import timedelta

import pytest
from conftest import make_account

from realmauth.service.errors import (
    AlreadyVerifiedError,
    ConflictError,
    ExpiredError,
    InvalidTokenError,
    NotFoundError,
)
from realmauth.service.verification import VerificationWorkflow
from realmauth.storage.models import VerificationState


@pytest.fixture
def workflow(store, settings, clock):
    return VerificationWorkflow(store, settings, clock)


def test_issue_then_confirm_round_trip(workflow, store, clock):
    account = make_account(store, "legacy@example.com", verified=False)
    assert account.verification_state == VerificationState.LEGACY_UNVERIFIED

    updated, token = workflow.issue_token(account.id)
    assert updated.verification_state == VerificationState.PENDING
    assert len(token) == 300
    assert updated.verification.expires_at == clock() + timedelta(hours=24)

    confirmed = workflow.confirm_token("Legacy@Example.com ", token)
    assert confirmed.verified
    assert confirmed.verification is None

    with pytest.raises(AlreadyVerifiedError):
        workflow.confirm_token("legacy@example.com", token)
    with pytest.raises(AlreadyVerifiedError):
        workflow.issue_token(account.id)


def test_live_pending_token_is_not_replaced(workflow, store):
    account = make_account(store, "pending@example.com", verified=False)
    workflow.issue_token(account.id)
    with pytest.raises(ConflictError):
        workflow.issue_token(account.id)


def test_expired_pending_token_is_replaced(workflow, store, clock):
    account = make_account(store, "stale@example.com", verified=False)
    _, first = workflow.issue_token(account.id)
    clock.advance(hours=25)
    _, second = workflow.issue_token(account.id)
    assert second != first
    assert store.get_account(account.id).verification.token == second


def test_wrong_token_is_rejected(workflow, store):
    account = make_account(store, "wrong@example.com", verified=False)
    _, token = workflow.issue_token(account.id)
    with pytest.raises(InvalidTokenError):
        workflow.confirm_token("wrong@example.com", token[:-1] + ("0" if token[-1] != "0" else "1"))
    assert not store.get_account(account.id).verified


def test_legacy_account_without_token_cannot_confirm(workflow, store):
    make_account(store, "notoken@example.com", verified=False)
    with pytest.raises(InvalidTokenError):
        workflow.confirm_token("notoken@example.com", "anything")


def test_expired_token_is_rejected(workflow, store, clock):
    account = make_account(store, "late@example.com", verified=False)
    _, token = workflow.issue_token(account.id)
    clock.advance(hours=24, seconds=1)
    with pytest.raises(ExpiredError):
        workflow.confirm_token("late@example.com", token)
    assert store.get_account(account.id).verification is not None


def test_unknown_account(workflow):
    with pytest.raises(NotFoundError):
        workflow.confirm_token("ghost@example.com", "token")
