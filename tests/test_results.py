from realmauth.service.errors import (
    AccountBannedError,
    AlreadyVerifiedError,
    ExpiredError,
    NotFoundError,
    RateLimitedError,
)
from realmauth.service.results import ErrorKind, OperationResult, service_operation
from realmauth.storage.errors import ConstraintViolation


class Operations:
    @service_operation
    async def plain(self):
        return {"value": 1}

    @service_operation
    async def with_message(self):
        return {"value": 2}, "done"

    @service_operation
    async def raises(self, exc):
        raise exc


async def test_success_payloads():
    ops = Operations()
    plain = await ops.plain()
    assert plain == OperationResult(ok=True, data={"value": 1})
    assert plain.status_code == 200

    with_message = await ops.with_message()
    assert with_message.data == {"value": 2}
    assert with_message.message == "done"


async def test_service_errors_map_to_kinds():
    ops = Operations()
    cases = [
        (NotFoundError("missing"), ErrorKind.NOT_FOUND, 404),
        (AlreadyVerifiedError("done"), ErrorKind.ALREADY_VERIFIED, 409),
        (ExpiredError("late"), ErrorKind.EXPIRED, 410),
        (RateLimitedError("slow down"), ErrorKind.RATE_LIMITED, 429),
        (AccountBannedError("banned", detail={"permanent": True}), ErrorKind.BANNED, 403),
    ]
    for exc, kind, status in cases:
        result = await ops.raises(exc)
        assert not result.ok
        assert result.kind == kind
        assert result.status_code == status
        assert result.message == exc.message
    banned = await ops.raises(AccountBannedError("banned", detail={"permanent": True}))
    assert banned.detail == {"permanent": True}


async def test_constraint_violation_is_conflict():
    result = await Operations().raises(ConstraintViolation("dup", {"field": "email"}))
    assert result.kind == ErrorKind.CONFLICT
    assert result.detail == {"field": "email"}


async def test_unexpected_errors_are_internal():
    result = await Operations().raises(RuntimeError("database exploded"))
    assert result.kind == ErrorKind.INTERNAL
    assert result.status_code == 500
    assert "exploded" not in result.message
