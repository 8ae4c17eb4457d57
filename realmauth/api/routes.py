from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query

from realmauth.api.error_handling import result_response
from realmauth.api.schemas import (
    ChangeEmailRequest,
    ChangePasswordRequest,
    ConfirmEmailChangeRequest,
    Envelope,
    InviteGenerateRequest,
    InviteRedeemRequest,
    LinkWalletRequest,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetTokenRequest,
    RegisterRequest,
    ResendVerificationRequest,
    SessionTokenRequest,
    VerifyEmailRequest,
)
from realmauth.service.errors import AuthenticationError
from realmauth.service.runtime import Runtime, get_runtime
from realmauth.service.tokens import tokens_match

router = APIRouter(prefix="/v1")


def require_admin(
    x_admin_secret: Optional[str] = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> None:
    if not tokens_match(runtime.settings.admin_secret, x_admin_secret):
        raise AuthenticationError("Admin secret is incorrect")


@router.get("/healthz", tags=["health"])
async def healthz():
    return {"status": "ok"}


@router.post("/accounts/register", response_model=Envelope, status_code=201, tags=["accounts"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an email/password account and send the verification email."""
    result = await runtime.accounts.register(body.email, body.password)
    return result_response(result, success_status=201)


@router.post("/accounts/login", response_model=Envelope, tags=["accounts"])
async def login(body: LoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with email and password.

    Returns a signed session token. Repeated failures escalate to temporary
    and then permanent bans; ban responses carry the remaining duration.
    """
    result = await runtime.accounts.login(body.email, body.password)
    return result_response(result)


@router.post("/accounts/verify-email", response_model=Envelope, tags=["accounts"])
async def verify_email(body: VerifyEmailRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.accounts.confirm_verification(body.email, body.token)
    return result_response(result)


@router.post("/accounts/resend-verification", response_model=Envelope, tags=["accounts"])
async def resend_verification(
    body: ResendVerificationRequest, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.accounts.resend_verification(
        body.email,
        password=body.password,
        unique_hash=body.unique_hash,
        session_token=body.session_token,
    )
    return result_response(result)


@router.post("/accounts/change-password", response_model=Envelope, tags=["accounts"])
async def change_password(body: ChangePasswordRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.accounts.change_password(
        body.email, body.current_password, body.new_password
    )
    return result_response(result)


@router.post("/accounts/change-email", response_model=Envelope, tags=["accounts"])
async def change_email(body: ChangeEmailRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.accounts.change_email(body.email, body.password, body.new_email)
    return result_response(result)


@router.post("/accounts/confirm-email-change", response_model=Envelope, tags=["accounts"])
async def confirm_email_change(
    body: ConfirmEmailChangeRequest, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.accounts.confirm_email_change(
        body.previous_email, body.new_email, body.token
    )
    return result_response(result)


@router.post("/accounts/link-wallet", response_model=Envelope, tags=["accounts"])
async def link_wallet(body: LinkWalletRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.accounts.link_wallet(
        body.email, body.wallet, password=body.password, unique_hash=body.unique_hash
    )
    return result_response(result)


@router.post("/accounts/password-reset/request", response_model=Envelope, tags=["accounts"])
async def request_password_reset(
    body: PasswordResetRequest, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.accounts.request_password_reset(body.email)
    return result_response(result)


@router.post("/accounts/password-reset/check", response_model=Envelope, tags=["accounts"])
async def check_password_reset_token(
    body: PasswordResetTokenRequest, runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.accounts.check_password_reset_token(body.token)
    return result_response(result)


@router.post("/accounts/password-reset/confirm", response_model=Envelope, tags=["accounts"])
async def reset_password(body: PasswordResetConfirm, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.accounts.reset_password(
        body.token, body.new_password, body.confirm_password
    )
    return result_response(result)


@router.get("/accounts/status", response_model=Envelope, tags=["accounts"])
async def account_status(
    email: str = Query(..., max_length=254), runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.accounts.account_status(email)
    return result_response(result)


@router.get("/accounts/alpha-access", response_model=Envelope, tags=["accounts"])
async def alpha_access(
    email: str = Query(..., max_length=254), runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.accounts.check_alpha_access(email)
    return result_response(result)


@router.post("/sessions/verify", response_model=Envelope, tags=["sessions"])
async def verify_session(body: SessionTokenRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.accounts.verify_session_token(body.token)
    return result_response(result)


@router.post("/invites", response_model=Envelope, status_code=201, tags=["invites"])
async def generate_invites(
    body: InviteGenerateRequest,
    x_admin_secret: Optional[str] = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
):
    """Generate a batch of invite codes. Requires the ``X-Admin-Secret`` header."""
    result = await runtime.invites.generate(
        x_admin_secret,
        body.count,
        body.purpose,
        multi_use=body.multi_use,
        max_uses=body.max_uses,
        expires_at=body.expires_at,
    )
    return result_response(result, success_status=201)


@router.post("/invites/redeem", response_model=Envelope, tags=["invites"])
async def redeem_invite(body: InviteRedeemRequest, runtime: Runtime = Depends(get_runtime)):
    result = await runtime.invites.redeem(body.code, body.email, body.unique_hash)
    return result_response(result)


@router.get(
    "/invites/{code}",
    response_model=Envelope,
    tags=["invites"],
    dependencies=[Depends(require_admin)],
)
async def get_invite(
    code: str = Path(..., max_length=256), runtime: Runtime = Depends(get_runtime)
):
    result = await runtime.invites.get(code)
    return result_response(result)
