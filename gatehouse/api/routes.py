from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response

from gatehouse.api.schemas import (
    ActivityOut,
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PermissionsResponse,
    RefreshResponse,
    ResendOTPRequest,
    ResendOTPResponse,
    SessionResponse,
    UserOut,
    VerifyOTPRequest,
)
from gatehouse.logging import get_logger
from gatehouse.service.abuse_guard import Caller
from gatehouse.service.errors import AccountLocked, InvalidCredentials, TokenInvalid
from gatehouse.service.permissions import permissions_for
from gatehouse.service.runtime import Runtime, get_runtime
from gatehouse.service.tokens import extract_bearer
from gatehouse.storage.models import Principal, RateDecision

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

REFRESH_COOKIE = "refreshToken"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.reset_seconds)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_request_guards(
    runtime: Runtime,
    request: Request,
    response: Response,
    principal: Optional[Principal] = None,
    *,
    check_burst: bool = True,
) -> RateDecision:
    """Suspicious-burst guard plus the caller's role cap, keyed by IP and user."""
    ip = _client_ip(request)
    caller = Caller(
        ip=ip,
        user_id=principal.id if principal else None,
        role=principal.role if principal else None,
    )
    if check_burst:
        await runtime.guard.check_suspicious(ip, caller=caller)
    identity = f"{ip}:{principal.id if principal else 'anonymous'}"
    decision = await runtime.guard.check_role(
        identity, principal.role if principal else None, caller=caller
    )
    RateLimitInfo.from_decision(decision).apply_headers(response)
    return decision


def _set_refresh_cookie(response: Response, runtime: Runtime, refresh_token: str) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="strict",
        max_age=runtime.tokens.refresh_ttl_seconds,
        path="/",
    )


def _clear_refresh_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _user_out(principal: Principal) -> UserOut:
    return UserOut.model_validate(principal.to_public())


async def get_current_principal(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> Principal:
    runtime = get_runtime()
    ip = _client_ip(request)
    await runtime.guard.check_suspicious(ip, caller=Caller(ip=ip))
    token = extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "Access token required", status_code=401)
    principal = await runtime.tokens.verify_access(token)
    await _enforce_request_guards(
        runtime, request, response, principal, check_burst=False
    )
    await runtime.activity.record(
        principal, ip, request.headers.get("user-agent", "")
    )
    return principal


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """First login step: check the password and email a one-time code.

    Raises:
        401: invalid credentials, locked or inactive account
        429: rate limit exceeded for this IP and email
        503: lockout state could not be read
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_request_guards(runtime, request, response)
    await runtime.guard.check_progressive(
        runtime.guard.policy("login"), f"{ip}:{body.email}", caller=Caller(ip=ip)
    )
    try:
        principal = await runtime.credentials.validate_login(body.email, body.password, ip)
    except (InvalidCredentials, AccountLocked):
        delay = await runtime.backoff.delay_for(body.email, ip)
        if delay > 0:
            logger.info("login_backoff_delay", ip=ip, delay_seconds=delay)
            await runtime.sleep(delay)
        raise
    issued = await runtime.otp.issue(principal)
    return Envelope(
        status="ok",
        data=LoginResponse(
            otp_token=issued.token,
            masked_email=issued.masked_email,
            expires_in=issued.expires_in,
        ).model_dump(by_alias=True),
    )


@router.post("/verify-otp", response_model=Envelope)
async def verify_otp(body: VerifyOTPRequest, request: Request, response: Response):
    """Second login step: exchange a one-time code for tokens."""
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_request_guards(runtime, request, response)
    await runtime.guard.check(
        runtime.guard.policy("otp_verify"), ip, caller=Caller(ip=ip)
    )
    principal, pair = await runtime.otp.verify(body.otp_token, body.otp)
    _set_refresh_cookie(response, runtime, pair.refresh_token)
    logger.info("login_completed", user_id=principal.id, ip=ip)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user=_user_out(principal),
            access_token=pair.access_token,
            permissions=permissions_for(principal.role),
        ).model_dump(by_alias=True),
    )


@router.post("/resend-otp", response_model=Envelope)
async def resend_otp(body: ResendOTPRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_request_guards(runtime, request, response)
    await runtime.guard.check(
        runtime.guard.policy("otp_resend"), ip, caller=Caller(ip=ip)
    )
    resent = await runtime.otp.resend(body.otp_token)
    return Envelope(
        status="ok",
        data=ResendOTPResponse(
            resend_count=resent.resend_count,
            remaining_resends=resent.remaining_resends,
        ).model_dump(by_alias=True),
    )


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(
    request: Request,
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the token pair using the refresh cookie."""
    runtime = get_runtime()
    await _enforce_request_guards(runtime, request, response)
    if not refresh_cookie:
        raise TokenInvalid("Refresh token required")
    _, pair = await runtime.tokens.refresh(refresh_cookie)
    _set_refresh_cookie(response, runtime, pair.refresh_token)
    return Envelope(
        status="ok",
        data=RefreshResponse(access_token=pair.access_token).model_dump(by_alias=True),
    )


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """Clear the refresh cookie and revoke the bearer token if one is sent.

    Always succeeds, so calling it twice is harmless.
    """
    runtime = get_runtime()
    await _enforce_request_guards(runtime, request, response)
    token = extract_bearer(authorization)
    if token:
        await runtime.tokens.revoke(token)
    _clear_refresh_cookie(response, runtime)
    return Envelope(
        status="ok", data=MessageResponse(message="Logged out successfully").model_dump()
    )


@router.get("/me", response_model=Envelope)
async def me(principal: Principal = Depends(get_current_principal)):
    runtime = get_runtime()
    history = await runtime.activity.recent(principal.id)
    return Envelope(
        status="ok",
        data=MeResponse(
            user=_user_out(principal),
            permissions=permissions_for(principal.role),
            activity=[ActivityOut.model_validate(e.to_dict()) for e in history],
        ).model_dump(by_alias=True),
    )


@router.get("/permissions", response_model=Envelope)
async def permissions(principal: Principal = Depends(get_current_principal)):
    return Envelope(
        status="ok",
        data=PermissionsResponse(
            role=principal.role, permissions=permissions_for(principal.role)
        ).model_dump(by_alias=True),
    )
