from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from chatauth.api.cookies import clear_session_cookie, set_session_cookie
from chatauth.api.middleware import AuthContext, get_auth_context, require_identity
from chatauth.api.schemas import (
    AuthResponse,
    Envelope,
    SigninRequest,
    SignoutResponse,
    SignupRequest,
    UserResponse,
)
from chatauth.logging import get_logger
from chatauth.service.errors import RateLimitedError
from chatauth.service.runtime import Runtime, check_rate_limit, get_runtime
from chatauth.service.sessions import IssuedSession
from chatauth.storage.errors import StoreUnavailable
from chatauth.storage.models import Identity, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, response: Response
) -> None:
    """Spend one attempt for ``key`` and report the bucket in X-RateLimit-* headers."""
    decision = await check_rate_limit(runtime, key, limit)
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(decision.reset_seconds)
    if not decision.allowed:
        logger.warning("rate_limit_exceeded", scope=key.split(":", 1)[0])
        raise RateLimitedError(
            "rate limit exceeded", retry_after_seconds=decision.reset_seconds
        )


def _signed_in(
    runtime: Runtime, response: Response, user: User, issued: IssuedSession
) -> Envelope:
    set_session_cookie(
        response,
        issued.token,
        issued.expires_at,
        runtime.settings,
        now=issued.session.created_at,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse(id=user.id, email=user.email),
            session_expires_at=issued.expires_at,
        ),
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Register an email/password account and sign it in.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        response,
    )
    user, issued = await runtime.auth.signup(email=body.email, password=body.password)
    return _signed_in(runtime, response, user, issued)


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, response: Response):
    """Verify credentials and start a new session.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signin:{body.email}",
        runtime.settings.signin_rate_limit_per_minute,
        response,
    )
    user, issued = await runtime.auth.login(email=body.email, password=body.password)
    return _signed_in(runtime, response, user, issued)


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(
    request: Request,
    response: Response,
    auth: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    settings = runtime.settings
    if auth.authenticated:
        raw_token = request.cookies.get(settings.session_cookie_name)
        try:
            await runtime.auth.logout(raw_token)
        except StoreUnavailable as exc:
            # the cookie is still cleared; the row expires or gets swept later
            logger.warning("signout_delete_failed", operation=exc.operation)
    clear_session_cookie(response, settings)
    return Envelope(status="ok", data=SignoutResponse())


@router.get("/user", response_model=Envelope, tags=["auth"])
async def current_user(identity: Identity = Depends(require_identity)):
    """Return the identity bound to the session cookie."""
    return Envelope(
        status="ok",
        data=UserResponse(id=identity.user_id, email=identity.email),
    )
