from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, Request

from chatauth.api.cookies import clear_session_cookie, set_session_cookie, sets_session_cookie
from chatauth.api.error_handling import UNAVAILABLE_MESSAGE, error_response
from chatauth.logging import bind_auth_state, get_logger
from chatauth.service.errors import AuthenticationError
from chatauth.service.runtime import get_runtime
from chatauth.service.sessions import SessionState
from chatauth.storage.errors import StoreUnavailable
from chatauth.storage.models import Identity

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Who the current request acts as; fixed once the middleware has run."""

    identity: Optional[Identity] = None
    session_expires_at: Optional[datetime] = None
    state: SessionState = SessionState.ANONYMOUS

    @property
    def authenticated(self) -> bool:
        return self.identity is not None


ANONYMOUS_CONTEXT = AuthContext()

# health checks must answer even when the session store is down
_UNAUTHENTICATED_PATHS = frozenset({"/healthz"})


async def session_middleware(request: Request, call_next):
    """Resolve the session cookie into an AuthContext before routing."""
    if request.url.path in _UNAUTHENTICATED_PATHS:
        return await call_next(request)
    runtime = get_runtime()
    settings = runtime.settings
    raw_token = request.cookies.get(settings.session_cookie_name)

    try:
        validation = await runtime.sessions.validate(raw_token)
    except StoreUnavailable:
        return error_response(503, UNAVAILABLE_MESSAGE, code="unavailable")

    request.state.auth = AuthContext(
        identity=validation.identity,
        session_expires_at=validation.expires_at,
        state=validation.state,
    )
    bind_auth_state(
        validation.state.value,
        validation.identity.user_id if validation.identity else None,
    )
    if validation.state in (SessionState.INVALID, SessionState.EXPIRED):
        logger.info("session_rejected")

    response = await call_next(request)

    # handlers that set or clear the cookie themselves take precedence
    if sets_session_cookie(response, settings):
        return response
    if validation.clear_cookie:
        clear_session_cookie(response, settings)
    elif validation.refresh_cookie and raw_token and validation.expires_at:
        set_session_cookie(response, raw_token.strip(), validation.expires_at, settings)
    return response


def get_auth_context(request: Request) -> AuthContext:
    return getattr(request.state, "auth", None) or ANONYMOUS_CONTEXT


def require_identity(auth: AuthContext = Depends(get_auth_context)) -> Identity:
    if auth.identity is None:
        raise AuthenticationError("authentication required")
    return auth.identity
