from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from starlette.responses import Response

from chatauth.config import Settings
from chatauth.storage.models import as_utc, utcnow

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def set_session_cookie(
    response: Response,
    token: str,
    expires_at: datetime,
    settings: Settings,
    *,
    now: Optional[datetime] = None,
) -> None:
    expires_at = as_utc(expires_at)
    max_age = int((expires_at - as_utc(now or utcnow())).total_seconds())
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=max(max_age, 0),
        expires=expires_at,
        path="/",
        secure=settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value="",
        max_age=0,
        expires=_EPOCH,
        path="/",
        secure=settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )


def sets_session_cookie(response: Response, settings: Settings) -> bool:
    """True when ``response`` already carries a Set-Cookie for the session cookie."""
    prefix = f"{settings.session_cookie_name}="
    return any(
        value.startswith(prefix) for value in response.headers.getlist("set-cookie")
    )
