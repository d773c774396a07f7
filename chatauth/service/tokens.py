"""Session token generation and lookup-id derivation.

The raw token only ever lives in the client's cookie. The store is keyed by
the SHA-256 digest of the token, so a leaked store row cannot be replayed as
a cookie.
"""

from __future__ import annotations

import hashlib
import re
import secrets

TOKEN_BYTES = 32
# base64url of 32 bytes without padding
TOKEN_LENGTH = 43

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{%d}$" % TOKEN_LENGTH)


class TokenMalformed(ValueError):
    """Cookie value cannot be a token this service issued."""


def generate_session_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def derive_lookup_id(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def parse_session_token(raw: str | None) -> str:
    """Return the cleaned token or raise ``TokenMalformed``."""

    if raw is None:
        raise TokenMalformed("missing session token")
    token = raw.strip()
    if not _TOKEN_PATTERN.match(token):
        raise TokenMalformed("session token has an unexpected shape")
    return token


__all__ = [
    "TOKEN_BYTES",
    "TOKEN_LENGTH",
    "TokenMalformed",
    "generate_session_token",
    "derive_lookup_id",
    "parse_session_token",
]
