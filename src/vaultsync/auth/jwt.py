"""JWT access token verification.

Learn: Tokens are minted by the auth service (out of this package's scope).
We only consume them: the WebSocket handshake and the HTTP routes both call
verify_token() and read the owner id from the `sub` claim.

PyJWT checks the signature first and the `exp` claim second, so an
ExpiredSignatureError always means "well-formed, correctly signed, too old".
That ordering is what lets us tell "invalid token" apart from "token expired".
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from vaultsync.config import settings


class TokenError(Exception):
    """Raised when token verification fails."""


class TokenInvalidError(TokenError):
    """Bad structure, bad signature, or missing subject."""


class TokenExpiredError(TokenError):
    """Valid signature, but the validity window has passed."""


def create_access_token(
    owner_id: str,
    expires_minutes: Optional[float] = None,
    secret: Optional[str] = None,
) -> str:
    """Mint an access token. Used by tests and local tooling only."""
    now = datetime.now(timezone.utc)
    minutes = (
        expires_minutes
        if expires_minutes is not None
        else settings.access_token_expire_minutes
    )
    payload = {
        "sub": owner_id,
        "type": "access",
        "exp": now + timedelta(minutes=minutes),
        "iat": now,
    }
    return jwt.encode(
        payload, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm
    )


def verify_token(token: str, secret: Optional[str] = None) -> dict:
    """Verify and decode an access token.

    Returns the claims dict on success.
    Raises TokenExpiredError or TokenInvalidError on failure.
    """
    try:
        payload = jwt.decode(
            token,
            secret or settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenInvalidError(f"Invalid token: {e}")

    if not payload.get("sub"):
        raise TokenInvalidError("Invalid token: missing subject")
    return payload
