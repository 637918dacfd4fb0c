"""FastAPI auth dependencies.

Learn: Used as Depends() in route handlers to extract and validate the
current owner identity from the Bearer header. The identity's owner_id
is what every asset route scopes by. The signing secret comes from the
settings the app was built with (app.state.settings).
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from vaultsync.auth.jwt import TokenError, verify_token


class CurrentIdentity:
    """The authenticated owner making the request."""

    def __init__(self, owner_id: str, claims: Optional[dict] = None):
        self.owner_id = owner_id
        self.claims = claims or {}


def _jwt_secret(request: Request) -> Optional[str]:
    app_settings = getattr(request.app.state, "settings", None)
    return app_settings.jwt_secret if app_settings else None


async def get_current_identity_optional(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[CurrentIdentity]:
    """Soft auth — returns None if no Bearer token was sent."""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
        try:
            claims = verify_token(token, secret=_jwt_secret(request))
        except TokenError as e:
            raise HTTPException(
                status_code=401,
                detail=str(e),
                headers={"WWW-Authenticate": "Bearer"},
            )
        return CurrentIdentity(owner_id=str(claims["sub"]), claims=claims)
    return None


async def get_current_identity(
    identity: Optional[CurrentIdentity] = Depends(get_current_identity_optional),
) -> CurrentIdentity:
    """Hard auth — 401 if no credential."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
