from typing import Optional

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


class AuthContext:
    """Verified caller identity; the billing services trust it as given."""
    def __init__(self, user_id: str, email: Optional[str] = None):
        self.user_id = user_id
        self.email = email


def _decode_token(token: str) -> AuthContext:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthContext(user_id=str(user_id), email=payload.get("email"))


async def get_current_user(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> AuthContext:
    settings = get_settings()

    # 1. Session cookie set by the web app
    token = request.cookies.get(settings.AUTH_COOKIE_NAME)
    if token:
        return _decode_token(token)

    # 2. Bearer header for API clients
    if bearer and bearer.credentials:
        return _decode_token(bearer.credentials)

    raise HTTPException(status_code=401, detail="Authentication required")


def create_access_token(user_id: str, email: Optional[str] = None) -> str:
    """Issue a token the dependency above accepts. Used by tests and tooling."""
    settings = get_settings()
    claims = {"userId": user_id, "sub": user_id}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
