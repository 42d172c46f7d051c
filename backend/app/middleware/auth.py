"""Authentication and authorization for the ledger API.

Provides:
- JWT creation / validation
- ``get_current_user()`` dependency
- ``require_permission()`` dependency factory

Users live in the surrounding school ERP. The ledger trusts the signed
token it issues and checks the role carried in it against ``app.rbac``.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.config import settings
from app.rbac import get_role_permissions

# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(data: dict[str, Any]) -> str:
    """Create a signed JWT containing *sub* (username), *role*, and *exp*."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    to_encode.update({"exp": expire})

    if "user_id" in to_encode and not isinstance(to_encode["user_id"], str):
        to_encode["user_id"] = str(to_encode["user_id"])

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


# Token issuance belongs to the host ERP; the URL only feeds Swagger UI
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

# ---------------------------------------------------------------------------
# Current-user dependency
# ---------------------------------------------------------------------------


async def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    """Decode the JWT and return a dict describing the caller.

    Raises ``HTTPException(401)`` when the token is invalid or carries no
    subject or role.

    Also stores the user dict on ``request.state._audit_user`` so the
    read-access audit middleware can correlate requests to users.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception

    username: str | None = payload.get("sub")
    role: str | None = payload.get("role")
    if username is None or role is None:
        raise credentials_exception

    user_dict = {
        "user_id": payload.get("user_id"),
        "username": username,
        "role": role,
    }
    request.state._audit_user = user_dict
    return user_dict


# ---------------------------------------------------------------------------
# Permission-checking dependency factory
# ---------------------------------------------------------------------------


def require_permission(*permissions: str):
    """Return a FastAPI dependency that ensures the authenticated user's role
    grants ALL of the specified permissions.

    Usage::

        @router.post("/accounts", status_code=201)
        async def create_account(
            body: AccountCreate,
            db: AsyncSession = Depends(get_db),
            user: dict = Depends(require_permission("gl.accounts.create")),
        ):
            ...
    """
    required = set(permissions)

    async def _check_permission(
        current_user: dict[str, Any] = Depends(get_current_user),
    ) -> dict[str, Any]:
        missing = required - get_role_permissions(current_user["role"])
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(sorted(missing))}.",
            )
        return current_user

    return _check_permission
