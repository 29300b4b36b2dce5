from typing import Optional
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.security import verify_access_token
from core.exceptions import credentials_exception, forbidden_exception
from models.common import UserRole

bearer_scheme = HTTPBearer(auto_error=False)


def user_from_token(token: Optional[str]) -> Optional[dict]:
    """Verified identity claims → {"user_id", "role"}; None when unusable."""
    if not token:
        return None
    payload = verify_access_token(token)
    if not payload:
        return None
    user_id = payload.get("sub")
    role = payload.get("role", UserRole.CUSTOMER.value)
    if not user_id or role not in [r.value for r in UserRole]:
        return None
    return {"user_id": user_id, "role": role}


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    user = user_from_token(credentials.credentials if credentials else None)
    if not user:
        raise credentials_exception()
    return user


def require_role(*roles: UserRole):
    """
    Checks that the caller holds one of the given roles.
    Usage: Depends(require_role(UserRole.ADMIN))
    """
    async def _check(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") not in [r.value for r in roles]:
            raise forbidden_exception()
        return current_user
    return _check


async def get_current_agent(current_user: dict = Depends(require_role(UserRole.AGENT))) -> dict:
    """Agent profile of the calling user."""
    from services.agent_service import get_agent_by_user
    return await get_agent_by_user(current_user["user_id"])


# Shortcuts
require_admin = require_role(UserRole.ADMIN)
require_customer = require_role(UserRole.CUSTOMER, UserRole.ADMIN)
