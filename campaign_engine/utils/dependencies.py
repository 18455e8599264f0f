# campaign_engine/utils/dependencies.py
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Dict, Any
from bson import ObjectId
import logging

from ..config.database import get_database
from ..services.lead_store import is_admin
from .security import security

logger = logging.getLogger(__name__)

# Security scheme
security_scheme = HTTPBearer()


class AuthenticationError(HTTPException):
    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security_scheme)
) -> Dict[str, Any]:
    """
    Dependency to get current authenticated user from JWT token

    ``sub`` is the user's ObjectId; tokens issued with an email as subject
    are accepted too.
    """
    payload = security.verify_token(credentials.credentials)
    if payload is None:
        raise AuthenticationError("Invalid token")

    if payload.get("type") != "access":
        raise AuthenticationError("Invalid token type")

    subject = payload.get("sub")
    if not subject:
        raise AuthenticationError("Invalid token payload")

    db = get_database()
    if ObjectId.is_valid(subject):
        user_data = await db.users.find_one({"_id": ObjectId(subject)})
    else:
        user_data = await db.users.find_one({"email": subject})

    if user_data is None:
        raise AuthenticationError("User not found")

    if not user_data.get("is_active", False):
        raise AuthenticationError("User account is disabled")

    user_data["_id"] = str(user_data["_id"])
    return user_data


async def get_admin_user(
    current_user: Dict[str, Any] = Depends(get_current_user)
) -> Dict[str, Any]:
    """
    Dependency to ensure current user is admin
    """
    if not is_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin access required."
        )
    return current_user
