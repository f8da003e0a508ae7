import logging
from typing import Dict

import requests
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import USER_SERVICE_TIMEOUT, USER_SERVICE_URL

logger = logging.getLogger(__name__)

security = HTTPBearer()

# the user service exposes the caller's profile at "/users/my profile"
PROFILE_PATH = "/users/my%20profile"


def fetch_profile(token: str) -> requests.Response:
    return requests.get(
        f"{USER_SERVICE_URL.rstrip('/')}{PROFILE_PATH}",
        headers={"Authorization": f"Bearer {token}"},
        timeout=USER_SERVICE_TIMEOUT,
    )


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict:
    """Resolve the bearer token to the caller through the user service.

    Carts and orders are keyed by the returned ``id``.
    """
    try:
        response = fetch_profile(credentials.credentials)
    except requests.exceptions.RequestException as e:
        logger.error("User service unreachable: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"User service is unavailable: {str(e)}"
        )

    if response.status_code == 401:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if response.status_code != 200:
        logger.error("User service answered %s: %s", response.status_code, response.text)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to get user from user service"
        )

    profile = response.json()
    return {
        "id": int(profile["id"]),
        "username": profile.get("username"),
        "email": profile.get("email"),
        "is_admin": bool(profile.get("is_admin", False)),
    }


def get_current_admin(current_user: Dict = Depends(get_current_user)) -> Dict:
    if not current_user.get("is_admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin access required."
        )
    return current_user
