"""
HTTP Basic auth for the operator/admin routes
"""

import secrets
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from app.core.config import Settings, get_settings

security = HTTPBasic()


def get_current_username(
    credentials: HTTPBasicCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Checks the supplied credentials against ADMIN_USERNAME / ADMIN_PASSWORD
    """
    correct_username = settings.ADMIN_USERNAME
    correct_password = settings.ADMIN_PASSWORD

    # Refuse everything rather than accept an empty password in production
    if not correct_password and settings.ENVIRONMENT == "production":
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Basic auth password not configured"
        )

    if not correct_password:
        correct_password = "changeme"

    is_correct_username = secrets.compare_digest(
        credentials.username.encode("utf8"),
        correct_username.encode("utf8")
    )
    is_correct_password = secrets.compare_digest(
        credentials.password.encode("utf8"),
        correct_password.encode("utf8")
    )

    if not (is_correct_username and is_correct_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Basic"},
        )

    return credentials.username


def require_auth():
    """
    Dependency to require authentication
    Usage: app.include_router(router, dependencies=[require_auth()])
    """
    return Depends(get_current_username)
