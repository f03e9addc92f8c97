"""
Cache Gateway - Dependencies

This module provides dependency injection for FastAPI endpoints.
Exposes the application-owned cache components and caller authorization.
"""
import logging
from typing import Optional, Dict, Any

from fastapi import Depends, HTTPException, status, Request

from ..shared.caching import CacheAdmin, CacheStore
from ..shared.config import Settings, get_settings

logger = logging.getLogger(__name__)


def get_app_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_cache_store(request: Request) -> CacheStore:
    """
    Get the cache store owned by the application.

    Returns:
        CacheStore created by the application factory
    """
    return request.app.state.cache_store


def get_cache_admin(request: Request) -> CacheAdmin:
    """
    Get the administrative cache operations bound to the application's store.

    Returns:
        CacheAdmin instance
    """
    return request.app.state.cache_admin


def get_current_user(request: Request) -> Dict[str, Any]:
    """
    Get current authenticated user from request state.

    Raises:
        HTTPException: If user is not authenticated
    """
    user = getattr(request.state, "user", None)

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )

    return user


def get_current_user_optional(request: Request) -> Optional[Dict[str, Any]]:
    """Get current authenticated user from request state, if any."""
    return getattr(request.state, "user", None)


def require_role(role: Optional[str] = None):
    """
    Dependency factory for requiring a role.

    Args:
        role: Required role; defaults to the admin role of the serving application

    Returns:
        Dependency function
    """

    def check_role(request: Request, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        required = role or get_app_settings(request).security.admin_role
        if required not in user.get("roles", []):
            logger.warning(
                "Role check failed",
                extra={"required_role": required, "caller": user.get("user_id")}
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This endpoint requires the {required} role"
            )

        return user

    return check_role
