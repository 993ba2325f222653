"""
Request dependencies: service container, caller identity and admin access.

Authentication happens upstream; the caller's id arrives in ``X-User-ID``.
Admin routes additionally require the configured API key header.
"""
import secrets
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from orderflow.services import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def _parse_user_id(value: Optional[str]) -> Optional[uuid.UUID]:
    if value is None:
        return None
    try:
        return uuid.UUID(value)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "validation_error", "message": "X-User-ID must be a UUID"},
        ) from e


def _has_admin_key(request: Request, services: ServiceContainer) -> bool:
    expected = services.settings.admin_api_key
    provided = request.headers.get(services.settings.api_key_header)
    return bool(expected and provided and secrets.compare_digest(provided, expected))


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> uuid.UUID:
    """Caller identity; required on customer routes."""
    user_id = _parse_user_id(x_user_id)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthenticated", "message": "X-User-ID header is required"},
        )
    return user_id


def get_optional_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[uuid.UUID]:
    return _parse_user_id(x_user_id)


def require_admin(
    request: Request,
    services: ServiceContainer = Depends(get_services),
    actor_id: Optional[uuid.UUID] = Depends(get_optional_user_id),
) -> Optional[uuid.UUID]:
    """
    Check the admin API key.

    Returns:
        Optional[uuid.UUID]: Acting admin's id from ``X-User-ID``, if sent

    Raises:
        HTTPException: 403 if the key is missing, wrong, or not configured
    """
    if not _has_admin_key(request, services):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Admin API key required"},
        )
    return actor_id


def is_admin(request: Request, services: ServiceContainer = Depends(get_services)) -> bool:
    """True when the request carries a valid admin API key; never raises."""
    return _has_admin_key(request, services)
