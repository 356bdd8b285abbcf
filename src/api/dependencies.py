"""FastAPI dependency injection helpers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from src.domain.entities import Identity
from src.domain.enums import Role
from src.domain.errors import ForbiddenError
from src.services.container import Services


def get_services(request: Request) -> Services:
    """The per-process service container built in the app lifespan."""
    return request.app.state.services


def parse_identity(user_id: Optional[str], role: Optional[str]) -> Optional[Identity]:
    if not user_id or not role:
        return None
    try:
        return Identity(user_id, Role(role.lower()))
    except ValueError:
        return None


async def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Identity:
    """Identity vouched for by the auth gateway via request headers."""
    identity = parse_identity(x_user_id, x_user_role)
    if identity is None:
        raise HTTPException(status_code=401, detail="Missing or invalid identity")
    return identity


async def require_rider(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.role is not Role.RIDER:
        raise ForbiddenError("Riders only")
    return identity


async def require_driver(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.role is not Role.DRIVER:
        raise ForbiddenError("Drivers only")
    return identity
