"""Request-scoped dependencies shared by the routers."""
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from fleetsync.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """User id set by the identity layer in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


async def authenticated_user(
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
) -> str:
    """current_user_id plus the cooldown-gated opportunistic sync."""
    services.trigger.maybe_trigger(user_id)
    return user_id
