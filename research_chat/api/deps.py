from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request

from research_chat.dependencies import ChatDependencies
from research_chat.models.session import AuthenticatedUser


def get_dependencies(request: Request) -> ChatDependencies:
    deps = getattr(request.app.state, "deps", None)
    if deps is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return deps


async def get_current_user(
    authorization: str | None = Header(default=None),
    deps: ChatDependencies = Depends(get_dependencies),
) -> AuthenticatedUser:
    """Resolve the bearer token; without Supabase every caller is the local user."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")
    if deps.authenticator is None:
        return AuthenticatedUser(id=deps.settings.cli_user_id, authorization=authorization)
    user = await deps.authenticator.get_user(authorization)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user
