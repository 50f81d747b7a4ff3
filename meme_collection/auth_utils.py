"""
Authorization and authentication utilities.

This module provides the request dependencies used by endpoints.
"""
from typing import Optional

from fastapi import Depends, Request
from sqlmodel import Session

from .db_helpers import get_db_session
from .errors import UnauthorizedError
from .models import User

# Authorization strategies:

# 1. Public endpoints (no session required):
#    - GET /health
#    - GET /auth/google, /auth/google/callback, /auth/logout
#    - GET /auth/current_user (returns null data when anonymous)

# 2. Session-required endpoints:
#    - everything under /api/memes
#    - owner-scoped: GET/PUT/DELETE /api/memes/{id}, listing, random
#    - any authenticated user: POST /api/memes/{id}/toggle-like


def session_token(request: Request) -> Optional[str]:
    return request.cookies.get(request.app.state.settings.session_cookie_name)


def optional_user(request: Request, session: Session = Depends(get_db_session)) -> Optional[User]:
    authenticator = request.app.state.authenticator
    return authenticator.current_user(session, session_token(request))


def require_user(user: Optional[User] = Depends(optional_user)) -> User:
    if user is None:
        raise UnauthorizedError()
    return user


def authorize(user: Optional[User], owner_id: Optional[int]) -> bool:
    """True when user may act on a resource owned by owner_id."""
    if user is None or user.id is None or owner_id is None:
        return False
    return user.id == owner_id
