"""Permission decisions derived from the session and the persisted owner."""
from __future__ import annotations

from typing import Optional

from .errors import Forbidden, Unauthenticated
from .sessions import Session


def require_authenticated(session: Optional[Session]) -> Session:
    if session is None:
        raise Unauthenticated("Not authenticated")
    return session


def require_owner_or_admin(session: Optional[Session], owner_id: Optional[str]) -> Session:
    """Allow the resource owner or an administrator.

    ``owner_id`` must come from the stored record, never from the request body.
    """
    session = require_authenticated(session)
    if session.is_admin or (owner_id is not None and session.user_id == owner_id):
        return session
    raise Forbidden("Only the owner or an administrator may change this resource")


def require_admin(session: Optional[Session]) -> Session:
    session = require_authenticated(session)
    if not session.is_admin:
        raise Forbidden("Admin only")
    return session
