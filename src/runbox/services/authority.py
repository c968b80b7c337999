from __future__ import annotations

from enum import IntEnum
from typing import Dict, Optional

from ..core.errors import AuthorizationError
from .job_store import JobStore


class Permission(IntEnum):
    READ = 1
    WRITE = 2
    ADMIN = 3


ROLE_PERMISSIONS: Dict[str, Permission] = {
    "viewer": Permission.READ,
    "editor": Permission.WRITE,
    "admin": Permission.ADMIN,
    "owner": Permission.ADMIN,
}


class SessionAuthority:
    """Answers whether a user may act on a session. Levels are ordered read < write < admin."""

    def session_exists(self, session_id: str) -> bool: ...

    def has_permission(self, session_id: str, user_id: str, level: Permission) -> bool: ...

    def require(self, session_id: str, user_id: str, level: Permission) -> None:
        if not self.session_exists(session_id):
            raise AuthorizationError(f"session {session_id} not found", code="session_not_found")
        if not self.has_permission(session_id, user_id, level):
            raise AuthorizationError(
                f"user {user_id} lacks {level.name.lower()} access to session {session_id}",
                code="access_denied",
            )


class SqlSessionAuthority(SessionAuthority):
    """Reads roles from the ``session_members`` table."""

    def __init__(self, store: JobStore):
        self.store = store

    def session_exists(self, session_id: str) -> bool:
        return self.store.session_exists(session_id)

    def role(self, session_id: str, user_id: str) -> Optional[str]:
        return self.store.role_of(session_id, user_id)

    def has_permission(self, session_id: str, user_id: str, level: Permission) -> bool:
        granted = ROLE_PERMISSIONS.get(self.role(session_id, user_id) or "")
        return granted is not None and granted >= level
