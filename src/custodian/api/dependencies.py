"""Request dependencies shared by the API routers.

Authentication is delegated to the fronting gateway, which forwards the
caller identity in the X-User-ID header and a comma-separated role list
in X-User-Roles. Requests without X-User-ID are rejected.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, Header, Request

from custodian.api.middleware.errors import AuthenticationError, AuthorizationError
from custodian.services.engine import Engine  # noqa: TC001 - resolved by FastAPI at runtime

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Caller:
    """Identity of the user making the request.

    Attributes:
        user_id: Identifier forwarded by the gateway.
        roles: Role names assigned to the user.
    """

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def get_engine(request: Request) -> Engine:
    """Return the engine attached to the application."""
    return request.app.state.engine


async def require_caller(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_roles: Annotated[str | None, Header()] = None,
) -> Caller:
    """Dependency that requires a caller identity.

    Raises:
        AuthenticationError: If X-User-ID is missing or blank.
    """
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("X-User-ID header is required")
    roles = frozenset(r.strip() for r in (x_user_roles or "").split(",") if r.strip())
    return Caller(user_id=x_user_id.strip(), roles=roles)


def require_role(role: str) -> Callable:
    """Factory for role-checking dependencies.

    Usage:
        @router.post("/cleanup/run")
        async def run_cleanup(caller: Caller = Depends(require_role("admin"))):
            ...
    """

    async def _check_role(caller: Annotated[Caller, Depends(require_caller)]) -> Caller:
        if not caller.has_role(role):
            raise AuthorizationError(f"Role required: {role}")
        return caller

    return _check_role


EngineDep = Annotated[Engine, Depends(get_engine)]
CallerDep = Annotated[Caller, Depends(require_caller)]
AdminDep = Annotated[Caller, Depends(require_role(ADMIN_ROLE))]
