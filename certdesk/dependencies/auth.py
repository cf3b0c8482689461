import secrets
from collections.abc import Callable
from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyHeader

from certdesk.core.config import Settings, get_settings


class Role(str, Enum):
    """Supported roles."""

    ADMIN = "admin"
    OPERATOR = "operator"


class Caller:
    """Authenticated holder of a pre-shared key."""

    def __init__(self, roles: tuple[Role, ...]):
        self.roles = roles

    def has_role(self, role: Role) -> bool:
        return role in self.roles


api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


def _matches(candidate: str, expected: str) -> bool:
    return bool(expected) and secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


async def get_current_caller(
    api_key: Annotated[str | None, Security(api_key_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Caller:
    """Map the ``X-API-Key`` header onto a role.

    The admin key grants both roles; the operator key grants operator only.
    A missing or unknown key is rejected with 401.
    """

    if not api_key:
        raise HTTPException(status_code=401, detail="Missing X-API-Key header")
    if _matches(api_key, settings.admin_api_key):
        return Caller(roles=(Role.ADMIN, Role.OPERATOR))
    if _matches(api_key, settings.api_key):
        return Caller(roles=(Role.OPERATOR,))
    raise HTTPException(status_code=401, detail="Invalid API key")


def role_required(role: Role) -> Callable[[Caller], Caller]:
    """Dependency factory ensuring the caller's key grants the requested role."""

    async def dependency(caller: Annotated[Caller, Depends(get_current_caller)]) -> Caller:
        if not caller.has_role(role):
            raise HTTPException(status_code=401, detail=f"API key does not grant {role.value} access")
        return caller

    return dependency
