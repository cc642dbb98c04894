from collections.abc import Callable, Iterable

from fastapi import Depends, HTTPException, status

from app.core.auth import AuthUser, get_current_user


SUPER_ADMIN = "SUPER_ADMIN"
ADMIN = "ADMIN"
SUB_ADMIN = "SUB_ADMIN"
STAFF = "STAFF"

# Most privileged first; used to pick one role out of a token's role list.
ROLES: tuple[str, ...] = (SUPER_ADMIN, ADMIN, SUB_ADMIN, STAFF)
ADMIN_ROLES = frozenset({SUPER_ADMIN, ADMIN, SUB_ADMIN})

_COMMON_CAPABILITIES = frozenset(
    {
        "party.create",
        "party.read",
        "lead.create",
        "lead.read",
        "lead.update_status",
        "quotation.create",
        "quotation.read",
        "quotation.send",
        "quotation.decide",
        "order.read",
        "order.convert",
        "order.receive_po",
        "followup.create",
        "followup.read",
        "followup.update",
    }
)

_ADMIN_CAPABILITIES = _COMMON_CAPABILITIES | {
    "lead.review",
    "lead.assign",
    "lead.delete",
    "order.update_status",
}

ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    SUPER_ADMIN: _ADMIN_CAPABILITIES | {"system.metrics.read"},
    ADMIN: _ADMIN_CAPABILITIES | {"system.metrics.read"},
    SUB_ADMIN: _ADMIN_CAPABILITIES,
    STAFF: _COMMON_CAPABILITIES,
}


def resolve_role(roles: Iterable[str]) -> str | None:
    normalized = {role.upper() for role in roles}
    for role in ROLES:
        if role in normalized:
            return role
    return None


def has_capability(role: str | None, capability: str) -> bool:
    if role is None:
        return False
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def require_permissions(*permissions: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        role = resolve_role(user.roles)
        missing_permissions = [
            permission
            for permission in permissions
            if permission not in user.roles and not has_capability(role, permission)
        ]
        if missing_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing_permissions)}",
            )
        return user

    return checker
