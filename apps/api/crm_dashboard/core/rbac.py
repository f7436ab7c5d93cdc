from collections.abc import Callable, Iterable

from fastapi import Depends

from crm_dashboard.core.auth import Principal, get_current_principal
from crm_dashboard.core.errors import ForbiddenError


ADMIN = ("admin",)
MANAGERS = ("admin", "manager")
SALES_TEAM = ("admin", "manager", "sales")


def authorize(principal: Principal, allowed_roles: Iterable[str]) -> Principal:
    allowed = set(allowed_roles)
    if principal.role not in allowed:
        raise ForbiddenError(
            "Insufficient permissions",
            details={"role": principal.role, "allowed_roles": sorted(allowed)},
        )
    return principal


def require_roles(*roles: str) -> Callable[[Principal], Principal]:
    def checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        return authorize(principal, roles)

    return checker
