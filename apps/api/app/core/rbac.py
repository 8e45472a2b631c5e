from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from app.core.auth import AuthUser, get_current_user

SUPER_ADMIN_ROLES = {"admin", "system.admin"}


def is_super_admin(user: AuthUser) -> bool:
    return any(role.lower() in SUPER_ADMIN_ROLES for role in user.roles)


def require_permissions(*permissions: str) -> Callable[[AuthUser], AuthUser]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if is_super_admin(user):
            return user
        missing_permissions = [permission for permission in permissions if permission not in user.roles]
        if missing_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing_permissions)}",
            )
        return user

    return checker
