from __future__ import annotations

from fastapi import Depends, Header

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.rbac import is_super_admin
from app.platform.security.context import AuthContext


def _parse_str_list(raw: str | None) -> list[str]:
    if raw is None:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_business_auth_context(
    auth_user: AuthUser = Depends(get_auth_user),
    business_scope_header: str | None = Header(default=None, alias="x-allowed-business-ids"),
) -> AuthContext:
    scope = list(dict.fromkeys([*auth_user.business_ids, *_parse_str_list(business_scope_header)]))
    return AuthContext(
        user_id=auth_user.sub,
        correlation_id=get_correlation_id(),
        is_super_admin=is_super_admin(auth_user),
        roles=[str(item) for item in auth_user.roles],
        business_scope=scope,
    )
