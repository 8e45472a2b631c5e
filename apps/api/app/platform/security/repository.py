from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext
from app.platform.security.errors import BusinessScopeError


class BaseRepository:
    resource = ""
    model: Any = None

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        if ctx.is_super_admin or self.model is None:
            return query
        column = getattr(self.model, "business_id", None)
        if column is None:
            return query
        return query.where(column.in_(ctx.business_scope))

    def validate_business_scope(self, ctx: AuthContext, business_id: str) -> None:
        if not ctx.can_access_business(business_id):
            raise BusinessScopeError(self.resource, business_id)
