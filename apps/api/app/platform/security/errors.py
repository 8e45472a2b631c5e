from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for business-scope enforcement failures."""


class BusinessScopeError(AuthorizationError):
    """Raised when a caller touches a business outside its allowed scope."""

    def __init__(self, resource: str, business_id: str) -> None:
        self.resource = resource
        self.business_id = business_id
        super().__init__(f"Business '{business_id}' is outside the caller scope for resource '{resource}'")
