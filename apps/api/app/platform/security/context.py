from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Caller identity plus the set of businesses the caller may act on."""

    user_id: str
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)
    business_scope: list[str] = field(default_factory=list)

    def can_access_business(self, business_id: str) -> bool:
        return self.is_super_admin or business_id in self.business_scope
