from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, BusinessScopeError
from app.platform.security.repository import BaseRepository

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "BusinessScopeError",
    "BaseRepository",
]
