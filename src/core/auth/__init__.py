from src.core.auth.models import User, UserRole
from src.core.auth.jwt import decode_token
from src.core.auth.dependencies import get_current_user, require_roles

__all__ = [
    "User",
    "UserRole",
    "decode_token",
    "get_current_user",
    "require_roles",
]
