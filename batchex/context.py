from dataclasses import dataclass
from typing import Optional, Dict, List, Any

@dataclass
class UserContext:
    """
    Context object for carrying the calling user through BatchEx operations.

    Attributes:
        user_id: Unique identifier for the user
        user_email: Optional email address of the user
        roles: Optional list of user roles; ``admin`` bypasses ownership checks
        attributes: Optional dictionary for custom user attributes
    """
    user_id: str
    user_email: Optional[str] = None
    roles: Optional[List[str]] = None
    attributes: Optional[Dict] = None

    def has_role(self, role: str) -> bool:
        """Check if user has a specific role."""
        return self.roles is not None and role in self.roles

    @property
    def is_admin(self) -> bool:
        return self.has_role('admin')

    def get_attribute(self, key: str, default: Any = None) -> Any:
        """Get a user attribute with an optional default value."""
        if self.attributes is None:
            return default
        return self.attributes.get(key, default)
