"""Authentication schemas."""

from pydantic import BaseModel, Field

ADMIN_ROLE = "admin"
MEMBER_ROLE = "member"


class AuthPrincipal(BaseModel):
    """Caller identity handed to services; admins may act on any user's jobs."""

    user_id: str = Field(min_length=1)
    role: str = Field(default=MEMBER_ROLE, min_length=1)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE
