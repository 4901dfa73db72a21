"""Authentication provider interfaces."""

from abc import ABC, abstractmethod

from app.schemas.auth import ADMIN_ROLE, MEMBER_ROLE, AuthPrincipal


class AuthVerificationError(Exception):
    """Raised when a session token cannot be verified or mapped to a user."""


def normalize_role(claim: object) -> str:
    """Collapse a provider role claim onto the two roles the API knows."""
    return ADMIN_ROLE if str(claim or "").strip().lower() == ADMIN_ROLE else MEMBER_ROLE


class TokenVerifier(ABC):
    """Session token verification boundary; token issuance lives elsewhere."""

    @abstractmethod
    def verify_token(self, token: str) -> AuthPrincipal:
        """Return the principal for a verified token."""


__all__ = ["AuthVerificationError", "TokenVerifier", "normalize_role"]
