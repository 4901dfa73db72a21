"""Mock auth verifier for local development and tests."""

from app.adapters.auth.base import AuthVerificationError, TokenVerifier, normalize_role
from app.schemas.auth import AuthPrincipal

_TOKEN_PREFIX = "test"


class MockTokenVerifier(TokenVerifier):
    """Accepts ``test:<user_id>`` or ``test:<user_id>:<role>`` tokens only."""

    def verify_token(self, token: str) -> AuthPrincipal:
        prefix, _, remainder = token.partition(":")
        if prefix != _TOKEN_PREFIX or not remainder:
            raise AuthVerificationError("Invalid bearer token")

        user_id, _, role = remainder.partition(":")
        user_id = user_id.strip()
        if not user_id or ":" in role:
            raise AuthVerificationError("Invalid bearer token")

        return AuthPrincipal(user_id=user_id, role=normalize_role(role))


__all__ = ["MockTokenVerifier"]
