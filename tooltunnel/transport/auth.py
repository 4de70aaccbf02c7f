"""Bearer token checks shared by the local transport and the relay."""

import secrets


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:].strip() or None


def token_matches(authorization: str | None, expected: str | None) -> bool:
    """True when no token is required or the header carries the expected one."""
    if expected is None:
        return True
    presented = bearer_token(authorization)
    return presented is not None and secrets.compare_digest(presented, expected)


def generate_token() -> str:
    """Generate a random bearer token for agents."""
    return secrets.token_urlsafe(32)
