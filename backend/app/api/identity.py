"""Best-effort subject extraction from a bearer credential.

Runs before authorization, so the signature is NOT verified here. The
result only decides whether to bind a security context for RLS; the
authorization phase that runs later is authoritative and never reads it.
"""

import jwt


def peek_subject(authorization: str | None) -> str | None:
    """Return the ``sub`` claim of a bearer JWT without verifying it.

    Args:
        authorization: Raw Authorization header value (e.g., "Bearer <token>")

    Returns:
        Subject identifier, or None when the header is absent, not a
        bearer credential, undecodable, or carries no string ``sub``.
    """
    if not authorization:
        return None

    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None

    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except (jwt.PyJWTError, ValueError, TypeError):
        return None

    subject = claims.get("sub") if isinstance(claims, dict) else None
    if not isinstance(subject, str) or not subject:
        return None

    return subject
