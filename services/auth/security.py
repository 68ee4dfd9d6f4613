from jose import JWTError, jwt
from core.config.settings import Settings


# --- JSON Web Tokens (JWT) ---
# Owner tokens are issued by the login service; this side only verifies them.

def decode_access_token(token: str, settings: Settings) -> dict | None:
    """
    Decodes and validates a JWT access token.

    Returns:
        The token's payload if valid, otherwise None.
    """
    try:
        payload = jwt.decode(
            token,
            settings.auth.secret_key,
            algorithms=[settings.auth.algorithm]
        )
        return payload
    except JWTError:
        # Token is invalid (expired, wrong signature, etc.)
        return None


def owner_id_from_token(token: str, settings: Settings) -> str | None:
    """Owner id carried by a valid token (`sub`, falling back to `id`)."""
    payload = decode_access_token(token, settings)
    if not payload:
        return None
    owner = payload.get("sub") or payload.get("id")
    return str(owner) if owner is not None else None
