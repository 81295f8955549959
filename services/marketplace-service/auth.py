"""Authentication utilities."""
from typing import Optional
from fastapi import Depends, Header
import logging

from dependencies import get_identity_provider
from errors import InvalidCredential, Unauthenticated
from monitoring import auth_failures_counter, auth_attempts_counter
from services.identity_provider import CallerIdentity, IdentityProvider

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: Optional[str]) -> str:
    """
    Pull the token out of an ``Authorization: Bearer <token>`` header.

    Raises:
        Unauthenticated: If the header is missing or malformed
    """
    if authorization is None or not authorization.strip():
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise Unauthenticated("Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format", extra={
            "auth_header": authorization[:20] + "..." if len(authorization) > 20 else authorization
        })
        raise Unauthenticated("Invalid authorization header format")

    return parts[1]


def get_current_user(
    authorization: Optional[str] = Header(None),
    identity_provider: IdentityProvider = Depends(get_identity_provider)
) -> CallerIdentity:
    """
    Verify the bearer token and resolve the caller.

    Args:
        authorization: Authorization header value
        identity_provider: Verifies the token

    Returns:
        The caller identity

    Raises:
        Unauthenticated: If the header is missing or malformed
        InvalidCredential: If the token is expired or invalid
    """
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    token = extract_bearer_token(authorization)
    try:
        identity = identity_provider.verify_token(token)
    except InvalidCredential as e:
        auth_failures_counter.add(1, {"reason": "invalid_token"})
        logger.warning("Authentication failed: Invalid token", extra={
            "token_prefix": token[:8] + "..." if len(token) > 8 else token,
            "reason": e.message
        })
        raise

    logger.debug("Authentication successful", extra={"user_id": identity.id})
    return identity
