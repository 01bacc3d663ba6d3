"""
Shared FastAPI dependencies.

WHAT: Caller identity and service lookups for endpoints
WHY: Every chat operation is authorized against a verified user id
HOW: Bearer header (or ?token= for EventSource/WebSocket) through a pluggable resolver
"""

from typing import Callable, Optional

from fastapi import Header, Query

from ..services.chat_service import ChatService, chat_service
from ..utils.exceptions import AuthenticationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

IdentityResolver = Callable[[str], Optional[str]]


def passthrough_resolver(token: str) -> Optional[str]:
    """The upstream auth gateway issues the verified user id as the bearer credential."""
    token = token.strip()
    return token or None


_identity_resolver: IdentityResolver = passthrough_resolver


def set_identity_resolver(resolver: IdentityResolver) -> None:
    """Install the resolver that maps bearer credentials to user ids."""
    global _identity_resolver
    _identity_resolver = resolver


def reset_identity_resolver() -> None:
    set_identity_resolver(passthrough_resolver)


def resolve_identity(token: Optional[str]) -> str:
    """
    Map a credential to a verified user id.

    Raises:
        AuthenticationError: missing or rejected credential
    """
    if not token:
        raise AuthenticationError()
    user_id = _identity_resolver(token)
    if not user_id:
        logger.warning("Rejected bearer credential")
        raise AuthenticationError("Invalid bearer token")
    return user_id


def get_current_user_id(
    authorization: Optional[str] = Header(default=None),
    token: Optional[str] = Query(default=None),
) -> str:
    """Verified caller identity from `Authorization: Bearer <token>` or `?token=`."""
    credential = token
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() != "bearer":
            raise AuthenticationError("Authorization scheme must be Bearer")
        credential = value
    return resolve_identity(credential)


def get_chat_service() -> ChatService:
    """Chat service singleton (overridden in tests)."""
    return chat_service
