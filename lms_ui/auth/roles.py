"""
Role resolution for signed-in users

Sources are checked in order, first usable value wins:

1. ID token claim (signed by the identity provider at issue time)
2. User pool attribute, under the current and the legacy casing
3. External profile lookup, attempted once
4. The lowest-privilege default role
"""
from typing import Any, Awaitable, Callable, Mapping, Optional

from ..models.auth import DEFAULT_ROLE, ProviderTokens, UserRole
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

TOKEN_ROLE_CLAIMS = ("custom:role", "role")

# "custom:Role" predates the lower-case attribute; read-only compatibility shim
ATTRIBUTE_ROLE_KEYS = ("custom:role", "custom:Role")

RoleLookup = Callable[[Optional[ProviderTokens]], Awaitable[Optional[str]]]

_ROLES_BY_NAME = {role.value.lower(): role for role in UserRole}


def parse_role(value: Any) -> Optional[UserRole]:
    """Match a raw role value against the closed role set, case-insensitively"""
    if isinstance(value, UserRole):
        return value
    if not isinstance(value, str):
        return None
    return _ROLES_BY_NAME.get(value.strip().lower())


def _first_role(source: Optional[Mapping[str, Any]], keys, source_name: str) -> Optional[UserRole]:
    if not source:
        return None
    for key in keys:
        raw = source.get(key)
        if raw in (None, ""):
            continue
        role = parse_role(raw)
        if role is not None:
            return role
        logger.warning(f"Ignoring unknown role value in {source_name} '{key}'")
    return None


async def resolve_role(
    token_claims: Optional[Mapping[str, Any]],
    attributes: Optional[Mapping[str, Any]],
    lookup: Optional[RoleLookup] = None,
    tokens: Optional[ProviderTokens] = None,
) -> UserRole:
    """
    Resolve exactly one role for a freshly authenticated user

    Args:
        token_claims: Decoded ID token claims (may be empty)
        attributes: User pool attributes (may be empty)
        lookup: Optional external lookup returning a raw role or None
        tokens: Tokens handed to the external lookup

    Returns:
        UserRole: Resolved role, never None. Lookup failures degrade to the default.
    """
    role = _first_role(token_claims, TOKEN_ROLE_CLAIMS, "token claim")
    if role is not None:
        logger.debug(f"Role {role.value} resolved from token claim")
        return role

    role = _first_role(attributes, ATTRIBUTE_ROLE_KEYS, "user attribute")
    if role is not None:
        logger.debug(f"Role {role.value} resolved from user attribute")
        return role

    if lookup is not None:
        try:
            role = parse_role(await lookup(tokens))
        except Exception as e:
            logger.warning(f"External role lookup failed: {e}")
            role = None
        if role is not None:
            logger.debug(f"Role {role.value} resolved from external lookup")
            return role

    logger.info(f"No role found for user, defaulting to {DEFAULT_ROLE.value}")
    return DEFAULT_ROLE
