"""
Authentication module for LMS UI

This module provides:
- Identity provider clients (Cognito user pool, local development)
- Role resolution
- Session lifecycle management and durable session mirrors
- Route guard middleware
"""

from .cognito import COGNITO_TOKENS_KEY, CognitoIdentityProvider
from .dev_auth import DevIdentityProvider, DevUserDirectory
from .errors import AuthError, IdentityProviderError, translate_provider_error
from .guard import evaluate_access, landing_page_for
from .middleware import RouteGuardMiddleware, SessionCleanupMiddleware, add_route_guard
from .provider import IdentityProvider
from .roles import resolve_role
from .session import SessionManager, SessionRegistry
from .store import AUTH_STORAGE_KEY, FileSessionStore, MemorySessionStore, SessionStore
from .routes import router as auth_router

__all__ = [
    'AUTH_STORAGE_KEY',
    'COGNITO_TOKENS_KEY',
    'CognitoIdentityProvider',
    'DevIdentityProvider',
    'DevUserDirectory',
    'AuthError',
    'IdentityProviderError',
    'translate_provider_error',
    'evaluate_access',
    'landing_page_for',
    'RouteGuardMiddleware',
    'SessionCleanupMiddleware',
    'add_route_guard',
    'IdentityProvider',
    'resolve_role',
    'SessionManager',
    'SessionRegistry',
    'FileSessionStore',
    'MemorySessionStore',
    'SessionStore',
    'auth_router'
]
