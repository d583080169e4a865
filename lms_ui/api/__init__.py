"""
API module for LMS UI
"""

from .client import ApiError, BackendClient, ProfileRoleLookup

__all__ = [
    'ApiError',
    'BackendClient',
    'ProfileRoleLookup'
]
