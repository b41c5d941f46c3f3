"""
OAuth2 services package.

This package contains the service modules of the authorization server:
grant and token storage, PKCE validation, code issuance, token minting,
grant handlers and the token/introspection/revocation orchestrators.
"""

from .pkce_validator import PKCEValidationError, PKCEValidator
from .store import GrantNotFoundError, GrantReplayError, OAuth2Store, StoreError

__all__ = [
    "GrantNotFoundError",
    "GrantReplayError",
    "OAuth2Store",
    "PKCEValidationError",
    "PKCEValidator",
    "StoreError",
]
