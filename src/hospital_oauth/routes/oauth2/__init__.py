"""
OAuth2 provider package.

This package implements the multi-tenant OAuth 2.0 authorization server:
token issuance for the authorization_code, refresh_token and
client_credentials grants, refresh rotation with lineage revocation, token
introspection (RFC 7662) and revocation (RFC 7009), with hospital claims
carried on every token.
"""

from .routes import metadata_router, router
from .server import OAuth2Server, build_oauth2_server

__all__ = ["metadata_router", "router", "OAuth2Server", "build_oauth2_server"]
