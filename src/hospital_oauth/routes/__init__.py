"""Routes package initialization."""

from hospital_oauth.routes.oauth2 import metadata_router
from hospital_oauth.routes.oauth2 import router as oauth2_router

__all__ = ["metadata_router", "oauth2_router"]
