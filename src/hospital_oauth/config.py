"""Configuration module for the Hospital OAuth authorization server.

Config discovery order:
  1. the file named by the ``HOSPITAL_OAUTH_CONFIG_PATH`` environment variable
  2. ``.hoa`` in the project root
  3. ``.env`` in the project root
  4. environment variables only

The discovered file is loaded with python-dotenv before the ``Settings``
object is built, so values from the file and the process environment are
both visible to pydantic-settings. Extra environment variables are allowed so
that deployment tooling can share the same file.

Nothing here is mandatory: every field has a default suitable for a local
in-memory deployment. Production deployments switch the storage backends to
Redis/MongoDB and set ``INTERNAL_API_KEY``.
"""

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
HOA_FILENAME: str = ".hoa"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "HOSPITAL_OAUTH_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# RFC 6749 section 4.1.2 recommends a maximum authorization code lifetime of 10 minutes
MAX_AUTH_CODE_TTL_SECONDS: int = 600


def get_config_path() -> Optional[str]:
    """Determine the config file path to use.

    Returns:
        Optional[str]: Path to config file, or None when only the environment is used.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    hoa_path: Path = PROJECT_ROOT / HOA_FILENAME
    if hoa_path.exists():
        return str(hoa_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support.
    All fields are loaded from the environment or the .hoa/.env file.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # Server configuration
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = True
    BASE_URL: str = "http://localhost:8000"
    METRICS_ENABLED: bool = True  # Prometheus /metrics endpoint

    # Logging configuration
    APP_NAME: str = "hospital-oauth"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False  # Per-worker file under logs/
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    # Redis configuration
    # REDIS_URL is the effective URL; when empty it is built from host/port/credentials below.
    REDIS_URL: Optional[str] = None
    REDIS_HOST: str = "127.0.0.1"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_USERNAME: Optional[str] = None
    REDIS_PASSWORD: Optional[SecretStr] = None
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 5.0

    # MongoDB configuration (client registry backend)
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "hospital_oauth"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_CONNECT_RETRIES: int = 3

    # Storage backends
    OAUTH2_STORE_BACKEND: str = "memory"  # memory | redis
    OAUTH2_CLIENT_BACKEND: str = "memory"  # memory | mongodb

    # Grant and token policy
    AUTH_CODE_TTL_SECONDS: int = 600
    ACCESS_TOKEN_TTL_SECONDS: int = 3600  # 1 hour
    REFRESH_TOKEN_TTL_SECONDS: int = 86400  # 24 hours
    STORE_OPERATION_TIMEOUT_SECONDS: float = 5.0
    CLIENT_CACHE_TTL_SECONDS: int = 60
    PKCE_ALLOW_PLAIN: bool = False
    TOKEN_ISSUER: str = "hospitalos"
    BCRYPT_ROUNDS: int = 12
    DEFAULT_SCOPES: str = "read"  # Comma separated, used when a code request names no scope

    # Tenancy
    ORGANIZATION_HEADER: str = "X-Organization-Id"
    RESERVED_SUBDOMAINS: str = "www,api"  # Comma separated
    # Host suffix whose direct subdomains are tenants (e.g. auth.example.com); unset disables Host resolution
    TENANT_BASE_DOMAIN: Optional[str] = None

    # Shared key for the internal authorize/client-admin routes; unset disables them
    INTERNAL_API_KEY: Optional[SecretStr] = None

    @field_validator("AUTH_CODE_TTL_SECONDS", mode="before")
    @classmethod
    def validate_auth_code_ttl(cls, v):
        """Authorization codes must be short lived."""
        value = int(v)
        if value <= 0 or value > MAX_AUTH_CODE_TTL_SECONDS:
            raise ValueError(f"AUTH_CODE_TTL_SECONDS must be between 1 and {MAX_AUTH_CODE_TTL_SECONDS}")
        return value

    @field_validator(
        "ACCESS_TOKEN_TTL_SECONDS",
        "REFRESH_TOKEN_TTL_SECONDS",
        "CLIENT_CACHE_TTL_SECONDS",
        mode="before",
    )
    @classmethod
    def validate_positive_integers(cls, v, info):
        """Validate that lifetimes are positive."""
        value = int(v)
        if value <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return value

    @field_validator("STORE_OPERATION_TIMEOUT_SECONDS", mode="before")
    @classmethod
    def validate_store_timeout(cls, v):
        value = float(v)
        if value <= 0:
            raise ValueError("STORE_OPERATION_TIMEOUT_SECONDS must be positive")
        return value

    @field_validator("OAUTH2_STORE_BACKEND", mode="before")
    @classmethod
    def validate_store_backend(cls, v):
        value = str(v).lower()
        if value not in ("memory", "redis"):
            raise ValueError("OAUTH2_STORE_BACKEND must be 'memory' or 'redis'")
        return value

    @field_validator("OAUTH2_CLIENT_BACKEND", mode="before")
    @classmethod
    def validate_client_backend(cls, v):
        value = str(v).lower()
        if value not in ("memory", "mongodb"):
            raise ValueError("OAUTH2_CLIENT_BACKEND must be 'memory' or 'mongodb'")
        return value

    @field_validator("BCRYPT_ROUNDS", mode="before")
    @classmethod
    def validate_bcrypt_rounds(cls, v):
        value = int(v)
        if value < 4 or value > 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31")
        return value

    @property
    def default_scopes_list(self) -> List[str]:
        """Get list of scopes granted when none are requested."""
        return [scope.strip() for scope in self.DEFAULT_SCOPES.split(",") if scope.strip()]

    @property
    def reserved_subdomains_list(self) -> List[str]:
        """Get list of host labels that never name an organization."""
        return [label.strip().lower() for label in self.RESERVED_SUBDOMAINS.split(",") if label.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return not self.DEBUG

    @property
    def internal_api_enabled(self) -> bool:
        """Internal routes are only mounted with a non-empty key."""
        return bool(self.INTERNAL_API_KEY and self.INTERNAL_API_KEY.get_secret_value())


def build_redis_url(config: Settings) -> str:
    """Build the effective Redis URL from host/port/db and optional credentials."""
    if config.REDIS_URL:
        return config.REDIS_URL
    creds = ""
    if config.REDIS_USERNAME or config.REDIS_PASSWORD:
        username = config.REDIS_USERNAME or ""
        password = config.REDIS_PASSWORD.get_secret_value() if config.REDIS_PASSWORD else ""
        if username and password:
            creds = f"{username}:{password}@"
        elif password and not username:
            creds = f":{password}@"
    return f"redis://{creds}{config.REDIS_HOST}:{config.REDIS_PORT}/{config.REDIS_DB}"


# Global settings instance
settings: Settings = Settings()
settings.REDIS_URL = build_redis_url(settings)
