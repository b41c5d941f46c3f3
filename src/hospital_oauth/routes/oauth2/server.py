"""
OAuth2 server wiring.

``OAuth2Server`` holds one instance of every collaborator of the
authorization server. The app stores it on ``app.state.oauth2_server``;
routes read it from there, and tests build their own with in-memory
backends.
"""

from typing import Callable, Optional

from hospital_oauth.config import Settings, settings
from hospital_oauth.database import db_manager
from hospital_oauth.managers.logging_manager import get_logger
from hospital_oauth.managers.redis_manager import redis_manager

from .audit_manager import AuditEmitter, AuditSink, LoggingAuditSink, RedisAuditSink
from .client_manager import ClientCache, ClientRegistry
from .database import ClientStore, InMemoryClientStore, MongoClientStore
from .models import utc_now
from .services.auth_code_manager import AuthorizationCodeManager
from .services.claims import SubjectClaimsProvider
from .services.grants import build_grant_handlers
from .services.introspection_service import IntrospectionService
from .services.memory_store import InMemoryOAuth2Store
from .services.redis_store import RedisOAuth2Store
from .services.revocation_service import RevocationService
from .services.store import OAuth2Store, bounded
from .services.token_manager import TokenManager
from .services.token_service import TokenService

logger = get_logger(prefix="[OAuth2 Server]")


class OAuth2Server:
    """Container for the authorization server's collaborators."""

    def __init__(
        self,
        store: OAuth2Store,
        client_store: ClientStore,
        audit_sink: Optional[AuditSink] = None,
        claims_provider: Optional[SubjectClaimsProvider] = None,
        config: Settings = settings,
        clock: Callable = utc_now,
    ):
        self.config = config
        self.clock = clock
        self.store = store
        self.client_store = client_store
        self.client_registry = ClientRegistry(
            client_store,
            cache=ClientCache(ttl_seconds=config.CLIENT_CACHE_TTL_SECONDS),
            bcrypt_rounds=config.BCRYPT_ROUNDS,
        )
        self.audit = AuditEmitter(audit_sink)
        self.token_manager = TokenManager(
            access_token_ttl=config.ACCESS_TOKEN_TTL_SECONDS,
            refresh_token_ttl=config.REFRESH_TOKEN_TTL_SECONDS,
        )
        timeout = config.STORE_OPERATION_TIMEOUT_SECONDS
        self.auth_code_manager = AuthorizationCodeManager(
            store,
            code_ttl=config.AUTH_CODE_TTL_SECONDS,
            default_scopes=config.default_scopes_list,
            allow_plain_pkce=config.PKCE_ALLOW_PLAIN,
            store_timeout=timeout,
            clock=clock,
        )
        self.token_service = TokenService(
            self.client_registry,
            build_grant_handlers(
                store,
                self.token_manager,
                claims_provider=claims_provider,
                allow_plain_pkce=config.PKCE_ALLOW_PLAIN,
                store_timeout=timeout,
            ),
            self.audit,
            store_timeout=timeout,
            clock=clock,
        )
        self.introspection_service = IntrospectionService(
            self.client_registry,
            store,
            self.audit,
            issuer=config.TOKEN_ISSUER,
            store_timeout=timeout,
            clock=clock,
        )
        self.revocation_service = RevocationService(self.client_registry, store, self.audit, store_timeout=timeout)

    async def purge_expired(self, organization_id: str) -> int:
        """
        Delete the organization's expired codes and tokens.

        Redis expires these keys by itself; the call matters for the
        in-memory store and for lineage indexes.
        """
        return await bounded(
            self.store.purge_expired(organization_id, self.clock()),
            self.config.STORE_OPERATION_TIMEOUT_SECONDS,
            "purge_expired",
        )

    def metadata(self) -> dict:
        """Authorization server metadata (RFC 8414)."""
        base_url = self.config.BASE_URL.rstrip("/")
        return {
            "issuer": self.config.TOKEN_ISSUER,
            "token_endpoint": f"{base_url}/oauth2/token",
            "introspection_endpoint": f"{base_url}/oauth2/introspect",
            "revocation_endpoint": f"{base_url}/oauth2/revoke",
            "grant_types_supported": ["authorization_code", "refresh_token", "client_credentials"],
            "response_types_supported": ["code"],
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post", "none"],
            "introspection_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
            "revocation_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
            "code_challenge_methods_supported": ["S256", "plain"] if self.config.PKCE_ALLOW_PLAIN else ["S256"],
        }


def build_oauth2_server(config: Settings = settings) -> OAuth2Server:
    """Build the server with the backends selected in the configuration."""
    if config.OAUTH2_STORE_BACKEND == "redis":
        store: OAuth2Store = RedisOAuth2Store(redis_manager)
        audit_sink: AuditSink = RedisAuditSink(redis_manager)
    else:
        store = InMemoryOAuth2Store()
        audit_sink = LoggingAuditSink()

    if config.OAUTH2_CLIENT_BACKEND == "mongodb":
        client_store: ClientStore = MongoClientStore(db_manager)
    else:
        client_store = InMemoryClientStore()

    logger.info(
        f"OAuth2 server using store={config.OAUTH2_STORE_BACKEND}, clients={config.OAUTH2_CLIENT_BACKEND}"
    )
    return OAuth2Server(store, client_store, audit_sink=audit_sink, config=config)
