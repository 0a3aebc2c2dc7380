"""Per-tenant bearer token cache with lock-guarded renewal."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel, ConfigDict

from dirsync.clients.exceptions import AuthError, ConfigurationError, DirSyncError
from dirsync.clients.executor import RequestExecutor, RequestOptions
from dirsync.config.models import SyncClientConfig
from dirsync.config.secrets import SecretProvider

logger = structlog.get_logger(__name__)

ENTRA_TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"


class Token(BaseModel):
    """Bearer token owned by exactly one tenant's cache entry."""

    model_config = ConfigDict(frozen=True)

    value: str
    expires_at: float

    def __repr__(self) -> str:
        return f"Token(expires_at={self.expires_at})"

    __str__ = __repr__


Renewer = Callable[[str], Awaitable[Token]]


class TokenCache:
    """Caches one bearer token per tenant and renews it shortly before expiry.

    Renewal is serialized per tenant with an ``asyncio.Lock``. Callers that
    queue on the lock while another caller renews re-check the cached token
    once they hold the lock, so concurrent callers trigger a single renewal.
    If that renewal fails, every caller that was queued behind it receives the
    same ``AuthError``; the cache does not retry on its own.
    """

    EXPIRY_MARGIN_SECONDS = 30

    def __init__(
        self,
        renewer: Renewer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            renewer: Coroutine function fetching a fresh token for a tenant
            clock: Returns the current time in epoch seconds
        """
        self._renewer = renewer
        self._clock = clock
        self._tokens: Dict[str, Token] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Per tenant count of completed renewals and the error of the latest failed one
        self._attempts: Dict[str, int] = {}
        self._last_error: Dict[str, AuthError] = {}

    def _lock_for(self, tenant: str) -> asyncio.Lock:
        lock = self._locks.get(tenant)
        if lock is None:
            lock = self._locks[tenant] = asyncio.Lock()
        return lock

    def _is_fresh(self, token: Optional[Token]) -> bool:
        return token is not None and token.expires_at >= self._clock() + self.EXPIRY_MARGIN_SECONDS

    def peek(self, tenant: str) -> Optional[Token]:
        """Return the cached token without renewing it."""
        return self._tokens.get(tenant)

    def invalidate(self, tenant: str) -> None:
        """Drop the cached token so the next caller renews."""
        if self._tokens.pop(tenant, None) is not None:
            logger.debug("Bearer token invalidated", tenant=tenant)

    async def get_token(self, tenant: str) -> Token:
        """Get a valid token for a tenant, renewing it if needed.

        Raises:
            AuthError: If renewal fails
        """
        token = self._tokens.get(tenant)
        if self._is_fresh(token):
            return token

        seen_attempt = self._attempts.get(tenant, 0)
        async with self._lock_for(tenant):
            token = self._tokens.get(tenant)
            if self._is_fresh(token):
                return token

            if self._attempts.get(tenant, 0) != seen_attempt and tenant in self._last_error:
                # A renewal completed while we waited and it failed
                raise self._last_error[tenant]

            logger.debug("Renewing bearer token", tenant=tenant)
            try:
                token = await self._renewer(tenant)
            except AuthError as e:
                self._last_error[tenant] = e
                raise
            finally:
                self._attempts[tenant] = self._attempts.get(tenant, 0) + 1

            self._last_error.pop(tenant, None)
            self._tokens[tenant] = token
            logger.info(
                "Bearer token renewed",
                tenant=tenant,
                expires_in=int(token.expires_at - self._clock()),
            )
            return token


class ClientCredentialsRenewer:
    """Fetches tokens with the OAuth2 client-credentials grant."""

    def __init__(
        self,
        executor: RequestExecutor,
        config: SyncClientConfig,
        secrets: SecretProvider,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._executor = executor
        self._config = config
        self._secrets = secrets
        self._clock = clock

    def token_url(self, tenant: str) -> str:
        auth = self._config.get_tenant(tenant).auth
        if auth is None:
            raise AuthError(f"tenant '{tenant}' has no auth configuration", tenant=tenant)
        if auth.token_url is not None:
            return str(auth.token_url)
        return ENTRA_TOKEN_URL.format(tenant_id=auth.tenant_id_guid)

    def scope(self, tenant: str) -> Optional[str]:
        tenant_config = self._config.get_tenant(tenant)
        auth = tenant_config.auth
        if auth.scope:
            return auth.scope
        if auth.tenant_id_guid:
            parsed = urlparse(tenant_config.connection.base_urls[0])
            return f"{parsed.scheme}://{parsed.netloc}/.default"
        return None

    async def renew(self, tenant: str) -> Token:
        """Request a new token for a tenant.

        Raises:
            AuthError: If the token endpoint fails or answers without a token
        """
        token_url = self.token_url(tenant)
        auth = self._config.get_tenant(tenant).auth
        try:
            client_secret = self._secrets.get_secret(f"tenants.{tenant}.auth.client_secret")
        except ConfigurationError as e:
            raise AuthError(f"client secret unavailable: {e}", tenant=tenant) from e

        form: Dict[str, Any] = {
            "grant_type": "client_credentials",
            "client_id": auth.client_id,
            "client_secret": client_secret,
        }
        scope = self.scope(tenant)
        if scope:
            form["scope"] = scope

        try:
            response = await self._executor.execute(
                tenant, "POST", token_url, body=form, options=RequestOptions(form=True)
            )
        except DirSyncError as e:
            raise AuthError(f"token request to {token_url} failed: {e}", tenant=tenant) from e

        body = response.body
        if not isinstance(body, dict):
            raise AuthError(f"no token data retrieved from {token_url}", tenant=tenant)
        if body.get("error"):
            raise AuthError(
                f"token endpoint error: {body.get('error_description') or body['error']}",
                tenant=tenant,
            )

        value = body.get("access_token") or body.get("token") or body.get("accessToken")
        if not value:
            raise AuthError("retrieved invalid token response", tenant=tenant)

        try:
            expires_in = int(body.get("expires_in", 3600))
        except (TypeError, ValueError):
            raise AuthError("retrieved invalid expires_in in token response", tenant=tenant) from None

        # expires_in instead of expires_on, the local clock is authoritative
        return Token(value=value, expires_at=self._clock() + expires_in)
