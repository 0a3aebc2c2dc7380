"""Request execution with sticky multi-endpoint failover and error classification."""

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
import structlog
from asyncio_throttle import Throttler
from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from dirsync.clients.exceptions import (
    ConfigurationError,
    HttpError,
    RateLimitError,
    ServiceUnavailableError,
    TransportError,
)
from dirsync.config.models import SyncClientConfig

if TYPE_CHECKING:
    from dirsync.auth.token_cache import TokenCache

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_RATE_LIMIT_PER_MINUTE = 600
DEFAULT_MAX_RATE_LIMIT_RETRIES = 3

# Seconds to wait on throttling without a usable Retry-After header
THROTTLE_RETRY_AFTER = 10.0
RATELIMIT_BODY_RETRY_AFTER = 60.0

# Fragments of OS resolver errors, as surfaced by httpx.ConnectError
_UNRESOLVED_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "no address associated",
)


class RequestOptions(BaseModel):
    """Per-call options for ``RequestExecutor.execute``."""

    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    form: bool = Field(False, description="Send the body form-encoded instead of JSON")
    auth: Optional[Tuple[str, str]] = Field(
        None,
        description="Basic auth credentials, only honored for absolute URLs",
    )
    timeout: Optional[float] = Field(None, gt=0)


class Response(BaseModel):
    """Decoded backend response."""

    status: int
    body: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)


class TenantConnection:
    """Connection record of one tenant.

    ``active_index`` is the sticky failover position: once a working endpoint
    is found, later calls keep using it until it fails.
    """

    def __init__(
        self,
        tenant: str,
        base_urls: List[str],
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        headers: Optional[Dict[str, str]] = None,
        use_bearer_auth: bool = False,
        rate_limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE,
        max_rate_limit_retries: int = DEFAULT_MAX_RATE_LIMIT_RETRIES,
    ) -> None:
        if not base_urls:
            raise ConfigurationError(f"missing configuration tenants.{tenant}.connection.base_urls")
        self.tenant = tenant
        self.base_urls = list(base_urls)
        self.timeout_seconds = timeout_seconds
        self.headers = dict(headers or {})
        self.use_bearer_auth = use_bearer_auth
        self.max_rate_limit_retries = max_rate_limit_retries
        self.active_index = 0
        self.throttler = Throttler(rate_limit=rate_limit_per_minute, period=60)

    @property
    def base_url(self) -> str:
        return self.base_urls[self.active_index]

    def candidates(self) -> List[int]:
        """Endpoint indexes in failover order, starting at the sticky one."""
        start = self.active_index
        return [(start + i) % len(self.base_urls) for i in range(len(self.base_urls))]

    def fail_over(self, failed_index: int) -> str:
        """Move past a failed endpoint, unless another call already moved on.

        Args:
            failed_index: Index of the endpoint the failing call used

        Returns:
            The base URL that is active afterwards
        """
        if self.active_index == failed_index:
            self.active_index = (failed_index + 1) % len(self.base_urls)
        return self.base_url


class _AttemptPlan:
    """Endpoint order and retry budget of a single call.

    Each call walks its own candidate list, so concurrent failures on the
    shared connection never make a call skip an endpoint.
    """

    def __init__(self, conn: TenantConnection) -> None:
        self.conn = conn
        self.indexes = conn.candidates()
        self.position = 0
        self.rate_limited = 0

    @property
    def index(self) -> int:
        return self.indexes[self.position]

    @property
    def max_attempts(self) -> int:
        return len(self.indexes) + self.conn.max_rate_limit_retries

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, RateLimitError):
            self.rate_limited += 1
            if self.rate_limited > self.conn.max_rate_limit_retries:
                return False
            logger.info(
                "Rate limit hit, waiting before retry",
                tenant=self.conn.tenant,
                base_url=self.conn.base_urls[self.index],
                retry_after=exc.retry_after,
                retry=self.rate_limited,
            )
            return True

        if not (isinstance(exc, TransportError) and exc.retryable):
            return False

        failed_index = self.index
        self.conn.fail_over(failed_index)
        if self.position + 1 >= len(self.indexes):
            return False
        self.position += 1
        logger.info(
            "Failing over to next endpoint",
            tenant=self.conn.tenant,
            failed_base_url=self.conn.base_urls[failed_index],
            base_url=self.conn.base_urls[self.index],
            error_code=exc.code,
        )
        return True


def _is_absolute(path: str) -> bool:
    return path.startswith(("http://", "https://"))


def _wait_for_retry_after(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimitError):
        return exc.retry_after
    return 0.0


class RequestExecutor:
    """Executes backend calls for any configured tenant.

    Relative paths are sent to the tenant's sticky base URL with the tenant's
    bearer token. Absolute URLs are sent as-is, without tenant auth or
    failover, optionally using caller-supplied credentials.
    """

    def __init__(
        self,
        config: SyncClientConfig,
        token_cache: Optional["TokenCache"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        user_agent: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            config: Client configuration with the tenant connections
            token_cache: Token cache used for tenants with auth configured
            transport: Optional httpx transport (tests inject a MockTransport)
            user_agent: Custom user agent string
            sleep: Coroutine used to wait out Retry-After delays
        """
        self.config = config
        self.token_cache = token_cache
        self._sleep = sleep

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(DEFAULT_TIMEOUT_SECONDS),
            headers={
                "User-Agent": user_agent or self._get_default_user_agent(),
                "Accept": "application/json",
            },
            follow_redirects=True,
            transport=transport,
        )
        self._connections: Dict[str, TenantConnection] = {}

        # Request tracking for logging and debugging
        self._request_count = 0
        self._error_count = 0
        self._last_request_time: Optional[float] = None

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client and release connections."""
        await self._client.aclose()

    def _get_default_user_agent(self) -> str:
        from dirsync.version import __version__
        return f"dirsync/{__version__}"

    def connection(self, tenant: str) -> TenantConnection:
        """Get the connection record of a tenant, creating it on first use.

        Raises:
            ConfigurationError: If the tenant is not configured
        """
        conn = self._connections.get(tenant)
        if conn is None:
            try:
                tenant_config = self.config.get_tenant(tenant)
            except KeyError as e:
                raise ConfigurationError(str(e.args[0])) from None
            conn = TenantConnection(
                tenant=tenant,
                base_urls=tenant_config.connection.base_urls,
                timeout_seconds=tenant_config.connection.timeout_seconds,
                headers=tenant_config.connection.headers,
                use_bearer_auth=tenant_config.auth is not None,
                rate_limit_per_minute=tenant_config.connection.rate_limit_per_minute,
                max_rate_limit_retries=tenant_config.connection.max_rate_limit_retries,
            )
            self._connections[tenant] = conn
        return conn

    async def execute(
        self,
        tenant: str,
        method: str,
        path: str,
        body: Any = None,
        options: Optional[RequestOptions] = None,
    ) -> Response:
        """Execute a request for a tenant.

        Args:
            tenant: Tenant key
            method: HTTP method
            path: Path relative to the tenant's base URL, or an absolute URL
            body: JSON body, or form fields when ``options.form`` is set
            options: Per-call options

        Returns:
            Decoded response

        Raises:
            HttpError: For non-2xx responses
            RateLimitError: When throttling outlasts the retry budget, or at
                once for absolute URLs
            TransportError: For non-retryable connection failures, or any
                connection failure on an absolute URL
            ServiceUnavailableError: When every tenant endpoint failed
        """
        options = options or RequestOptions()
        method = method.upper()

        if _is_absolute(path):
            headers = dict(options.headers)
            basic_auth = httpx.BasicAuth(*options.auth) if options.auth else None
            timeout = options.timeout or self._tenant_timeout(tenant)
            return await self._send(tenant, method, path, body, options, headers, timeout, basic_auth)

        conn = self.connection(tenant)
        if not path.startswith("/"):
            path = "/" + path

        plan = _AttemptPlan(conn)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(plan.max_attempts),
                wait=_wait_for_retry_after,
                retry=retry_if_exception(plan.should_retry),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    index = plan.index
                    response = await self._send_to_tenant(conn, index, method, path, body, options)
                    conn.active_index = index
                    return response
        except TransportError as e:
            if not e.retryable:
                raise
            logger.error(
                "All endpoints unavailable",
                tenant=tenant,
                method=method,
                path=path,
                endpoints=len(conn.base_urls),
                error_code=e.code,
            )
            raise ServiceUnavailableError(
                f"service unavailable: no endpoint of tenant '{tenant}' could be reached",
                tenant=tenant,
                attempts=len(conn.base_urls),
            ) from e

    def _tenant_timeout(self, tenant: str) -> float:
        tenant_config = self.config.tenants.get(tenant)
        if tenant_config is None:
            return DEFAULT_TIMEOUT_SECONDS
        return tenant_config.connection.timeout_seconds

    async def _send_to_tenant(
        self,
        conn: TenantConnection,
        index: int,
        method: str,
        path: str,
        body: Any,
        options: RequestOptions,
    ) -> Response:
        headers = dict(conn.headers)
        if conn.use_bearer_auth:
            if self.token_cache is None:
                raise ConfigurationError(f"tenant '{conn.tenant}' requires auth but no token cache is set")
            token = await self.token_cache.get_token(conn.tenant)
            headers["Authorization"] = f"Bearer {token.value}"
        headers.update(options.headers)

        url = conn.base_urls[index] + path
        timeout = options.timeout or conn.timeout_seconds
        try:
            async with conn.throttler:
                return await self._send(conn.tenant, method, url, body, options, headers, timeout)
        except HttpError as e:
            if e.status_code == 401 and conn.use_bearer_auth and self.token_cache is not None:
                # Token was rejected before its expiry, renew on next call
                self.token_cache.invalidate(conn.tenant)
            raise

    async def _send(
        self,
        tenant: str,
        method: str,
        url: str,
        body: Any,
        options: RequestOptions,
        headers: Dict[str, str],
        timeout: float,
        auth: Optional[httpx.Auth] = None,
    ) -> Response:
        self._request_count += 1
        self._last_request_time = time.time()
        request_id = f"req_{self._request_count}"

        kwargs: Dict[str, Any] = {
            "headers": headers,
            "timeout": httpx.Timeout(timeout),
        }
        if options.params:
            kwargs["params"] = options.params
        if auth is not None:
            kwargs["auth"] = auth
        if body is not None:
            if options.form:
                kwargs["data"] = body
            elif isinstance(body, (str, bytes)):
                kwargs["content"] = body
            else:
                kwargs["json"] = body

        logger.debug(
            "Making request",
            tenant=tenant,
            request_id=request_id,
            method=method,
            url=url,
            has_body=body is not None,
        )

        try:
            http_response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            self._error_count += 1
            raise TransportError(f"request timed out: {e}", code="ETIMEDOUT", endpoint=url) from e
        except httpx.ConnectError as e:
            self._error_count += 1
            message = str(e).lower()
            code = "ENOTFOUND" if any(m in message for m in _UNRESOLVED_MARKERS) else "ECONNREFUSED"
            raise TransportError(f"connection failed: {e}", code=code, endpoint=url) from e
        except httpx.RequestError as e:
            self._error_count += 1
            raise TransportError(f"request failed: {e}", code="ECONNRESET", endpoint=url) from e

        response = Response(
            status=http_response.status_code,
            body=self._decode_body(http_response),
            headers=dict(http_response.headers),
        )

        if http_response.is_success:
            logger.debug(
                "Request completed",
                tenant=tenant,
                request_id=request_id,
                status_code=response.status,
            )
            return response

        self._error_count += 1
        if response.status == 429 or "ratelimit" in http_response.text.lower():
            default = THROTTLE_RETRY_AFTER if response.status == 429 else RATELIMIT_BODY_RETRY_AFTER
            logger.warning(
                "Request throttled",
                tenant=tenant,
                request_id=request_id,
                method=method,
                url=url,
                status_code=response.status,
            )
            raise RateLimitError(
                f"{method} {url} throttled",
                status_code=response.status,
                body=response.body,
                retry_after=self._get_retry_after(http_response, default),
            )

        log = logger.debug if response.status == 404 else logger.error
        log(
            "Request failed",
            tenant=tenant,
            request_id=request_id,
            method=method,
            url=url,
            status_code=response.status,
        )
        raise HttpError(
            f"{method} {url} failed",
            status_code=response.status,
            body=response.body,
        )

    def _get_retry_after(self, response: httpx.Response, default: float) -> float:
        """Extract the retry delay in seconds from the Retry-After header.

        One second is added to the announced delay. Falls back to ``default``
        when the header is missing or not an integer.
        """
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return int(retry_after) + 1
            except ValueError:
                pass
        return default

    @staticmethod
    def _decode_body(http_response: httpx.Response) -> Any:
        if not http_response.content:
            return None
        content_type = http_response.headers.get("content-type", "")
        text = http_response.text
        if "json" in content_type:
            try:
                return http_response.json()
            except ValueError:
                return text
        try:
            return json.loads(text)
        except ValueError:
            return text

    def get_stats(self) -> Dict[str, Any]:
        """Get executor statistics for monitoring."""
        return {
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": self._error_count / max(self._request_count, 1),
            "last_request_time": self._last_request_time,
            "active_endpoints": {
                tenant: conn.base_url for tenant, conn in self._connections.items()
            },
        }
