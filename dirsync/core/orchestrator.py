"""Sync orchestrator tying credentials, paging, execution and reconciliation together."""

import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import quote, urlsplit

import httpx
import structlog

from dirsync.auth.token_cache import ClientCredentialsRenewer, TokenCache
from dirsync.clients.exceptions import (
    ConfigurationError,
    ConflictError,
    DirSyncError,
    HttpError,
    NotFoundError,
    ValidationError,
)
from dirsync.clients.executor import RequestExecutor, RequestOptions
from dirsync.clients.ldap import LdapDirectorySearcher
from dirsync.config.models import ResourceConfig, SyncClientConfig, TenantConfig
from dirsync.config.secrets import ConfigSecretProvider, SecretProvider
from dirsync.core.entitlements import (
    EntitlementReconciler,
    PlanCatalog,
    assignments_from_license_details,
    parse_plan_reference,
)
from dirsync.core.identifiers import DirectoryIdentifierResolver, DirectorySearcher, looks_like_path
from dirsync.core.mapping import AttributeMapper
from dirsync.core.paging import CursorStatus, PagingCursorStore, total_results

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_COUNT = 200

# Protocol status per error kind
_STATUS_BY_KIND = {
    "validation": 400,
    "auth": 401,
    "not_found": 404,
    "conflict": 409,
    "rate_limit": 429,
    "ambiguous": 409,
    "service_unavailable": 503,
    "transport": 502,
}


class SyncOrchestrator:
    """Entry point for enumerate/get/create/update/delete against any tenant.

    Owns the per-tenant registries for the life of the process: one executor
    (with its sticky endpoints), one token cache, one cursor store and one
    identifier resolver per directory-backed tenant.
    """

    def __init__(
        self,
        config: SyncClientConfig,
        secrets: Optional[SecretProvider] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        searchers: Optional[Dict[str, DirectorySearcher]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Client configuration
            secrets: Secret provider, defaults to reading the loaded config
            transport: Optional httpx transport passed to the executor
            searchers: Directory searchers per tenant, overriding the ldap3
                searcher built from the tenant's directory configuration
            clock: Returns the current time in epoch seconds
        """
        self.config = config
        self.secrets = secrets or ConfigSecretProvider(config)
        self.executor = RequestExecutor(config, transport=transport)
        self.renewer = ClientCredentialsRenewer(self.executor, config, self.secrets, clock=clock)
        self.token_cache = TokenCache(self.renewer.renew, clock=clock)
        self.executor.token_cache = self.token_cache
        self.cursors = PagingCursorStore()
        self.reconciler = EntitlementReconciler()

        self._searchers: Dict[str, DirectorySearcher] = dict(searchers or {})
        self._owned_searchers: List[LdapDirectorySearcher] = []
        self._resolvers: Dict[str, DirectoryIdentifierResolver] = {}
        self._mappers: Dict[Tuple[str, str], AttributeMapper] = {}

    async def __aenter__(self) -> "SyncOrchestrator":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Release HTTP and LDAP connections."""
        await self.executor.close()
        for searcher in self._owned_searchers:
            searcher.close()
        self._owned_searchers.clear()

    # Registries

    def _tenant_config(self, tenant: str) -> TenantConfig:
        try:
            return self.config.get_tenant(tenant)
        except KeyError as e:
            raise ConfigurationError(str(e.args[0])) from None

    def _resource(self, tenant: str, resource_type: str) -> ResourceConfig:
        resource = self._tenant_config(tenant).resources.get(resource_type)
        if resource is None:
            raise ValidationError(f"unsupported resource type '{resource_type}' for tenant '{tenant}'")
        return resource

    def mapper(self, tenant: str, resource_type: str) -> AttributeMapper:
        key = (tenant, resource_type)
        mapper = self._mappers.get(key)
        if mapper is None:
            mapper = AttributeMapper.for_resource(self._tenant_config(tenant), resource_type)
            self._mappers[key] = mapper
        return mapper

    def resolver(self, tenant: str) -> Optional[DirectoryIdentifierResolver]:
        """Identifier resolver of a tenant, None when it has no directory."""
        resolver = self._resolvers.get(tenant)
        if resolver is not None:
            return resolver

        searcher = self._searchers.get(tenant)
        if searcher is None:
            directory = self._tenant_config(tenant).directory
            if directory is None:
                return None
            ldap_searcher = LdapDirectorySearcher(directory, tenant=tenant)
            self._owned_searchers.append(ldap_searcher)
            searcher = self._searchers[tenant] = ldap_searcher

        resolver = self._resolvers[tenant] = DirectoryIdentifierResolver(searcher, tenant=tenant)
        return resolver

    @staticmethod
    def _object_path(resource: ResourceConfig, identifier: str) -> str:
        if not identifier:
            raise ValidationError("identifier must not be empty")
        return f"{resource.path}/{quote(identifier, safe='@')}"

    @staticmethod
    def _page(resource: ResourceConfig, body: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        if isinstance(body, list):
            return body, None
        if not isinstance(body, dict):
            return [], None
        return list(body.get(resource.items_key) or []), body.get(resource.next_link_key)

    # Reads

    async def enumerate(
        self,
        tenant: str,
        resource_type: str,
        start_index: Optional[int] = None,
        count: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Enumerate a resource type.

        Without ``start_index`` and ``count`` every page is fetched and the
        real count is reported. Otherwise one page is fetched, continuing the
        stored cursor when ``start_index`` is the expected next index.

        Returns:
            ``{"resources": [...], "totalResults": n}``

        Raises:
            ValidationError: If the resource type or paging arguments are invalid
        """
        resource = self._resource(tenant, resource_type)
        mapper = self.mapper(tenant, resource_type)
        log = logger.bind(tenant=tenant, resource_type=resource_type)

        if start_index is None and count is None:
            items = await self._fetch_all(tenant, resource)
            log.debug("Enumerated all resources", count=len(items))
            return {
                "resources": [mapper.inbound(item) for item in items],
                "totalResults": total_results(None, None, len(items), False),
            }

        if start_index is not None and start_index < 1:
            raise ValidationError(f"startIndex must be >= 1, got {start_index}")
        if count is not None and count < 0:
            raise ValidationError(f"count must be >= 0, got {count}")

        if count == 0:
            # Only the total is asked for, the cursor state is left untouched
            has_more = not self.cursors.is_exhausted(tenant, resource_type)
            return {
                "resources": [],
                "totalResults": total_results(start_index, count, 0, has_more),
            }

        page_size = min(count if count is not None else DEFAULT_PAGE_COUNT, resource.max_page_size)
        lookup = self.cursors.next(tenant, resource_type, start_index)

        if lookup.status == CursorStatus.EMPTY:
            return {
                "resources": [],
                "totalResults": total_results(start_index, count, 0, False),
            }

        if lookup.status == CursorStatus.CONTINUE:
            path = f"{resource.path}?{lookup.cursor}"
            options = RequestOptions()
        else:
            path = resource.path
            options = RequestOptions(params={"$top": page_size})

        response = await self.executor.execute(tenant, "GET", path, options=options)
        items, next_link = self._page(resource, response.body)
        # Only the query string is kept, it is replayed against the sticky endpoint
        continuation = (urlsplit(next_link).query if next_link else "") or None
        self.cursors.advance(tenant, resource_type, start_index, len(items), continuation)

        log.debug(
            "Enumerated page",
            start_index=start_index,
            page_size=len(items),
            has_more=continuation is not None,
        )
        return {
            "resources": [mapper.inbound(item) for item in items],
            "totalResults": total_results(start_index, count, len(items), continuation is not None),
        }

    async def _fetch_all(self, tenant: str, resource: ResourceConfig) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        path = resource.path
        options = RequestOptions(params={"$top": resource.max_page_size})
        while True:
            response = await self.executor.execute(tenant, "GET", path, options=options)
            page, next_link = self._page(resource, response.body)
            items.extend(page)
            query = urlsplit(next_link).query if next_link else ""
            if not query:
                return items
            path = f"{resource.path}?{query}"
            options = RequestOptions()

    async def get(self, tenant: str, resource_type: str, identifier: str) -> Optional[Dict[str, Any]]:
        """Get one object, None if the backend reports it absent."""
        resource = self._resource(tenant, resource_type)
        identifier = await self.normalize_identifier(tenant, identifier)
        try:
            response = await self.executor.execute(tenant, "GET", self._object_path(resource, identifier))
        except HttpError as e:
            if e.is_not_found:
                return None
            raise
        return self.mapper(tenant, resource_type).inbound(response.body or {})

    async def get_relation(
        self,
        tenant: str,
        resource_type: str,
        identifier: str,
        relation: str,
    ) -> Optional[Any]:
        """Probe a related object such as a user's manager. None if absent."""
        resource = self._resource(tenant, resource_type)
        identifier = await self.normalize_identifier(tenant, identifier)
        path = f"{self._object_path(resource, identifier)}/{relation.strip('/')}"
        try:
            response = await self.executor.execute(tenant, "GET", path)
        except HttpError as e:
            if e.is_not_found:
                return None
            raise
        return response.body

    # Writes

    async def create(self, tenant: str, resource_type: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object.

        Raises:
            ConflictError: If the object already exists
        """
        resource = self._resource(tenant, resource_type)
        mapper = self.mapper(tenant, resource_type)
        body = mapper.outbound(attributes)
        try:
            response = await self.executor.execute(tenant, "POST", resource.path, body=body)
        except HttpError as e:
            if e.status_code == 409 or "already exists" in e.response_text.lower():
                raise ConflictError(
                    f"{resource_type} already exists",
                    status_code=409,
                    body=e.body,
                ) from e
            raise
        logger.info("Created resource", tenant=tenant, resource_type=resource_type)
        return mapper.inbound(response.body or {})

    async def update(
        self,
        tenant: str,
        resource_type: str,
        identifier: str,
        attributes: Dict[str, Any],
        add_entitlements: Iterable[str] = (),
        remove_entitlements: Iterable[str] = (),
    ) -> None:
        """Update attributes and apply an entitlement delta.

        Entitlement references are validated before anything is sent.
        """
        add_entitlements = list(add_entitlements)
        remove_entitlements = list(remove_entitlements)
        for reference in add_entitlements + remove_entitlements:
            parse_plan_reference(reference)

        resource = self._resource(tenant, resource_type)
        identifier = await self.normalize_identifier(tenant, identifier)

        body = self.mapper(tenant, resource_type).outbound(attributes or {})
        if body:
            await self.executor.execute(tenant, "PATCH", self._object_path(resource, identifier), body=body)
            logger.info("Updated resource", tenant=tenant, resource_type=resource_type, identifier=identifier)

        if add_entitlements or remove_entitlements:
            await self.update_entitlements(tenant, identifier, add_entitlements, remove_entitlements)

    async def delete(self, tenant: str, resource_type: str, identifier: str) -> None:
        resource = self._resource(tenant, resource_type)
        identifier = await self.normalize_identifier(tenant, identifier)
        await self.executor.execute(tenant, "DELETE", self._object_path(resource, identifier))
        logger.info("Deleted resource", tenant=tenant, resource_type=resource_type, identifier=identifier)

    # Entitlements

    async def get_plan_catalog(self, tenant: str) -> PlanCatalog:
        """Fetch the tenant's subscribed skus. Never cached."""
        path = self._tenant_config(tenant).entitlements.catalog_path
        response = await self.executor.execute(tenant, "GET", path)
        body = response.body
        skus = body.get("value", []) if isinstance(body, dict) else body or []
        return PlanCatalog.from_subscribed_skus(skus)

    async def get_assignments(self, tenant: str, user_id: str) -> Optional[Dict[str, Set[str]]]:
        """Fetch the active plans of a user per sku, None if the user is absent."""
        template = self._tenant_config(tenant).entitlements.assignments_path
        path = template.format(id=quote(user_id, safe="@"))
        try:
            response = await self.executor.execute(tenant, "GET", path)
        except HttpError as e:
            if e.is_not_found:
                return None
            raise
        body = response.body
        details = body.get("value", []) if isinstance(body, dict) else body or []
        return assignments_from_license_details(details)

    async def update_entitlements(
        self,
        tenant: str,
        user_id: str,
        add: Iterable[str],
        remove: Iterable[str],
    ) -> Optional[Dict[str, Set[str]]]:
        """Reconcile and apply an entitlement delta for a user.

        Returns:
            Disabled plans per touched sku, or None when nothing was sent

        Raises:
            ValidationError: If a plan reference is malformed
            NotFoundError: If the user does not exist
        """
        add = list(add)
        remove = list(remove)
        for reference in add + remove:
            parse_plan_reference(reference)
        if not add and not remove:
            return None

        log = logger.bind(tenant=tenant, user_id=user_id)
        current = await self.get_assignments(tenant, user_id)
        if current is None:
            raise NotFoundError(f"user '{user_id}' not found in tenant '{tenant}'")

        catalog = await self.get_plan_catalog(tenant)
        result = self.reconciler.reconcile(current, catalog, add, remove)
        body = self.reconciler.to_assign_license_body(result)
        if body is None:
            log.debug("No plan reference matched the catalog, nothing to assign")
            return None

        template = self._tenant_config(tenant).entitlements.assign_path
        await self.executor.execute(tenant, "POST", template.format(id=quote(user_id, safe="@")), body=body)
        log.info("Entitlements updated", skus=sorted(result))
        return result

    # Identifiers

    async def normalize_identifier(self, tenant: str, identifier: str) -> str:
        """Resolve DN-looking identifiers to stable ids on directory-backed tenants."""
        if not identifier or not looks_like_path(identifier):
            return identifier
        resolver = self.resolver(tenant)
        if resolver is None:
            return identifier
        return await resolver.to_stable_id(identifier)

    @staticmethod
    def error_status(exc: BaseException) -> int:
        """Map an error to the status the provisioning layer reports."""
        if not isinstance(exc, DirSyncError):
            return 500
        status = _STATUS_BY_KIND.get(exc.kind)
        if status is not None:
            return status
        if isinstance(exc, HttpError):
            return exc.status_code
        return 500
