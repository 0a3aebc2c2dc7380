"""ldap3-backed directory searcher used for identifier resolution."""

import asyncio
import base64
import binascii
from typing import Any, Callable, List, Optional

import ldap3
import structlog
from ldap3.core.exceptions import LDAPBindError, LDAPCommunicationError, LDAPInvalidDnError
from ldap3.utils.conv import escape_bytes, escape_filter_chars

from dirsync.clients.exceptions import (
    AuthError,
    ServiceUnavailableError,
    TransportError,
    ValidationError,
)
from dirsync.config.models import DirectoryConfig
from dirsync.core.identifiers import DirectoryEntry

logger = structlog.get_logger(__name__)

ConnectionFactory = Callable[[str], ldap3.Connection]

SUCCESS = 0
NO_SUCH_OBJECT = 32


class LdapDirectorySearcher:
    """Exact-match lookups over LDAP.

    Connects to the first reachable URL of the configured list and keeps using
    it (sticky) until it fails. ldap3's synchronous calls run in a worker
    thread and are serialized, one connection is never used concurrently.
    """

    def __init__(
        self,
        config: DirectoryConfig,
        connection_factory: Optional[ConnectionFactory] = None,
        tenant: Optional[str] = None,
    ) -> None:
        """Initialize the searcher.

        Args:
            config: Directory configuration
            connection_factory: Builds a bound connection for a URL, defaults
                to a simple bind with the configured credentials
            tenant: Tenant key for log context
        """
        self.config = config
        self.tenant = tenant
        self.active_index = 0
        self._connection_factory = connection_factory or self._establish_connection
        self._connection: Optional[ldap3.Connection] = None
        self._lock: Optional[asyncio.Lock] = None
        self._logger = logger.bind(tenant=tenant, base_dn=config.base_dn)

    def _establish_connection(self, url: str) -> ldap3.Connection:
        server = ldap3.Server(url, connect_timeout=self.config.connect_timeout)
        return ldap3.Connection(
            server,
            user=self.config.bind_dn,
            password=self.config.bind_password.get_secret_value(),
            auto_bind=True,
            read_only=True,
        )

    def _connect(self) -> ldap3.Connection:
        if self._connection is not None and not self._connection.closed:
            return self._connection

        urls = self.config.urls
        for offset in range(len(urls)):
            index = (self.active_index + offset) % len(urls)
            try:
                connection = self._connection_factory(urls[index])
            except LDAPBindError as e:
                raise AuthError(f"LDAP bind failed for {self.config.bind_dn}: invalid user/password") from e
            except LDAPCommunicationError as e:
                self._logger.debug("LDAP connection error, trying next URL", url=urls[index], error=str(e))
                continue
            if index != self.active_index:
                self._logger.info("LDAP failover", url=urls[index])
            self.active_index = index
            self._connection = connection
            return connection

        raise ServiceUnavailableError(
            f"service unavailable: no LDAP server of tenant '{self.tenant}' could be reached",
            tenant=self.tenant,
            attempts=len(urls),
        )

    def _search(self, base: str, search_filter: str, scope: str) -> List[DirectoryEntry]:
        connection = self._connect()
        attribute = self.config.stable_id_attribute
        try:
            success = connection.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=[attribute],
            )
        except LDAPInvalidDnError as e:
            raise ValidationError(f"invalid distinguished name: {base}") from e
        except LDAPCommunicationError as e:
            self._connection = None
            raise TransportError(f"LDAP search failed: {e}", code="ECONNRESET") from e

        # A search without matches also reports success=False, with result code 0
        if not success:
            result = connection.result
            if result.get("result") == NO_SUCH_OBJECT or result.get("description") == "noSuchObject":
                return []
            if result.get("result") != SUCCESS:
                raise TransportError(
                    f"LDAP search not successful: {result.get('description')}",
                    code="ELDAP",
                )

        return [
            DirectoryEntry(path=r["dn"], stable_id=self._stable_id(r))
            for r in connection.response or []
            if r.get("type", "searchResEntry") == "searchResEntry" and r.get("dn")
        ]

    def _stable_id(self, record: Any) -> Optional[str]:
        attribute = self.config.stable_id_attribute
        if self.config.binary_id:
            raw = record.get("raw_attributes", {}).get(attribute)
            if not raw:
                return None
            value = raw[0] if isinstance(raw, list) else raw
            return base64.b64encode(value).decode("ascii")

        value = record.get("attributes", {}).get(attribute)
        if isinstance(value, list):
            value = value[0] if value else None
        return str(value) if value else None

    def _filter_value(self, stable_id: str) -> str:
        if self.config.binary_id:
            try:
                raw = base64.b64decode(stable_id, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValidationError(f"stable id '{stable_id}' is not valid base64") from e
            return escape_bytes(raw)
        return escape_filter_chars(stable_id)

    async def _run(self, base: str, search_filter: str, scope: str) -> List[DirectoryEntry]:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            return await asyncio.to_thread(self._search, base, search_filter, scope)

    async def find_by_path(self, path: str) -> List[DirectoryEntry]:
        return await self._run(path, "(objectClass=*)", ldap3.BASE)

    async def find_by_stable_id(self, stable_id: str) -> List[DirectoryEntry]:
        search_filter = f"({self.config.stable_id_attribute}={self._filter_value(stable_id)})"
        return await self._run(self.config.base_dn, search_filter, ldap3.SUBTREE)

    def close(self) -> None:
        if self._connection is not None:
            self._connection.unbind()
            self._connection = None
