"""Integration tests for the sync orchestrator against a fake Graph backend."""

import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from dirsync.clients.exceptions import (
    AmbiguousError,
    AuthError,
    ConfigurationError,
    ConflictError,
    DirSyncError,
    HttpError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
    TransportError,
    ValidationError,
)
from dirsync.config.loader import load_config_from_dict
from dirsync.core.identifiers import DirectoryEntry
from dirsync.core.orchestrator import SyncOrchestrator
from dirsync.core.paging import SENTINEL_TOTAL

USER_COUNT = 250
PAGE_SIZE = 100
PREMIUM_SKU = "c7df2760-2c81-4ef7-b578-5b5392b571df"


class FakeGraph:
    """Minimal Graph-like backend with skiptoken paging and license endpoints."""

    def __init__(self, user_count: int = USER_COUNT):
        self.users = [
            {"id": f"user-{i}", "displayName": f"User {i}", "userPrincipalName": f"user{i}@example.com"}
            for i in range(1, user_count + 1)
        ]
        self.requests: List[httpx.Request] = []
        self.token_requests = 0
        self.license_details: Optional[List[Dict[str, Any]]] = [
            {
                "skuId": PREMIUM_SKU,
                "servicePlans": [
                    {"servicePlanId": "p1", "servicePlanName": "EXCHANGE", "provisioningStatus": "Success"},
                    {"servicePlanId": "p2", "servicePlanName": "TEAMS", "provisioningStatus": "Disabled"},
                    {"servicePlanId": "p3", "servicePlanName": "YAMMER", "provisioningStatus": "Disabled"},
                ],
            }
        ]
        self.subscribed_skus = [
            {
                "skuId": PREMIUM_SKU,
                "skuPartNumber": "ENTERPRISEPREMIUM",
                "servicePlans": [
                    {"servicePlanId": "p1", "servicePlanName": "EXCHANGE", "provisioningStatus": "Success"},
                    {"servicePlanId": "p2", "servicePlanName": "TEAMS", "provisioningStatus": "Success"},
                    {"servicePlanId": "p3", "servicePlanName": "YAMMER", "provisioningStatus": "Success"},
                ],
            }
        ]
        self.create_response = httpx.Response(201, json={"id": "new-user"})
        self.assigned: List[Dict[str, Any]] = []
        self.patched: List[Dict[str, Any]] = []
        self.list_failures = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.microsoftonline.com":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_requests}", "expires_in": 3600})

        assert request.headers["authorization"].startswith("Bearer tok-")
        self.requests.append(request)
        path = request.url.path.replace("/v1.0", "", 1)

        if request.method == "GET" and path == "/users":
            return self._list_users(request)
        if request.method == "GET" and path == "/subscribedSkus":
            return httpx.Response(200, json={"value": self.subscribed_skus})
        if path.endswith("/licenseDetails"):
            if self.license_details is None:
                return httpx.Response(404, json={"error": {"code": "Request_ResourceNotFound"}})
            return httpx.Response(200, json={"value": self.license_details})
        if path.endswith("/assignLicense"):
            self.assigned.append(json.loads(request.content))
            return httpx.Response(200, json={"id": path.split("/")[2]})
        if request.method == "POST" and path == "/users":
            return self.create_response
        if path.startswith("/users/"):
            return self._user(request, path)
        return httpx.Response(404)

    def _list_users(self, request: httpx.Request) -> httpx.Response:
        if self.list_failures:
            self.list_failures -= 1
            return httpx.Response(503, json={"error": {"code": "ServiceUnavailable"}})
        top = int(request.url.params.get("$top", PAGE_SIZE))
        skip = int(request.url.params.get("$skiptoken", 0))
        body: Dict[str, Any] = {"value": self.users[skip:skip + top]}
        if skip + top < len(self.users):
            body["@odata.nextLink"] = (
                f"https://graph.example.com/v1.0/users?$top={top}&$skiptoken={skip + top}"
            )
        return httpx.Response(200, json=body)

    def _user(self, request: httpx.Request, path: str) -> httpx.Response:
        parts = path.split("/")
        user = next((u for u in self.users if u["id"] == parts[2]), None)
        if user is None:
            return httpx.Response(404, json={"error": {"code": "Request_ResourceNotFound"}})
        if len(parts) > 3 and parts[3] == "manager":
            return httpx.Response(404)
        if request.method == "PATCH":
            self.patched.append(json.loads(request.content))
            return httpx.Response(204)
        if request.method == "DELETE":
            return httpx.Response(204)
        return httpx.Response(200, json=user)

    def list_calls(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == "GET" and r.url.path == "/v1.0/users"]


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def orchestrator(sync_config, graph, clock):
    return SyncOrchestrator(sync_config, transport=httpx.MockTransport(graph), clock=clock)


@pytest.mark.asyncio
class TestEnumerate:
    """Test paging through a resource type."""

    async def test_pages_follow_implied_start_indexes(self, orchestrator, graph):
        """250 users at page size 100 take three calls at 1, 101 and 201."""
        async with orchestrator:
            first = await orchestrator.enumerate("entra", "users", start_index=1, count=PAGE_SIZE)
            second = await orchestrator.enumerate("entra", "users", start_index=101, count=PAGE_SIZE)
            third = await orchestrator.enumerate("entra", "users", start_index=201, count=PAGE_SIZE)

        assert [len(p["resources"]) for p in (first, second, third)] == [100, 100, 50]
        assert first["totalResults"] == SENTINEL_TOTAL
        assert second["totalResults"] == SENTINEL_TOTAL
        assert third["totalResults"] == USER_COUNT
        assert third["resources"][-1]["id"] == "user-250"

        calls = graph.list_calls()
        assert len(calls) == 3
        assert [c.url.params.get("$skiptoken") for c in calls] == [None, "100", "200"]
        assert graph.token_requests == 1

    async def test_out_of_sequence_index_yields_empty_page(self, orchestrator, graph):
        async with orchestrator:
            await orchestrator.enumerate("entra", "users", start_index=1, count=PAGE_SIZE)
            skipped = await orchestrator.enumerate("entra", "users", start_index=201, count=PAGE_SIZE)
            retry = await orchestrator.enumerate("entra", "users", start_index=101, count=PAGE_SIZE)

        assert skipped["resources"] == []
        assert skipped["totalResults"] < 201
        assert retry["resources"] == []
        assert len(graph.list_calls()) == 1

    async def test_failed_page_can_be_retried(self, orchestrator, graph):
        """A page request that fails keeps its cursor for the retry."""
        async with orchestrator:
            await orchestrator.enumerate("entra", "users", start_index=1, count=PAGE_SIZE)
            graph.list_failures = 1
            with pytest.raises(HttpError):
                await orchestrator.enumerate("entra", "users", start_index=101, count=PAGE_SIZE)
            retry = await orchestrator.enumerate("entra", "users", start_index=101, count=PAGE_SIZE)

        assert len(retry["resources"]) == PAGE_SIZE
        assert retry["resources"][0]["id"] == "user-101"
        assert retry["totalResults"] == SENTINEL_TOTAL

    async def test_zero_count_reports_total_only(self, orchestrator, graph):
        async with orchestrator:
            page = await orchestrator.enumerate("entra", "users", start_index=1, count=0)

        assert page == {"resources": [], "totalResults": SENTINEL_TOTAL}
        assert graph.list_calls() == []

    async def test_zero_count_after_last_page(self, orchestrator, graph):
        async with orchestrator:
            for start in (1, 101, 201):
                await orchestrator.enumerate("entra", "users", start_index=start, count=PAGE_SIZE)
            page = await orchestrator.enumerate("entra", "users", start_index=251, count=0)

        assert page == {"resources": [], "totalResults": USER_COUNT}
        assert len(graph.list_calls()) == 3

    async def test_request_after_last_page_is_empty(self, orchestrator, graph):
        async with orchestrator:
            for start in (1, 101, 201):
                await orchestrator.enumerate("entra", "users", start_index=start, count=PAGE_SIZE)
            after = await orchestrator.enumerate("entra", "users", start_index=251, count=PAGE_SIZE)

        assert after == {"resources": [], "totalResults": USER_COUNT}
        assert len(graph.list_calls()) == 3

    async def test_count_is_capped_by_max_page_size(self, orchestrator, graph):
        async with orchestrator:
            page = await orchestrator.enumerate("entra", "users", start_index=1, count=500)

        assert len(page["resources"]) == PAGE_SIZE
        assert graph.list_calls()[0].url.params["$top"] == str(PAGE_SIZE)

    async def test_unpaginated_request_reports_real_count(self, orchestrator, graph):
        async with orchestrator:
            result = await orchestrator.enumerate("entra", "users")

        assert len(result["resources"]) == USER_COUNT
        assert result["totalResults"] == USER_COUNT
        assert len(graph.list_calls()) == 3

    async def test_unknown_resource_type(self, orchestrator):
        async with orchestrator:
            with pytest.raises(ValidationError, match="unsupported resource type"):
                await orchestrator.enumerate("entra", "devices")

    async def test_invalid_start_index(self, orchestrator):
        async with orchestrator:
            with pytest.raises(ValidationError):
                await orchestrator.enumerate("entra", "users", start_index=0, count=10)


@pytest.mark.asyncio
class TestObjectOperations:
    """Test get/create/update/delete."""

    async def test_get_existing_and_missing(self, orchestrator):
        async with orchestrator:
            user = await orchestrator.get("entra", "users", "user-7")
            missing = await orchestrator.get("entra", "users", "user-999")

        assert user["displayName"] == "User 7"
        assert missing is None

    async def test_get_relation_absent(self, orchestrator):
        async with orchestrator:
            assert await orchestrator.get_relation("entra", "users", "user-1", "manager") is None

    async def test_create(self, orchestrator):
        async with orchestrator:
            created = await orchestrator.create("entra", "users", {"displayName": "New"})
        assert created == {"id": "new-user"}

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(409, json={"error": {"message": "conflict"}}),
            httpx.Response(
                400,
                json={"error": {"message": "Another object with the same value for property userPrincipalName already exists."}},
            ),
        ],
    )
    async def test_create_conflict(self, orchestrator, graph, response):
        graph.create_response = response
        async with orchestrator:
            with pytest.raises(ConflictError) as exc_info:
                await orchestrator.create("entra", "users", {"displayName": "Dup"})

        assert SyncOrchestrator.error_status(exc_info.value) == 409

    async def test_update_attributes(self, orchestrator, graph):
        async with orchestrator:
            await orchestrator.update("entra", "users", "user-3", {"displayName": "Renamed"})
        assert graph.patched == [{"displayName": "Renamed"}]
        assert graph.assigned == []

    async def test_delete(self, orchestrator, graph):
        async with orchestrator:
            await orchestrator.delete("entra", "users", "user-3")
        assert graph.requests[-1].method == "DELETE"
        assert graph.requests[-1].url.path == "/v1.0/users/user-3"

    async def test_unknown_tenant(self, orchestrator):
        async with orchestrator:
            with pytest.raises(ConfigurationError):
                await orchestrator.get("nope", "users", "x")


@pytest.mark.asyncio
class TestEntitlements:
    """Test reconciliation against license endpoints."""

    async def test_update_entitlements_posts_disabled_plans(self, orchestrator, graph):
        """Enabling TEAMS for a user holding EXCHANGE leaves YAMMER disabled."""
        async with orchestrator:
            result = await orchestrator.update_entitlements(
                "entra", "user-1", ["ENTERPRISEPREMIUM::TEAMS"], []
            )

        assert result == {PREMIUM_SKU: {"p3"}}
        assert graph.assigned == [
            {"addLicenses": [{"skuId": PREMIUM_SKU, "disabledPlans": ["p3"]}], "removeLicenses": []}
        ]

    async def test_update_applies_attributes_and_entitlements(self, orchestrator, graph):
        async with orchestrator:
            await orchestrator.update(
                "entra",
                "users",
                "user-1",
                {"displayName": "Jane"},
                remove_entitlements=["ENTERPRISEPREMIUM::EXCHANGE"],
            )

        assert graph.patched == [{"displayName": "Jane"}]
        assert graph.assigned[0]["addLicenses"][0]["disabledPlans"] == ["p1", "p2", "p3"]

    async def test_nothing_to_do(self, orchestrator, graph):
        async with orchestrator:
            assert await orchestrator.update_entitlements("entra", "user-1", [], []) is None
            assert await orchestrator.update_entitlements("entra", "user-1", ["OTHER::PLAN"], []) is None
        assert graph.assigned == []

    async def test_missing_license_details_is_not_found(self, orchestrator, graph):
        graph.license_details = None
        async with orchestrator:
            assert await orchestrator.get_assignments("entra", "user-1") is None
            with pytest.raises(NotFoundError) as exc_info:
                await orchestrator.update_entitlements("entra", "user-1", ["ENTERPRISEPREMIUM::TEAMS"], [])
        assert graph.assigned == []
        assert SyncOrchestrator.error_status(exc_info.value) == 404

    async def test_entitlement_only_update_of_missing_user_fails(self, orchestrator, graph):
        graph.license_details = None
        async with orchestrator:
            with pytest.raises(NotFoundError):
                await orchestrator.update(
                    "entra", "users", "user-999", {}, add_entitlements=["ENTERPRISEPREMIUM::TEAMS"]
                )
        assert graph.assigned == []
        assert graph.patched == []

    async def test_malformed_reference_sends_nothing(self, orchestrator, graph):
        async with orchestrator:
            with pytest.raises(ValidationError):
                await orchestrator.update("entra", "users", "user-1", {"displayName": "X"}, ["bad"])
        assert graph.requests == []

    async def test_plan_catalog(self, orchestrator):
        async with orchestrator:
            catalog = await orchestrator.get_plan_catalog("entra")
        assert catalog.sku_ids == [PREMIUM_SKU]
        assert catalog.available(PREMIUM_SKU) == {"p1", "p2", "p3"}


class FakeSearcher:
    def __init__(self, entries: List[DirectoryEntry]):
        self.entries = entries

    async def find_by_path(self, path: str) -> List[DirectoryEntry]:
        return [e for e in self.entries if e.path == path]

    async def find_by_stable_id(self, stable_id: str) -> List[DirectoryEntry]:
        return [e for e in self.entries if e.stable_id == stable_id]


@pytest.mark.asyncio
class TestIdentifiersAndMapping:
    """Test identifier normalization and attribute mapping through the orchestrator."""

    async def test_dn_identifiers_are_resolved(self, sync_config, graph, clock):
        searcher = FakeSearcher([DirectoryEntry(path="cn=User 5,ou=Users,dc=example", stable_id="user-5")])
        orchestrator = SyncOrchestrator(
            sync_config,
            transport=httpx.MockTransport(graph),
            searchers={"entra": searcher},
            clock=clock,
        )
        async with orchestrator:
            assert await orchestrator.normalize_identifier("entra", "user-5") == "user-5"
            user = await orchestrator.get("entra", "users", "cn=User 5,ou=Users,dc=example")
            with pytest.raises(NotFoundError):
                await orchestrator.get("entra", "users", "cn=Ghost,ou=Users,dc=example")

        assert user["id"] == "user-5"

    async def test_tenant_without_directory_keeps_identifiers(self, orchestrator):
        async with orchestrator:
            assert orchestrator.resolver("entra") is None
            assert await orchestrator.normalize_identifier("entra", "cn=a,dc=b") == "cn=a,dc=b"

    async def test_attribute_map_applies_to_reads_and_writes(self, config_data, graph, clock):
        config_data["tenants"]["entra"]["attribute_map"] = {
            "users": {"userName": "userPrincipalName", "displayName": "displayName"}
        }
        config = load_config_from_dict(config_data)
        async with SyncOrchestrator(config, transport=httpx.MockTransport(graph), clock=clock) as orchestrator:
            user = await orchestrator.get("entra", "users", "user-2")
            await orchestrator.update(
                "entra", "users", "user-2", {"userName": "renamed@example.com", "title": "ignored"}
            )

        assert user == {"id": "user-2", "userName": "user2@example.com", "displayName": "User 2"}
        assert graph.patched == [{"userPrincipalName": "renamed@example.com"}]


class TestErrorStatus:
    """Test error kind to status mapping."""

    @pytest.mark.parametrize(
        "error, status",
        [
            (ValidationError("bad"), 400),
            (AuthError("denied"), 401),
            (NotFoundError("gone"), 404),
            (ConflictError("dup", status_code=409), 409),
            (AmbiguousError("many", matches=2), 409),
            (ServiceUnavailableError("down"), 503),
            (RateLimitError("throttled", retry_after=5), 429),
            (HttpError("teapot", status_code=418), 418),
            (TransportError("reset"), 502),
            (ConfigurationError("broken"), 500),
            (DirSyncError("generic"), 500),
            (RuntimeError("boom"), 500),
        ],
    )
    def test_error_status(self, error, status):
        assert SyncOrchestrator.error_status(error) == status
