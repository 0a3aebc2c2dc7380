"""Entitlement (sku/plan) reconciliation.

Backends such as Entra ID accept a final set of disabled plans per sku rather
than a delta, so a requested add/remove of plans is reconciled against the
user's current assignment and the tenant's plan catalog.
"""

from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Set, Tuple

import structlog
from pydantic import BaseModel

from dirsync.clients.exceptions import ValidationError

logger = structlog.get_logger(__name__)

PLAN_SEPARATOR = "::"
ACTIVE_PLAN_STATUSES = frozenset({"Success", "PendingInput"})


class PlanReference(NamedTuple):
    """Human readable plan reference ``<skuPartNumber>::<planName>``."""
    sku_part_number: str
    plan_name: str

    def __str__(self) -> str:
        return f"{self.sku_part_number}{PLAN_SEPARATOR}{self.plan_name}"


class PlanCatalogEntry(BaseModel):
    """One plan of a subscribed sku."""

    sku_id: str
    sku_part_number: str
    plan_id: str
    plan_name: str
    status: str = "Success"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PLAN_STATUSES

    @property
    def reference(self) -> PlanReference:
        return PlanReference(self.sku_part_number, self.plan_name)


def parse_plan_reference(value: str) -> PlanReference:
    """Parse ``"<skuPartNumber>::<planName>"``.

    Raises:
        ValidationError: If the value is not in that format
    """
    if not isinstance(value, str):
        raise ValidationError(f"plan reference must be a string, got {type(value).__name__}")
    parts = value.split(PLAN_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValidationError(
            f"plan reference '{value}' must be on format skuPartNumber::servicePlanName"
        )
    return PlanReference(parts[0], parts[1])


class PlanCatalog:
    """Plans the tenant is subscribed to. Built fresh per reconciliation."""

    def __init__(self, entries: Iterable[PlanCatalogEntry]) -> None:
        self._entries: List[PlanCatalogEntry] = list(entries)
        self._by_sku: Dict[str, List[PlanCatalogEntry]] = {}
        for entry in self._entries:
            self._by_sku.setdefault(entry.sku_id, []).append(entry)

    @classmethod
    def from_subscribed_skus(cls, skus: Iterable[Mapping[str, Any]]) -> "PlanCatalog":
        """Build from a subscribedSkus listing.

        Args:
            skus: Items like ``{"skuId", "skuPartNumber", "servicePlans": [
                {"servicePlanId", "servicePlanName", "provisioningStatus"}]}``
        """
        entries = []
        for sku in skus:
            for plan in sku.get("servicePlans") or []:
                if not plan.get("servicePlanName"):
                    continue
                entries.append(
                    PlanCatalogEntry(
                        sku_id=sku["skuId"],
                        sku_part_number=sku.get("skuPartNumber") or sku["skuId"],
                        plan_id=plan["servicePlanId"],
                        plan_name=plan["servicePlanName"],
                        status=plan.get("provisioningStatus") or "Success",
                    )
                )
        return cls(entries)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "PlanCatalog":
        """Build from ``{sku_id: [plan_id, ...]}``.

        The sku id doubles as part number and the plan id as plan name, so
        ``"skuA::p1"`` resolves to sku ``skuA`` plan ``p1``.
        """
        return cls(
            PlanCatalogEntry(sku_id=sku, sku_part_number=sku, plan_id=plan, plan_name=plan)
            for sku, plans in mapping.items()
            for plan in plans
        )

    @property
    def entries(self) -> List[PlanCatalogEntry]:
        return list(self._entries)

    @property
    def sku_ids(self) -> List[str]:
        return list(self._by_sku)

    def available(self, sku_id: str) -> Set[str]:
        """Active plan ids of a sku."""
        return {e.plan_id for e in self._by_sku.get(sku_id, []) if e.is_active}

    def resolve(self, reference: PlanReference) -> List[Tuple[str, str]]:
        """Resolve a reference to ``(sku_id, plan_id)`` pairs.

        Every plan of a matching sku is considered, whatever its status.
        """
        matches = []
        for sku_id, plans in self._by_sku.items():
            if plans[0].sku_part_number != reference.sku_part_number:
                continue
            for entry in plans:
                if entry.plan_name == reference.plan_name:
                    matches.append((sku_id, entry.plan_id))
                    break
        return matches


def assignments_from_license_details(details: Iterable[Mapping[str, Any]]) -> Dict[str, Set[str]]:
    """Build ``{sku_id: {active plan_id}}`` from a licenseDetails listing."""
    current: Dict[str, Set[str]] = {}
    for detail in details:
        plans = current.setdefault(detail["skuId"], set())
        for plan in detail.get("servicePlans") or []:
            if plan.get("servicePlanName") and plan.get("provisioningStatus") in ACTIVE_PLAN_STATUSES:
                plans.add(plan["servicePlanId"])
    return current


class EntitlementReconciler:
    """Turns a requested plan add/remove into per-sku disabled plan sets."""

    def reconcile(
        self,
        current: Mapping[str, Iterable[str]],
        available: PlanCatalog,
        add_requests: Iterable[str],
        remove_requests: Iterable[str],
    ) -> Dict[str, Set[str]]:
        """Compute the disabled plans of every sku touched by the request.

        1. Every sku in ``current`` is seeded with its available plans minus
           the currently active ones.
        2. Each add enables its plan; a sku without a seed is first seeded
           with all of its available plans.
        3. Each remove disables its plan, with the same lazy seeding.
        4. Only skus touched by a resolved add or remove are returned.

        Adding and removing the same plan leaves it disabled. References that
        do not resolve in the catalog are ignored.

        Args:
            current: Active plan ids per sku id
            available: Tenant plan catalog
            add_requests: ``skuPartNumber::planName`` references to enable
            remove_requests: ``skuPartNumber::planName`` references to disable

        Returns:
            Disabled plan ids per touched sku id

        Raises:
            ValidationError: If any reference is malformed
        """
        adds = [parse_plan_reference(r) for r in add_requests]
        removes = [parse_plan_reference(r) for r in remove_requests]

        disabled: Dict[str, Set[str]] = {
            sku_id: available.available(sku_id) - set(plans)
            for sku_id, plans in current.items()
        }
        touched: Set[str] = set()

        for reference in adds:
            for sku_id, plan_id in self._resolve(available, reference):
                if sku_id not in disabled:
                    disabled[sku_id] = available.available(sku_id)
                disabled[sku_id].discard(plan_id)
                touched.add(sku_id)

        for reference in removes:
            for sku_id, plan_id in self._resolve(available, reference):
                if sku_id not in disabled:
                    disabled[sku_id] = available.available(sku_id)
                disabled[sku_id].add(plan_id)
                touched.add(sku_id)

        return {sku_id: plans for sku_id, plans in disabled.items() if sku_id in touched}

    @staticmethod
    def _resolve(catalog: PlanCatalog, reference: PlanReference) -> List[Tuple[str, str]]:
        matches = catalog.resolve(reference)
        if not matches:
            logger.debug("Plan reference not found in catalog, ignoring", reference=str(reference))
        return matches

    @staticmethod
    def to_assign_license_body(result: Mapping[str, Iterable[str]]) -> Optional[Dict[str, Any]]:
        """Render a reconciliation result as an assignLicense payload.

        Returns:
            The payload, or None when no sku is touched
        """
        if not result:
            return None
        return {
            "addLicenses": [
                {"skuId": sku_id, "disabledPlans": sorted(plans)}
                for sku_id, plans in sorted(result.items())
            ],
            "removeLicenses": [],
        }
