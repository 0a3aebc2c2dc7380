"""Canonical <-> endpoint attribute translation."""

from typing import Any, Dict, Mapping, Optional

from dirsync.config.models import TenantConfig


def _get_path(obj: Mapping[str, Any], dotted: str) -> Any:
    if dotted in obj:
        return obj[dotted]
    current: Any = obj
    for part in dotted.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _has_path(obj: Mapping[str, Any], dotted: str) -> bool:
    if dotted in obj:
        return True
    current: Any = obj
    for part in dotted.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False
        current = current[part]
    return True


def _set_path(obj: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    current = obj
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


class AttributeMapper:
    """Flat ``{canonical: endpoint}`` attribute map.

    Canonical names may be dotted (``name.givenName``) and address nested
    canonical objects. Translation is pure and tolerates partial objects: only
    attributes present on the input are translated.
    """

    def __init__(self, attribute_map: Optional[Mapping[str, str]] = None) -> None:
        self.attribute_map: Dict[str, str] = dict(attribute_map or {})
        self._endpoint_names = set(self.attribute_map.values())

    @classmethod
    def for_resource(cls, tenant_config: TenantConfig, resource_type: str) -> "AttributeMapper":
        return cls(tenant_config.attribute_map.get(resource_type))

    @property
    def passthrough(self) -> bool:
        return not self.attribute_map

    def outbound(self, canonical_attrs: Mapping[str, Any]) -> Dict[str, Any]:
        """Translate canonical attributes to endpoint attributes.

        Unmapped canonical attributes are dropped.
        """
        if self.passthrough:
            return dict(canonical_attrs)
        return {
            endpoint: _get_path(canonical_attrs, canonical)
            for canonical, endpoint in self.attribute_map.items()
            if _has_path(canonical_attrs, canonical)
        }

    def inbound(self, endpoint_obj: Mapping[str, Any]) -> Dict[str, Any]:
        """Translate an endpoint object to the canonical model.

        Endpoint attributes without a mapping (e.g. ``id``) are kept as-is.
        """
        if self.passthrough:
            return dict(endpoint_obj)
        result: Dict[str, Any] = {
            key: value for key, value in endpoint_obj.items() if key not in self._endpoint_names
        }
        for canonical, endpoint in self.attribute_map.items():
            if endpoint in endpoint_obj:
                _set_path(result, canonical, endpoint_obj[endpoint])
        return result
