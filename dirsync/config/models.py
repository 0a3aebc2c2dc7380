"""Configuration models for tenants, backends and logging."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, HttpUrl, SecretStr, field_validator, model_validator


class AuthConfig(BaseModel):
    """OAuth2 client-credentials configuration for a tenant."""

    token_url: Optional[HttpUrl] = Field(
        None,
        description="Token endpoint; derived from tenant_id_guid when omitted",
    )
    tenant_id_guid: Optional[str] = Field(
        None,
        description="Entra ID tenant GUID used to derive the token endpoint",
    )
    client_id: str = Field(..., min_length=1, description="OAuth2 client id")
    client_secret: SecretStr = Field(..., description="OAuth2 client secret")
    scope: Optional[str] = Field(
        None,
        description="Requested scope; defaults to '<base url origin>/.default' for Entra ID",
    )

    @model_validator(mode="after")
    def validate_token_endpoint(self) -> "AuthConfig":
        """Either an explicit token URL or a tenant GUID is required."""
        if self.token_url is None and not self.tenant_id_guid:
            raise ValueError("auth requires either token_url or tenant_id_guid")
        return self


class ConnectionConfig(BaseModel):
    """HTTP connection settings for a tenant."""

    base_urls: List[str] = Field(
        ...,
        min_length=1,
        description="Ordered base URLs; later entries are failover candidates",
    )
    timeout_seconds: float = Field(
        60.0,
        description="Connect/response timeout in seconds",
        gt=0,
    )
    headers: Dict[str, str] = Field(
        default_factory=dict,
        description="Static headers sent with every request",
    )
    rate_limit_per_minute: int = Field(
        600,
        description="Maximum requests per minute sent to the tenant",
        gt=0,
    )
    max_rate_limit_retries: int = Field(
        3,
        description="Retries of a throttled (429 / ratelimit) call after its Retry-After delay",
        ge=0,
    )

    @field_validator("base_urls")
    @classmethod
    def validate_base_urls(cls, v: List[str]) -> List[str]:
        """Base URLs must be absolute http(s) URLs without trailing slash."""
        cleaned = []
        for url in v:
            url = url.strip().rstrip("/")
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"base URL must start with http:// or https://: {url}")
            cleaned.append(url)
        return cleaned


class ResourceConfig(BaseModel):
    """Where and how a resource type is enumerated on the backend."""

    path: str = Field(..., description="Collection path, e.g. /users")
    items_key: str = Field("value", description="Response key holding the page items")
    next_link_key: str = Field(
        "@odata.nextLink",
        description="Response key holding the continuation link",
    )
    max_page_size: int = Field(999, ge=1, description="Largest page the backend accepts")


def _default_resources() -> Dict[str, ResourceConfig]:
    return {
        "users": ResourceConfig(path="/users"),
        "groups": ResourceConfig(path="/groups"),
    }


class EntitlementConfig(BaseModel):
    """Backend paths used for entitlement (license/plan) reconciliation."""

    catalog_path: str = "/subscribedSkus"
    assignments_path: str = "/users/{id}/licenseDetails"
    assign_path: str = "/users/{id}/assignLicense"


class DirectoryConfig(BaseModel):
    """LDAP directory used for stable id <-> DN resolution."""

    urls: List[str] = Field(..., min_length=1, description="ldap:// or ldaps:// URLs")
    bind_dn: str
    bind_password: SecretStr
    base_dn: str
    stable_id_attribute: str = "objectGUID"
    binary_id: bool = Field(
        True,
        description="Stable id is binary (objectGUID) and exchanged as base64",
    )
    connect_timeout: int = Field(5, ge=1)


class TenantConfig(BaseModel):
    """Complete configuration of one tenant."""

    connection: ConnectionConfig
    auth: Optional[AuthConfig] = None
    resources: Dict[str, ResourceConfig] = Field(default_factory=_default_resources)
    entitlements: EntitlementConfig = Field(default_factory=EntitlementConfig)
    directory: Optional[DirectoryConfig] = None
    attribute_map: Dict[str, Dict[str, str]] = Field(
        default_factory=dict,
        description="Per resource type mapping of canonical -> endpoint attribute names",
    )


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(valid_levels))}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "text"}:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class SyncClientConfig(BaseModel):
    """Root configuration."""

    tenants: Dict[str, TenantConfig] = Field(..., min_length=1)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def get_tenant(self, tenant: str) -> TenantConfig:
        """Get a tenant configuration by key.

        Raises:
            KeyError: If the tenant is not configured
        """
        try:
            return self.tenants[tenant]
        except KeyError:
            raise KeyError(f"unsupported tenant: {tenant}") from None
