"""Configuration package for dirsync."""

from .loader import ConfigLoader, find_config_file, load_config_from_dict
from .models import (
    AuthConfig,
    ConnectionConfig,
    DirectoryConfig,
    EntitlementConfig,
    LoggingConfig,
    ResourceConfig,
    SyncClientConfig,
    TenantConfig,
)
from .secrets import ConfigSecretProvider, SecretProvider

__all__ = [
    "ConfigLoader",
    "find_config_file",
    "load_config_from_dict",
    "AuthConfig",
    "ConnectionConfig",
    "DirectoryConfig",
    "EntitlementConfig",
    "LoggingConfig",
    "ResourceConfig",
    "SyncClientConfig",
    "TenantConfig",
    "ConfigSecretProvider",
    "SecretProvider",
]
