"""Shared pytest fixtures for the dirsync tests."""

from typing import Any, Dict

import pytest

from dirsync.config.loader import load_config_from_dict


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Create a controllable clock."""
    return FakeClock()


@pytest.fixture
def config_data() -> Dict[str, Any]:
    """Raw configuration with an Entra-style tenant and an unauthenticated one."""
    return {
        "tenants": {
            "entra": {
                "connection": {
                    "base_urls": ["https://graph.example.com/v1.0"],
                    "rate_limit_per_minute": 6000,
                },
                "auth": {
                    "tenant_id_guid": "00000000-1111-2222-3333-444444444444",
                    "client_id": "client-id",
                    "client_secret": "client-secret",
                },
                "resources": {
                    "users": {"path": "/users", "max_page_size": 100},
                    "groups": {"path": "/groups"},
                },
            },
            "plain": {
                "connection": {
                    "base_urls": [
                        "https://a.example.com",
                        "https://b.example.com",
                        "https://c.example.com",
                    ],
                    "rate_limit_per_minute": 6000,
                },
            },
        },
        "logging": {"level": "DEBUG", "format": "text"},
    }


@pytest.fixture
def sync_config(config_data):
    """Validated client configuration."""
    return load_config_from_dict(config_data)

