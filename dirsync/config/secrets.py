"""Secret lookup by configuration key path."""

from typing import Any, Protocol

from pydantic import BaseModel, SecretStr

from dirsync.clients.exceptions import ConfigurationError


class SecretProvider(Protocol):
    """Returns the clear-text secret stored at a configuration key path."""

    def get_secret(self, config_key_path: str) -> str:
        ...


class ConfigSecretProvider:
    """Resolves dotted key paths such as ``tenants.contoso.auth.client_secret``
    against a loaded configuration model.
    """

    def __init__(self, config: BaseModel) -> None:
        self._config = config

    def get_secret(self, config_key_path: str) -> str:
        node: Any = self._config
        for part in config_key_path.split("."):
            if isinstance(node, dict):
                if part not in node:
                    raise ConfigurationError(f"missing configuration '{config_key_path}'")
                node = node[part]
            elif isinstance(node, BaseModel) and part in type(node).model_fields:
                node = getattr(node, part)
            else:
                raise ConfigurationError(f"missing configuration '{config_key_path}'")

        if isinstance(node, SecretStr):
            return node.get_secret_value()
        if isinstance(node, str) and node:
            return node
        raise ConfigurationError(f"configuration '{config_key_path}' is not a secret value")
