"""Bearer credential handling."""

from dirsync.auth.token_cache import ClientCredentialsRenewer, Token, TokenCache

__all__ = ["ClientCredentialsRenewer", "Token", "TokenCache"]
