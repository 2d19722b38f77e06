"""Microsoft identity authentication and token cache persistence."""

from mailfilter.auth.msal_auth import GraphAuth
from mailfilter.auth.token_store import TokenCacheStore

__all__ = ["GraphAuth", "TokenCacheStore"]
