"""MSAL authentication for the Microsoft Graph mail API.

Two distinct paths:
- get_access_token(): silent only (cache or refresh token). Used by the
  watcher and HTTP API, which must never block on a user prompt.
- login(): interactive device code flow, run from the CLI.

Token refresh has no hidden side effects. Whenever MSAL reports that its
cache changed during an acquisition, the cache is persisted before the
token is returned to the caller, and ``on_cache_persisted`` (if given) is
notified synchronously.

Usage:
    auth = GraphAuth(
        client_id=config.auth.client_id,
        tenant_id=config.auth.tenant_id,
        scopes=config.auth.scopes,
        cache_store=TokenCacheStore.from_env(config.auth.token_cache_path, "TOKEN_ENCRYPTION_KEY"),
    )
    token = auth.get_access_token()
"""

import random
import time
from collections.abc import Callable

import msal
import requests
from rich.console import Console
from rich.panel import Panel

from mailfilter.auth.token_store import TokenCacheStore
from mailfilter.core.errors import AuthenticationError
from mailfilter.core.logging import get_logger

logger = get_logger(__name__)
console = Console()

MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]


def _jittered(delay: float) -> float:
    return delay * random.uniform(0.8, 1.2)


# MSAL error code -> message for a device flow that ended without a token
_DEVICE_FLOW_ERRORS = {
    "authorization_pending": "Sign-in timed out; finish the device code step sooner.",
    "authorization_declined": "Sign-in was declined in the browser.",
    "expired_token": "The device code expired; run 'mailfilter login' again.",
}


def _device_flow_failure(result: dict) -> str:
    description = result.get("error_description", "Authentication failed")
    if "AADSTS7000218" in description:
        return (
            "The app registration does not allow public client flows; turn on "
            "'Allow public client flows' under Authentication in the Azure Portal."
        )
    known = _DEVICE_FLOW_ERRORS.get(result.get("error", ""))
    return known or f"Sign-in failed: {description}"


class GraphAuth:
    """Token acquisition and cache management for one mailbox account.

    Attributes:
        client_id: Entra ID application (client) ID
        tenant_id: Directory (tenant) ID, or 'common' for personal accounts
        scopes: Graph permission scopes
        cache_store: Where the serialized token cache lives
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        scopes: list[str],
        cache_store: TokenCacheStore,
        on_cache_persisted: Callable[[], None] | None = None,
    ):
        if not client_id or not client_id.strip():
            raise ValueError(
                "client_id is required. Register an app in the Azure Portal: "
                "Microsoft Entra ID -> App registrations -> New registration"
            )

        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = scopes
        self.cache_store = cache_store
        self.on_cache_persisted = on_cache_persisted
        self.cache = msal.SerializableTokenCache()
        self._load_cache()

        self.app = msal.PublicClientApplication(
            client_id=self.client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            token_cache=self.cache,
        )

    def get_access_token(self) -> str:
        """Return a valid access token without user interaction.

        Raises:
            AuthenticationError: If there is no cached account or the refresh
                token is no longer accepted
        """
        accounts = self.app.get_accounts()
        if not accounts:
            raise AuthenticationError(
                "No signed-in account in the token cache. Run 'mailfilter login'."
            )

        result = self._with_network_retry(
            lambda: self.app.acquire_token_silent(scopes=self.scopes, account=accounts[0]),
            "silent_token",
        )
        if result and "access_token" in result:
            self._persist_if_changed()
            return result["access_token"]

        detail = (result or {}).get("error_description", "no cached token")
        logger.warning("silent_token_acquisition_failed", error=detail[:200])
        raise AuthenticationError(
            f"Could not refresh the access token silently: {detail}. Run 'mailfilter login'."
        )

    def is_authenticated(self) -> bool:
        """True if a token can be obtained silently. Never prompts."""
        try:
            self.get_access_token()
        except AuthenticationError:
            return False
        return True

    def account_username(self) -> str | None:
        accounts = self.app.get_accounts()
        return accounts[0].get("username") if accounts else None

    def login(self) -> str:
        """Run the interactive device code flow and return the signed-in username.

        Raises:
            AuthenticationError: If the flow cannot be started or is not completed
        """
        flow = self._with_network_retry(
            lambda: self.app.initiate_device_flow(scopes=self.scopes),
            "device_flow_initiate",
        )
        if "user_code" not in flow:
            raise AuthenticationError(
                "Device code flow could not start "
                f"({flow.get('error_description', 'unknown error')}). "
                "Enable 'Allow public client flows' on the app registration."
            )

        self._display_auth_prompt(flow["verification_uri"], flow["user_code"])
        result = self._with_network_retry(
            lambda: self.app.acquire_token_by_device_flow(flow),
            "device_flow_acquire",
        )
        if "access_token" not in result:
            raise AuthenticationError(_device_flow_failure(result))

        self._persist_if_changed()
        username = result.get("id_token_claims", {}).get("preferred_username", "unknown")
        logger.info("login_succeeded", username=username)
        return username

    def _with_network_retry(self, call: Callable[[], dict | None], operation: str) -> dict | None:
        """Run an MSAL call, retrying transport errors from its HTTP layer."""
        for attempt, base_delay in enumerate(MSAL_RETRY_DELAYS[:MSAL_MAX_RETRIES], start=1):
            try:
                return call()
            except requests.exceptions.RequestException as e:
                if attempt == MSAL_MAX_RETRIES:
                    logger.error("msal_retries_exhausted", operation=operation, error=str(e))
                    raise AuthenticationError(
                        f"{operation} kept failing on the network ({e}); "
                        "check connectivity to login.microsoftonline.com"
                    ) from e
                delay = _jittered(base_delay)
                logger.warning(
                    "msal_retry",
                    operation=operation,
                    attempt=attempt,
                    delay=round(delay, 2),
                    error=str(e),
                )
                time.sleep(delay)
        return None

    def _display_auth_prompt(self, verification_uri: str, user_code: str) -> None:
        console.print()
        console.print(
            Panel(
                f"Open a browser and go to:\n\n"
                f"  [bold blue]{verification_uri}[/bold blue]\n\n"
                f"Enter this code: [bold green]{user_code}[/bold green]\n\n"
                f"Waiting for authentication...",
                title="Microsoft Sign-in Required",
                border_style="bright_blue",
            )
        )
        console.print()

    def _load_cache(self) -> None:
        content = self.cache_store.load()
        if content is None:
            return
        try:
            self.cache.deserialize(content)
        except ValueError as e:
            logger.warning("token_cache_invalid", error=str(e))

    def _persist_if_changed(self) -> None:
        """Write the cache if MSAL changed it (refresh or login), then notify.

        A write failure is logged, not raised: the token in hand is still
        valid, and the next refresh will try to persist again.
        """
        if not self.cache.has_state_changed:
            return
        try:
            self.cache_store.save(self.cache.serialize())
        except OSError as e:
            logger.error("token_cache_save_failed", path=str(self.cache_store.path), error=str(e))
            return

        self.cache.has_state_changed = False
        logger.debug("token_cache_persisted", encrypted=self.cache_store.encrypted)
        if self.on_cache_persisted is not None:
            self.on_cache_persisted()

    def logout(self) -> None:
        """Remove every cached account and delete the cache file."""
        for account in self.app.get_accounts():
            self.app.remove_account(account)
        try:
            self.cache_store.delete()
        except OSError as e:
            logger.warning("token_cache_delete_failed", error=str(e))
        self.cache.has_state_changed = False
        logger.info("logged_out")
