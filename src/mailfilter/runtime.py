"""Wiring of the watcher and its collaborators from an AppConfig.

Shared by the CLI and the FastAPI lifespan so both run the same object graph.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass

import anthropic

from mailfilter.auth.msal_auth import GraphAuth
from mailfilter.auth.token_store import TokenCacheStore
from mailfilter.classifier.claude_classifier import ClaudeClassifier
from mailfilter.config_schema import AppConfig
from mailfilter.core.logging import get_logger
from mailfilter.db.store import StateStore
from mailfilter.engine.watcher import EmailWatcher
from mailfilter.graph.client import GraphClient
from mailfilter.graph.mailbox import GraphMailbox

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Runtime:
    config: AppConfig
    auth: GraphAuth
    graph_client: GraphClient
    mailbox: GraphMailbox
    classifier: ClaudeClassifier
    store: StateStore
    watcher: EmailWatcher


def _token_refresh_hook(cache_store: TokenCacheStore) -> Callable[[], None]:
    def on_cache_persisted() -> None:
        logger.info(
            "token_cache_refreshed",
            path=str(cache_store.path),
            encrypted=cache_store.encrypted,
        )

    return on_cache_persisted


async def build_runtime(config: AppConfig) -> Runtime:
    """Construct every collaborator and initialize the state database.

    Raises:
        ValueError: If auth.client_id is empty
        PersistenceError: If the state database cannot be created
    """
    cache_store = TokenCacheStore.from_env(
        config.auth.token_cache_path, config.auth.encryption_key_env
    )
    auth = GraphAuth(
        client_id=config.auth.client_id,
        tenant_id=config.auth.tenant_id,
        scopes=config.auth.scopes,
        cache_store=cache_store,
        on_cache_persisted=_token_refresh_hook(cache_store),
    )
    graph_client = GraphClient(auth)
    mailbox = GraphMailbox(auth, graph_client, labels=config.labels)

    # Without a key the classifier creates its client lazily and falls back to REVIEW
    anthropic_client = (
        anthropic.Anthropic(max_retries=3) if os.environ.get("ANTHROPIC_API_KEY") else None
    )
    classifier = ClaudeClassifier(anthropic_client, config.classifier)

    store = StateStore(config.state.db_path)
    await store.initialize()

    watcher = EmailWatcher(
        mailbox=mailbox,
        classifier=classifier,
        store=store,
        labels=config.labels,
        settings=config.watcher,
    )
    return Runtime(
        config=config,
        auth=auth,
        graph_client=graph_client,
        mailbox=mailbox,
        classifier=classifier,
        store=store,
        watcher=watcher,
    )
