"""FastAPI application exposing the watcher's control surface.

The lifespan builds the runtime (auth, Graph mailbox, classifier, state
store, watcher) and keeps the pieces on app.state. If configuration cannot
be loaded the app still starts, and routes that need the runtime answer 503.

Usage:
    from mailfilter.web.app import create_app

    app = create_app()
    # uvicorn.run(app, host="127.0.0.1", port=3000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailfilter import __version__
from mailfilter.core.logging import get_logger

logger = get_logger(__name__)

_STATE_NAMES = ("config", "auth", "mailbox", "classifier", "store", "watcher")


def _clear_state(app: FastAPI, error: str) -> None:
    for name in _STATE_NAMES:
        setattr(app.state, name, None)
    app.state.startup_error = error


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; stop the watcher on shutdown.

    On startup, when the mailbox is already signed in, the classification
    categories are created if missing and, with watcher.auto_start, the
    watcher is started.
    """
    from mailfilter.config import get_config
    from mailfilter.core.errors import MailFilterError
    from mailfilter.runtime import build_runtime

    try:
        config = get_config()
        runtime = await build_runtime(config)
    except (MailFilterError, ValueError) as e:
        logger.error("runtime_init_failed", error=str(e))
        _clear_state(app, str(e))
        yield
        return

    app.state.startup_error = None
    app.state.config = config
    app.state.auth = runtime.auth
    app.state.mailbox = runtime.mailbox
    app.state.classifier = runtime.classifier
    app.state.store = runtime.store
    app.state.watcher = runtime.watcher

    if await runtime.mailbox.authenticated():
        try:
            await runtime.mailbox.ensure_categories()
        except MailFilterError as e:
            logger.warning("ensure_categories_failed", error=str(e))

        if config.watcher.auto_start:
            try:
                await runtime.watcher.start()
            except MailFilterError as e:
                logger.error("watcher_auto_start_failed", error=str(e))
    elif config.watcher.auto_start:
        logger.warning("watcher_auto_start_skipped", reason="not_authenticated")

    yield

    await runtime.watcher.stop()


def create_app() -> FastAPI:
    from mailfilter.web.routes import api_router, auth_router, page_router

    app = FastAPI(
        title="mailfilter",
        description="Incremental mailbox sync with AI classification",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(page_router)
    app.include_router(api_router)
    app.include_router(auth_router)
    return app
