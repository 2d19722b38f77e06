"""FastAPI dependencies that pull shared objects off app.state.

Each raises 503 when the lifespan could not build the object (for example
a missing or invalid config file), so routes can assume a usable value.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from mailfilter.auth.msal_auth import GraphAuth
    from mailfilter.classifier.claude_classifier import ClaudeClassifier
    from mailfilter.config_schema import AppConfig
    from mailfilter.engine.watcher import EmailWatcher
    from mailfilter.graph.mailbox import GraphMailbox


def _require(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        error = getattr(request.app.state, "startup_error", None) or "service not initialized"
        raise HTTPException(status_code=503, detail=f"{name} unavailable: {error}")
    return value


def get_config(request: Request) -> AppConfig:
    return _require(request, "config")


def get_watcher(request: Request) -> EmailWatcher:
    return _require(request, "watcher")


def get_mailbox(request: Request) -> GraphMailbox:
    return _require(request, "mailbox")


def get_classifier(request: Request) -> ClaudeClassifier:
    return _require(request, "classifier")


def get_auth(request: Request) -> GraphAuth:
    return _require(request, "auth")
