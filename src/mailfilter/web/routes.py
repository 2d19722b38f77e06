"""HTTP routes.

Three routers:
- page_router: landing page
- api_router (/api): status, watcher control, recent mail, health
- auth_router (/auth): sign-in status and logout

Interactive sign-in uses the device code flow and runs from the CLI
('mailfilter login'), not over HTTP.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from mailfilter.auth.msal_auth import GraphAuth
from mailfilter.classifier.claude_classifier import ClaudeClassifier
from mailfilter.config_schema import AppConfig
from mailfilter.core.errors import GraphAPIError, MailFilterError
from mailfilter.core.logging import get_logger
from mailfilter.engine.watcher import EmailWatcher
from mailfilter.graph.mailbox import GraphMailbox
from mailfilter.web.dependencies import (
    get_auth,
    get_classifier,
    get_config,
    get_mailbox,
    get_watcher,
)

logger = get_logger(__name__)

_TEMPLATES_DIR = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(_TEMPLATES_DIR))
templates.env.autoescape = True

page_router = APIRouter()
api_router = APIRouter(prefix="/api")
auth_router = APIRouter(prefix="/auth")

MAX_RECENT_COUNT = 50


def _camel(data: dict[str, Any]) -> dict[str, Any]:
    """JSON responses use camelCase keys (totalProcessed, lastRun, processedCount)."""
    converted = {}
    for key, value in data.items():
        head, *rest = key.split("_")
        converted[head + "".join(part.title() for part in rest)] = value
    return converted


async def _auth_status(mailbox: GraphMailbox) -> dict[str, Any]:
    if not await mailbox.authenticated():
        return {"authenticated": False}
    try:
        email = await mailbox.account_email()
    except MailFilterError as e:
        return {"authenticated": False, "error": str(e)}
    return {"authenticated": True, "email": email}


@page_router.get("/", response_class=HTMLResponse)
async def landing_page(
    request: Request,
    watcher: EmailWatcher = Depends(get_watcher),
    mailbox: GraphMailbox = Depends(get_mailbox),
    config: AppConfig = Depends(get_config),
):
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "authenticated": await mailbox.authenticated(),
            "status": watcher.status().to_dict(),
            "labels": config.labels,
        },
    )


@api_router.get("/status")
async def get_status(
    watcher: EmailWatcher = Depends(get_watcher),
    mailbox: GraphMailbox = Depends(get_mailbox),
    classifier: ClaudeClassifier = Depends(get_classifier),
    config: AppConfig = Depends(get_config),
):
    return {
        "auth": await _auth_status(mailbox),
        "classifier": {"ready": classifier.is_ready(), "model": config.classifier.model},
        "watcher": _camel(watcher.status().to_dict()),
        "labels": {
            "important": config.labels.important,
            "review": config.labels.review,
            "junk": config.labels.junk,
        },
    }


@api_router.post("/watcher/start")
async def start_watcher(watcher: EmailWatcher = Depends(get_watcher)):
    if watcher.is_running:
        return {"success": True, "message": "Watcher already running"}
    try:
        await watcher.start()
    except MailFilterError as e:
        logger.error("watcher_start_failed", error=str(e))
        raise HTTPException(status_code=500, detail=str(e)) from None
    return {"success": True, "message": "Watcher started"}


@api_router.post("/watcher/stop")
async def stop_watcher(watcher: EmailWatcher = Depends(get_watcher)):
    stopped = await watcher.stop()
    return {
        "success": True,
        "message": "Watcher stopped" if stopped else "Watcher was not running",
    }


@api_router.get("/watcher/poll")
async def poll_once(watcher: EmailWatcher = Depends(get_watcher)):
    """One cycle for an external scheduler (cron). No-op while the timer is running."""
    if watcher.is_running:
        return {"success": True, "message": "Watcher already running"}

    result = await watcher.poll()
    status = watcher.status()
    return {
        "success": True,
        "message": "Poll completed" if result.skip_reason is None else "Poll skipped",
        "result": _camel(result.to_dict()),
        "stats": {
            "processed": status.stats.total_processed,
            "lastRun": status.stats.last_run.isoformat() if status.stats.last_run else None,
        },
    }


@api_router.get("/emails/recent")
async def recent_emails(
    count: int = Query(default=10, ge=1),
    mailbox: GraphMailbox = Depends(get_mailbox),
):
    if not await mailbox.authenticated():
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        messages = await mailbox.fetch_recent_inbox(min(count, MAX_RECENT_COUNT))
    except GraphAPIError as e:
        raise HTTPException(status_code=502, detail=str(e)) from None

    return {
        "count": len(messages),
        "messages": [
            {
                "id": m.id,
                "from": m.sender,
                "subject": m.subject,
                "date": m.date,
                "snippet": m.snippet,
                "labels": sorted(m.labels),
            }
            for m in messages
        ],
    }


@api_router.get("/health")
async def health_check():
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@auth_router.get("/status")
async def auth_status(mailbox: GraphMailbox = Depends(get_mailbox)):
    return await _auth_status(mailbox)


@auth_router.post("/logout")
async def logout(
    auth: GraphAuth = Depends(get_auth),
    watcher: EmailWatcher = Depends(get_watcher),
):
    """Sign out, stop the watcher and forget the sync cursor and ledger."""
    await watcher.reset()
    auth.logout()
    return {"success": True, "message": "Logged out"}
