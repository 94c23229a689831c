"""
Registry Push Webhook.

Receives tag push notifications from the artifact registry and runs the
matching release triggers in the background.

Two payload shapes are accepted:
    {"repository": "app", "tag": "production"}
    {"events": [{"action": "push", "target": {"repository": "app", "tag": "production"}}]}

The second is the Docker distribution notification envelope.
"""
from __future__ import annotations

import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request

from converge.app.dependencies import ConvergeServices, get_services, get_settings
from converge.config import AppSettings
from converge.release import ReleaseWatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


def parse_push_events(payload: Any) -> list[tuple[str, str]]:
    """(repository, tag) pairs from a push notification."""
    if not isinstance(payload, dict):
        return []

    if "events" in payload:
        pushes = []
        for event in payload.get("events") or []:
            if not isinstance(event, dict) or event.get("action", "push") != "push":
                continue
            target = event.get("target") or {}
            repository, tag = target.get("repository"), target.get("tag")
            if isinstance(repository, str) and isinstance(tag, str) and repository and tag:
                pushes.append((repository, tag))
        return pushes

    repository, tag = payload.get("repository"), payload.get("tag")
    if isinstance(repository, str) and isinstance(tag, str) and repository and tag:
        return [(repository, tag)]
    return []


async def _run_release_triggers(watcher: ReleaseWatcher, pushes: list[tuple[str, str]]) -> None:
    """Background task: invoke the triggers bound to each pushed tag."""
    for repository, tag in pushes:
        try:
            results = await watcher.on_push(repository, tag)
            for result in results:
                logger.info(
                    f"Release trigger {result.resource}: {result.status.value}"
                    + (f" ({result.error})" if result.error else "")
                )
        except Exception as e:
            logger.error(f"Release trigger failed for {repository}:{tag}: {e}", exc_info=True)


def _check_token(settings: AppSettings, token: Optional[str]) -> None:
    expected = settings.webhook_token.get_secret_value()
    if not expected:
        return
    if token is None or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Registry webhook rejected: bad token")
        raise HTTPException(status_code=401, detail="invalid webhook token")


@router.post(
    "/registry",
    summary="Receive artifact registry push notification",
    responses={
        200: {"description": "Push received and release check queued"},
        401: {"description": "Missing or invalid webhook token"},
    },
)
async def receive_registry_push(
    request: Request,
    background_tasks: BackgroundTasks,
    x_webhook_token: Optional[str] = Header(default=None),
    services: ConvergeServices = Depends(get_services),
    settings: AppSettings = Depends(get_settings),
) -> dict[str, Any]:
    """
    Queue release triggers for a pushed tag.

    Returns immediately; the triggers resolve the tag and redeploy in the
    background.
    """
    _check_token(settings, x_webhook_token)

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Registry webhook with invalid JSON body")
        return {"status": "failed", "message": "invalid payload"}

    pushes = parse_push_events(payload)
    if not pushes:
        return {"status": "ignored", "message": "no push events"}

    matched = [
        (repository, tag)
        for repository, tag in pushes
        if services.watcher.triggers_for(repository, tag)
    ]
    if not matched:
        logger.info(f"Registry push without bound triggers: {pushes}")
        return {"status": "ignored", "message": "no release trigger bound to pushed tag"}

    background_tasks.add_task(_run_release_triggers, services.watcher, matched)
    logger.info(f"Queued release check for {matched}")
    return {"status": "success", "message": "release check queued", "pushes": len(matched)}
