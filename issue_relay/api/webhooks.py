"""Webhook ingress endpoints, one per direction"""
import logging

from fastapi import APIRouter, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from issue_relay.config import settings
from issue_relay.models import Direction
from issue_relay.security import SIGNATURE_HEADER, verify_webhook_signature
from issue_relay.services.events import parse_event
from issue_relay.services.exceptions import MalformedEvent, SyncError, UnsupportedEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_relay(request: Request):
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise HTTPException(status_code=503, detail="Relay is not configured")
    return relay


async def _receive(request: Request, direction: Direction):
    body = await request.body()

    if settings.webhook_secret and not verify_webhook_signature(
        settings.webhook_secret, body, request.headers.get(SIGNATURE_HEADER)
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    event_type = request.headers.get("X-GitHub-Event")
    if event_type == "ping":
        return {"status": "pong"}

    try:
        event = parse_event(event_type, body)
    except (MalformedEvent, UnsupportedEvent) as e:
        logger.warning(f"Rejected {direction.value} delivery: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    relay = get_relay(request)
    try:
        outcome = await run_in_threadpool(relay.process, direction, event)
    except UnsupportedEvent as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"status": outcome.value, "event": event.kind.value}


@router.post("/source")
async def receive_source_event(request: Request):
    """Events from the source organizations"""
    return await _receive(request, Direction.SOURCE_TO_HUB)


@router.post("/hub")
async def receive_hub_event(request: Request):
    """Events from the hub repository"""
    return await _receive(request, Direction.HUB_TO_SOURCE)
