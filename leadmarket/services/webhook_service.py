"""Outbound webhooks for batch and purchase events."""
import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List

import httpx
from sqlalchemy.orm import Session

from leadmarket.models.webhook import Webhook
from leadmarket.utils import utcnow

WEBHOOK_EVENTS = [
    "batch.completed",
    "batch.failed",
    "lead.purchased",
]

WEBHOOK_TIMEOUT = 5.0

logger = logging.getLogger(__name__)


def build_event(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event_type, "timestamp": utcnow().isoformat(), "data": data}


def subscribed_urls(db: Session, owner_ids: Iterable[str], event_type: str) -> List[str]:
    """URLs of the enabled endpoints these owners registered for ``event_type``."""
    owner_ids = [owner_id for owner_id in owner_ids if owner_id]
    if not owner_ids:
        return []
    rows = (
        db.query(Webhook.url)
        .filter(
            Webhook.owner_id.in_(owner_ids),
            Webhook.event_type == event_type,
            Webhook.enabled.is_(True),
        )
        .all()
    )
    return [url for (url,) in rows]


async def deliver_event(urls: List[str], event_type: str, data: Dict[str, Any]) -> None:
    """Post one event to every URL; failures are logged, never raised."""
    if not urls:
        return
    payload = build_event(event_type, data)
    async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
        tasks = [_send_webhook(client, url, payload) for url in urls]
        await asyncio.gather(*tasks, return_exceptions=True)


async def trigger_webhooks(
    owner_id: str, event_type: str, data: Dict[str, Any], db: Session
) -> None:
    """
    Send an event to every enabled endpoint the owner registered for it.
    Fire-and-forget: delivery failures are logged, never raised.
    """
    await deliver_event(subscribed_urls(db, [owner_id], event_type), event_type, data)


async def _send_webhook(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> None:
    try:
        response = await client.post(url, json=payload)
        if response.status_code >= 400:
            logger.warning(f"Webhook {url} answered {response.status_code} for {payload['event']}")
    except httpx.HTTPError as e:
        logger.warning(f"Failed to send webhook to {url}: {e}")


async def send_test_event(url: str, event_type: str) -> Dict[str, Any]:
    """
    Send a sample event and measure the endpoint's response.

    Returns:
        Dict with success flag, status code or error, and response time
    """
    payload = build_event(event_type, {"test": True})
    start_time = time.time()
    try:
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT) as client:
            response = await client.post(url, json=payload)
    except httpx.TimeoutException:
        return {
            "success": False,
            "error": f"Request timeout (> {WEBHOOK_TIMEOUT:.0f} seconds)",
            "response_time": WEBHOOK_TIMEOUT,
        }
    except httpx.HTTPError as e:
        return {
            "success": False,
            "error": str(e),
            "response_time": round(time.time() - start_time, 3),
        }
    return {
        "success": response.status_code < 400,
        "status_code": response.status_code,
        "response_time": round(time.time() - start_time, 3),
    }
