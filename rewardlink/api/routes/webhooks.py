"""Backend webhook receiver.

The rewards backend signs every delivery with HMAC-SHA256 over the raw
request body and sends the hex digest in ``X-Signature``. Verified events
about task or allowlist changes trigger a priority reconcile of every
post showing that entity.
"""

import hashlib
import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field, ValidationError
from starlette.responses import JSONResponse

from rewardlink.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Signature"
ENTITY_EVENTS = {
    "task.status_changed": ("taskId", "task"),
    "allowlist.updated": ("allowlistId", "allowlist"),
}


class WebhookEvent(BaseModel):
    """Envelope of one backend webhook delivery."""

    event: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body`` under ``secret``."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    expected = compute_signature(secret, body)
    provided = signature.removeprefix("sha256=").strip()
    return hmac.compare_digest(expected, provided)


def _entity_id(event: WebhookEvent, id_field: str) -> str | None:
    value = event.data.get(id_field) or event.data.get("id") or event.data.get("_id")
    return str(value) if value else None


@router.post("/backend")
async def receive_backend_event(request: Request) -> JSONResponse:
    """Verify and dispatch one backend event.

    Returns:
        202 with the number of refreshed posts, 200 for ignored events,
        400 for malformed bodies, 401 for bad signatures.
    """
    body = await request.body()
    secret: str = request.app.state.webhook_secret
    if not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected webhook with invalid signature")
        return JSONResponse(status_code=401, content={"error": {"code": "INVALID_SIGNATURE"}})

    try:
        event = WebhookEvent.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as e:
        return JSONResponse(
            status_code=400,
            content={"error": {"code": "INVALID_PAYLOAD", "message": sanitize_error_message(str(e))}},
        )

    mapping = ENTITY_EVENTS.get(event.event)
    if mapping is None:
        logger.debug("Ignoring webhook event %s", event.event)
        return JSONResponse(status_code=200, content={"status": "ignored", "event": event.event})

    id_field, kind = mapping
    entity_id = _entity_id(event, id_field)
    if entity_id is None:
        return JSONResponse(
            status_code=400,
            content={"error": {"code": "INVALID_PAYLOAD", "message": f"Missing {id_field}"}},
        )

    engine = request.app.state.engine
    scheduled = await engine.on_entity_status_changed(entity_id, event.data.get("status"))
    logger.info("Webhook %s for %s %s refreshed %d post(s)", event.event, kind, entity_id, scheduled)
    return JSONResponse(
        status_code=202,
        content={"status": "accepted", "event": event.event, "refreshed": scheduled},
    )
