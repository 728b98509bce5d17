from __future__ import annotations

import logging
import secrets
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from parcelnotify.apps.api.deps import get_db
from parcelnotify.apps.api.response import SuccessEnvelope, success_response
from parcelnotify.core.config import get_settings
from parcelnotify.domain.models import PROVIDER_STATUSES
from parcelnotify.persistence.repos.outgoing_sms import update_provider_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


class CallbackAck(BaseModel):
    received: bool
    updated: bool = False


def _check_secret(secret: str) -> None:
    # Unknown secrets look like unknown routes.
    expected = get_settings().sms_webhook_secret
    if not expected or not secrets.compare_digest(secret.encode(), expected.encode()):
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Not found"})


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "INVALID_CALLBACK", "message": message})


@router.post("/sms-status/{secret}", response_model=SuccessEnvelope[CallbackAck])
async def sms_status_callback(
    secret: str,
    request: Request,
    payload: Any = Body(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Record the gateway's delivery outcome on a sent message.

    Valid payloads are always acknowledged, including ones for unknown message ids,
    so the gateway does not keep retrying them.
    """
    _check_secret(secret)
    if not isinstance(payload, dict):
        raise _bad_request("Payload must be a JSON object")
    message_id = payload.get("apiMessageId")
    if not isinstance(message_id, str) or not message_id.strip():
        raise _bad_request("Missing apiMessageId")
    status = payload.get("status")
    if status not in PROVIDER_STATUSES:
        raise _bad_request("Invalid status")

    updated = await update_provider_status(
        db,
        provider_message_id=message_id.strip(),
        provider_status=str(status),
    )
    if updated:
        logger.info("sms provider status %s for %s", status, message_id)
    else:
        logger.debug("sms status callback for unknown or unsent message %s", message_id)
    return success_response(request=request, data=CallbackAck(received=True, updated=updated))
