"""
OCR Webhook Router
POST /webhooks/ocr/callback

The body is read raw (never through a Pydantic body parameter) because the
HMAC signature covers the exact bytes sent. Reading stops as soon as the
configured cap is exceeded.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, Request, status

from docproc.api.dependencies import WebhookHandlerDep
from docproc.core.config import settings
from docproc.core.errors import PayloadTooLargeError
from docproc.schemas.processing import ErrorBody, WebhookAck
from docproc.services.webhook import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks/ocr",
    tags=["OCR Webhooks"],
)


async def _read_capped_body(request: Request, limit: int) -> bytes:
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        raise PayloadTooLargeError(int(content_length), limit)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLargeError(len(body), limit)
    return bytes(body)


@router.post(
    "/callback",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Receive an OCR engine callback",
    description=(
        "Signed with X-Webhook-Signature: hex(HMAC-SHA256(secret, raw body)). "
        "Duplicate deliveries return the same 200 body without side effects."
    ),
    responses={
        400: {"model": ErrorBody, "description": "Malformed payload, missing field, bad progress or task mismatch"},
        401: {"model": ErrorBody, "description": "Signature missing or invalid"},
        404: {"model": ErrorBody, "description": "Unknown document"},
        413: {"model": ErrorBody, "description": "Payload exceeds the configured limit"},
    },
)
async def ocr_callback(
    request:   Request,
    handler:   WebhookHandlerDep,
    signature: str | None = Header(None, alias=SIGNATURE_HEADER),
) -> WebhookAck:
    raw_body = await _read_capped_body(request, settings.webhook_max_body_bytes)
    return await handler.handle(raw_body, signature)
