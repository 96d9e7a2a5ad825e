"""
Overflow upload signing

Hands out short-lived presigned PUT URLs for the S3-compatible overflow
bucket. Only POST is routed, so other methods get FastAPI's 405.
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from receiptdesk.api.deps import get_presigner
from receiptdesk.services.errors import SignerNotConfiguredError, SigningError
from receiptdesk.services.upload_signer import R2Presigner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["storage"])


def _parse_body(raw: bytes) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


@router.post("/r2-sign-upload")
async def sign_upload(request: Request, presigner: R2Presigner = Depends(get_presigner)):
    """Return ``{uploadUrl, publicUrl, expiresIn}`` for a PUT of ``filename``."""
    if not presigner.configured:
        return JSONResponse(status_code=503, content={"error": "R2 not configured"})

    body = _parse_body(await request.body())
    filename = body.get("filename")
    if not filename or not isinstance(filename, str):
        return JSONResponse(status_code=400, content={"error": "filename missing"})

    content_type = body.get("contentType")
    try:
        signed = presigner.presign(filename, content_type if isinstance(content_type, str) else None)
    except SignerNotConfiguredError:
        return JSONResponse(status_code=503, content={"error": "R2 not configured"})
    except SigningError:
        return JSONResponse(status_code=500, content={"error": "sign failed"})

    return {
        "uploadUrl": signed.upload_url,
        "publicUrl": signed.public_url,
        "expiresIn": signed.expires_in,
    }
