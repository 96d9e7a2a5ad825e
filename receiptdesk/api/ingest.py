"""
Batch ingest endpoints

``POST /ingest`` accepts a multipart batch of files and streams
newline-delimited JSON: first one ``queued`` line per placeholder, then one
line per file as it finishes. When the batch produces a rule suggestion a
``{"type": "rule_suggested", "suggestion": {...}}`` line follows the update
that triggered it.

``GET /documents/{document_id}/audit`` returns the stage trail of one file.
"""

import json
import logging
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import TypeAdapter, ValidationError

from receiptdesk.api.deps import get_audit_service, get_ingestion_service
from receiptdesk.models.documents import IncomingFile, IngestStage, IngestUpdate, SourceChannel
from receiptdesk.models.rules import Rule, RuleSuggestion
from receiptdesk.services.audit import AuditTrailService
from receiptdesk.services.classification import DEFAULT_RULES
from receiptdesk.services.ingestion import IngestionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingest"])

_RULES = TypeAdapter(List[Rule])


def _parse_rules(raw: Optional[str]) -> List[Rule]:
    if not raw:
        return list(DEFAULT_RULES)
    try:
        return _RULES.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail={"error": "INVALID_RULES", "message": str(exc)})


def _line(update: IngestUpdate) -> str:
    return update.model_dump_json() + "\n"


def _suggestion_line(suggestion: RuleSuggestion) -> str:
    return json.dumps({"type": "rule_suggested", "suggestion": suggestion.model_dump(mode="json")}) + "\n"


@router.post("/ingest")
async def ingest(
    files: List[UploadFile] = File(...),
    user_id: str = Form(...),
    source_channel: SourceChannel = Form(SourceChannel.MANUAL),
    rules: Optional[str] = Form(None),
    service: IngestionService = Depends(get_ingestion_service),
):
    rule_list = _parse_rules(rules)
    incoming = []
    for upload in files:
        incoming.append(IncomingFile(
            filename=upload.filename or "upload",
            content=await upload.read(),
            content_type=upload.content_type or "application/octet-stream",
            source_channel=source_channel,
        ))
    placeholders = service.create_placeholders(incoming, source_channel)
    logger.info(f"Ingesting {len(incoming)} file(s) for {user_id}")

    async def stream() -> AsyncIterator[str]:
        suggestions: List[RuleSuggestion] = []
        for placeholder in placeholders:
            yield _line(IngestUpdate(placeholder_id=placeholder.id, stage=IngestStage.QUEUED, document=placeholder))
        async for update in service.ingest_batch(
            incoming, rule_list, user_id, placeholders=placeholders, on_rule_suggested=suggestions.append
        ):
            yield _line(update)
            while suggestions:
                yield _suggestion_line(suggestions.pop(0))

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.get("/documents/{document_id}/audit")
async def document_audit_trail(
    document_id: str,
    audit: AuditTrailService = Depends(get_audit_service),
):
    trail = await audit.load_trail(document_id)
    if not trail:
        raise HTTPException(status_code=404, detail={"error": "NOT_FOUND", "message": f"No audit trail for {document_id}"})
    return {"document_id": document_id, "events": trail}
