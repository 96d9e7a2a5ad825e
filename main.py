"""
receiptdesk - FastAPI Backend

Document ingestion for receipts and invoices: analyze, deduplicate,
classify and store uploaded files.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Ingest a batch:
   curl -N -X POST http://localhost:8000/ingest \
     -F "user_id=demo" -F "files=@rechnung.pdf" -F "files=@beleg.png"
"""
import time
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from receiptdesk.api import ingest_router, upload_signing_router
from receiptdesk.di.container import container
from receiptdesk.services.errors import ReceiptDeskError, to_http_exception
from receiptdesk.services.logging import log_error, log_request, logger

app = FastAPI(
    title="receiptdesk API",
    description="""
    receiptdesk ingestion API

    ## Ingestion
    - Multipart batch upload streamed back as NDJSON, one line per file
    - Duplicate detection against existing documents
    - First-match-wins rule classification

    ## Storage
    - Supabase Storage as primary backend
    - Cloudflare R2 overflow through presigned uploads
    """,
    version="1.0.0",
)

app.include_router(ingest_router)
app.include_router(upload_signing_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_id = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                client_id=client_id
            )
            return response
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ReceiptDeskError)
async def receiptdesk_exception_handler(request: Request, exc: ReceiptDeskError):
    """Handle all ReceiptDeskErrors with structured responses."""
    log_error(exc.code.value, str(exc), exc.context)
    http_exc = to_http_exception(exc)
    return JSONResponse(status_code=http_exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error("unhandled_exception", str(exc), {"path": str(request.url.path), "method": request.method},
              exception=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again.",
        }
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("shutdown")
async def drain_background_tasks():
    """Let detached contact extraction finish before the process exits."""
    if container._ingestion is not None:
        await container._ingestion.wait_for_background()
        logger.info("Background tasks drained")


@app.get("/health")
async def health():
    config = container.config()
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "primary_bucket": config.primary_bucket,
        "overflow_enabled": config.overflow_enabled,
    }
