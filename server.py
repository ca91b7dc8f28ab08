"""ListVerify HTTP API.

Endpoints:
  POST /csv-processor/preview              Preview address stats for a raw CSV body
  POST /csv-processor/process              Split a raw CSV body into stored extracts
  GET  /csv-processor/download/{filename}  Download a stored (augmented) CSV
  POST /email-validator/validate/{filename}  Queue a validation run
  GET  /email-validator/status/{file_id}   Job status, stats and progress
  GET  /health                             Health check
"""

import asyncio
import logging
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel

# Ensure project root on path
sys.path.insert(0, str(Path(__file__).parent))

from engine.config import Settings
from engine.errors import BlobNotFoundError, UserError, readable_error_message
from engine.jobs import ValidationJobQueue
from engine.models import ValidationRequest
from engine.pipeline import build_pipeline
from engine.splitter import preview_table

logger = logging.getLogger("listverify.server")

SETTINGS = Settings.from_env()
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

_pipeline = None
_job_queue: Optional[ValidationJobQueue] = None


async def _close_clients() -> None:
    """Stop queue workers and close the verification HTTP session."""
    global _pipeline, _job_queue
    if _job_queue is not None:
        await _job_queue.shutdown()
        _job_queue = None
    if _pipeline is not None:
        close = getattr(_pipeline.verifier, "close", None)
        if close is not None:
            await close()
        _pipeline = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await _close_clients()


app = FastAPI(
    title="ListVerify",
    description="CSV email list validation API",
    version="0.1.0",
    lifespan=lifespan,
)


def _get_pipeline():
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline(SETTINGS)
    return _pipeline


def _get_job_queue() -> ValidationJobQueue:
    global _job_queue
    if _job_queue is None:
        _job_queue = ValidationJobQueue(
            _get_pipeline(),
            max_queue_size=SETTINGS.queue_max_size,
            workers=SETTINGS.queue_workers,
        )
    return _job_queue


# --- Auth ---

async def verify_api_key(request: Request):
    """Verify API key from X-API-Key header."""
    if not SETTINGS.api_key:
        return  # No auth configured
    key = request.headers.get("X-API-Key", "")
    if key != SETTINGS.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


# --- Helpers ---

def _parse_column_index(raw) -> int:
    try:
        column_index = int(str(raw).strip())
    except (TypeError, ValueError):
        column_index = -1
    if column_index < 0:
        raise HTTPException(status_code=400, detail="Invalid email column index")
    return column_index


async def _read_csv_body(request: Request) -> bytes:
    content = await request.body()
    if not content:
        raise HTTPException(status_code=400, detail="Request body must contain a CSV file")
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="CSV file exceeds 10MB limit")
    return content


# --- Request models ---

class ValidateBody(BaseModel):
    emailColumnIndex: Union[int, str]
    user_email: str = ""
    total_emails: Optional[int] = None
    full_filename: Optional[str] = None
    emails_filename: Optional[str] = None


# --- Endpoints ---

@app.post("/csv-processor/preview", dependencies=[Depends(verify_api_key)])
async def preview_csv(
    request: Request,
    email_column_index: str = Query(..., description="Index of the email column"),
    filename: str = Query("upload.csv"),
):
    column_index = _parse_column_index(email_column_index)
    content = await _read_csv_body(request)
    try:
        stats = preview_table(content, column_index)
    except UserError as e:
        raise HTTPException(status_code=400, detail=f"Failed to preview CSV file: {e}")
    return {"success": True, "stats": stats.model_dump(), "filename": filename}


@app.post("/csv-processor/process", dependencies=[Depends(verify_api_key)])
async def process_csv(
    request: Request,
    email_column_index: str = Query(...),
    filename: str = Query("upload.csv"),
    remove_empty_emails: bool = Query(False),
):
    column_index = _parse_column_index(email_column_index)
    content = await _read_csv_body(request)
    pipeline = _get_pipeline()
    try:
        prepared = await asyncio.to_thread(
            pipeline.prepare_upload,
            content,
            filename,
            column_index,
            remove_empty_emails,
        )
    except Exception as e:
        logger.error("Processing upload %s failed: %s", filename, e)
        raise HTTPException(status_code=400, detail=f"Failed to process CSV file: {e}")
    response = {
        "success": True,
        "message": "CSV processed and stored successfully",
        "filename": filename,
        **prepared.model_dump(exclude_none=True),
    }
    return response


@app.get("/csv-processor/download/{filename}", dependencies=[Depends(verify_api_key)])
async def download_csv(filename: str):
    pipeline = _get_pipeline()
    try:
        data = await asyncio.to_thread(pipeline.blob_store.get, SETTINGS.blob_path(filename))
    except BlobNotFoundError:
        raise HTTPException(status_code=400, detail="File not found")
    return Response(
        content=data,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/email-validator/validate/{filename}", dependencies=[Depends(verify_api_key)])
async def validate_emails(filename: str, body: ValidateBody):
    logger.info("Received request to validate emails in file: %s", filename)
    column_index = _parse_column_index(body.emailColumnIndex)
    if not body.user_email or body.total_emails is None or body.total_emails < 0:
        raise HTTPException(status_code=400, detail="User email and total emails are required")

    file_id = str(uuid.uuid4())
    validation_request = ValidationRequest(
        filename=filename,
        email_column_index=column_index,
        user_email=body.user_email,
        total_emails=body.total_emails,
        file_id=file_id,
        full_filename=body.full_filename,
        emails_filename=body.emails_filename,
    )
    try:
        job = await _get_job_queue().enqueue(validation_request)
    except Exception as e:
        logger.error("Error occurred while queueing validation: %s", e)
        raise HTTPException(status_code=400, detail=readable_error_message(e))
    if job is None:
        raise HTTPException(status_code=503, detail="Validation queue is full, try again later")

    return {
        "success": True,
        "message": "Email validation queued",
        "file_id": file_id,
        "status": job.status.value,
        "filename": filename,
    }


@app.get("/email-validator/status/{file_id}", dependencies=[Depends(verify_api_key)])
async def validation_status(file_id: str):
    pipeline = _get_pipeline()
    try:
        status = await asyncio.to_thread(pipeline.recorder.get_status, file_id)
    except Exception as e:
        logger.error("Status lookup for %s failed: %s", file_id, e)
        raise HTTPException(status_code=400, detail="Failed to fetch file status")
    if status is None:
        raise HTTPException(status_code=404, detail="File not found")
    return status


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "listverify",
        "version": "0.1.0",
        "queued_jobs": _job_queue.queue_size() if _job_queue is not None else 0,
    }


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8025)
