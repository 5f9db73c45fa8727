from fastapi import FastAPI, APIRouter, HTTPException, UploadFile, File, Query, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
import os
import json
import logging
from pathlib import Path
from pydantic import BaseModel
from typing import List, Optional, Any
from datetime import datetime, timezone

from extraction import (
    ExtractionError,
    ExtractionNotConfiguredError,
    extract_medications,
    is_supported_mime,
)
from storage import MongoKVStore, StoreError
from tracker import ParsedMedication

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
MONGO_URL = os.getenv('MONGO_URL')
DB_NAME = os.getenv('DB_NAME', 'medication_tracker')

store: Optional[MongoKVStore] = None

# Create the main app without a prefix
app = FastAPI(title="Medication Tracker API")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


class ExtractResponse(BaseModel):
    medications: List[ParsedMedication]


def api_error(status_code: int, error: str, details: Optional[str] = None) -> HTTPException:
    body = {"error": error}
    if details is not None:
        body["details"] = details
    return HTTPException(status_code=status_code, detail=body)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTP error as {"error": ..., "details": ...}."""
    content = exc.detail if isinstance(exc.detail, dict) else {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


def require_store() -> MongoKVStore:
    if store is None:
        raise api_error(500, "Storage is not configured", "MONGO_URL is not set")
    return store


# Routes

@api_router.get("/")
async def root():
    return {"message": "Medication Tracker API"}


@api_router.get("/load")
async def load_state(user_id: Optional[str] = Query(None, alias="userId")):
    """Return the stored document for a user, or null when nothing was saved yet"""
    if not user_id:
        raise api_error(400, "userId is required")
    kv = require_store()
    try:
        data = await kv.get(user_id)
    except StoreError as e:
        raise api_error(500, e.message, e.details)
    logging.info("[store] load user=%s found=%s", user_id, data is not None)
    return {"data": data}


@api_router.post("/save")
async def save_state(request: Request):
    """Overwrite the stored document for a user (last write wins)"""
    try:
        body = await request.json()
    except ValueError:
        raise api_error(400, "Request body must be JSON")
    if not isinstance(body, dict):
        raise api_error(400, "Request body must be a JSON object")

    user_id = body.get("userId")
    data: Any = body.get("data")
    if not user_id or data is None:
        raise api_error(400, "userId and data are required")
    if not isinstance(data, str):
        data = json.dumps(data)

    kv = require_store()
    try:
        await kv.set(user_id, data)
    except StoreError as e:
        raise api_error(500, e.message, e.details)
    logging.info("[store] save user=%s bytes=%d", user_id, len(data))
    return {"ok": True}


@api_router.post("/extract", response_model=ExtractResponse)
async def extract(file: UploadFile = File(...)):
    """Extract medication entries from one prescription image or PDF"""
    if not is_supported_mime(file.content_type):
        raise api_error(415, "Unsupported content type. Expect image/* or application/pdf")

    max_upload_mb = float(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
    max_bytes = int(max_upload_mb * 1024 * 1024)

    size = 0
    chunks = []
    while True:
        chunk = await file.read(1024 * 1024)
        if not chunk:
            break
        size += len(chunk)
        if size > max_bytes:
            raise api_error(413, f"File too large (> {max_upload_mb} MB)")
        chunks.append(chunk)
    data = b"".join(chunks)
    if not data:
        raise api_error(400, "Uploaded file is empty")

    try:
        medications = await extract_medications(data, file.content_type, file.filename or "prescription")
    except ExtractionNotConfiguredError as e:
        raise api_error(500, "Extraction service is not configured", str(e))
    except ExtractionError as e:
        raise api_error(502, "Extraction service error", str(e))

    return ExtractResponse(medications=medications)


@api_router.get("/health")
async def health():
    status = {
        "status": "ok",
        "store": "connected" if store is not None else "disabled",
        "time": datetime.now(timezone.utc).isoformat(),
    }
    return status


# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup_store():
    global store
    if MONGO_URL:
        try:
            store = MongoKVStore.from_url(MONGO_URL, DB_NAME or 'medication_tracker')
            await store.ensure_indexes()
            logging.info("MongoDB connected and indexes ensured")
        except Exception as e:
            logging.error(f"Failed to connect to MongoDB: {e}")
            store = None
    else:
        logging.warning("MONGO_URL not set; load/save will answer 500 until it is configured")


@app.on_event("shutdown")
async def shutdown_store():
    if store:
        store.close()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
