"""
Edit router: submit AI photo operations and manage edit records.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.edit_record import EditRecord
from models.user import User
from routers.auth_scope import get_current_user
from services.ai_provider import AiProvider, get_ai_provider
from services.blob_storage import LocalBlobStorage, get_blob_storage
from services.edits import EditLifecycleManager, process_edit, suffix_for_mime
from services.entitlements import as_utc, check_entitlement, validate_operation_type
from services.errors import ValidationError
from services.prompts import normalize_parameters

router = APIRouter()
logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic"}
ALLOWED_IMAGE_MIME_PREFIXES = ("image/",)
UPLOAD_CHUNK_BYTES = 1024 * 1024


class EditResponse(BaseModel):
    id: str
    operation_type: str
    status: str
    outcome: Optional[str] = None
    parameters: Dict[str, Any] = {}
    original_ref: str
    original_url: str
    result_ref: Optional[str] = None
    result_url: Optional[str] = None
    processing_time_ms: int = 0
    charged_credits: int = 0
    credit_shortfall: bool = False
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SubmitEditResponse(EditResponse):
    credits_remaining: int


class EditListResponse(BaseModel):
    edits: List[EditResponse]
    total: int
    page: int
    limit: int
    has_more: bool


def _serialize_edit(record: EditRecord, storage: LocalBlobStorage) -> Dict[str, Any]:
    return {
        "id": record.id,
        "operation_type": record.operation_type,
        "status": record.status,
        "outcome": record.outcome,
        "parameters": record.parameters or {},
        "original_ref": record.original_ref,
        "original_url": storage.url_for(record.original_ref),
        "result_ref": record.result_ref,
        "result_url": storage.url_for(record.result_ref) if record.result_ref else None,
        "processing_time_ms": int(record.processing_time_ms or 0),
        "charged_credits": int(record.charged_credits or 0),
        "credit_shortfall": bool(record.credit_shortfall),
        "error_message": record.error_message,
        "created_at": as_utc(record.created_at),
        "completed_at": as_utc(record.completed_at),
    }


def _parse_parameters(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"parameters must be a JSON object: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("parameters must be a JSON object")
    return parsed


async def _read_image(upload: UploadFile, field: str) -> bytes:
    """Validate type and size of an uploaded image and return its bytes."""
    filename = os.path.basename(upload.filename or "")
    suffix = Path(filename).suffix.lower()
    content_type = (upload.content_type or "").lower()
    if suffix not in ALLOWED_IMAGE_EXTENSIONS and not content_type.startswith(ALLOWED_IMAGE_MIME_PREFIXES):
        raise ValidationError(
            f"Unsupported file type for {field}. Upload an image (jpg, png, webp, heic).",
        )

    max_bytes = max(int(settings.MAX_IMAGE_UPLOAD_BYTES), 1)
    chunks = []
    total_size = 0
    try:
        while True:
            chunk = await upload.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > max_bytes:
                raise ValidationError(
                    f"File too large. Max upload size is {max_bytes // (1024 * 1024)}MB.",
                )
            chunks.append(chunk)
    finally:
        await upload.close()

    if total_size == 0:
        raise ValidationError(f"No image provided in {field}.")
    return b"".join(chunks)


def _mime_type(upload: UploadFile) -> str:
    content_type = (upload.content_type or "").lower()
    if content_type.startswith("image/"):
        return content_type
    suffix = Path(upload.filename or "").suffix.lower()
    return {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".webp": "image/webp", ".heic": "image/heic"}.get(
        suffix, "image/png"
    )


@router.get("/provider")
async def provider_status(provider: AiProvider = Depends(get_ai_provider)):
    """Report which AI provider is serving edits."""
    return {
        "provider": provider.name,
        "model": provider.model,
        "configured": provider.configured,
        "timeout_seconds": settings.AI_PROVIDER_TIMEOUT_SECONDS,
    }


@router.get("", response_model=EditListResponse)
async def list_edits(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    operation_type: Optional[str] = Query(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: AiProvider = Depends(get_ai_provider),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    manager = EditLifecycleManager(db, provider, storage)
    listing = await manager.list_edits(user.id, page=page, limit=limit, operation_type=operation_type)
    listing["edits"] = [_serialize_edit(record, storage) for record in listing["edits"]]
    return listing


@router.post("/{operation_type}", response_model=SubmitEditResponse, status_code=202)
async def submit_edit(
    operation_type: str,
    background_tasks: BackgroundTasks,
    image: UploadFile = File(...),
    reference_image: Optional[UploadFile] = File(default=None),
    parameters: Optional[str] = Form(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: AiProvider = Depends(get_ai_provider),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    """
    Gate, store and submit a photo operation; processing continues in the background.
    Nothing is persisted when a tier or credit gate rejects the request.
    """
    validate_operation_type(operation_type)
    check_entitlement(user, operation_type)
    normalized = normalize_parameters(operation_type, _parse_parameters(parameters))

    if operation_type == "faceSwap" and reference_image is None:
        raise ValidationError("faceSwap requires a reference_image with the face to use.")

    image_bytes = await _read_image(image, "image")
    mime_type = _mime_type(image)
    reference_bytes = None
    reference_mime_type = None
    if operation_type == "faceSwap":
        reference_bytes = await _read_image(reference_image, "reference_image")
        reference_mime_type = _mime_type(reference_image)

    original_ref = await storage.put(image_bytes, suffix=suffix_for_mime(mime_type), prefix="originals")
    reference_ref = None
    if reference_bytes is not None:
        reference_ref = await storage.put(
            reference_bytes,
            suffix=suffix_for_mime(reference_mime_type),
            prefix="originals",
        )

    manager = EditLifecycleManager(db, provider, storage)
    record = await manager.submit(
        user,
        operation_type,
        original_ref,
        normalized,
        mime_type=mime_type,
        reference_ref=reference_ref,
        reference_mime_type=reference_mime_type,
    )
    background_tasks.add_task(process_edit, record.id, provider, storage)

    return {**_serialize_edit(record, storage), "credits_remaining": int(user.credits_remaining or 0)}


@router.get("/{edit_id}", response_model=EditResponse)
async def get_edit(
    edit_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: AiProvider = Depends(get_ai_provider),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    manager = EditLifecycleManager(db, provider, storage)
    record = await manager.get(edit_id, user.id)
    return _serialize_edit(record, storage)


@router.delete("/{edit_id}")
async def delete_edit(
    edit_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    provider: AiProvider = Depends(get_ai_provider),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    manager = EditLifecycleManager(db, provider, storage)
    await manager.delete(edit_id, user.id)
    return {"message": "Edit deleted successfully"}
