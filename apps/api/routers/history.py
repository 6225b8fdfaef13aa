"""Edit history router."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.history_entry import HistoryEntry
from models.user import User
from routers.auth_scope import get_current_user
from services.blob_storage import LocalBlobStorage, get_blob_storage
from services.entitlements import as_utc
from services.history import list_history, purge_history_entry

router = APIRouter()


def _serialize_entry(entry: HistoryEntry, storage: LocalBlobStorage) -> dict:
    created_at = as_utc(entry.created_at)
    return {
        "id": entry.id,
        "edit_record_id": entry.edit_record_id,
        "operation_type": entry.operation_type,
        "parameters": entry.parameters or {},
        "original_url": storage.url_for(entry.original_ref),
        "result_url": storage.url_for(entry.result_ref),
        "processing_time_ms": entry.processing_time_ms,
        "cost": entry.cost,
        "created_at": created_at.isoformat() if created_at else None,
    }


@router.get("")
async def get_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    """List completed edits, newest first."""
    listing = await list_history(db, user.id, page=page, limit=limit)
    return {
        "history": [_serialize_entry(entry, storage) for entry in listing["entries"]],
        "total": listing["total"],
        "page": listing["page"],
        "limit": listing["limit"],
        "has_more": listing["has_more"],
    }


@router.delete("/{entry_id}")
async def delete_history_item(
    entry_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: LocalBlobStorage = Depends(get_blob_storage),
):
    await purge_history_entry(db, entry_id, user.id, storage)
    return {"message": "History item deleted"}
