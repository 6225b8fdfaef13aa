"""Append-only edit history ledger."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.edit_record import EditRecord
from models.history_entry import HistoryEntry
from services.blob_storage import LocalBlobStorage
from services.errors import NotFoundError

logger = logging.getLogger(__name__)


async def append_history_entry(db: AsyncSession, record: EditRecord, cost: int) -> HistoryEntry:
    """Stage the ledger entry for a record that just reached Completed. Does not commit."""
    entry = HistoryEntry(
        id=str(uuid.uuid4()),
        user_id=record.user_id,
        edit_record_id=record.id,
        operation_type=record.operation_type,
        parameters=record.parameters,
        original_ref=record.original_ref,
        result_ref=record.result_ref,
        processing_time_ms=int(record.processing_time_ms or 0),
        cost=int(cost),
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_history(db: AsyncSession, user_id: str, *, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    offset = (max(page, 1) - 1) * limit
    total_result = await db.execute(
        select(func.count(HistoryEntry.id)).where(HistoryEntry.user_id == user_id)
    )
    total = int(total_result.scalar() or 0)
    result = await db.execute(
        select(HistoryEntry)
        .where(HistoryEntry.user_id == user_id)
        .order_by(HistoryEntry.created_at.desc(), HistoryEntry.id.desc())
        .offset(offset)
        .limit(limit)
    )
    entries = result.scalars().all()
    return {
        "entries": entries,
        "total": total,
        "page": max(page, 1),
        "limit": limit,
        "has_more": offset + len(entries) < total,
    }


async def purge_history_entry(
    db: AsyncSession,
    entry_id: str,
    user_id: str,
    storage: Optional[LocalBlobStorage] = None,
) -> None:
    """Delete one owned entry, then its blobs once nothing else references them."""
    result = await db.execute(
        select(HistoryEntry).where(HistoryEntry.id == entry_id, HistoryEntry.user_id == user_id)
    )
    entry = result.scalar_one_or_none()
    if not entry:
        raise NotFoundError("History item not found")
    refs = {entry.original_ref, entry.result_ref}
    refs.discard(None)

    await db.delete(entry)
    await db.commit()

    if storage is None:
        return
    still_referenced = await refs_in_history(db, refs) | await refs_in_edit_records(db, refs)
    for ref in refs - still_referenced:
        try:
            await storage.delete(ref)
        except (OSError, ValueError) as exc:
            logger.warning("Could not delete blob %s for history entry %s: %s", ref, entry_id, exc)


async def refs_in_history(db: AsyncSession, refs) -> set:
    """Return which of the given blob refs are still referenced by ledger entries."""
    wanted = [ref for ref in refs if ref]
    if not wanted:
        return set()
    result = await db.execute(
        select(HistoryEntry.original_ref, HistoryEntry.result_ref).where(
            (HistoryEntry.original_ref.in_(wanted)) | (HistoryEntry.result_ref.in_(wanted))
        )
    )
    referenced = set()
    for original_ref, result_ref in result.all():
        referenced.add(original_ref)
        referenced.add(result_ref)
    return referenced.intersection(wanted)


async def refs_in_edit_records(db: AsyncSession, refs) -> set:
    """Return which of the given blob refs still belong to a live edit record."""
    wanted = [ref for ref in refs if ref]
    if not wanted:
        return set()
    result = await db.execute(
        select(EditRecord.original_ref, EditRecord.result_ref).where(
            (EditRecord.original_ref.in_(wanted)) | (EditRecord.result_ref.in_(wanted))
        )
    )
    referenced = set()
    for original_ref, result_ref in result.all():
        referenced.add(original_ref)
        referenced.add(result_ref)
    return referenced.intersection(wanted)
