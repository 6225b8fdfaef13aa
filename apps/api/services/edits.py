"""
Edit lifecycle manager.

Drives an EditRecord through pending -> processing -> completed/failed and
ties credit consumption and the history ledger to the outcome.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Dict, Iterable, Optional
import uuid

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.edit_record import (
    IN_PROGRESS_STATUSES,
    OUTCOME_ENHANCED,
    OUTCOME_FALLBACK_NO_CHANGE,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    EditRecord,
)
from models.user import User
from services.ai_provider import AiProvider, EnhancedImage, ProviderResult, ReferenceImage
from services.blob_storage import LocalBlobStorage
from services.entitlements import consume_credits, utc_now, validate_operation_type
from services.errors import (
    InsufficientCreditsError,
    InvalidStateError,
    NotFoundError,
    ProviderUnavailableError,
)
from services.history import append_history_entry, refs_in_history
from services.prompts import normalize_parameters

logger = logging.getLogger(__name__)

REFERENCE_REF_KEY = "referenceRef"
REFERENCE_MIME_KEY = "referenceMimeType"

MIME_SUFFIXES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/heic": ".heic",
}


def suffix_for_mime(mime_type: Optional[str]) -> str:
    return MIME_SUFFIXES.get((mime_type or "").lower(), ".png")


class EditLifecycleManager:
    """Owns every state transition of an EditRecord."""

    def __init__(
        self,
        db: AsyncSession,
        provider: AiProvider,
        storage: LocalBlobStorage,
        *,
        timeout_seconds: Optional[float] = None,
        credit_cost: Optional[int] = None,
    ) -> None:
        self.db = db
        self.provider = provider
        self.storage = storage
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.AI_PROVIDER_TIMEOUT_SECONDS
        )
        self.credit_cost = max(int(credit_cost if credit_cost is not None else settings.CREDIT_COST_PER_EDIT), 0)

    async def _load(self, edit_id: str) -> Optional[EditRecord]:
        result = await self.db.execute(
            select(EditRecord)
            .where(EditRecord.id == edit_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _transition(self, edit_id: str, from_statuses: Iterable[str], values: Dict[str, Any]) -> EditRecord:
        """Conditionally move a record out of ``from_statuses`` in one statement."""
        allowed = tuple(from_statuses)
        result = await self.db.execute(
            update(EditRecord)
            .where(EditRecord.id == edit_id, EditRecord.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            record = await self._load(edit_id)
            if record is None:
                raise NotFoundError("Edit not found")
            logger.error(
                "Illegal transition for edit %s: %s -> %s",
                edit_id,
                record.status,
                values.get("status"),
            )
            raise InvalidStateError(
                f"Edit {edit_id} is {record.status}; expected one of {', '.join(allowed)}.",
                status=record.status,
            )
        return await self._load(edit_id)

    async def submit(
        self,
        user: User,
        operation_type: str,
        original_ref: str,
        parameters: Optional[Dict[str, Any]] = None,
        *,
        mime_type: str = "image/png",
        reference_ref: Optional[str] = None,
        reference_mime_type: Optional[str] = None,
    ) -> EditRecord:
        """Create a Pending record. No credits are charged here."""
        validate_operation_type(operation_type)
        normalized = normalize_parameters(operation_type, parameters)
        if reference_ref:
            normalized[REFERENCE_REF_KEY] = reference_ref
            normalized[REFERENCE_MIME_KEY] = reference_mime_type or mime_type

        record = EditRecord(
            id=str(uuid.uuid4()),
            user_id=user.id,
            operation_type=operation_type,
            status=STATUS_PENDING,
            original_ref=original_ref,
            mime_type=mime_type,
            parameters=normalized,
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)
        logger.info("Edit %s submitted: user=%s operation=%s", record.id, user.id, operation_type)
        return record

    async def dispatch(self, edit_id: str) -> ProviderResult:
        """Move Pending -> Processing and call the provider, bounded by the timeout."""
        record = await self._transition(
            edit_id,
            (STATUS_PENDING,),
            {"status": STATUS_PROCESSING, "dispatched_at": utc_now()},
        )
        await self.db.commit()

        parameters = dict(record.parameters or {})
        reference_ref = parameters.pop(REFERENCE_REF_KEY, None)
        mime_type = record.mime_type or "image/png"
        reference_mime_type = parameters.pop(REFERENCE_MIME_KEY, None) or mime_type
        image_bytes = await self.storage.get(record.original_ref)
        reference_image = None
        if reference_ref:
            reference_image = ReferenceImage(
                image_bytes=await self.storage.get(reference_ref),
                mime_type=reference_mime_type,
            )

        logger.info(
            "Dispatching edit %s (%s) to provider %s",
            edit_id,
            record.operation_type,
            self.provider.name,
        )
        try:
            return await asyncio.wait_for(
                self.provider.enhance(
                    image_bytes,
                    mime_type,
                    record.operation_type,
                    parameters,
                    reference_image=reference_image,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderUnavailableError(
                f"AI provider timed out after {self.timeout_seconds:g}s."
            ) from exc
        except ProviderUnavailableError:
            raise
        except Exception as exc:
            raise ProviderUnavailableError(f"AI provider error: {exc}") from exc

    async def complete(
        self,
        edit_id: str,
        result_ref: str,
        processing_time_ms: int,
        outcome: str = OUTCOME_ENHANCED,
    ) -> EditRecord:
        """Processing -> Completed, debit credits and append the ledger entry in one commit.

        If the debit fails (the balance was spent concurrently) the edit still
        completes uncharged and the shortfall is flagged on the record.
        Only OUTCOME_ENHANCED is charged; a fallback completion returns the
        original unchanged and records a cost of 0.
        """
        record = await self._transition(
            edit_id,
            (STATUS_PROCESSING,),
            {
                "status": STATUS_COMPLETED,
                "result_ref": result_ref,
                "processing_time_ms": max(int(processing_time_ms), 0),
                "outcome": outcome,
                "error_message": None,
                "completed_at": utc_now(),
            },
        )

        cost = self.credit_cost if outcome == OUTCOME_ENHANCED else 0
        charged = 0
        shortfall = False
        if cost > 0:
            try:
                await consume_credits(self.db, record.user_id, cost)
                charged = cost
            except InsufficientCreditsError as exc:
                shortfall = True
                logger.error(
                    "Accounting alert: edit %s completed but credit debit failed for user %s "
                    "(required=%s remaining=%s)",
                    edit_id,
                    record.user_id,
                    exc.required,
                    exc.remaining,
                )

        record.charged_credits = charged
        record.credit_shortfall = shortfall
        await append_history_entry(self.db, record, charged)
        await self.db.commit()
        logger.info("Edit %s completed: outcome=%s charged=%s", edit_id, outcome, charged)
        return record

    async def fail(
        self,
        edit_id: str,
        error_message: str,
        from_statuses: Iterable[str] = (STATUS_PROCESSING,),
    ) -> EditRecord:
        """Move the record to Failed. Never charges and never writes history."""
        record = await self._transition(
            edit_id,
            from_statuses,
            {
                "status": STATUS_FAILED,
                "error_message": error_message,
                "completed_at": utc_now(),
            },
        )
        await self.db.commit()
        logger.info("Edit %s failed: %s", edit_id, error_message)
        return record

    async def run(self, edit_id: str) -> EditRecord:
        """Drive a Pending record to a terminal state."""
        started = time.monotonic()
        try:
            result = await self.dispatch(edit_id)
        except (InvalidStateError, NotFoundError):
            raise
        except ProviderUnavailableError as exc:
            logger.error("Provider failure for edit %s: %s", edit_id, exc.message)
            return await self.fail(edit_id, exc.message)
        except Exception as exc:
            logger.exception("Edit %s could not be processed", edit_id)
            return await self.fail(edit_id, f"Processing error: {exc}")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if isinstance(result, EnhancedImage):
            try:
                result_ref = await self.storage.put(
                    result.image_bytes,
                    suffix=suffix_for_mime(result.mime_type),
                    prefix="results",
                )
            except OSError as exc:
                logger.error("Could not store result for edit %s: %s", edit_id, exc)
                return await self.fail(edit_id, f"Could not store result: {exc}")
            try:
                return await self.complete(edit_id, result_ref, elapsed_ms)
            except (InvalidStateError, NotFoundError):
                await self.db.rollback()
                await self._discard_blob(result_ref, edit_id)
                raise

        record = await self._load(edit_id)
        if record is None:
            raise NotFoundError("Edit not found")
        logger.warning(
            "Provider returned no image for edit %s; completing without changes. Provider text: %s",
            edit_id,
            (result.text or "")[:200],
        )
        return await self.complete(
            edit_id,
            record.original_ref,
            elapsed_ms,
            outcome=OUTCOME_FALLBACK_NO_CHANGE,
        )

    async def get(self, edit_id: str, user_id: str) -> EditRecord:
        result = await self.db.execute(
            select(EditRecord).where(EditRecord.id == edit_id, EditRecord.user_id == user_id)
        )
        record = result.scalar_one_or_none()
        if not record:
            raise NotFoundError("Edit not found")
        return record

    async def list_edits(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        operation_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        filters = [EditRecord.user_id == user_id]
        if operation_type:
            filters.append(EditRecord.operation_type == validate_operation_type(operation_type))
        offset = (max(page, 1) - 1) * limit

        total_result = await self.db.execute(select(func.count(EditRecord.id)).where(*filters))
        total = int(total_result.scalar() or 0)
        result = await self.db.execute(
            select(EditRecord)
            .where(*filters)
            .order_by(EditRecord.created_at.desc(), EditRecord.id.desc())
            .offset(offset)
            .limit(limit)
        )
        records = result.scalars().all()
        return {
            "edits": records,
            "total": total,
            "page": max(page, 1),
            "limit": limit,
            "has_more": offset + len(records) < total,
        }

    async def _discard_blob(self, ref: str, edit_id: str) -> None:
        try:
            await self.storage.delete(ref)
        except (OSError, ValueError) as exc:
            logger.warning("Could not delete blob %s for edit %s: %s", ref, edit_id, exc)

    async def delete(self, edit_id: str, user_id: str) -> None:
        """Remove an owned record in any state; ledger entries are left intact."""
        record = await self.get(edit_id, user_id)
        refs = {
            record.original_ref,
            record.result_ref,
            (record.parameters or {}).get(REFERENCE_REF_KEY),
        }
        refs.discard(None)

        await self.db.delete(record)
        await self.db.commit()

        still_referenced = await refs_in_history(self.db, refs)
        for ref in refs - still_referenced:
            await self._discard_blob(ref, edit_id)
        logger.info("Edit %s deleted by user %s", edit_id, user_id)


async def process_edit(edit_id: str, provider: AiProvider, storage: LocalBlobStorage) -> None:
    """
    Background task driving a submitted edit to completion with its own session,
    so a disconnected client does not leave the record in processing.
    """
    async with async_session_maker() as db:
        manager = EditLifecycleManager(db, provider, storage)
        try:
            await manager.run(edit_id)
        except (InvalidStateError, NotFoundError) as exc:
            logger.error("Edit %s was not processed: %s", edit_id, exc)


async def recover_stalled_edits(max_age_minutes: Optional[int] = None) -> int:
    """Fail edits left pending/processing after restarts or lost workers."""
    minutes = max(int(max_age_minutes if max_age_minutes is not None else settings.STALLED_EDIT_MINUTES), 1)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    async with async_session_maker() as db:
        result = await db.execute(
            select(EditRecord.id).where(
                EditRecord.status.in_(IN_PROGRESS_STATUSES),
                EditRecord.created_at < cutoff,
            )
        )
        edit_ids = list(result.scalars().all())
        if not edit_ids:
            return 0

        update_result = await db.execute(
            update(EditRecord)
            .where(
                EditRecord.id.in_(edit_ids),
                EditRecord.status.in_(IN_PROGRESS_STATUSES),
            )
            .values(
                status=STATUS_FAILED,
                error_message="Edit processing was interrupted. Submit the photo again.",
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        recovered = int(update_result.rowcount or 0)
        if recovered:
            logger.warning("Marked %s stalled edit(s) as failed", recovered)
        return recovered
