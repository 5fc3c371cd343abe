"""Audit recording: explicit log calls and the background writer behind them."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from authledger.models.audit import (
    AuditAction,
    AuditChanges,
    AuditLogEntry,
    RequestMetadata,
)
from authledger.repositories.base import new_object_id
from authledger.services.audit_log_service import AuditLogService
from authledger.services.audit_rules import describe, sanitize

logger = structlog.get_logger(__name__)


class AuditDispatcher:
    """Bounded queue drained by a single writer task.

    ``submit`` never blocks and never raises: when the queue is full the entry
    is dropped and counted. The writer is started lazily inside the running
    event loop on first submission.
    """

    def __init__(self, store: AuditLogService, max_size: int = 1000):
        self.store = store
        self.max_size = max_size
        self.dropped = 0
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    def _ensure_worker(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_size)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())
        return self._queue

    def submit(self, entry: AuditLogEntry) -> bool:
        """Enqueue an entry for persistence.

        Returns:
            True if queued, False if dropped
        """
        try:
            queue = self._ensure_worker()
            queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "audit_log_dropped",
                reason="queue_full",
                action=entry.action.value,
                entity=entry.entity,
                dropped_total=self.dropped,
            )
            return False
        except RuntimeError as e:
            # No running event loop
            self.dropped += 1
            logger.warning("audit_log_dropped", reason="no_event_loop", error=str(e))
            return False
        return True

    async def _run(self) -> None:
        queue = self._queue
        while True:
            entry = await queue.get()
            try:
                await self.store.append(entry)
            except Exception as e:
                logger.error("audit_writer_error", audit_id=entry.id, error=str(e))
            finally:
                queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued entry has been handed to the store."""
        if self._queue is None:
            return
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def stop(self, timeout: float = 5.0) -> None:
        """Flush what is queued (bounded by ``timeout``) and stop the writer."""
        if self._queue is not None:
            try:
                await self.drain(timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("audit_drain_timeout", pending=self.pending)

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None


class AuditRecorder:
    """Explicit audit API used by business operations.

    Every ``log_*`` call sanitizes its snapshots, hands the entry to the
    dispatcher and returns immediately. Nothing here raises into the caller.
    """

    def __init__(self, dispatcher: AuditDispatcher):
        self.dispatcher = dispatcher

    def record(
        self,
        actor_id: str,
        action: AuditAction,
        entity: str,
        entity_id: str,
        before: Any = None,
        after: Any = None,
        metadata: Optional[RequestMetadata] = None,
        description: Optional[str] = None,
    ) -> bool:
        """Build and enqueue one entry.

        Returns:
            True if the entry was queued
        """
        try:
            entry = AuditLogEntry(
                id=new_object_id(),
                user_id=actor_id,
                action=action,
                entity=entity,
                entity_id=entity_id,
                changes=AuditChanges(before=sanitize(before), after=sanitize(after)),
                metadata=metadata or RequestMetadata(),
                timestamp=datetime.now(timezone.utc),
                description=description or describe(action, entity, entity_id),
            )
        except Exception as e:
            logger.error(
                "audit_log_build_failed",
                action=action.value,
                entity=entity,
                entity_id=entity_id,
                error=str(e),
            )
            return False
        return self.dispatcher.submit(entry)

    def log_create(
        self,
        actor_id: str,
        entity: str,
        entity_id: str,
        data: Any = None,
        metadata: Optional[RequestMetadata] = None,
        description: Optional[str] = None,
    ) -> bool:
        return self.record(
            actor_id, AuditAction.CREATE, entity, entity_id,
            before=None, after=data, metadata=metadata, description=description,
        )

    def log_read(
        self,
        actor_id: str,
        entity: str,
        entity_id: str,
        metadata: Optional[RequestMetadata] = None,
        description: Optional[str] = None,
    ) -> bool:
        return self.record(
            actor_id, AuditAction.READ, entity, entity_id,
            metadata=metadata, description=description,
        )

    def log_update(
        self,
        actor_id: str,
        entity: str,
        entity_id: str,
        before: Any = None,
        after: Any = None,
        metadata: Optional[RequestMetadata] = None,
        description: Optional[str] = None,
    ) -> bool:
        return self.record(
            actor_id, AuditAction.UPDATE, entity, entity_id,
            before=before, after=after, metadata=metadata, description=description,
        )

    def log_delete(
        self,
        actor_id: str,
        entity: str,
        entity_id: str,
        data: Any = None,
        metadata: Optional[RequestMetadata] = None,
        description: Optional[str] = None,
    ) -> bool:
        return self.record(
            actor_id, AuditAction.DELETE, entity, entity_id,
            before=data, after=None, metadata=metadata, description=description,
        )
