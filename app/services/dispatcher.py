"""
Queue processor.

``run_once`` picks up due PENDING notifications, claims each one, hands it to the
channel's handler and commits the outcome:

    disabled channel      -> SKIPPED (attempts untouched)
    rate limited          -> back to PENDING, same schedule, same attempts
    sent                  -> SENT + history
    failed, tries left    -> PENDING, scheduled_at = now + backoff(attempts)
    failed, no tries left -> FAILED + history
    configuration problem -> FAILED immediately, remaining attempts burned

Handler errors never escape a record; one bad record cannot stop the batch or
the scheduler loop.
"""
import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.core.errors import ChannelConfigurationError, HandlerNotFoundError, SettingDecryptionError
from app.core.logging import logger
from app.models.base import utcnow
from app.models.notification import NotificationChannel, NotificationStatus
from app.services.channels.base import DeliveryResult, NotificationRecord
from app.services.channels.registry import ChannelHandlerRegistry
from app.services.store import NotificationStore
from app.utils.backoff import backoff

# Retrying cannot fix these until an operator changes configuration
PERMANENT_ERRORS = (HandlerNotFoundError, ChannelConfigurationError, SettingDecryptionError)

DISPATCH_JOB_ID = "notification_dispatch"
MAINTENANCE_JOB_ID = "notification_maintenance"


class DispatchOutcome(str, Enum):
    SENT = "sent"
    RETRIED = "retried"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    LOST_CLAIM = "lost_claim"


@dataclass
class DispatchStats:
    picked: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    lost_claims: int = 0
    errors: int = 0

    def record(self, outcome: DispatchOutcome) -> None:
        field = "lost_claims" if outcome is DispatchOutcome.LOST_CLAIM else outcome.value
        setattr(self, field, getattr(self, field) + 1)

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class NotificationDispatcher:
    def __init__(
        self,
        store: NotificationStore,
        registry: ChannelHandlerRegistry,
        rate_limiter=None,
        *,
        batch_size: int = settings.PROCESSOR_BATCH_SIZE,
        concurrency: int = settings.PROCESSOR_CONCURRENCY,
        interval_seconds: int = settings.PROCESSOR_INTERVAL_SECONDS,
        start_delay_seconds: int = settings.PROCESSOR_START_DELAY_SECONDS,
        send_timeout: float = settings.SEND_TIMEOUT_SECONDS,
        stale_claim_minutes: int = settings.STALE_CLAIM_MINUTES,
        retention_days: int = settings.RETENTION_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.interval_seconds = interval_seconds
        self.start_delay_seconds = start_delay_seconds
        self.send_timeout = send_timeout
        self.stale_claim_minutes = stale_claim_minutes
        self.retention_days = retention_days
        self.clock = clock

        self.scheduler: Optional[AsyncIOScheduler] = None
        self.last_run: Optional[DispatchStats] = None
        self.last_run_at: Optional[datetime] = None
        self._run_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    async def run_once(self, batch_size: Optional[int] = None) -> DispatchStats:
        # Serializes manual runs with scheduled ticks inside this process
        async with self._run_lock:
            now = self.clock()
            records = await self.store.fetch_due(now, batch_size or self.batch_size)
            stats = DispatchStats(picked=len(records))
            if not records:
                logger.debug("No due notifications")
            else:
                logger.info("Processing due notifications", count=len(records))

            semaphore = asyncio.Semaphore(self.concurrency)

            async def worker(record: NotificationRecord) -> DispatchOutcome:
                async with semaphore:
                    return await self.process_record(record)

            outcomes = await asyncio.gather(*(worker(record) for record in records), return_exceptions=True)
            for record, outcome in zip(records, outcomes):
                if isinstance(outcome, Exception):
                    # Store write failed; the claim is released later by the stale-claim sweep
                    stats.errors += 1
                    logger.error(
                        "Failed to commit notification outcome",
                        notification_id=str(record.id),
                        error=str(outcome),
                    )
                else:
                    stats.record(outcome)

            if self.rate_limiter is not None:
                await self.rate_limiter.sweep()

            self.last_run = stats
            self.last_run_at = now
            if records:
                logger.info("Dispatch cycle finished", **stats.as_dict())
            return stats

    async def process_record(self, record: NotificationRecord) -> DispatchOutcome:
        if not await self.store.claim(record.id, expected_attempts=record.attempts):
            logger.debug("Notification already claimed", notification_id=str(record.id))
            return DispatchOutcome.LOST_CLAIM

        log = logger.bind(
            notification_id=str(record.id),
            channel=record.channel.value,
            event_type=record.event_type,
        )
        enabled = True
        try:
            handler = self.registry.get(record.channel)
            enabled = record.channel == NotificationChannel.IN_APP or await handler.is_enabled()
            if enabled:
                timeout = max(self.send_timeout, handler.send_timeout or 0)
                result = await asyncio.wait_for(handler.send(record), timeout=timeout)
        except PERMANENT_ERRORS as e:
            return await self._fail_permanently(record, str(e), log)
        except asyncio.TimeoutError:
            result = DeliveryResult.failed(f"Send timed out after {timeout}s")
        except Exception as e:
            log.error("Handler raised unexpectedly", error=str(e), exc_info=True)
            result = DeliveryResult.failed(f"{type(e).__name__}: {e}")

        if not enabled:
            return await self._skip(record, log)

        if result.rate_limited:
            await self.store.update_status(record.id, status=NotificationStatus.PENDING)
            log.warning("Notification deferred by rate limit", reason=result.error)
            return DispatchOutcome.DEFERRED

        if result.success:
            return await self._mark_sent(record, result, log)
        return await self._record_failure(record, result, log)

    async def _skip(self, record: NotificationRecord, log) -> DispatchOutcome:
        message = f"Channel {record.channel.value} is not enabled"
        await self.store.update_status(record.id, status=NotificationStatus.SKIPPED, error_message=message)
        log.warning("Notification skipped", reason=message)
        return DispatchOutcome.SKIPPED

    async def _mark_sent(self, record: NotificationRecord, result: DeliveryResult, log) -> DispatchOutcome:
        now = self.clock()
        await self.store.update_status(
            record.id, status=NotificationStatus.SENT, sent_at=now, error_message=None
        )
        await self.store.append_history(
            queue_id=record.id,
            user_id=record.user_id,
            channel=record.channel,
            event_type=record.event_type,
            recipient=record.recipient,
            subject=record.subject,
            status=NotificationStatus.SENT,
            sent_at=now,
            response_data=_json_safe(result.response),
        )
        log.info("Notification sent", attempts=record.attempts)
        return DispatchOutcome.SENT

    async def _record_failure(self, record: NotificationRecord, result: DeliveryResult, log) -> DispatchOutcome:
        attempts = record.attempts + 1
        error = result.error or "Unknown error"
        now = self.clock()

        if attempts >= record.max_attempts:
            await self.store.update_status(
                record.id,
                status=NotificationStatus.FAILED,
                attempts=attempts,
                failed_at=now,
                error_message=error,
            )
            await self._append_failure_history(record, error, result.response)
            log.critical("Notification permanently failed", attempts=attempts, error=error)
            return DispatchOutcome.FAILED

        retry_at = now + backoff(attempts)
        await self.store.update_status(
            record.id,
            status=NotificationStatus.PENDING,
            attempts=attempts,
            scheduled_at=retry_at,
            error_message=error,
        )
        log.warning(
            "Notification send failed, retry scheduled",
            attempts=attempts,
            max_attempts=record.max_attempts,
            retry_at=retry_at.isoformat(),
            error=error,
        )
        return DispatchOutcome.RETRIED

    async def _fail_permanently(self, record: NotificationRecord, error: str, log) -> DispatchOutcome:
        await self.store.update_status(
            record.id,
            status=NotificationStatus.FAILED,
            attempts=record.max_attempts,
            failed_at=self.clock(),
            error_message=error,
        )
        await self._append_failure_history(record, error, {})
        log.critical("Notification failed without retry", error=error)
        return DispatchOutcome.FAILED

    async def _append_failure_history(self, record: NotificationRecord, error: str, response: Dict[str, Any]) -> None:
        await self.store.append_history(
            queue_id=record.id,
            user_id=record.user_id,
            channel=record.channel,
            event_type=record.event_type,
            recipient=record.recipient,
            subject=record.subject,
            status=NotificationStatus.FAILED,
            response_data=_json_safe({"error": error, **(response or {})}),
        )

    async def _tick(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error("Dispatch cycle failed", error=str(e), exc_info=True)

    async def maintenance(self) -> Dict[str, int]:
        now = self.clock()
        released = await self.store.release_stale_claims(now - timedelta(minutes=self.stale_claim_minutes))
        purged = await self.store.purge_finished(now - timedelta(days=self.retention_days))
        return {"released": released, "purged": purged}

    async def _maintenance_tick(self) -> None:
        try:
            await self.maintenance()
        except Exception as e:
            logger.error("Queue maintenance failed", error=str(e), exc_info=True)

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Notification dispatcher already running")
            return

        await self.store.release_stale_claims(self.clock() - timedelta(minutes=self.stale_claim_minutes))

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=self.interval_seconds),
            id=DISPATCH_JOB_ID,
            name="Dispatch due notifications",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_seconds,
            next_run_time=datetime.now() + timedelta(seconds=self.start_delay_seconds),
        )
        self.scheduler.add_job(
            self._maintenance_tick,
            IntervalTrigger(hours=1),
            id=MAINTENANCE_JOB_ID,
            name="Release stale claims and purge finished notifications",
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(
            "Notification dispatcher started",
            interval_seconds=self.interval_seconds,
            batch_size=self.batch_size,
            concurrency=self.concurrency,
        )

    async def stop(self, wait: bool = True) -> None:
        if not self.is_running:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        if wait:
            # Let an in-flight cycle finish committing its outcomes
            async with self._run_lock:
                pass
        logger.info("Notification dispatcher stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "interval": self.interval_seconds,
            "last_run_at": self.last_run_at,
            "last_run": self.last_run.as_dict() if self.last_run else None,
        }


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
