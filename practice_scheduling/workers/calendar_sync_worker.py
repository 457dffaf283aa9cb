"""
Background worker for reconciling doctors' remote calendars

Every run picks the doctors with an active calendar credential whose
next_sync is due and syncs them in parallel with bounded concurrency.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from practice_scheduling.config import CalendarSettings
from practice_scheduling.db.stores import CredentialStore
from practice_scheduling.models.scheduling import ExternalCalendarCredential, utcnow
from practice_scheduling.services.calendar_sync_service import CalendarSyncService

logger = logging.getLogger(__name__)

STARTUP_DELAY_SECONDS = 60


class CalendarSyncWorker:
    """
    Scheduled calendar reconciliation
    """

    def __init__(
        self,
        settings: CalendarSettings,
        sync_service: CalendarSyncService,
        credentials: CredentialStore,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            settings: Provides the interval and concurrency bound
            sync_service: Engine that reconciles one doctor
            credentials: Source of the doctors to sync
        """
        self.settings = settings
        self.sync_service = sync_service
        self.credentials = credentials
        self.scheduler = scheduler or AsyncIOScheduler()
        self.clock = clock or utcnow
        self.interval_minutes = settings.SYNC_INTERVAL_MINUTES
        self.is_running = False

        logger.info(f"Initialized CalendarSyncWorker with {self.interval_minutes} minute interval")

    def start(self):
        """Start the scheduled sync worker"""
        if not self.is_running:
            self.scheduler.add_job(
                self.sync_due_doctors,
                trigger=IntervalTrigger(minutes=self.interval_minutes),
                id='calendar_sync_worker',
                name='Calendar Sync Worker',
                misfire_grace_time=120,
                coalesce=True,
                max_instances=1,
            )

            # First run shortly after startup
            self.scheduler.add_job(
                self.sync_due_doctors,
                trigger='date',
                run_date=datetime.now() + timedelta(seconds=STARTUP_DELAY_SECONDS),
                id='calendar_sync_startup',
                name='Calendar Sync Worker (Startup)',
            )

            self.scheduler.start()
            self.is_running = True
            logger.info(f"Calendar sync worker started (runs every {self.interval_minutes} minutes)")

    def stop(self):
        """Stop the scheduled sync worker"""
        if self.is_running:
            self.scheduler.shutdown()
            self.is_running = False
            logger.info("Calendar sync worker stopped")

    def is_due(self, credential: ExternalCalendarCredential, now: datetime) -> bool:
        return credential.next_sync is None or credential.next_sync <= now

    async def sync_due_doctors(self) -> Dict[str, Any]:
        """
        Sync every doctor whose calendar is due

        Returns:
            Dictionary with sync statistics
        """
        logger.info("Starting calendar sync worker run")
        start_time = self.clock()
        stats = {
            "doctors_due": 0,
            "doctors_synced": 0,
            "doctors_failed": 0,
            "new_appointments": 0,
            "updated_appointments": 0,
            "event_errors": 0,
            "start_time": start_time.isoformat(),
        }

        try:
            credentials = await self.credentials.list_active()
        except Exception as e:
            logger.error(f"Error loading calendar credentials: {e}", exc_info=True)
            stats["error"] = str(e)
            return stats

        due = [c for c in credentials if self.is_due(c, start_time)]
        stats["doctors_due"] = len(due)
        if not due:
            logger.info("No calendars due for sync")
            return stats

        semaphore = asyncio.Semaphore(self.settings.SYNC_MAX_CONCURRENT_DOCTORS)
        results = await asyncio.gather(
            *(self._sync_doctor(c.doctor_id, semaphore) for c in due),
            return_exceptions=True,
        )

        for doctor_credential, result in zip(due, results):
            if isinstance(result, BaseException):
                stats["doctors_failed"] += 1
                logger.error(f"Error syncing doctor {doctor_credential.doctor_id}: {result}")
                continue
            stats["doctors_synced"] += 1
            stats["new_appointments"] += result.new_appointments
            stats["updated_appointments"] += result.updated_appointments
            stats["event_errors"] += len(result.errors)

        duration = (self.clock() - start_time).total_seconds()
        stats["duration_seconds"] = duration
        logger.info(
            f"Calendar sync worker completed: "
            f"{stats['doctors_synced']}/{stats['doctors_due']} doctors synced, "
            f"{stats['doctors_failed']} failed in {duration:.2f}s"
        )
        return stats

    async def _sync_doctor(self, doctor_id: str, semaphore: asyncio.Semaphore):
        async with semaphore:
            return await self.sync_service.sync_appointments(doctor_id)
