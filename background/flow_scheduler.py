# background/flow_scheduler.py
"""
Flow Scheduler - handles all time-based flow operations.
Uses APScheduler for professional task scheduling.
"""
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from core.db import get_db_session_ctx
from flow_system.services.cascade_service import CascadeQueue
from flow_system.services.flow_service import FlowService
from flow_system.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class FlowScheduler:
    """
    Background scheduler for flow operations.
    Uses APScheduler for reliable task scheduling.
    """

    def __init__(self):
        # Create APScheduler instance
        self.scheduler = AsyncIOScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job at a time
                'misfire_grace_time': 300  # 5 minutes grace period
            }
        )
        self.isRunning = False

        # Statistics
        self.stats = {
            "tasksExecuted": 0,
            "errors": 0,
            "lastError": None,
            "startedAt": None,
            "lastExecutedAt": None,
            "cascadeTasksProcessed": 0,
            "lastCascadeQueueCheck": None,
            "notificationsQueued": 0,
            "statusChanges": 0
        }

    async def start(self):
        """
        Start scheduler with all jobs.

        Jobs configured:
        - Cascade queue processing: every CASCADE_QUEUE_INTERVAL seconds
        - Due notifications and flow status: every REGISTRATION_NOTIFY_INTERVAL seconds
        """
        if self.isRunning:
            logger.warning("Flow Scheduler already running")
            return

        logger.info("=" * 60)
        logger.info("Starting Flow Scheduler with APScheduler")
        logger.info("=" * 60)

        self.isRunning = True
        self.stats["startedAt"] = datetime.now(timezone.utc)

        # ═══════════════════════════════════════════════════════════════
        # JOB 1: Cascade Queue Processing
        # ═══════════════════════════════════════════════════════════════
        cascade_interval = Config.get(Config.CASCADE_QUEUE_INTERVAL)
        self.scheduler.add_job(
            func=self._safe_cascade_queue_wrapper,
            trigger=IntervalTrigger(seconds=cascade_interval),
            id='cascade_queue',
            name='Cascade Queue Processing',
            replace_existing=True
        )
        logger.info(f"✓ Job registered: Cascade Queue (every {cascade_interval} seconds)")

        # ═══════════════════════════════════════════════════════════════
        # JOB 2: Due Notifications & Flow Status
        # ═══════════════════════════════════════════════════════════════
        notify_interval = Config.get(Config.REGISTRATION_NOTIFY_INTERVAL)
        self.scheduler.add_job(
            func=self._safe_due_notifications_wrapper,
            trigger=IntervalTrigger(seconds=notify_interval),
            id='due_notifications',
            name='Due Notifications Scan',
            replace_existing=True
        )
        logger.info(f"✓ Job registered: Due Notifications (every {notify_interval} seconds)")

        # Start the scheduler
        self.scheduler.start()

        logger.info("=" * 60)
        logger.info("✅ Flow Scheduler started successfully")
        logger.info(f"Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    async def stop(self):
        """Stop scheduler gracefully."""
        if not self.isRunning:
            return

        logger.info("Stopping Flow Scheduler...")
        self.isRunning = False

        # Shutdown scheduler
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

        logger.info("✓ Flow Scheduler stopped")

    # ═══════════════════════════════════════════════════════════════════
    # SAFE WRAPPERS (error handling for APScheduler jobs)
    # ═══════════════════════════════════════════════════════════════════

    async def _safe_cascade_queue_wrapper(self):
        """Safe wrapper for cascade queue processing."""
        try:
            await self.checkCascadeQueue()
        except Exception as e:
            logger.error(f"Error in cascade queue job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    async def _safe_due_notifications_wrapper(self):
        """Safe wrapper for due notifications scan."""
        try:
            await self.checkDueNotifications()
        except Exception as e:
            logger.error(f"Error in due notifications job: {e}", exc_info=True)
            self.stats["errors"] += 1
            self.stats["lastError"] = str(e)

    # ═══════════════════════════════════════════════════════════════════
    # JOBS
    # ═══════════════════════════════════════════════════════════════════

    async def checkCascadeQueue(self):
        """
        Check and process cascade task queue.
        Called by APScheduler every CASCADE_QUEUE_INTERVAL seconds.
        """
        now = datetime.now(timezone.utc)

        with get_db_session_ctx() as session:
            processed = CascadeQueue(session).processBatch()

            self.stats["lastCascadeQueueCheck"] = now
            if processed > 0:
                self.stats["cascadeTasksProcessed"] += processed
                logger.info(f"Processed {processed} cascade tasks from queue")

    async def checkDueNotifications(self):
        """Queue notifications for windows that opened and refresh flow statuses."""
        with get_db_session_ctx() as session:
            changed = FlowService(session).refreshActiveFlows()
            queued = NotificationService(session).sendDueNotifications()

        self.stats["statusChanges"] += changed
        self.stats["notificationsQueued"] += queued["registrationOpen"] + queued["acceptStageOpen"]
        self.stats["tasksExecuted"] += 1
        self.stats["lastExecutedAt"] = datetime.now(timezone.utc)

    def getStatus(self) -> dict:
        """Get scheduler status."""
        jobs_info = []
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                jobs_info.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if job.next_run_time else None
                })

        return {
            "isRunning": self.isRunning,
            "schedulerRunning": self.scheduler.running,
            "jobs": jobs_info,
            "stats": self.stats
        }
