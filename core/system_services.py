# flowreg/core/system_services.py
"""
System services management for the flow worker.
Handles service lifecycle, graceful shutdown, and bot lookup.
"""
import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from config import Config

logger = logging.getLogger(__name__)


class ServiceManager:
    """
    Manager for background services and tasks.
    Handles service lifecycle and graceful shutdown.
    """

    def __init__(self, bot: Bot):
        """
        Initialize service manager.

        Args:
            bot: Bot instance used for notification delivery
        """
        self.bot = bot
        self.services: List[asyncio.Task] = []

        # Service instances for graceful shutdown
        self.notification_processor: Optional['NotificationProcessor'] = None
        self.flow_scheduler: Optional['FlowScheduler'] = None

        self._shutdown_event = asyncio.Event()

    async def start_services(self) -> None:
        """
        Start all background services.

        Services to start:
        - Notification processor (pending flow notifications)
        - Flow scheduler (cascade queue, due notifications)
        """
        logger.info("=" * 60)
        logger.info("STARTING BACKGROUND SERVICES")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════
        # SERVICE 1: Notification Processor
        # ═══════════════════════════════════════════════════════════════
        from background.notification_processor import NotificationProcessor

        interval = Config.get(Config.NOTIFICATION_INTERVAL)
        self.notification_processor = NotificationProcessor(polling_interval=interval, bot=self.bot)
        task = asyncio.create_task(
            self.notification_processor.run(),
            name="notification_processor"
        )
        self.services.append(task)
        logger.info(f"✓ Notification processor started ({interval}s interval)")

        # ═══════════════════════════════════════════════════════════════
        # SERVICE 2: Flow Scheduler
        # ═══════════════════════════════════════════════════════════════
        from background.flow_scheduler import FlowScheduler

        self.flow_scheduler = FlowScheduler()

        # Start the scheduler (APScheduler will handle jobs)
        await self.flow_scheduler.start()

        logger.info("✓ Flow Scheduler started (APScheduler)")
        logger.info(f"  → Cascade Queue: every {Config.get(Config.CASCADE_QUEUE_INTERVAL)} seconds")
        logger.info(f"  → Due Notifications: every {Config.get(Config.REGISTRATION_NOTIFY_INTERVAL)} seconds")
        for job in self.flow_scheduler.getStatus()["jobs"]:
            logger.debug(f"  → {job['name']}: next run {job['next_run']}")

        logger.info("=" * 60)
        logger.info(f"✅ STARTED {len(self.services)} background services + Flow Scheduler")
        logger.info("=" * 60)

    async def stop_services(self) -> None:
        """Stop all background services gracefully."""
        logger.info("=" * 60)
        logger.info("STOPPING BACKGROUND SERVICES")
        logger.info("=" * 60)

        if self.notification_processor:
            logger.info("Stopping notification processor...")
            await self.notification_processor.stop()

        if self.flow_scheduler:
            logger.info("Stopping flow scheduler...")
            await self.flow_scheduler.stop()

        # ═══════════════════════════════════════════════════════════════
        # Cancel all asyncio tasks
        # ═══════════════════════════════════════════════════════════════
        logger.info(f"Cancelling {len(self.services)} background tasks...")

        for task in self.services:
            if not task.done():
                task.cancel()

        # Wait for all tasks to complete
        if self.services:
            await asyncio.gather(*self.services, return_exceptions=True)

        logger.info("=" * 60)
        logger.info("✅ ALL BACKGROUND SERVICES STOPPED")
        logger.info("=" * 60)

    def signal_shutdown(self) -> None:
        """Signal that shutdown has been requested."""
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()


async def get_bot_info(bot: Bot) -> Dict[str, Any]:
    """
    Get bot information from Telegram.

    Args:
        bot: Bot instance

    Returns:
        Dict with bot info (id, username, first_name)
    """
    try:
        me = await bot.get_me()
        return {
            "id": me.id,
            "username": me.username,
            "first_name": me.first_name,
        }
    except TelegramAPIError as e:
        logger.error(f"Failed to get bot info: {e}")
        return {}


# ═══════════════════════════════════════════════════════════════════════════
# GRACEFUL SHUTDOWN
# ═══════════════════════════════════════════════════════════════════════════

def setup_signal_handlers(loop: asyncio.AbstractEventLoop, service_manager: ServiceManager) -> None:
    """
    Setup signal handlers for graceful shutdown.

    Args:
        loop: Event loop
        service_manager: Manager whose shutdown event is set on SIGINT/SIGTERM
    """
    def _handle(sig: signal.Signals) -> None:
        logger.info(f"Received exit signal {sig.name}...")
        service_manager.signal_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle, sig)
        except NotImplementedError:
            # Signal handlers not available on Windows
            logger.warning(f"Signal handler for {sig} not available on this platform")


# ═══════════════════════════════════════════════════════════════════════════
# EXPORT
# ═══════════════════════════════════════════════════════════════════════════

__all__ = [
    'ServiceManager',
    'get_bot_info',
    'setup_signal_handlers',
]
