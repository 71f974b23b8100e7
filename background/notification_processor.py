# flowreg/background/notification_processor.py
"""
Notification processor service.
Delivers pending flow notifications to users via Telegram.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from aiogram import Bot
from sqlalchemy import and_

from config import Config
from core.db import get_db_session_ctx
from flow_system.config.states import DeliveryStatus
from flow_system.utils.time_machine import timeMachine
from models import FlowNotification, User

logger = logging.getLogger(__name__)


class NotificationProcessor:
    """
    Service for delivering flow notifications.

    Features:
    - Picks up outbox rows written by the flow engine
    - Retry logic for failed deliveries (up to NOTIFICATION_MAX_ATTEMPTS)
    - Users without Telegram account are marked as error immediately
    """

    def __init__(self, polling_interval: int = 10, bot: Optional[Bot] = None):
        """
        Initialize notification processor.

        Args:
            polling_interval: Interval in seconds to check for pending notifications (default: 10)
            bot: Existing bot instance to reuse (created from API_TOKEN otherwise)
        """
        self.polling_interval = polling_interval
        self._running = False
        self._bot = bot
        self._ownsBot = bot is None

    @asynccontextmanager
    async def get_bot(self):
        """
        Context manager for safe bot usage.
        Creates bot instance if needed, reuses existing one.
        """
        if self._bot is None:
            api_token = Config.get(Config.API_TOKEN)
            self._bot = Bot(token=api_token)
            self._ownsBot = True
        try:
            yield self._bot
        finally:
            # Close only when service is stopping
            if not self._running and self._ownsBot and self._bot:
                await self._bot.session.close()
                self._bot = None

    async def send_notification(self, session, notification: FlowNotification) -> bool:
        """
        Send a single notification to its user.

        Args:
            session: Session the notification was loaded in
            notification: FlowNotification to deliver

        Returns:
            True if sent successfully, False otherwise
        """
        user = session.query(User).filter_by(userID=notification.userID).first()

        if not user or not user.telegramID:
            logger.warning(f"User {notification.userID} not found or has no telegram ID")
            notification.status = DeliveryStatus.ERROR.value
            notification.errorMessage = "User not found or no telegram ID"
            return False

        try:
            async with self.get_bot() as bot:
                await bot.send_message(
                    chat_id=user.telegramID,
                    text=notification.text,
                    disable_web_page_preview=True
                )
        except Exception as e:
            logger.error(
                f"Error sending notification {notification.notificationID} "
                f"to user {user.userID}: {e}",
                exc_info=True
            )
            notification.errorMessage = str(e)[:500]
            return False

        logger.info(
            f"Notification {notification.notificationID} ({notification.kind}) "
            f"sent to user {user.userID}"
        )
        return True

    async def process_pending_deliveries(self, limit: int = 50) -> int:
        """
        Process pending notifications.
        Sends notifications and updates delivery status.

        Returns:
            Number of notifications sent
        """
        max_attempts = Config.get(Config.NOTIFICATION_MAX_ATTEMPTS)
        sent = 0

        with get_db_session_ctx() as session:
            pending = (
                session.query(FlowNotification)
                .filter(and_(
                    FlowNotification.status == DeliveryStatus.PENDING.value,
                    FlowNotification.attempts < max_attempts
                ))
                .order_by(FlowNotification.createdAt, FlowNotification.notificationID)
                .limit(limit)
                .all()
            )

            for notification in pending:
                success = await self.send_notification(session, notification)

                notification.attempts += 1
                if success:
                    notification.status = DeliveryStatus.SENT.value
                    notification.sentAt = timeMachine.now
                    sent += 1
                elif notification.attempts >= max_attempts:
                    notification.status = DeliveryStatus.ERROR.value

        return sent

    async def run(self) -> None:
        """
        Main processing loop.
        Runs continuously sending pending notifications.
        """
        logger.info("Starting notification processor")
        self._running = True

        try:
            while self._running:
                try:
                    await self.process_pending_deliveries()
                except Exception as e:
                    logger.error(f"Error in notification processor: {e}", exc_info=True)

                await asyncio.sleep(self.polling_interval)
        finally:
            self._running = False
            if self._bot and self._ownsBot:
                await self._bot.session.close()
                self._bot = None
            logger.info("Notification processor stopped")

    async def stop(self):
        """Stop the processor gracefully."""
        self._running = False
        await asyncio.sleep(0)
