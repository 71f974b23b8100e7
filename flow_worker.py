# flowreg/flow_worker.py
"""
Flow Worker - main entry point.
Runs the background side of the referral flow engine: cascade queue,
due notification scans and Telegram delivery.
"""
import asyncio
import logging
import sys

from aiogram import Bot

from config import Config, ConfigurationError
from core.db import setup_database
from core.system_services import ServiceManager, get_bot_info, setup_signal_handlers
from models.listeners import register_all_listeners

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('flow_worker.log')
    ]
)

logger = logging.getLogger(__name__)


async def initialize_worker():
    """
    Initialize worker with all services and configurations.

    Returns:
        Tuple[Bot, ServiceManager]: Initialized instances
    """
    try:
        logger.info("=" * 60)
        logger.info("FLOW WORKER INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Validate critical configuration
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Validating critical configuration keys...")
        Config.validate_critical_keys()
        logger.info("✓ Configuration validated")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Setup database and model listeners
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()
        register_all_listeners()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Initialize bot
        # ═══════════════════════════════════════════════════════════════════════
        api_token = Config.get(Config.API_TOKEN)
        if not api_token:
            raise ConfigurationError("Bot API token not configured")

        bot = Bot(token=api_token)
        bot_info = await get_bot_info(bot)
        logger.info(f"🤖 Bot initialized: @{bot_info.get('username', 'unknown')}")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: Start background services
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🚀 Starting background services...")
        service_manager = ServiceManager(bot)
        await service_manager.start_services()
        logger.info("✓ Background services started")

        # Mark system as ready
        Config.set(Config.SYSTEM_READY, True)

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return bot, service_manager

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


async def main():
    """Main entry point."""
    bot = None
    service_manager = None
    try:
        bot, service_manager = await initialize_worker()

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        setup_signal_handlers(loop, service_manager)

        await service_manager.wait_for_shutdown()

    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if service_manager:
            await service_manager.stop_services()
        if bot:
            await bot.session.close()
        logger.info("👋 Worker shutdown complete")


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped")
