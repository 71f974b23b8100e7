# flowreg/config.py
"""
Configuration management for the referral flow engine.
Loads from .env, validates critical keys.
"""
import os
import logging
from typing import Any, Dict
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        interval = Config.get(Config.CASCADE_QUEUE_INTERVAL)

        # Set dynamic value
        Config.set(Config.ADMIN_OVERRIDE_GRACE_MINUTES, 45)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Telegram Bot (notification delivery)
    API_TOKEN = "API_TOKEN"
    ADMIN_USER_IDS = "ADMIN_USER_IDS"

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Cascade queue
    CASCADE_QUEUE_INTERVAL = "CASCADE_QUEUE_INTERVAL"
    CASCADE_BATCH_SIZE = "CASCADE_BATCH_SIZE"
    CASCADE_MAX_ATTEMPTS = "CASCADE_MAX_ATTEMPTS"
    ADMIN_OVERRIDE_GRACE_MINUTES = "ADMIN_OVERRIDE_GRACE_MINUTES"

    # Notifications
    NOTIFICATION_INTERVAL = "NOTIFICATION_INTERVAL"
    REGISTRATION_NOTIFY_INTERVAL = "REGISTRATION_NOTIFY_INTERVAL"
    NOTIFICATION_MAX_ATTEMPTS = "NOTIFICATION_MAX_ATTEMPTS"

    # System
    SYSTEM_READY = "SYSTEM_READY"

    # ═══════════════════════════════════════════════════════════════════════
    # CRITICAL KEYS (must be present)
    # ═══════════════════════════════════════════════════════════════════════

    CRITICAL_KEYS = [
        API_TOKEN,
    ]

    # ═══════════════════════════════════════════════════════════════════════
    # DEFAULTS
    # ═══════════════════════════════════════════════════════════════════════

    DEFAULTS: Dict[str, Any] = {
        DATABASE_URL: "sqlite:///flows.db",
        CASCADE_QUEUE_INTERVAL: 30,
        CASCADE_BATCH_SIZE: 10,
        CASCADE_MAX_ATTEMPTS: 3,
        ADMIN_OVERRIDE_GRACE_MINUTES: 30,
        NOTIFICATION_INTERVAL: 10,
        REGISTRATION_NOTIFY_INTERVAL: 60,
        NOTIFICATION_MAX_ATTEMPTS: 3,
    }

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = {}
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file.

        Raises:
            ConfigurationError: If parsing fails
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            # Telegram
            cls._config[cls.API_TOKEN] = os.getenv("API_TOKEN")

            admin_ids_str = os.getenv("ADMIN_USER_IDS", "")
            if admin_ids_str:
                cls._config[cls.ADMIN_USER_IDS] = [
                    int(x.strip()) for x in admin_ids_str.split(',') if x.strip()
                ]
            else:
                cls._config[cls.ADMIN_USER_IDS] = []

            # Database
            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                cls.DEFAULTS[cls.DATABASE_URL]
            )

            # Integer settings
            for key in (
                    cls.CASCADE_QUEUE_INTERVAL,
                    cls.CASCADE_BATCH_SIZE,
                    cls.CASCADE_MAX_ATTEMPTS,
                    cls.ADMIN_OVERRIDE_GRACE_MINUTES,
                    cls.NOTIFICATION_INTERVAL,
                    cls.REGISTRATION_NOTIFY_INTERVAL,
                    cls.NOTIFICATION_MAX_ATTEMPTS,
            ):
                cls._config[key] = int(os.getenv(key, str(cls.DEFAULTS[key])))

            # System
            cls._config[cls.SYSTEM_READY] = False

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except Exception as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    def validate_critical_keys(cls) -> None:
        """
        Validate that all critical configuration keys are present.

        Raises:
            ConfigurationError: If any critical key is missing
        """
        missing = []
        for key in cls.CRITICAL_KEYS:
            if not cls.get(key):
                missing.append(key)

        if missing:
            error_msg = f"Missing critical configuration keys: {', '.join(missing)}"
            logger.critical(error_msg)
            raise ConfigurationError(error_msg)

        logger.info("All critical configuration keys validated ✓")

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Falls back to the built-in default for known keys
        when the environment was not loaded.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in cls._config:
            return cls._config[key]
        if default is not None:
            return default
        return cls.DEFAULTS.get(key)

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value (for dynamic updates).

        Args:
            key: Configuration key
            value: New value
            source: Source of the update (for logging)
        """
        cls._config[key] = value
        logger.debug(f"Config updated: {key} = {value} (source: {source})")

    @classmethod
    def is_admin(cls, telegram_id: int) -> bool:
        """
        Check if a Telegram account is listed as admin.

        Args:
            telegram_id: Telegram user ID

        Returns:
            True if user is admin
        """
        admin_ids = cls.get(cls.ADMIN_USER_IDS, [])
        return telegram_id in admin_ids
