"""
SQLAlchemy Event Listeners Package.

Registers all event listeners for the application.
Import this module once during app startup to activate listeners.

Listeners:
    - tree_listeners: Level invariant check on FlowParticipant inserts
"""
import logging

logger = logging.getLogger(__name__)

_listeners_registered = False


def register_all_listeners():
    """
    Register all event listeners.

    Safe to call multiple times - listeners are registered only once.

    Call this from application startup, e.g.:
        from models.listeners import register_all_listeners
        register_all_listeners()
    """
    global _listeners_registered

    if _listeners_registered:
        logger.debug("Listeners already registered, skipping")
        return

    from models.listeners.tree_listeners import (
        register_tree_listeners,
        register_tree_protection
    )

    register_tree_listeners()
    logger.info("Tree invariant listeners registered (FlowParticipant)")

    register_tree_protection()
    logger.info("Tree protection listeners registered (level modification warnings)")

    _listeners_registered = True
    logger.info("All event listeners registered successfully")
