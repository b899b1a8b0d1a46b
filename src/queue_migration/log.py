import logging

logger = logging.getLogger("queue_migration")
