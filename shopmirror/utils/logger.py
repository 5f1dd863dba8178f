"""
Logging configuration

One stdout sink plus two file sinks under settings.log_dir: a size-rotated
sync log and an error log. File sinks are enqueued so writes from background
sync tasks and scheduler jobs don't interleave.
"""
from loguru import logger
import os
import sys
from shopmirror.config import get_settings

settings = get_settings()


def setup_logger():
    """Configure logger with appropriate settings"""
    logger.remove()  # Remove default handler

    # Console logging
    logger.add(
        sys.stdout,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level
    )

    # Sync log: page heartbeats make this chatty, so rotate on size
    logger.add(
        os.path.join(settings.log_dir, "shopmirror.log"),
        rotation="20 MB",
        retention=10,
        compression="gz",
        enqueue=True,
        level=settings.log_level
    )

    # Errors: failed syncs, stuck-sync resets, refund fetch failures
    logger.add(
        os.path.join(settings.log_dir, "shopmirror_errors.log"),
        rotation="1 week",
        retention="60 days",
        enqueue=True,
        level="WARNING"
    )

    return logger


# Initialize logger
log = setup_logger()
