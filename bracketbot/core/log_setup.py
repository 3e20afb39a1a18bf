"""
Loguru sink configuration
"""
import sys

from loguru import logger

from bracketbot.config.settings import LoggingSettings


def setup_logging(settings: LoggingSettings):
    """Configure logging"""
    logger.remove()  # Remove default handler

    # Console logging
    logger.add(
        sys.stderr,
        level=settings.log_level,
        format=settings.log_format,
    )

    # File logging
    if settings.log_to_file:
        logger.add(
            settings.log_file_path,
            level=settings.log_level,
            format=settings.log_format,
            rotation=f"{settings.log_max_size_mb} MB",
            retention=settings.log_backup_count,
        )
