# ============================================================================
#  File: log_setup.py
#  Purpose: loguru sink configuration for the engine and server
# ============================================================================
import sys

from loguru import logger

from sflflow.config import LOG_CONFIG
from sflflow.config_manager import EngineSettings


def configure_logging(settings: EngineSettings) -> None:
    """Installs the stderr sink and, if configured, the rotating file sink."""
    log_format = LOG_CONFIG["formatters"]["default"]["format"]
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper(), format=log_format)

    if settings.log_file:
        file_handler = LOG_CONFIG["handlers"]["file"]
        logger.add(
            settings.log_file,
            level=file_handler["level"],
            rotation=file_handler["rotation"],
            retention=file_handler["retention"],
            format=log_format,
            enqueue=True,
        )
    logger.debug(f"Logging configured at level {settings.log_level.upper()}")

#
#
## End of Script
