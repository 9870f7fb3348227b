import sys

from loguru import logger

from config import Settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - {message}"
)
ACCESS_LOG_FORMAT = "{method} {path} {status} {elapsed_ms:.1f}ms"


def configure_logging(settings: Settings) -> None:
    """Send loguru output to stderr at the configured LOG_LEVEL."""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level, format=LOG_FORMAT, backtrace=False)
    logger.debug("Logging configured level={} database={}", settings.log_level, settings.database_name)


def log_request(method: str, path: str, status: int, elapsed_ms: float) -> None:
    """One access-log line per request; server errors at ERROR level."""
    level = "ERROR" if status >= 500 else "INFO"
    logger.log(level, ACCESS_LOG_FORMAT.format(method=method, path=path, status=status, elapsed_ms=elapsed_ms))
