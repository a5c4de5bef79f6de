"""
Logging configuration for the scheduler extender
Uses loguru for better formatting and features
"""

import os
import sys
from loguru import logger
from pathlib import Path

VALID_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

# Level names accepted from LOG_LEVEL that loguru spells differently
LEVEL_ALIASES = {
    "WARN": "WARNING",
    "ALERT": "CRITICAL",
    "FATAL": "CRITICAL",
}


def resolve_level(level_str: str = None, default: str = "INFO") -> str:
    """
    Map a user supplied level name to a loguru level

    Empty or unknown names fall back to ``default`` with a warning.
    """
    level = (level_str or "").strip().upper()
    level = LEVEL_ALIASES.get(level, level)
    if level in VALID_LEVELS:
        return level
    logger.warning(f'LOG_LEVEL="{level_str}" is empty or invalid, falling back to "{default}"')
    return default


def get_logger(name: str = "SchedExtender", level: str = None, log_file: str = None):
    """
    Get a configured logger instance

    Args:
        name: Logger name (will appear in log messages)
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Defaults to $LOG_LEVEL, then INFO.
        log_file: Optional file path for logging to file

    Returns:
        Configured logger instance
    """
    if level is None:
        level = os.environ.get("LOG_LEVEL") or "INFO"
    level = resolve_level(level)

    # Remove default handler
    logger.remove()

    # Console handler with colors
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>",
        level=level,
        colorize=True
    )

    # File handler (if specified)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} | {message}",
            level=level,
            rotation="10 MB",  # Rotate when file reaches 10MB
            retention="7 days",  # Keep logs for 7 days
            compression="zip"  # Compress rotated logs
        )

    # Bind context (logger name)
    logger.configure(extra={"name": "SchedExtender"})
    return logger.bind(name=name)


def setup_logging(component_name: str, log_dir: str = "logs", level: str = None):
    """
    Setup logging for an extender component

    Args:
        component_name: Name of the component (e.g., "extender", "pipeline")
        log_dir: Directory for log files (None disables the file sink)
        level: Log level, $LOG_LEVEL wins when set

    Returns:
        Configured logger
    """
    env_level = os.environ.get("LOG_LEVEL")
    if env_level:
        level = env_level
    log_file = f"{log_dir}/{component_name}.log" if log_dir else None
    effective = resolve_level(level or "INFO")
    configured = get_logger(name=component_name, level=effective, log_file=log_file)
    configured.info(f"Log level was set to {effective}")
    return configured
