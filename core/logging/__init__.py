# Structured logging with multi-channel support
import sys
import logging
import structlog
from typing import Any, Dict, Optional

from core.config.settings import Settings
from .channels import (
    LogChannel,
    ROOT_LOGGER_NAME,
    get_channel_config,
    get_channel_for_component,
    get_channel_logger_name,
)
from .correlation import CorrelationIdManager, add_correlation_id

# Global flag to prevent duplicate logging configuration
_logging_configured = False


def _channel_levels(settings: Settings) -> Dict[LogChannel, str]:
    levels = {channel: get_channel_config(channel).level for channel in LogChannel}
    levels[LogChannel.DATABASE] = settings.logging.database_level
    levels[LogChannel.TRADING] = settings.logging.trading_level
    levels[LogChannel.FUNDING] = settings.logging.funding_level
    levels[LogChannel.AUDIT] = settings.logging.audit_level
    return levels


def configure_logging(settings: Settings) -> None:
    """Configure structlog on top of stdlib logging, one logger subtree per channel."""
    global _logging_configured

    # Prevent duplicate configuration
    if _logging_configured:
        return

    def add_standard_context(logger, name, event_dict):
        """Bind standard context fields once from settings."""
        event_dict.setdefault("env", settings.environment.value)
        event_dict.setdefault("service", settings.app_name)
        return event_dict

    processors = [
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        add_standard_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        # Defer final rendering to handlers via ProcessorFormatter
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(settings.logging.level.upper())
    root_logger.propagate = False

    if settings.logging.console_enabled:
        renderer = (
            structlog.processors.JSONRenderer()
            if settings.logging.json_format
            else structlog.dev.ConsoleRenderer()
        )
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=renderer,
                foreign_pre_chain=[
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.add_logger_name,
                    structlog.processors.TimeStamper(fmt="iso"),
                ],
            )
        )
        root_logger.addHandler(console_handler)

    for channel, level in _channel_levels(settings).items():
        logging.getLogger(f"{ROOT_LOGGER_NAME}.{channel.value}").setLevel(level.upper())

    _logging_configured = True


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    """Get a logger for a specific channel."""
    return structlog.get_logger(get_channel_logger_name(channel, name)).bind(channel=channel.value)


def get_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger, routed by component when one is given."""
    channel = get_channel_for_component(component) if component else LogChannel.APPLICATION
    logger = get_channel_logger(name, channel)
    if component:
        logger = logger.bind(component=component)
    return logger


def get_logger_safe(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance safely (alias for get_logger)."""
    return get_logger(name, component)


def get_trading_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.TRADING)


def get_funding_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.FUNDING)


def get_database_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.DATABASE)


def get_audit_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.AUDIT)


def get_performance_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.PERFORMANCE)


def get_error_logger_safe(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.ERROR)


def get_statistics() -> Dict[str, Any]:
    """Get logging system statistics."""
    return {
        "configured": _logging_configured,
        "channels": {
            channel.value: logging.getLevelName(
                logging.getLogger(f"{ROOT_LOGGER_NAME}.{channel.value}").getEffectiveLevel()
            )
            for channel in LogChannel
        },
    }


__all__ = [
    "configure_logging",
    "get_logger",
    "get_logger_safe",
    "get_channel_logger",
    "get_statistics",
    "get_trading_logger_safe",
    "get_funding_logger_safe",
    "get_database_logger_safe",
    "get_audit_logger_safe",
    "get_performance_logger_safe",
    "get_error_logger_safe",
    "CorrelationIdManager",
    "LogChannel",
]
