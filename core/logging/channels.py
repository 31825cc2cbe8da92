# Logging channel definitions
from dataclasses import dataclass
from enum import Enum
from typing import Dict


class LogChannel(str, Enum):
    """Named log channels; each maps to its own stdlib logger subtree."""
    APPLICATION = "application"
    TRADING = "trading"
    FUNDING = "funding"
    DATABASE = "database"
    AUDIT = "audit"
    PERFORMANCE = "performance"
    ERROR = "error"


@dataclass
class ChannelConfig:
    name: str
    level: str
    description: str


ROOT_LOGGER_NAME = "backoffice"


CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig(
        name="application",
        level="INFO",
        description="Startup, wiring and CLI"
    ),
    LogChannel.TRADING: ChannelConfig(
        name="trading",
        level="INFO",
        description="Order validation, execution and fills"
    ),
    LogChannel.FUNDING: ChannelConfig(
        name="funding",
        level="INFO",
        description="Deposits, withdrawals, transfers and bank accounts"
    ),
    LogChannel.DATABASE: ChannelConfig(
        name="database",
        level="WARNING",
        description="Sessions, transactions and retries"
    ),
    LogChannel.AUDIT: ChannelConfig(
        name="audit",
        level="INFO",
        description="One record per committed mutation"
    ),
    LogChannel.PERFORMANCE: ChannelConfig(
        name="performance",
        level="INFO",
        description="Slow queries and long transactions"
    ),
    LogChannel.ERROR: ChannelConfig(
        name="error",
        level="ERROR",
        description="Failures that need attention"
    ),
}


def get_channel_for_component(component: str) -> LogChannel:
    """Get the appropriate logging channel for a component."""
    component_mapping = {
        "order_validator": LogChannel.TRADING,
        "execution_engine": LogChannel.TRADING,
        "trading_engine": LogChannel.TRADING,
        "ledger_updater": LogChannel.TRADING,
        "price_oracle": LogChannel.TRADING,
        "security_registry": LogChannel.TRADING,
        "funding": LogChannel.FUNDING,
        "database": LogChannel.DATABASE,
        "balance_guard": LogChannel.DATABASE,
        "audit": LogChannel.AUDIT,
        "performance": LogChannel.PERFORMANCE,
    }

    return component_mapping.get(component, LogChannel.APPLICATION)


def get_channel_config(channel: LogChannel) -> ChannelConfig:
    """Get configuration for a specific channel."""
    return CHANNEL_CONFIGS[channel]


def get_channel_logger_name(channel: LogChannel, name: str) -> str:
    """Stdlib logger name for ``name`` inside ``channel``, e.g. ``backoffice.trading.order_validator``."""
    return f"{ROOT_LOGGER_NAME}.{channel.value}.{name}"
