"""
Log channels. Each channel writes to its own rotating file under the logs
directory; components are routed to a channel by name.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict


class LogChannel(str, Enum):
    APPLICATION = "application"
    TRADING = "trading"          # Webhook ingestion, order status, positions
    BROKER = "broker"            # Broker wire calls
    DATABASE = "database"
    API = "api"
    AUDIT = "audit"              # Connection lifecycle and credential use
    PERFORMANCE = "performance"
    ERROR = "error"              # ERROR and above from every channel


@dataclass(frozen=True)
class ChannelConfig:
    filename: str
    level: str = "INFO"
    max_bytes: str = "50MB"
    backup_count: int = 5

    def get_file_path(self, logs_dir: str) -> Path:
        return Path(logs_dir) / self.filename


CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig("application.log", max_bytes="100MB", backup_count=10),
    # Order history is kept longest
    LogChannel.TRADING: ChannelConfig("trading.log", backup_count=20),
    LogChannel.BROKER: ChannelConfig("broker.log", max_bytes="100MB", backup_count=10),
    LogChannel.DATABASE: ChannelConfig("database.log", level="WARNING"),
    LogChannel.API: ChannelConfig("api.log", backup_count=10),
    LogChannel.AUDIT: ChannelConfig("audit.log", max_bytes="100MB", backup_count=50),
    LogChannel.PERFORMANCE: ChannelConfig("performance.log", backup_count=10),
    LogChannel.ERROR: ChannelConfig("error.log", level="ERROR", backup_count=20),
}

COMPONENT_CHANNELS: Dict[str, LogChannel] = {
    "ingestion": LogChannel.TRADING,
    "order_status": LogChannel.TRADING,
    "positions": LogChannel.TRADING,
    "brokers": LogChannel.BROKER,
    "auth": LogChannel.AUDIT,
    "audit": LogChannel.AUDIT,
    "database": LogChannel.DATABASE,
    "api": LogChannel.API,
    "performance": LogChannel.PERFORMANCE,
}


def get_channel_for_component(component: str) -> LogChannel:
    return COMPONENT_CHANNELS.get(component, LogChannel.APPLICATION)


def get_channel_config(channel: LogChannel) -> ChannelConfig:
    return CHANNEL_CONFIGS[channel]


def create_log_directory_structure(logs_dir: str) -> None:
    Path(logs_dir).mkdir(parents=True, exist_ok=True)
