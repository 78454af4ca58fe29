# structlog on top of stdlib handlers: console, autotrader.log and one file per channel
import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from core.config.settings import Settings
from .channels import (
    LogChannel,
    create_log_directory_structure,
    get_channel_config,
    get_channel_for_component,
)

_logger_manager: Optional['EnhancedLoggerManager'] = None

FOREIGN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


def parse_size(size: str) -> int:
    """'100MB' -> bytes. Accepts K, M and G with an optional trailing B."""
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([KMG]?)B?\s*", size.upper())
    if match is None:
        raise ValueError(f"Unrecognised size: {size!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[unit])


class ChannelFilter(logging.Filter):
    """Pass a record only when its event belongs to ``expected_channel``.

    structlog records carry the event dict in ``record.msg``. Records from
    other libraries have no channel and pass only when the logger name starts
    with one of ``allowed_logger_prefixes``.
    """

    def __init__(self, expected_channel: str, allowed_logger_prefixes: tuple = ()):
        super().__init__()
        self.expected_channel = expected_channel
        self.allowed_logger_prefixes = tuple(allowed_logger_prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        channel = record.msg.get("channel") if isinstance(record.msg, dict) else None
        if channel is None:
            return record.name.startswith(self.allowed_logger_prefixes)
        return str(channel) == self.expected_channel


class EnhancedLoggerManager:
    """Installs handlers on the root logger and configures structlog once."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self.configured_loggers: Dict[str, structlog.BoundLogger] = {}

        log_settings = settings.logging
        root = logging.getLogger()
        root.setLevel(log_settings.level.upper())

        if log_settings.console_enabled:
            self._install_console(root)
        if log_settings.file_enabled:
            create_log_directory_structure(settings.logs_dir)
            self._install_main_file(root)
            if log_settings.multi_channel_enabled:
                self._install_channels(root)

        structlog.configure(
            processors=build_processors(settings) + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def _formatter(self, json_output: bool, console: bool = False) -> logging.Formatter:
        if json_output:
            renderer = structlog.processors.JSONRenderer()
        elif console:
            renderer = structlog.dev.ConsoleRenderer()
        else:
            renderer = structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"])
        return structlog.stdlib.ProcessorFormatter(
            processor=renderer,
            foreign_pre_chain=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
            ],
        )

    def _install_console(self, root: logging.Logger) -> None:
        formatter = self._formatter(self.settings.logging.console_json_format, console=True)
        # uvicorn may already own a stdout handler; reuse it rather than print twice
        handler = next((h for h in root.handlers
                        if isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stdout),
                       None)
        if handler is None:
            handler = logging.StreamHandler(sys.stdout)
            root.addHandler(handler)
        handler.setLevel(self.settings.logging.level.upper())
        handler.setFormatter(formatter)

    def _rotating_handler(self, path: Path, max_size: str, backups: int, level: str) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            filename=path, maxBytes=parse_size(max_size), backupCount=backups, encoding="utf-8"
        )
        handler.setLevel(level.upper())
        handler.setFormatter(self._formatter(self.settings.logging.json_format))
        return handler

    def _install_main_file(self, root: logging.Logger) -> None:
        path = (Path(self.settings.logs_dir) / "autotrader.log").resolve()
        if any(Path(getattr(h, "baseFilename", "")) == path for h in root.handlers):
            return
        log_settings = self.settings.logging
        root.addHandler(self._rotating_handler(path, log_settings.file_max_size,
                                               log_settings.file_backup_count, log_settings.level))

    def _install_channels(self, root: logging.Logger) -> None:
        for channel in LogChannel:
            config = get_channel_config(channel)
            handler = self._rotating_handler(config.get_file_path(self.settings.logs_dir),
                                             config.max_bytes, config.backup_count, config.level)
            # error.log takes ERROR+ from everywhere, so it is left unfiltered
            if channel != LogChannel.ERROR:
                prefixes = ("uvicorn", "fastapi", "starlette") if channel == LogChannel.API else ()
                handler.addFilter(ChannelFilter(channel.value, prefixes))
            self.channel_handlers[channel] = handler
            root.addHandler(handler)

        api_handler = self.channel_handlers[LogChannel.API]
        for name in FOREIGN_LOGGERS:
            foreign = logging.getLogger(name)
            if api_handler not in foreign.handlers:
                foreign.addHandler(api_handler)

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.BoundLogger:
        key = f"{name}:{component or ''}"
        if key not in self.configured_loggers:
            logger = structlog.get_logger(name)
            if component:
                logger = logger.bind(component=component, channel=get_channel_for_component(component).value)
            self.configured_loggers[key] = logger
        return self.configured_loggers[key]

    def get_channel_logger(self, name: str, channel: LogChannel) -> structlog.BoundLogger:
        return structlog.get_logger(name).bind(channel=channel.value)


def build_processors(settings: Optional[Settings] = None) -> list:
    """Shared structlog processor chain (without the final renderer)."""

    def add_correlation_id(logger, name, event_dict):
        from core.logging.correlation import CorrelationIdManager
        correlation_id = CorrelationIdManager.get_correlation_id()
        if correlation_id:
            event_dict.setdefault('correlation_id', correlation_id)
            context = CorrelationIdManager.get_correlation_context()
            if context.get("request_id"):
                event_dict.setdefault('request_id', context["request_id"])
        return event_dict

    def add_standard_context(logger, name, event_dict):
        if settings is not None:
            event_dict.setdefault('env', settings.environment.value)
            event_dict.setdefault('service', settings.app_name)
            event_dict.setdefault('version', settings.version)
        return event_dict

    keys_to_redact = {
        k.lower() for k in (settings.logging.redact_keys if settings is not None else [
            'authorization', 'access_token', 'refresh_token', 'api_key', 'api_secret',
            'password', 'secret', 'token', 'totp', 'jkey'
        ])
    }

    def redact_sensitive(logger, name, event_dict):
        """Redact sensitive fields from event dict recursively."""
        def _redact(obj):
            if isinstance(obj, dict):
                return {
                    k: ('[REDACTED]' if isinstance(k, str) and k.lower() in keys_to_redact else _redact(v))
                    for k, v in obj.items()
                }
            if isinstance(obj, list):
                return [_redact(v) for v in obj]
            return obj

        return _redact(event_dict)

    def normalize_error(logger, name, event_dict):
        """Add normalized error fields if exception info is present."""
        exc_text = event_dict.get("exception")
        if exc_text and isinstance(exc_text, str):
            last_line = exc_text.strip().splitlines()[-1]
            if ":" in last_line:
                etype, emsg = last_line.split(":", 1)
                event_dict.setdefault("error_type", etype.strip())
                event_dict.setdefault("error_message", emsg.strip())
        if "error" in event_dict and not event_dict.get("error_message"):
            event_dict["error_message"] = str(event_dict["error"])
        return event_dict

    return [
        add_correlation_id,
        add_standard_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        normalize_error,
        structlog.processors.UnicodeDecoder(),
        redact_sensitive,
    ]


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure logging once per process; later calls are ignored."""
    global _logger_manager
    if _logger_manager is None:
        _logger_manager = EnhancedLoggerManager(settings)


def reset_logging() -> None:
    """Forget the configured manager so the next configure call applies (tests)."""
    global _logger_manager
    _logger_manager = None


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    # Before configuration these are lazy proxies that pick up the config on first use
    if _logger_manager is not None:
        return _logger_manager.get_logger(name, component)
    logger = structlog.get_logger(name)
    if component:
        logger = logger.bind(component=component, channel=get_channel_for_component(component).value)
    return logger


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    if _logger_manager is not None:
        return _logger_manager.get_channel_logger(name, channel)
    return structlog.get_logger(name).bind(channel=channel.value)


def get_logging_statistics() -> Dict[str, Any]:
    if _logger_manager is None:
        return {"configured": False}
    return {
        "configured": True,
        "total_loggers": len(_logger_manager.configured_loggers),
        "channels": sorted(ch.value for ch in _logger_manager.channel_handlers),
        "logs_directory": _logger_manager.settings.logs_dir,
    }
