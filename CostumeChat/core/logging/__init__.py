"""
Logging setup for CostumeChat.

Modules log through ``get_logger(__name__)``. Handlers live on the root
logger and are installed by ``configure_logging`` or, from the
``COSTUMECHAT_ENV`` profile, by ``auto_configure``.

Usage:
    from CostumeChat.core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Connected as %s", user_id)

Configuration:
    from CostumeChat.core.logging import configure_logging, LogConfig

    configure_logging(LogConfig(level="DEBUG", file_output=False))
"""

import json
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

LOG_FILE = "costumechat.log"
ERROR_LOG_FILE = "costumechat_errors.log"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DETAILED_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[%(filename)s:%(lineno)d - %(funcName)s] - %(message)s"
)


@dataclass
class LogConfig:
    """
    Settings for the process-wide log handlers.

    Attributes:
        level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Where the rotating files are written
        console_output: Log to stdout
        file_output: Write ``costumechat.log`` and ``costumechat_errors.log``
        json_output: One JSON object per stdout line
        max_bytes: Rotation threshold per file
        backup_count: Rotated files kept per log
        format_string: Text format override
        date_format: ``strftime`` format for ``asctime``
        component_levels: Per-logger level overrides, e.g. for ``websockets``
    """
    level: str = "INFO"
    log_dir: str = "./logs"
    console_output: bool = True
    file_output: bool = True
    json_output: bool = False
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    format_string: Optional[str] = None
    date_format: str = "%Y-%m-%d %H:%M:%S"
    component_levels: Dict[str, str] = field(default_factory=dict)


class ColoredFormatter(logging.Formatter):
    """Text formatter with ANSI-coloured level names."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and sys.platform != "win32"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_colors else None
        if color is None:
            return super().format(record)
        plain = record.levelname
        record.levelname = f"{color}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


class JsonFormatter(logging.Formatter):
    """Renders a record as one JSON object; ``extra_data`` dicts are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra = getattr(record, "extra_data", None)
        if isinstance(extra, dict):
            entry.update(extra)
        return json.dumps(entry, default=str)


def _level(name: str) -> int:
    return getattr(logging, name.upper())


def _rotating_file(path: Path, config: LogConfig, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


class LoggingManager:
    """
    Installs handlers on the root logger and remembers them.

    ``configure`` first removes whatever this manager installed before, so
    reconfiguring never duplicates output.
    """

    def __init__(self):
        self.config: Optional[LogConfig] = None
        self._handlers: List[logging.Handler] = []

    def configure(self, config: LogConfig) -> None:
        self.shutdown()
        self.config = config
        level = _level(config.level)
        logging.getLogger().setLevel(level)

        if config.console_output:
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(level)
            if config.json_output:
                console.setFormatter(JsonFormatter())
            else:
                console.setFormatter(ColoredFormatter(config.format_string or DEFAULT_FORMAT, config.date_format))
            self._install(console)

        if config.file_output:
            log_dir = Path(config.log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            formatter = logging.Formatter(config.format_string or DETAILED_FORMAT, config.date_format)
            self._install(_rotating_file(log_dir / LOG_FILE, config, level, formatter))
            self._install(_rotating_file(log_dir / ERROR_LOG_FILE, config, logging.ERROR, formatter))

        for name, component_level in config.component_levels.items():
            logging.getLogger(name).setLevel(_level(component_level))

        logging.getLogger(__name__).info("Logging configured at %s", config.level)

    def _install(self, handler: logging.Handler) -> None:
        logging.getLogger().addHandler(handler)
        self._handlers.append(handler)

    def shutdown(self) -> None:
        """Flush, detach and close the handlers installed by this manager."""
        root = logging.getLogger()
        for handler in self._handlers:
            handler.flush()
            root.removeHandler(handler)
            handler.close()
        self._handlers = []


_manager = LoggingManager()


def get_logger(name: str) -> logging.Logger:
    """Logger for a module; pass ``__name__``."""
    return logging.getLogger(name)


def configure_logging(config: LogConfig) -> None:
    _manager.configure(config)


def get_logging_manager() -> LoggingManager:
    return _manager


def create_development_config() -> LogConfig:
    """Debug output with source locations, console and files."""
    return LogConfig(
        level="DEBUG",
        log_dir="./logs/dev",
        max_bytes=5 * 1024 * 1024,
        backup_count=3,
        format_string=DETAILED_FORMAT,
        component_levels={"websockets": "WARNING", "aiohttp": "WARNING"},
    )


def create_production_config() -> LogConfig:
    """JSON to stdout for collectors, plus rotating files."""
    return LogConfig(
        level="INFO",
        log_dir="./logs/prod",
        json_output=True,
        max_bytes=50 * 1024 * 1024,
        backup_count=10,
        component_levels={"websockets": "ERROR", "aiohttp": "ERROR"},
    )


def create_testing_config() -> LogConfig:
    return LogConfig(
        level="DEBUG",
        file_output=False,
        format_string="%(levelname)s - %(name)s - %(message)s",
        component_levels={"websockets": "ERROR"},
    )


PRESETS: Dict[str, Callable[[], LogConfig]] = {
    "development": create_development_config,
    "dev": create_development_config,
    "production": create_production_config,
    "prod": create_production_config,
    "testing": create_testing_config,
    "test": create_testing_config,
}


def auto_configure(env: Optional[str] = None) -> None:
    """
    Configure logging from a profile name.

    Args:
        env: A key of ``PRESETS``; ``COSTUMECHAT_ENV`` is used when omitted.
            Unknown names fall back to development.
    """
    env = (env or os.environ.get("COSTUMECHAT_ENV", "development")).lower()
    configure_logging(PRESETS.get(env, create_development_config)())
    get_logger(__name__).info("Logging profile: %s", env)


__all__ = [
    'LogConfig',
    'LoggingManager',
    'ColoredFormatter',
    'JsonFormatter',
    'PRESETS',
    'get_logger',
    'configure_logging',
    'get_logging_manager',
    'create_development_config',
    'create_production_config',
    'create_testing_config',
    'auto_configure',
]
