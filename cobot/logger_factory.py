import datetime as _dt
import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_CONFIGURED = False
_FULL_ENABLED = False

_PATTERN = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S%z"
_LEVELS = ("INFO", "DEBUG", "FULL")
_NOISY_LIBS = (
    "discord",
    "discord.http",
    "discord.gateway",
    "discord.client",
    "httpx",
    "httpcore",
    "uvicorn",
    "uvicorn.access",
)


class _TzFormatter(logging.Formatter):
    def __init__(self, *args, tz: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        # None/"system" -> local zone, "UTC" -> UTC, else IANA name with local fallback
        if tz == "UTC":
            self._tz = _dt.timezone.utc
        elif tz is None or tz == "system":
            self._tz = _dt.datetime.now().astimezone().tzinfo
        else:
            try:
                self._tz = ZoneInfo(tz)
            except ZoneInfoNotFoundError:
                self._tz = _dt.datetime.now().astimezone().tzinfo

    def formatTime(self, record, datefmt=None):
        dt = _dt.datetime.fromtimestamp(record.created, tz=self._tz)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()


def _truthy(value) -> bool:
    return str(value).lower() in ("1", "true", "yes", "on")


def _normalize_level(level: Optional[str]) -> str:
    lvl = (level or "INFO").upper()
    return lvl if lvl in _LEVELS else "INFO"


def _file_handler(filename: str, level: int, tz: Optional[str]) -> RotatingFileHandler:
    os.makedirs("logs", exist_ok=True)
    handler = RotatingFileHandler(
        filename=filename,
        mode="a",
        maxBytes=1_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_TzFormatter(_PATTERN, tz=tz, datefmt=_DATEFMT))
    return handler


def configure_logging(
    level: Optional[str] = None,
    tz: Optional[str] = None,
    lib_log_level: Optional[str] = None,
    console_to_file: bool | None = None,
    error_file: bool | None = None,
) -> None:
    """Install root handlers once per process.

    - level: "INFO" | "DEBUG" | "FULL" (FULL logs like DEBUG and enables payload previews)
    - console_to_file: mirror console output to logs/log.log (env LOG_CONSOLE wins)
    - error_file: write ERROR and above to logs/errors.log (env LOG_ERRORS as fallback)
    """
    global _CONFIGURED, _FULL_ENABLED
    if _CONFIGURED:
        return
    lvl = _normalize_level(level)
    py_level = logging.DEBUG if lvl in ("DEBUG", "FULL") else logging.INFO
    _FULL_ENABLED = lvl == "FULL"

    root = logging.getLogger()
    root.setLevel(py_level)
    for h in list(root.handlers):
        root.removeHandler(h)

    console = logging.StreamHandler()
    console.setLevel(py_level)
    console.setFormatter(_TzFormatter(_PATTERN, tz=tz, datefmt=_DATEFMT))
    root.addHandler(console)

    mirror = console_to_file
    env_console = os.getenv("LOG_CONSOLE")
    if env_console is not None:
        mirror = _truthy(env_console)
    if mirror:
        try:
            root.addHandler(_file_handler("logs/log.log", py_level, tz))
        except OSError as e:
            logging.getLogger("logger_factory").warning(f"log-file-unavailable path=logs/log.log err={e}")

    errors_enabled = _truthy(os.getenv("LOG_ERRORS", ""))
    if error_file is not None:
        errors_enabled = bool(error_file)
    if errors_enabled:
        try:
            root.addHandler(_file_handler("logs/errors.log", logging.ERROR, tz))
        except OSError as e:
            logging.getLogger("logger_factory").warning(f"log-file-unavailable path=logs/errors.log err={e}")

    lib_level_name = lib_log_level or os.getenv("LIB_LOG_LEVEL")
    lib_level = getattr(logging, lib_level_name.upper(), logging.WARNING) if lib_level_name else logging.WARNING
    for name in _NOISY_LIBS:
        logging.getLogger(name).setLevel(lib_level)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    if not _CONFIGURED:
        configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))
    return logging.getLogger(name)


def is_full_enabled() -> bool:
    return _FULL_ENABLED
