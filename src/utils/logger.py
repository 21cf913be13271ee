"""
Unified logging for the reclaim engine - single handler set, wallet-tagged records.
"""

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOG_DIR = Path("logs")
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(wallet)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MAX_LOG_SIZE_MB = 10
BACKUP_COUNT = 5

_loggers: Dict[str, logging.Logger] = {}
_file_handler_added = False

_wallet_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "reclaim_wallet", default=None
)


def bind_wallet(wallet: Optional[str]) -> contextvars.Token:
    """Tag every record logged from the current task with a wallet."""
    return _wallet_ctx.set(wallet)


def reset_wallet(token: contextvars.Token) -> None:
    _wallet_ctx.reset(token)


def short_address(address: Optional[str]) -> str:
    if not address:
        return "-"
    address = str(address)
    if len(address) <= 10:
        return address
    return f"{address[:4]}..{address[-4:]}"


class WalletFilter(logging.Filter):
    """Filter that adds the active wallet to log records."""
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "wallet"):
            record.wallet = short_address(_wallet_ctx.get())
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured operation events."""
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        for key in ("event_type", "wallet_address", "operation", "status"):
            if hasattr(record, key):
                log_data[key] = getattr(record, key)
        if hasattr(record, "details"):
            log_data["details"] = record.details
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


_wallet_filter = WalletFilter()


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Get or create a logger."""
    if name in _loggers:
        return _loggers[name]
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.addFilter(_wallet_filter)
    _loggers[name] = logger
    return logger


def setup_file_logging(
    filename: str = "reclaim.log",
    level: int = logging.INFO,
    use_rotation: bool = True
) -> None:
    """Set up file logging - PREVENTS DUPLICATES."""
    global _file_handler_added

    if _file_handler_added:
        return

    LOG_DIR.mkdir(exist_ok=True)
    log_path = LOG_DIR / Path(filename).name

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if use_rotation:
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=MAX_LOG_SIZE_MB * 1024 * 1024,
            backupCount=BACKUP_COUNT,
            encoding="utf-8"
        )
    else:
        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")

    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_wallet_filter)
    root_logger.addHandler(file_handler)

    _file_handler_added = True


def setup_console_logging(level: int = logging.INFO) -> None:
    """Set up console logging."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_wallet_filter)
    root_logger.addHandler(console_handler)

    # aiohttp / httpx chatter drowns the engine tags
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def setup_json_logging(filename: str = "reclaim_events.jsonl") -> logging.Logger:
    """Set up JSON logging for operation events."""
    LOG_DIR.mkdir(exist_ok=True)
    log_path = LOG_DIR / filename

    json_logger = logging.getLogger("reclaim.events")
    json_logger.setLevel(logging.INFO)
    json_logger.propagate = False

    for handler in json_logger.handlers:
        if isinstance(handler, logging.FileHandler):
            return json_logger

    json_handler = logging.handlers.RotatingFileHandler(
        str(log_path),
        maxBytes=MAX_LOG_SIZE_MB * 1024 * 1024,
        backupCount=BACKUP_COUNT,
        encoding="utf-8"
    )
    json_handler.setFormatter(JSONFormatter())
    json_logger.addHandler(json_handler)
    return json_logger


def log_operation_event(
    operation: str,
    wallet_address: str,
    status: str,
    details: Optional[Dict[str, Any]] = None,
    json_logger: Optional[logging.Logger] = None,
) -> None:
    """Log a structured consolidation event (scan, close, convert)."""
    json_logger = json_logger or setup_json_logging()
    record = json_logger.makeRecord(
        name="reclaim.events",
        level=logging.INFO,
        fn="", lno=0,
        msg=f"{operation}: {status} for {short_address(wallet_address)}",
        args=(), exc_info=None
    )
    record.event_type = "OPERATION"
    record.operation = operation
    record.wallet_address = wallet_address
    record.status = status
    record.details = details or {}
    json_logger.handle(record)
