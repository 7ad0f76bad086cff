"""
Logging setup with three outputs:
  - stderr: ANSI-colored console lines at the configured level
  - file (always): verbose debug log at logs/run_YYYYMMDD_HHMMSS.log
  - file (optional): single-line JSON (ndjson)

Records may carry market/item/asset context, attached at the call site with
    logger.warning("...", extra={"item": name, "market": market.value})
Every handler gets a ContextFilter, so the console and the verbose file show
it as a "[market item #asset]" tag and the JSON output as separate keys.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone


_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_MAGENTA = "\033[35m"
_CYAN = "\033[36m"
_WHITE = "\033[37m"

_LEVEL_STYLES = {
    "DEBUG": (_DIM, "DBG"),
    "INFO": (_CYAN, "INF"),
    "WARNING": (_YELLOW, "WRN"),
    "ERROR": (_RED, "ERR"),
    "CRITICAL": (_RED + _BOLD, "CRT"),
}

CONTEXT_FIELDS = ("market", "item", "asset_id")

_VERBOSE_FORMAT = (
    "%(asctime)s.%(msecs)03d %(levelname)-8s %(threadName)s "
    "%(module)s:%(lineno)d - %(context_tag)s%(message)s"
)

# Third-party loggers that repeat what client.transport already logs per request
_QUIET_LOGGERS = ("httpx", "httpcore")


def record_context(record: logging.LogRecord) -> dict[str, str]:
    """The context fields a record actually carries (empty values dropped)."""
    return {
        name: str(getattr(record, name))
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) not in (None, "")
    }


def context_tag(ctx: dict[str, str]) -> str:
    """{'market': 'steam', 'item': 'AWP', 'asset_id': '42'} -> 'steam AWP #42'."""
    parts = [ctx.get("market", ""), ctx.get("item", "")]
    if "asset_id" in ctx:
        parts.append(f"#{ctx['asset_id']}")
    return " ".join(p for p in parts if p)


class ContextFilter(logging.Filter):
    """Sets record.context_tag ('[...] ' or '') for format strings. Never drops a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        tag = context_tag(record_context(record))
        record.context_tag = f"[{tag}] " if tag else ""
        return True


class ConsoleFormatter(logging.Formatter):
    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color and _supports_color()

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        color, tag = _LEVEL_STYLES.get(record.levelname, (_WHITE, "???"))
        ctx = context_tag(record_context(record))
        error = record.exc_info[1] if record.exc_info else None

        if not self._use_color:
            line = f"{ts} {tag} " + (f"[{ctx}] " if ctx else "") + record.getMessage()
            return line + (f"\n     {error}" if error else "")

        line = f"{_DIM}{ts}{_RESET} {color}{tag}{_RESET} "
        if ctx:
            line += f"{_MAGENTA}[{ctx}]{_RESET} "
        line += record.getMessage()
        if error:
            line += f"\n{_RED}     {error}{_RESET}"
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)),
            "level": record.levelname,
            "module": record.module,
            "thread": record.threadName,
            "msg": record.getMessage(),
            **record_context(record),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, separators=(",", ":"))


def _default_log_dir() -> str:
    return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs")


def _handler(handler: logging.Handler, formatter: logging.Formatter, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    return handler


def setup_logging(
    level: str = "INFO",
    json_log_file: str | None = None,
    log_dir: str | None = None,
) -> str:
    """
    Replace the root logger's handlers and return the verbose log file path.

    The root logger is set to DEBUG; the console handler alone applies
    `level`. log_dir defaults to logs/ at the project root.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for old in root.handlers[:]:
        root.removeHandler(old)
        old.close()

    console_level = getattr(logging, level.upper(), logging.INFO)
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), ConsoleFormatter(), console_level))

    log_dir = log_dir or _default_log_dir()
    os.makedirs(log_dir, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    log_path = os.path.join(log_dir, f"run_{stamp}.log")
    verbose = logging.Formatter(fmt=_VERBOSE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    root.addHandler(_handler(logging.FileHandler(log_path, mode="a"), verbose, logging.DEBUG))

    if json_log_file:
        root.addHandler(_handler(logging.FileHandler(json_log_file, mode="a"), JSONFormatter(), logging.DEBUG))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_path


def _supports_color() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
