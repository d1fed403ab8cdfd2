"""
Colored console logging shared by the API, the CMV pipeline and background jobs.
"""

import logging
import os
import sys
from datetime import datetime
from typing import Optional


class HealthCheckFilter(logging.Filter):
    """Drop uvicorn access lines for the /health probe."""

    def filter(self, record):
        request_line = getattr(record, "request_line", "")
        if isinstance(request_line, str) and "/health" in request_line:
            return False

        if record.args and isinstance(record.args, tuple) and len(record.args) >= 3:
            method_path = record.args[1]
            if isinstance(method_path, str) and "GET /health" in method_path:
                return False

        if isinstance(record.msg, str) and "GET /health" in record.msg:
            return False

        return True


class ColorFormatter(logging.Formatter):
    """Formatter with ANSI colors and per-component emojis for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
        "BOLD": "\033[1m",
        "DIM": "\033[2m",
    }

    EMOJIS = {
        "DEBUG": "🔍",
        "INFO": "✅",
        "WARNING": "⚠️",
        "ERROR": "❌",
        "CRITICAL": "🚨",
    }

    # matched against the logger name, first hit wins
    COMPONENT_EMOJIS = {
        "cmv": "💵",
        "search": "🔎",
        "identity": "🪪",
        "scheduler": "⏰",
        "assistant": "🤖",
        "api": "🌐",
        "httpx": "✈️ ",
        "supabase": "💾",
    }

    def format(self, record):
        level_color = self.COLORS.get(record.levelname, "")
        reset = self.COLORS["RESET"]
        bold = self.COLORS["BOLD"]
        dim = self.COLORS["DIM"]

        emoji = self.EMOJIS.get(record.levelname, "📝")

        component_emoji = ""
        for component, comp_emoji in self.COMPONENT_EMOJIS.items():
            if component in record.name.lower():
                component_emoji = comp_emoji
                break

        timestamp = datetime.now().strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        logger_name = record.name.split(".")[-1][:12]

        formatted_msg = (
            f"{dim}[{timestamp}]{reset} "
            f"{emoji} {level_color}{bold}{level}{reset} "
            f"{dim}│{reset} "
            f"{component_emoji} {bold}{logger_name:<12}{reset} "
            f"{dim}│{reset} "
            f"{record.getMessage()}"
        )

        if record.exc_info:
            formatted_msg += f"\n{self.formatException(record.exc_info)}"

        return formatted_msg


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Setup a colored logger.

    Args:
        name: Logger name (``cardledger.<component>``)
        level: Log level name; defaults to the ``LOG_LEVEL`` env var or INFO

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level_name, logging.INFO))
    handler.setFormatter(ColorFormatter())

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Alias for setup_logger, namespaced under ``cardledger``."""
    if not name.startswith("cardledger."):
        name = f"cardledger.{name}"
    return setup_logger(name, level)


def log_api_request(
    logger: logging.Logger, method: str, endpoint: str, params: Optional[dict] = None
):
    params_str = f" {params}" if params else ""
    logger.info(f"🌐 {method} {endpoint}{params_str}")


def log_cmv_compute(
    logger: logging.Logger,
    card_id: Optional[str],
    status: str,
    value: Optional[float],
    duration_ms: int,
    source: Optional[str] = None,
):
    """One line per CMV computation, card id redacted to its prefix."""
    short_id = f"{card_id[:8]}..." if card_id else "-"
    value_str = f"${value:,.2f}" if value is not None else "n/a"
    source_str = f" via {source}" if source else ""
    logger.info(
        f"💵 CMV {short_id} -> {status} {value_str}{source_str} ({duration_ms} ms)"
    )


def log_search_result(
    logger: logging.Logger, kind: str, query: str, kept: int, total: int
):
    logger.info(f"🔎 {kind} '{query}' kept {kept}/{total}")


def log_database_operation(
    logger: logging.Logger, operation: str, count: int, table: str
):
    logger.info(f"💾 {operation} {count} records to {table}")


api_logger = setup_logger("cardledger.api")
cmv_logger = setup_logger("cardledger.cmv")
search_logger = setup_logger("cardledger.search")
identity_logger = setup_logger("cardledger.identity")
scheduler_logger = setup_logger("cardledger.scheduler")
assistant_logger = setup_logger("cardledger.assistant")
httpx_logger = setup_logger("cardledger.httpx")
supabase_logger = setup_logger("cardledger.supabase")


def log_success(logger: logging.Logger, message: str):
    """Log a successful outcome with an explicit [OK] tag for plain-text scanning."""
    logger.info(f"[OK] {message}")


def log_failure(logger: logging.Logger, message: str):
    """Log a failed outcome with an explicit [FAIL] tag for plain-text scanning."""
    logger.error(f"[FAIL] {message}")
