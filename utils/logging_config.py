"""
Logging for the agent host
==========================

Configures stdlib logging and structlog so both render through the same
console formatter, and binds per-turn correlation ids so every record
emitted while a turn is running carries them.
"""

import logging
import sys
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, merge_contextvars, unbind_contextvars

TURN_CONTEXT_KEYS = ("turn_id", "conversation_id", "user_id", "channel_id")

NOISY_LOGGERS = ("aiohttp.access", "msal", "urllib3", "msrest")

_configured = False


# =============================================================================
# FORMATTERS
# =============================================================================

class SimpleHumanFormatter(logging.Formatter):
    """Compact single-line formatter for console output"""

    def __init__(self):
        super().__init__()
        self.colors = {
            'DEBUG': '\033[36m',     # Cyan
            'INFO': '\033[32m',      # Green
            'WARNING': '\033[33m',   # Yellow
            'ERROR': '\033[31m',     # Red
            'CRITICAL': '\033[41m',  # Red background
            'RESET': '\033[0m',
        }
        self.use_color = sys.stdout.isatty()

    def format(self, record):
        level = record.levelname
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        message, context = self._split_record(record)

        if self.use_color:
            level_text = f"{self.colors.get(level, '')}{level:<7}{self.colors['RESET']}"
        else:
            level_text = f"{level:<7}"

        line = f"{timestamp} {level_text} {record.name}: {message}"
        important = self._get_important_context(context)
        if important:
            line = f"{line} [{important}]"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line

    def _split_record(self, record):
        """Return (message, structured fields) for stdlib and structlog records alike."""
        event_dict = getattr(record, '_event_dict', None)
        if isinstance(event_dict, dict):
            data = dict(event_dict)
            message = data.pop('event', None)
            if message is None:
                message = record.getMessage()
            return str(message), data

        data: Dict[str, Any] = {}
        for key in TURN_CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value:
                data[key] = value
        return record.getMessage(), data

    def _get_important_context(self, data: Dict[str, Any]) -> Optional[str]:
        parts = []
        turn = data.get('turn_id')
        if turn:
            parts.append(f"turn:{str(turn)[:8]}")
        for key in ('channel_id', 'conversation_id', 'user_id'):
            if data.get(key):
                parts.append(f"{key.split('_')[0]}:{data[key]}")
        for key, value in data.items():
            if key in TURN_CONTEXT_KEYS or key in ('level', 'logger', 'timestamp', 'exc_info'):
                continue
            parts.append(f"{key}={value}")
        return ' | '.join(parts) if parts else None


_human_formatter = SimpleHumanFormatter()


def _render_event(logger, method_name, event_dict):
    """ProcessorFormatter hook: every record, stdlib or structlog, goes through the human formatter."""
    record = event_dict.pop('_record', None)
    event_dict.pop('_from_structlog', None)
    if record is None:
        return str(event_dict.get('event', ''))
    clone = logging.makeLogRecord(record.__dict__)
    clone._event_dict = event_dict
    return _human_formatter.format(clone)


# =============================================================================
# MAIN LOGGING CONFIGURATION
# =============================================================================

def setup_structlog():
    """Configure structlog to hand its events to the stdlib handlers."""
    processors = [
        structlog.stdlib.filter_by_level,
        merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def setup_logging(level_str: str = "INFO", force: bool = False) -> logging.Logger:
    """
    Configure the root logger with one console handler.

    Safe to call repeatedly; only the first call (or a forced one) installs handlers.
    """
    global _configured
    root_logger = logging.getLogger()
    level = logging.getLevelName(str(level_str).upper())
    if not isinstance(level, int):
        level = logging.INFO

    if _configured and not force:
        root_logger.setLevel(level)
        return root_logger

    setup_structlog()

    # Clear existing StreamHandlers so our formatter takes precedence
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.StreamHandler):
            root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[_render_event],
            foreign_pre_chain=[merge_contextvars],
        )
    )
    root_logger.addHandler(console_handler)
    root_logger.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    root_logger.debug(f"Logging configured at level {logging.getLevelName(level)}")
    return root_logger


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def get_logger(name: str = None):
    """Get a structlog bound logger for key/value events."""
    return structlog.get_logger(name)


def start_turn(activity) -> str:
    """Bind correlation ids for the turn that processes ``activity``."""
    turn_id_val = str(uuid.uuid4())
    conversation = getattr(activity, 'conversation', None)
    sender = getattr(activity, 'from_property', None)
    bind_contextvars(
        turn_id=turn_id_val,
        conversation_id=getattr(conversation, 'id', None),
        user_id=getattr(sender, 'id', None),
        channel_id=getattr(activity, 'channel_id', None),
    )
    return turn_id_val


def clear_turn_ids():
    """Unbind all turn-related context"""
    unbind_contextvars(*TURN_CONTEXT_KEYS)
