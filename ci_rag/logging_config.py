"""
Logging setup for the CI report assistant.

Every record carries the conversation it belongs to, so turns served
concurrently by the API threadpool can be told apart in one log file:

    2025-11-14 09:12:03 - ci_rag.rag.pipeline - INFO - [3f2c...] Found 4 previous messages
"""
from contextlib import contextmanager
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
import logging
import sys

NO_CONVERSATION = "-"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(conversation_id)s] %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Provider SDKs log every HTTP request at INFO
QUIET_LOGGERS = ("urllib3", "httpx", "httpcore", "openai", "ollama")

_conversation_id: ContextVar[str] = ContextVar("conversation_id", default=NO_CONVERSATION)


class ConversationFilter(logging.Filter):
    """Stamps records with the conversation id of the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "conversation_id"):
            record.conversation_id = _conversation_id.get()
        return True


@contextmanager
def conversation_context(conversation_id: str):
    """Tag every record logged inside the block with conversation_id."""
    token = _conversation_id.set(conversation_id or NO_CONVERSATION)
    try:
        yield
    finally:
        _conversation_id.reset(token)


def current_conversation_id() -> str:
    return _conversation_id.get()


def setup_logging(level: str = "INFO", log_file: str = None, max_bytes: int = 10 * 1024 * 1024,
                  backup_count: int = 5):
    """
    Configure root logging: stdout always, plus a rotating file when log_file is set.

    Args:
        level: DEBUG shows turn state transitions and full prompts
        log_file: e.g. logs/ci_rag.log; parent directory is created
        max_bytes: size at which the file rotates
        backup_count: rotated files kept
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    conversation_filter = ConversationFilter()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count))

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(conversation_filter)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level} level" + (f", file: {log_file}" if log_file else ""))


def get_logger(name: str) -> logging.Logger:
    """Module logger; pass __name__."""
    return logging.getLogger(name)
