"""
Logging Configuration

Handlers for the ``care-migrate`` process: console on stderr, plus a rotating
activity log and a separate error log when file logging is enabled. Either
plain text or one JSON object per line.

Long operations bind an operation context (``run_id``, ``pipeline_id``, ...)
with ``log_context``; every record emitted while it is bound carries those
fields, including records from the orchestrator's worker threads.
"""

import json
import logging
import logging.handlers
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s%(context_suffix)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

# process-wide: worker threads do not inherit contextvars
_bound: Dict[str, Any] = {}
_bound_lock = threading.Lock()


def current_context() -> Dict[str, Any]:
    with _bound_lock:
        return dict(_bound)


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Bind operation fields to every log record until the block exits

    ``None`` values are skipped. Nested blocks add to the outer context and
    restore it on exit.

    Example:
        with log_context(run_id=run_id):
            orchestrator.run()
    """
    with _bound_lock:
        previous = dict(_bound)
        _bound.update({key: value for key, value in fields.items() if value is not None})
        bound = dict(_bound)
    try:
        yield bound
    finally:
        with _bound_lock:
            _bound.clear()
            _bound.update(previous)


class ContextFilter(logging.Filter):
    """Copies the bound operation context onto each record"""

    def filter(self, record: logging.LogRecord) -> bool:
        context = current_context()
        record.context = context
        record.context_suffix = (
            ' [' + ' '.join(f"{key}={value}" for key, value in sorted(context.items())) + ']'
            if context else ''
        )
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the operation context and ``extra_data``"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'thread': record.threadName,
        }
        entry.update(getattr(record, 'context', {}))

        if hasattr(record, 'extra_data'):
            entry['extra'] = record.extra_data
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _log_files(log_directory: Path) -> List[logging.Handler]:
    log_directory.mkdir(parents=True, exist_ok=True)
    activity = logging.handlers.RotatingFileHandler(
        log_directory / 'care_migration.log', maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT
    )
    activity.setLevel(logging.DEBUG)
    errors = logging.handlers.RotatingFileHandler(
        log_directory / 'care_migration_errors.log', maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT
    )
    errors.setLevel(logging.ERROR)
    return [activity, errors]


def setup_logging(
    level: str = 'INFO',
    log_to_file: bool = False,
    log_directory: Path = Path('logs'),
    json_format: bool = False,
) -> None:
    """
    Replace the root logger's handlers for this process

    Args:
        level: Root log level name
        log_to_file: Also write the activity and error logs
        log_directory: Where the log files go
        json_format: Emit JSON lines instead of text
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(root.level)
    handlers = [console]
    if log_to_file:
        handlers.extend(_log_files(Path(log_directory)))

    formatter = JSONFormatter() if json_format else logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)
    # on the handlers: root logger filters never see records from child loggers
    context_filter = ContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root.addHandler(handler)

    logging.getLogger(__name__).debug(
        f"Logging configured: level={level}, json={json_format}, files={log_to_file}"
    )
