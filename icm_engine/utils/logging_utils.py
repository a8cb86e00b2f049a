"""
Logging utilities for the calculation engine.

Module code only ever calls ``logging.getLogger(__name__)``; hosting code
calls ``setup_logging`` once at start-up.
"""

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None, json_format: bool = False):
    """
    Setup engine logging with the specified configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If None, logs to console only.
        json_format: Emit one JSON object per record instead of plain text.
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, mode='a')
    else:
        handler = logging.StreamHandler()

    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    return logging.getLogger(__name__)


class CorrelationFilter(logging.Filter):
    """
    Filter that stamps a run id on log records so one batch run can be traced
    across worker threads
    """
    def __init__(self, correlation_id=None):
        super().__init__()
        self.correlation_id = correlation_id or datetime.now().strftime("%Y%m%d%H%M%S%f")

    def filter(self, record):
        record.correlation_id = self.correlation_id
        return True


class JsonFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging
    """
    def format(self, record):
        log_record: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
            'thread': record.threadName,
        }

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        for attr in ('correlation_id', 'tenant', 'period', 'batch'):
            if hasattr(record, attr):
                log_record[attr] = getattr(record, attr)

        return json.dumps(log_record)


class BatchLoggerAdapter(logging.LoggerAdapter):
    """
    Adapter that appends tenant/period/batch context to log messages
    """
    def __init__(self, logger, extra=None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        context = {k: v for k, v in self.extra.items() if v is not None}
        kwargs.setdefault('extra', {}).update(context)
        context_str = ' '.join(f'{k}={v}' for k, v in context.items())
        return (f"{msg} [{context_str}]" if context_str else msg), kwargs

    def bind(self, **context) -> "BatchLoggerAdapter":
        return BatchLoggerAdapter(self.logger, {**self.extra, **context})
