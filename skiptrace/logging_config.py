"""
Logging setup for the API, RQ workers and the CSV submission CLI.

LOG_FORMAT=json emits one JSON object per line (fields passed via `extra=`,
such as run_id or item_id, are carried through); anything else gives the
text format. Both include the thread name, since run workers are threads
named after their run.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone

TEXT_FORMAT = '[%(asctime)s] %(levelname)s %(threadName)s %(name)s: %(message)s'
TEXT_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Attributes every LogRecord carries; anything else came in through `extra=`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

QUIET_LOGGERS = ('urllib3', 'rq.worker', 'werkzeug', 'sqlalchemy.engine')


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log aggregators."""

    def format(self, record):
        payload = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }
        payload.update(
            (k, v) for k, v in vars(record).items()
            if k not in _STANDARD_ATTRS and not k.startswith('_')
        )
        if record.exc_info and record.exc_info[0] is not None:
            payload['exception'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _level_from_env():
    level = logging.getLevelName(os.getenv('LOG_LEVEL', 'INFO').upper())
    return level if isinstance(level, int) else logging.INFO


def _formatter_from_env():
    if os.getenv('LOG_FORMAT', 'text').lower() == 'json':
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT)


def configure_logging(app=None):
    """Install a single stderr handler on the root logger.

    Safe to call more than once: existing root handlers are replaced. When a
    Flask app is given its logger follows the same level.
    """
    level = _level_from_env()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_formatter_from_env())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app is not None:
        app.logger.setLevel(level)
