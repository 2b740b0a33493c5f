"""Audit trail of significant lifecycle events.

Every event is a log record on the ``panelcert.audit`` logger with an
``event`` field and structured extras.  ``configure_audit`` sends them as
JSON lines to a size-rotated file; transport and rotation are handled by
the logging framework.
"""

import logging
import logging.handlers

from pythonjsonlogger.json import JsonFormatter


logger = logging.getLogger('panelcert.audit')

# LogRecord attributes that can't be passed as extras.
_RESERVED = frozenset(logging.LogRecord(
    'x', logging.INFO, __file__, 0, '', None, None).__dict__) | {'message', 'asctime'}


def _extras(name, fields):
    extra = {'event': name}
    for key, value in fields.items():
        if key in _RESERVED:
            key = 'ctx_%s' % key
        extra[key] = value
    return extra


def event(name, **fields):
    logger.info(name, extra=_extras(name, fields))


def warning(name, **fields):
    logger.warning(name, extra=_extras(name, fields))


def error(name, **fields):
    logger.error(name, extra=_extras(name, fields))


def configure_audit(path, max_bytes=10 * 1024 * 1024, backups=5, level=logging.INFO):
    """Attaches a rotating JSON-lines handler for ``path``.

    Calling it again with the same path doesn't add a second handler.
    """
    path = str(path)
    for handler in logger.handlers:
        if getattr(handler, 'baseFilename', None) == path:
            return handler
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8')
    handler.setFormatter(JsonFormatter(
        "%(asctime)s %(levelname)s %(message)s",
        rename_fields={'levelname': 'level', 'asctime': 'timestamp'}))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return handler
