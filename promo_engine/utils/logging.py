"""
promo_engine/utils/logging.py
─────────────────────────────
Configures structured logging for the promotion service.

Engine modules log through `logging.getLogger(__name__)`; those loggers
live under the `promo_engine` namespace, which is `app.logger`, so the
handlers below receive them too.
"""
import os
import logging
from logging.handlers import RotatingFileHandler
from flask import request, has_request_context


class RequestFormatter(logging.Formatter):
    """
    Custom formatter that injects request info (URL, client IP)
    into logs if a request context is available.
    """
    def format(self, record):
        if has_request_context():
            record.url = request.url
            record.remote_addr = request.remote_addr
        else:
            record.url = None
            record.remote_addr = None
        return super().format(record)


def setup_logging(app):
    """
    Configure rotating file logging: logs/app.log
    Max size: 5MB
    Backup count: 5 files
    Format: timestamp | level | module | message
    """
    level = logging.WARNING if app.config.get('TESTING') else logging.INFO

    # 1. File logger (skipped under test and on read-only filesystems)
    if not app.config.get('TESTING'):
        try:
            log_dir = os.path.join(app.root_path, '..', 'logs')
            os.makedirs(log_dir, exist_ok=True)

            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'app.log'),
                maxBytes=5 * 1024 * 1024,
                backupCount=5
            )
            file_handler.setFormatter(RequestFormatter(
                '%(asctime)s | %(levelname)s | %(name)s | %(remote_addr)s | %(url)s | %(message)s'
            ))
            file_handler.setLevel(level)
            app.logger.addHandler(file_handler)
        except OSError:
            app.logger.warning("File logging unavailable, using stdout only")

    # 2. Stdout logger
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s'
    ))
    stream_handler.setLevel(level)
    app.logger.addHandler(stream_handler)

    app.logger.setLevel(level)
    app.logger.info("Promotion engine startup")
