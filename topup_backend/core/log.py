"""Logging setup.

Every module logs through ``logging.getLogger(__name__)``; this configures the
root handler once at startup.
"""

import logging
import logging.config

from topup_backend.core.conf import Settings, settings as default_settings

# Chatty third-party loggers kept at WARNING
_QUIET_LOGGERS = ('httpx', 'httpcore', 'aiosqlite', 'sqlalchemy.engine')


def setup_logging(settings: Settings = default_settings) -> None:
    """Configure root logging from settings."""
    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'default': {'format': settings.LOG_FORMAT},
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'formatter': 'default',
                },
            },
            'root': {
                'level': settings.LOG_LEVEL,
                'handlers': ['console'],
            },
            'loggers': {name: {'level': 'WARNING'} for name in _QUIET_LOGGERS},
        }
    )
