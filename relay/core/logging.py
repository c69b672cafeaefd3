import logging
import sys

import structlog

from relay.core.config import settings

# chatty third-party loggers; telethon logs every reconnect attempt at INFO
QUIET_LOGGERS = ("telethon", "httpx", "httpcore")


def setup_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(message)s",
        stream=sys.stdout,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def report_settings() -> None:
    """Log which mandatory settings are present. Secrets are never logged."""
    logger = structlog.get_logger(__name__)
    logger.info(
        "settings_loaded",
        app_env=settings.APP_ENV,
        backend_url=settings.BACKEND_URL,
        backend_anon_key_set=bool(settings.BACKEND_ANON_KEY),
        sync_secret_set=bool(settings.SYNC_SECRET),
        telegram_api_id_set=bool(settings.TELEGRAM_API_ID),
        telegram_api_hash_set=bool(settings.TELEGRAM_API_HASH),
        max_concurrent=settings.DELIVERY_MAX_CONCURRENT,
        max_queue_size=settings.DELIVERY_MAX_QUEUE_SIZE,
        max_retries=settings.RETRY_MAX_RETRIES,
        profile_photos=settings.PROFILE_PHOTOS_ENABLED,
    )
