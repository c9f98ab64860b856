import re
from pathlib import Path

import structlog
from decouple import config
from dj_database_url import parse as db_url

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# No HTTP surface is served; the key only signs Django internals.
SECRET_KEY = config("SECRET_KEY", default="order-lifecycle-insecure-dev-key")

DEBUG = config("DEBUG", default=False, cast=bool)

# Application definition
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    # Local Apps (Modules)
    "modules.core",
    "modules.orders",
]

DATABASES = {
    "default": config(
        "DATABASE_URL", default=f'sqlite:///{BASE_DIR / "db.sqlite3"}', cast=db_url
    )
}

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ---------------------------------------------------------------------------
# Order lifecycle
# ---------------------------------------------------------------------------
LOYALTY_POINTS_PER_CURRENCY_UNIT = config(
    "LOYALTY_POINTS_PER_CURRENCY_UNIT", default="1"
)

# ---------------------------------------------------------------------------
# Durable execution (Temporal)
# ---------------------------------------------------------------------------
TEMPORAL_HOST = config("TEMPORAL_HOST", default="localhost:7233")
TEMPORAL_NAMESPACE = config("TEMPORAL_NAMESPACE", default="default")
TEMPORAL_TASK_QUEUE = config("TEMPORAL_TASK_QUEUE", default="order-processing")
ORDER_WORKFLOW_ID_PREFIX = config("ORDER_WORKFLOW_ID_PREFIX", default="order-")
ORCHESTRATION_TIMEOUT_SECONDS = config(
    "ORCHESTRATION_TIMEOUT_SECONDS", default=10.0, cast=float
)
ORDER_ACTIVITY_TIMEOUT_SECONDS = config(
    "ORDER_ACTIVITY_TIMEOUT_SECONDS", default=300, cast=int
)
ORDER_WORKER_MAX_CONCURRENT_ACTIVITIES = config(
    "ORDER_WORKER_MAX_CONCURRENT_ACTIVITIES", default=10, cast=int
)

# ---------------------------------------------------------------------------
# Structured Logging (structlog + Django LOGGING)
# ---------------------------------------------------------------------------
SENSITIVE_PATTERN = re.compile(
    r"(?<!\d)(\d[ -]?){12,18}\d(?!\d)"  # card number (PAN, 13-19 digits)
    r"|(password|passwd|secret|token|authorization)"
    r"""([=:]\s*["']?)([^\s,}"']+)""",
    re.IGNORECASE,
)


def mask_sensitive_data(_, __, event_dict):
    """Processor that masks card numbers, passwords and tokens in log values."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            event_dict[key] = SENSITIVE_PATTERN.sub("***MASKED***", value)
    return event_dict


# Shared processors used by both structlog and stdlib logging
_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    mask_sensitive_data,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]

structlog.configure(
    processors=[
        *_shared_processors,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

LOG_LEVEL = config("LOG_LEVEL", default="INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            "foreign_pre_chain": _shared_processors,
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "temporalio": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
