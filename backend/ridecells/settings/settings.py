"""
Django settings for the ridecells project.

Development defaults: in-memory document store, eager celery tasks.
Production overrides live in prod.py.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = os.getenv("SECRET_KEY", "django-insecure-ridecells-dev-key")

DEBUG = True

ALLOWED_HOSTS = ["*"]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "common",
    "realtime",
    "drivers",
    "rides",
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

USE_TZ = True
TIME_ZONE = "UTC"

# ---------------------- Geo cells ----------------------

GEO_CELLS = {
    "STEP_SECONDS": 30,
    "STORE_BACKEND": os.getenv("GEO_CELLS_STORE_BACKEND", "memory"),
    "REDIS_URL": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
}

# ---------------------- Celery ----------------------

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    "purge-expired-documents": {
        "task": "rides.tasks.purge_expired_documents",
        "schedule": 15 * 60,
    },
}

# ---------------------- Logging ----------------------

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "realtime": {"handlers": ["console"], "level": os.getenv("GEO_CELLS_LOG_LEVEL", "INFO"), "propagate": False},
        "services": {"handlers": ["console"], "level": os.getenv("GEO_CELLS_LOG_LEVEL", "INFO"), "propagate": False},
        "rides": {"handlers": ["console"], "level": "INFO", "propagate": False},
    },
}
