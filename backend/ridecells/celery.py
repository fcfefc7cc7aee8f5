"""Celery application for background maintenance (expired document purge)."""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "ridecells.settings.settings")

app = Celery("ridecells")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
