"""Rides app configuration."""

from django.apps import AppConfig


class RidesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'rides'

    def ready(self):
        # Expired presence/request documents are purged by the celery beat
        # task in tasks.py; timers for heartbeats and expansion are per client.
        pass
