"""Celery tasks for geo-cell store maintenance."""

from celery import shared_task
from django.utils import timezone
import logging

from realtime.exceptions import StoreUnavailable
from realtime.store import get_document_store

logger = logging.getLogger(__name__)


@shared_task
def purge_expired_documents():
    """
    Hard-delete presence and request documents whose expiresAt has passed.

    Backends with native expiry (Redis) only prune their index entries here;
    the in-memory backend deletes the documents themselves.
    """
    store = get_document_store()
    try:
        purged = store.purge_expired(timezone.now())
    except StoreUnavailable as e:
        logger.error("Expired document purge failed: %s", e)
        return 0

    if purged:
        logger.info("Purged %s expired document(s)", purged)
    return purged
