from functools import wraps
import logging

from celery import shared_task
from django.core.cache import cache
from django.db import connection

logger = logging.getLogger(__name__)


def ensure_db_connection_closed(func):
    """Decorator to ensure database connections are properly closed after task execution"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        finally:
            # Explicitly close database connections to prevent accumulation
            connection.close()
    return wrapper


@shared_task(name='blockchain.reconcile_indeterminate_relay_transactions')
@ensure_db_connection_closed
def reconcile_indeterminate_relay_transactions(older_than_seconds: int = 30, limit: int = 100):
    """
    Settle relay transactions whose outcome was unknown when they were sent.

    Confirmed escrow deposits become claims, confirmed sweeps settle their
    claims and failed sweeps release them.
    """
    # Prevent overlapping runs
    lock_key = 'locks:reconcile_relay_transactions'
    if not cache.add(lock_key, '1', timeout=900):
        logger.info('[RelayReconcile] Skipping run: another reconciliation is active')
        return {'skipped': True, 'reason': 'locked'}

    try:
        from .relay_service import RelayService
        settled = RelayService().reconcile_open(older_than_seconds=older_than_seconds, limit=limit)
        if settled:
            logger.info(f'[RelayReconcile] Settled {settled} relay transaction(s)')
        return {'settled': settled}
    finally:
        cache.delete(lock_key)
