"""
Celery beat schedules for relay tasks.

Installed by config.celery when beat starts, so optional entries can follow
settings.
"""
from django.conf import settings

RELAY_CELERY_BEAT_SCHEDULE = {
    # Settle or release anything left submitted/indeterminate by a timed-out broadcast
    'reconcile-indeterminate-relay-transactions': {
        'task': 'blockchain.reconcile_indeterminate_relay_transactions',
        'schedule': 30.0,  # Every 30 seconds
    },
}

EXPIRY_SWEEP_SCHEDULE = {
    'expire-stale-email-claims': {
        'task': 'send.expire_stale_email_claims',
        'schedule': 15 * 60.0,  # Every 15 minutes
    },
}


def get_relay_beat_schedule():
    schedule = dict(RELAY_CELERY_BEAT_SCHEDULE)
    # Expiry is lazy by default; the periodic sweep only marks rows
    if getattr(settings, 'EMAIL_CLAIM_EXPIRY_SWEEP_ENABLED', False):
        schedule.update(EXPIRY_SWEEP_SCHEDULE)
    return schedule
