import logging

from celery import shared_task

from blockchain.tasks import ensure_db_connection_closed

logger = logging.getLogger(__name__)


@shared_task(name='send.expire_stale_email_claims')
@ensure_db_connection_closed
def expire_stale_email_claims():
    """Flip pending claims past their expiry to expired. Their senders can still cancel them."""
    from .escrow_service import EmailClaimService
    expired = EmailClaimService().expire_stale_claims()
    return {'expired': expired}
