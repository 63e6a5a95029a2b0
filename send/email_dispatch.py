import logging
from decimal import Decimal
from urllib.parse import quote

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.core.mail.message import make_msgid
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def build_claim_url(token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/claim/{quote(token, safe='')}"


class ClaimEmailDispatcher:
    """Sends claim invitations through Django's configured email backend"""

    template_name = 'send/claim_invite'

    def __init__(self, connection=None):
        self.connection = connection

    def send(self, recipient_email: str, sender_email: str, amount: Decimal, claim_token: str,
             expires_at, note: str = '') -> str:
        """Send the invitation and return its Message-ID."""
        context = {
            'recipient_email': recipient_email,
            'sender_name': sender_email,
            'amount': f'{amount:.2f}',
            'claim_url': build_claim_url(claim_token),
            'expires_at': expires_at,
            'note': note,
        }
        subject = f"{sender_email} sent you ${amount:.2f} via Haven"
        message_id = make_msgid(domain='havenvaults.com')

        message = EmailMultiAlternatives(
            subject=subject,
            body=render_to_string(f'{self.template_name}.txt', context),
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[recipient_email],
            reply_to=[sender_email] if sender_email else None,
            headers={'Message-ID': message_id},
            connection=self.connection,
        )
        message.attach_alternative(render_to_string(f'{self.template_name}.html', context), 'text/html')
        message.send(fail_silently=False)
        logger.info(f"[ClaimEmail] Sent invitation {message_id} to {recipient_email}")
        return message_id
