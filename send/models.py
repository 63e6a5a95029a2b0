import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone


class EmailClaimQuerySet(models.QuerySet):
    def eligible(self, now=None):
        """Claims that can still be claimed or canceled: pending and not expired"""
        return self.filter(status='pending', token_expires_at__gt=now or timezone.now())

    def for_recipient(self, email: str):
        return self.filter(recipient_email=(email or '').strip().lower())

    def oldest_first(self):
        return self.order_by('created_at', 'id')

    def unleased(self, now=None):
        """No sweep holds these, or the holder's lease ran out before it recorded a transaction"""
        now = now or timezone.now()
        return self.filter(models.Q(sweep_lock_id__isnull=True) | models.Q(sweep_locked_until__lte=now))


class EmailClaim(models.Model):
    """
    USDC sent to an email address and held in escrow until the recipient claims
    it or the sender cancels it.

    Rows are created only after the escrow deposit confirmed on chain and are
    never deleted. Status changes only by conditional update; an expired claim
    can still be refunded, moving it to ``canceled``.
    """
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('claimed', 'Claimed'),
        ('canceled', 'Canceled'),
        ('expired', 'Expired'),
    ]

    token_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)

    sender_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='sent_email_claims',
    )
    sender_from_owner = models.CharField(max_length=44, help_text="Wallet the funds came from; cancels return here")
    recipient_email = models.EmailField(db_index=True, help_text="Lowercased recipient email")

    amount_units = models.BigIntegerField(help_text="Units held in escrow for the recipient")
    currency = models.CharField(max_length=10, default='USDC')
    note = models.CharField(max_length=160, blank=True)

    escrow_signature = models.CharField(max_length=96, unique=True)
    escrow_wallet_address = models.CharField(max_length=44)
    relay_transaction = models.OneToOneField(
        'blockchain.RelayTransaction',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='email_claim',
    )

    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='pending')
    claimed_by_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='claimed_email_claims',
    )
    claim_signature = models.CharField(max_length=96, blank=True)
    claimed_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)

    # Settlement lease held while a sweep batch is in flight
    sweep_lock_id = models.UUIDField(null=True, blank=True)
    sweep_locked_until = models.DateTimeField(null=True, blank=True)

    idempotency_key = models.CharField(max_length=128, blank=True, null=True)
    email_message_id = models.CharField(max_length=255, blank=True)
    email_sent_at = models.DateTimeField(null=True, blank=True)

    token_expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = EmailClaimQuerySet.as_manager()

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['recipient_email', 'status', 'token_expires_at'], name='send_emailc_recipie_3b7e90_idx'),
            models.Index(fields=['sender_user', 'status'], name='send_emailc_sender__f41c2a_idx'),
            models.Index(fields=['status', 'created_at'], name='send_emailc_status_9d0e5b_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['sender_user', 'idempotency_key'],
                condition=models.Q(idempotency_key__isnull=False),
                name='unique_email_claim_idempotency',
            ),
        ]

    def __str__(self):
        return f"CLAIM-{self.pk}: {self.amount_units} {self.currency} to {self.recipient_email} ({self.status})"

    @property
    def is_expired(self):
        return self.token_expires_at <= timezone.now()
