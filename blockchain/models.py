from django.conf import settings
from django.db import models


class RelayTransaction(models.Model):
    """
    One row per signed transaction handed to the network.

    Written as ``submitted`` before broadcast so a crash or a confirmation
    timeout always leaves something to reconcile. ``raw_transaction`` keeps the
    exact signed bytes for idempotent resubmission.
    """
    KIND_CHOICES = [
        ('peer', 'Peer transfer'),
        ('escrow_deposit', 'Escrow deposit'),
        ('claim_sweep', 'Claim sweep'),
        ('cancel_sweep', 'Cancel sweep'),
    ]
    STATUS_CHOICES = [
        ('submitted', 'Submitted'),
        ('confirmed', 'Confirmed'),
        ('failed', 'Failed'),
        ('indeterminate', 'Indeterminate'),
    ]

    kind = models.CharField(max_length=20, choices=KIND_CHOICES)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='submitted', db_index=True)
    signature = models.CharField(max_length=96, unique=True, help_text="Base58 transaction signature")
    raw_transaction = models.TextField(help_text="Base64 signed transaction bytes")
    last_valid_block_height = models.BigIntegerField(null=True, blank=True)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='relay_transactions',
    )
    from_owner = models.CharField(max_length=44, blank=True)
    to_owner = models.TextField(blank=True, help_text="Destination owner(s), comma separated for sweeps")
    amount_units = models.BigIntegerField(default=0, help_text="Units delivered to the destination(s)")
    fee_units = models.BigIntegerField(default=0, help_text="Processing fee paid to treasury")

    # Email claim deposits store the sender key behind a "claim:" prefix
    idempotency_key = models.CharField(max_length=160, blank=True, null=True)
    error_message = models.TextField(blank=True)
    error_payload = models.JSONField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['kind', 'status'], name='blockchain__kind_5a1f3e_idx'),
            models.Index(fields=['user', 'created_at'], name='blockchain__user_id_8c2d41_idx'),
        ]
        constraints = [
            # Prevent duplicate transfers with same idempotency key from same user
            models.UniqueConstraint(
                fields=['user', 'idempotency_key'],
                condition=models.Q(idempotency_key__isnull=False),
                name='unique_relay_idempotency',
            ),
        ]

    def __str__(self):
        return f"{self.kind}:{self.signature} ({self.status})"

    @property
    def is_open(self):
        return self.status in ('submitted', 'indeterminate')
