from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils import timezone
import logging

logger = logging.getLogger(__name__)


class SoftDeleteManager(models.Manager):
    """Manager that filters out soft-deleted objects by default"""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)

    def with_deleted(self):
        """Return queryset including soft-deleted objects"""
        return super().get_queryset()


class SoftDeleteModel(models.Model):
    """Base model with soft delete functionality"""

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True, help_text="Soft delete timestamp")

    objects = SoftDeleteManager()
    all_objects = models.Manager()  # Access to all objects including deleted

    class Meta:
        abstract = True

    def soft_delete(self):
        """Soft delete the object"""
        self.deleted_at = timezone.now()
        self.save(update_fields=['deleted_at'])

    @property
    def is_deleted(self):
        return self.deleted_at is not None


class User(AbstractUser):
    # Identity-provider subject (did:privy:...)
    privy_id = models.CharField(max_length=128, unique=True, null=True, blank=True)
    email = models.EmailField(unique=True, null=True, blank=True, help_text="Lowercased login email")
    display_currency = models.CharField(max_length=3, default='USD', help_text="ISO currency used for display only")
    auth_token_version = models.IntegerField(default=1, help_text="Version number for JWT tokens. Incrementing this invalidates all existing tokens.")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.email or self.username or self.privy_id or str(self.pk)

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.strip().lower()
        super().save(*args, **kwargs)

    def increment_auth_token_version(self):
        """Increment the auth token version to invalidate all existing tokens"""
        self.auth_token_version += 1
        self.save(update_fields=['auth_token_version'])

    def get_account(self, account_type: str):
        return self.accounts.filter(account_type=account_type).first()

    @property
    def deposit_account(self):
        return self.get_account('deposit')

    @property
    def savings_account(self):
        return self.get_account('savings')


class Account(SoftDeleteModel):
    """A custodial Solana wallet held for a user at the identity provider"""
    ACCOUNT_TYPE_CHOICES = [
        ('deposit', 'Deposit'),
        ('savings', 'Savings'),
    ]

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="accounts",
    )
    account_type = models.CharField(
        max_length=10,
        choices=ACCOUNT_TYPE_CHOICES,
        default='deposit',
        help_text="Deposit (everyday) or savings wallet"
    )
    wallet_id = models.CharField(max_length=64, blank=True, help_text="Identity-provider wallet id")
    address = models.CharField(
        max_length=44,  # base58 ed25519 public keys are 32-44 characters
        blank=True,
        db_index=True,
        help_text="Owner public key (base58)"
    )
    chain_type = models.CharField(max_length=16, default='solana')

    class Meta:
        ordering = ['user', 'account_type']
        constraints = [
            models.UniqueConstraint(
                fields=['user', 'account_type'],
                condition=models.Q(deleted_at__isnull=True),
                name='unique_active_account_type',
            ),
        ]

    def __str__(self):
        return f"{self.user} {self.account_type} {self.address or '-'}"
