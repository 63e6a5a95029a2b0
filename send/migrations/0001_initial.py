import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('blockchain', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='EmailClaim',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('token_id', models.UUIDField(default=uuid.uuid4, editable=False, unique=True)),
                ('sender_from_owner', models.CharField(help_text='Wallet the funds came from; cancels return here', max_length=44)),
                ('recipient_email', models.EmailField(db_index=True, help_text='Lowercased recipient email', max_length=254)),
                ('amount_units', models.BigIntegerField(help_text='Units held in escrow for the recipient')),
                ('currency', models.CharField(default='USDC', max_length=10)),
                ('note', models.CharField(blank=True, max_length=160)),
                ('escrow_signature', models.CharField(max_length=96, unique=True)),
                ('escrow_wallet_address', models.CharField(max_length=44)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('claimed', 'Claimed'), ('canceled', 'Canceled'), ('expired', 'Expired')], default='pending', max_length=10)),
                ('claim_signature', models.CharField(blank=True, max_length=96)),
                ('claimed_at', models.DateTimeField(blank=True, null=True)),
                ('canceled_at', models.DateTimeField(blank=True, null=True)),
                ('sweep_lock_id', models.UUIDField(blank=True, null=True)),
                ('sweep_locked_until', models.DateTimeField(blank=True, null=True)),
                ('idempotency_key', models.CharField(blank=True, max_length=64, null=True)),
                ('email_message_id', models.CharField(blank=True, max_length=255)),
                ('email_sent_at', models.DateTimeField(blank=True, null=True)),
                ('token_expires_at', models.DateTimeField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('claimed_by_user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='claimed_email_claims', to=settings.AUTH_USER_MODEL)),
                ('relay_transaction', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='email_claim', to='blockchain.relaytransaction')),
                ('sender_user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='sent_email_claims', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['recipient_email', 'status', 'token_expires_at'], name='send_emailc_recipie_3b7e90_idx'), models.Index(fields=['sender_user', 'status'], name='send_emailc_sender__f41c2a_idx'), models.Index(fields=['status', 'created_at'], name='send_emailc_status_9d0e5b_idx')],
                'constraints': [models.UniqueConstraint(condition=models.Q(('idempotency_key__isnull', False)), fields=('sender_user', 'idempotency_key'), name='unique_email_claim_idempotency')],
            },
        ),
    ]
