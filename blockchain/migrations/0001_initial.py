import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='RelayTransaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('peer', 'Peer transfer'), ('escrow_deposit', 'Escrow deposit'), ('claim_sweep', 'Claim sweep'), ('cancel_sweep', 'Cancel sweep')], max_length=20)),
                ('status', models.CharField(choices=[('submitted', 'Submitted'), ('confirmed', 'Confirmed'), ('failed', 'Failed'), ('indeterminate', 'Indeterminate')], db_index=True, default='submitted', max_length=20)),
                ('signature', models.CharField(help_text='Base58 transaction signature', max_length=96, unique=True)),
                ('raw_transaction', models.TextField(help_text='Base64 signed transaction bytes')),
                ('last_valid_block_height', models.BigIntegerField(blank=True, null=True)),
                ('from_owner', models.CharField(blank=True, max_length=44)),
                ('to_owner', models.TextField(blank=True, help_text='Destination owner(s), comma separated for sweeps')),
                ('amount_units', models.BigIntegerField(default=0, help_text='Units delivered to the destination(s)')),
                ('fee_units', models.BigIntegerField(default=0, help_text='Processing fee paid to treasury')),
                ('idempotency_key', models.CharField(blank=True, max_length=128, null=True)),
                ('error_message', models.TextField(blank=True)),
                ('error_payload', models.JSONField(blank=True, null=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('confirmed_at', models.DateTimeField(blank=True, null=True)),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='relay_transactions', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['kind', 'status'], name='blockchain__kind_5a1f3e_idx'), models.Index(fields=['user', 'created_at'], name='blockchain__user_id_8c2d41_idx')],
                'constraints': [models.UniqueConstraint(condition=models.Q(('idempotency_key__isnull', False)), fields=('user', 'idempotency_key'), name='unique_relay_idempotency')],
            },
        ),
    ]
