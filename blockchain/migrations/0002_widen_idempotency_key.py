from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('blockchain', '0001_initial'),
    ]

    operations = [
        migrations.AlterField(
            model_name='relaytransaction',
            name='idempotency_key',
            field=models.CharField(blank=True, max_length=160, null=True),
        ),
    ]
