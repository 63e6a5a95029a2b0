from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('send', '0001_initial'),
    ]

    operations = [
        migrations.AlterField(
            model_name='emailclaim',
            name='idempotency_key',
            field=models.CharField(blank=True, max_length=128, null=True),
        ),
    ]
