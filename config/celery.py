import os

from celery import Celery, signals

# set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('haven')

# namespace='CELERY' means all celery-related configuration keys
# should have a `CELERY_` prefix.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django app configs.
app.autodiscover_tasks()


@signals.beat_init.connect
def _install_relay_schedules(*args, **kwargs):
    # Schedules depend on settings, so they are read once Django is configured
    from blockchain.celery_schedules import get_relay_beat_schedule
    app.conf.beat_schedule.update(get_relay_beat_schedule())


@signals.task_prerun.connect
def _celery_prerun_close_stale_conns(*args, **kwargs):
    # Drop any stale/dangling DB connections before the task starts
    from django.db import close_old_connections
    close_old_connections()
