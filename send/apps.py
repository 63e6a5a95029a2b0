from django.apps import AppConfig


class SendConfig(AppConfig):
    name = 'send'
    verbose_name = 'Email Claims'
    default_auto_field = 'django.db.models.BigAutoField'
