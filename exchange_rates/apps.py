from django.apps import AppConfig


class ExchangeRatesConfig(AppConfig):
    name = 'exchange_rates'
    verbose_name = 'Display Exchange Rates'
