from decimal import Decimal
from unittest.mock import MagicMock

import requests
from django.contrib.auth.models import AnonymousUser
from django.core.cache import cache
from django.test import SimpleTestCase
from graphql import GraphQLError

from .schema import Query
from .services import ExchangeRateService, ExchangeRateUnavailable


def response(payload=None, status_error=None):
    resp = MagicMock()
    resp.json.return_value = payload or {}
    if status_error:
        resp.raise_for_status.side_effect = status_error
    return resp


class MockInfo:
    def __init__(self, user):
        self.context = MagicMock(user=user)


class ExchangeRateServiceTests(SimpleTestCase):
    def setUp(self):
        cache.clear()
        self.session = MagicMock()
        self.service = ExchangeRateService(session=self.session, timeout=2)

    def test_usd_and_usdc_are_pegged(self):
        for currency in ('USD', 'usdc', None):
            rate = self.service.get_display_rate(currency, '12.5')
            self.assertEqual(rate.rate, Decimal('1'))
            self.assertEqual(rate.converted, Decimal('12.5'))
            self.assertEqual(rate.source, 'peg')
        self.session.get.assert_not_called()

    def test_first_provider(self):
        self.session.get.return_value = response({'rates': {'EUR': 0.9}, 'date': '2026-10-19'})

        rate = self.service.get_display_rate('eur', '10')

        self.assertEqual((rate.target, rate.rate, rate.source), ('EUR', Decimal('0.9'), 'frankfurter'))
        self.assertEqual(rate.converted, Decimal('9.0'))
        self.assertEqual(rate.as_of, '2026-10-19')

    def test_falls_back_to_the_next_provider(self):
        self.session.get.side_effect = [
            requests.ConnectionError('down'),
            response({'rates': {'ARS': 0}}),
            response({'rates': {'ARS': '1450.5'}, 'date': '2026-10-18'}),
        ]

        rate, as_of, source = self.service.get_usd_rate('ARS')

        self.assertEqual((rate, as_of, source), (Decimal('1450.5'), '2026-10-18', 'exchangerate.host'))

    def test_rates_are_cached(self):
        self.session.get.return_value = response({'rates': {'MXN': 18.2}})

        self.service.get_usd_rate('MXN')
        self.service.get_usd_rate('MXN')

        self.assertEqual(self.session.get.call_count, 1)

    def test_every_provider_failing(self):
        self.session.get.return_value = response(status_error=requests.HTTPError('503'))

        with self.assertRaises(ExchangeRateUnavailable):
            self.service.get_usd_rate('COP')

    def test_user_display_currency_is_the_default(self):
        self.session.get.return_value = response({'rates': {'EUR': '0.5'}})
        user = MagicMock(display_currency='EUR')

        self.assertEqual(self.service.get_display_rate(amount='4', user=user).converted, Decimal('2.0'))

    def test_invalid_amounts(self):
        for amount in ('abc', '-1', 'NaN'):
            with self.assertRaises(ValueError):
                self.service.get_display_rate('USD', amount)


class DisplayRateQueryTests(SimpleTestCase):
    def test_requires_login(self):
        with self.assertRaises(GraphQLError):
            Query().resolve_display_rate(MockInfo(AnonymousUser()), 'USD')

    def test_reports_bad_amount(self):
        user = MagicMock(is_authenticated=True, display_currency='USD')
        with self.assertRaises(GraphQLError):
            Query().resolve_display_rate(MockInfo(user), 'USD', 'abc')
