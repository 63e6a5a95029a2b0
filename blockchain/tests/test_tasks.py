from unittest.mock import patch

from django.core.cache import cache
from django.test import SimpleTestCase, override_settings

from blockchain.celery_schedules import get_relay_beat_schedule
from blockchain.tasks import reconcile_indeterminate_relay_transactions
from send.tasks import expire_stale_email_claims


class BeatScheduleTests(SimpleTestCase):
    def test_reconcile_always_scheduled(self):
        schedule = get_relay_beat_schedule()
        self.assertIn('reconcile-indeterminate-relay-transactions', schedule)
        self.assertNotIn('expire-stale-email-claims', schedule)

    @override_settings(EMAIL_CLAIM_EXPIRY_SWEEP_ENABLED=True)
    def test_expiry_sweep_is_opt_in(self):
        self.assertIn('expire-stale-email-claims', get_relay_beat_schedule())


class ReconcileTaskTests(SimpleTestCase):
    def setUp(self):
        cache.clear()

    @patch('blockchain.relay_service.RelayService')
    def test_reconciles_open_transactions(self, service_class):
        service_class.return_value.reconcile_open.return_value = 3

        result = reconcile_indeterminate_relay_transactions(older_than_seconds=5, limit=10)

        self.assertEqual(result, {'settled': 3})
        service_class.return_value.reconcile_open.assert_called_once_with(older_than_seconds=5, limit=10)
        self.assertIsNone(cache.get('locks:reconcile_relay_transactions'))

    @patch('blockchain.relay_service.RelayService')
    def test_skips_overlapping_runs(self, service_class):
        cache.add('locks:reconcile_relay_transactions', '1', timeout=60)

        result = reconcile_indeterminate_relay_transactions()

        self.assertEqual(result, {'skipped': True, 'reason': 'locked'})
        service_class.assert_not_called()

    @patch('send.escrow_service.EmailClaimService')
    def test_expire_stale_email_claims(self, service_class):
        service_class.return_value.expire_stale_claims.return_value = 2
        self.assertEqual(expire_stale_email_claims(), {'expired': 2})
