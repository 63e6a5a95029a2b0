from types import SimpleNamespace
from unittest.mock import patch

from django.contrib.auth.models import AnonymousUser
from django.core import mail
from django.core.cache import cache
from django.test import RequestFactory, TestCase, override_settings
from graphql import GraphQLError
from solana.rpc.core import RPCException

from blockchain.models import RelayTransaction
from blockchain.relay_mutations import ReconcileRelayTransaction
from blockchain.relay_service import RelayService
from blockchain.tests.fakes import (
    RELAY_SETTINGS,
    FakeIdentityProvider,
    FakeSolanaClient,
    make_broadcaster,
    make_config,
    register_user,
)
from send.escrow_service import EmailClaimService
from send.models import EmailClaim
from send.schema import CancelEmailClaims, ClaimEmailTransfers, CreateEmailClaim, Query, ResendClaimEmail

DOLLAR = 1_000_000


@override_settings(**RELAY_SETTINGS, CLAIM_TOKEN_SECRET='claim-link-secret')
class EmailClaimSchemaTests(TestCase):
    def setUp(self):
        cache.clear()
        self.rpc = FakeSolanaClient()
        self.identity = FakeIdentityProvider()
        relay = RelayService(
            config=make_config(),
            client=self.rpc,
            identity=self.identity,
            broadcaster=make_broadcaster(self.rpc),
        )
        self.service = EmailClaimService(relay=relay)
        patcher = patch('send.schema.EmailClaimService', return_value=self.service)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.alice = register_user(self.identity, 'alice', 'alice@example.com')
        self.source = self.alice.deposit_account.address
        self.rpc.set_balance(self.source, 100 * DOLLAR)

    def info(self, user=None, access_token=None):
        extra = {'HTTP_AUTHORIZATION': f'Bearer {access_token}'} if access_token else {}
        request = RequestFactory().post('/graphql/', **extra)
        request.user = user or AnonymousUser()
        return SimpleNamespace(context=request)

    def create(self, amount='3.00', email='bob@example.com', **kwargs):
        return CreateEmailClaim.mutate(
            None, self.info(self.alice, 'tok-alice'), email, self.source, amount, **kwargs
        )

    def test_create_email_claim(self):
        result = self.create('3.00', note='lunch')

        self.assertTrue(result.success)
        self.assertTrue(result.email_sent)
        self.assertEqual(result.claim.amount_units, 3 * DOLLAR)
        self.assertEqual(result.signatures, [result.claim.escrow_signature])
        self.assertEqual(len(mail.outbox), 1)

    def test_create_requires_login(self):
        result = CreateEmailClaim.mutate(None, self.info(), 'bob@example.com', self.source, '3.00')

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, 'MISSING_CREDENTIAL')
        self.assertFalse(EmailClaim.objects.exists())

    def test_create_reports_validation_errors(self):
        result = self.create('0.00')
        self.assertEqual(result.error_code, 'INVALID_AMOUNT')
        self.assertFalse(result.retryable)

        result = self.create(email='not-an-email')
        self.assertEqual(result.error_code, 'INVALID_EMAIL')
        self.assertEqual(self.rpc.sent, [])

    def test_create_without_access_token(self):
        result = CreateEmailClaim.mutate(None, self.info(self.alice), 'bob@example.com', self.source, '3.00')
        self.assertEqual(result.error_code, 'MISSING_CREDENTIAL')

    def test_pending_claims_by_token(self):
        claim = self.create('2.50').claim
        token = self.service.claim_token_for(claim)

        claims = Query().resolve_pending_email_claims(self.info(), token)
        summary = Query().resolve_pending_email_claims_summary(self.info(), token)

        self.assertEqual([c.pk for c in claims], [claim.pk])
        self.assertEqual(summary.recipient_email, 'bob@example.com')
        self.assertEqual(summary.count, 1)
        self.assertEqual(summary.total_amount, '2.5')

    def test_invalid_token_is_a_graphql_error(self):
        with self.assertRaises(GraphQLError) as ctx:
            Query().resolve_pending_email_claims(self.info(), 'garbage')
        self.assertEqual(ctx.exception.extensions['code'], 'INVALID_CLAIM_TOKEN')

    def test_sent_claims(self):
        self.create()
        self.assertEqual(len(Query().resolve_sent_email_claims(self.info(self.alice))), 1)
        self.assertEqual(Query().resolve_sent_email_claims(self.info()), [])

    def test_claim_email_transfers(self):
        self.create('1.00')
        self.create('2.00')
        bob = register_user(self.identity, 'bob', 'bob@example.com')

        result = ClaimEmailTransfers.mutate(None, self.info(bob))

        self.assertTrue(result.success)
        self.assertEqual(result.claimed_count, 2)
        self.assertEqual(result.claimed_amount, '3')
        self.assertEqual(len(result.signatures), 1)

    def test_claim_reports_partial_progress(self):
        for _ in range(10):
            self.create('1.00')
        bob = register_user(self.identity, 'bob', 'bob@example.com')
        submit = self.rpc.send_raw_transaction
        calls = []

        def reject_second_sweep(raw, opts=None):
            calls.append(raw)
            if len(calls) == 2:
                raise RPCException({'code': -32002, 'message': 'Transaction simulation failed'})
            return submit(raw, opts=opts)

        self.rpc.send_raw_transaction = reject_second_sweep

        result = ClaimEmailTransfers.mutate(None, self.info(bob))

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, 'ON_CHAIN_REJECTED')
        self.assertEqual(result.claimed_count, 8)
        self.assertEqual(len(result.signatures), 1)

    def test_timed_out_batch_signature_is_returned(self):
        for _ in range(10):
            self.create('1.00')
        bob = register_user(self.identity, 'bob', 'bob@example.com')
        submit = self.rpc.send_raw_transaction
        calls = []

        def stall_second_sweep(raw, opts=None):
            calls.append(raw)
            if len(calls) == 2:
                self.rpc.mode = 'pending'
            return submit(raw, opts=opts)

        self.rpc.send_raw_transaction = stall_second_sweep

        result = ClaimEmailTransfers.mutate(None, self.info(bob))

        self.assertEqual(result.error_code, 'CONFIRMATION_TIMEOUT')
        self.assertEqual(result.claimed_count, 8)
        sweeps = RelayTransaction.objects.filter(kind='claim_sweep').order_by('created_at', 'id')
        self.assertEqual(result.signatures, [s.signature for s in sweeps])
        self.assertEqual(sweeps[1].status, 'indeterminate')

    def test_recipient_reconciles_their_sweep(self):
        self.create('1.00')
        bob = register_user(self.identity, 'bob', 'bob@example.com')
        self.rpc.mode = 'pending'
        signature = ClaimEmailTransfers.mutate(None, self.info(bob)).signatures[-1]
        self.rpc.confirm_pending()

        with patch('blockchain.relay_mutations.RelayService', return_value=self.service.relay):
            result = ReconcileRelayTransaction.mutate(None, self.info(bob), signature)

        self.assertTrue(result.success)
        self.assertEqual(EmailClaim.objects.get().status, 'claimed')

    def test_overlong_idempotency_key(self):
        result = self.create(idempotency_key='k' * 129)

        self.assertEqual(result.error_code, 'INVALID_IDEMPOTENCY_KEY')
        self.assertFalse(result.retryable)
        self.assertFalse(RelayTransaction.objects.exists())

    def test_claim_for_another_email(self):
        claim = self.create().claim
        carol = register_user(self.identity, 'carol', 'carol@example.com')

        result = ClaimEmailTransfers.mutate(None, self.info(carol), token=self.service.claim_token_for(claim))

        self.assertEqual(result.error_code, 'EMAIL_MISMATCH')
        self.assertEqual(result.claimed_count, 0)

    def test_cancel_email_claims(self):
        first = self.create('1.00').claim
        self.create('2.00')

        result = CancelEmailClaims.mutate(None, self.info(self.alice), claim_ids=[str(first.pk)])

        self.assertTrue(result.success)
        self.assertEqual(result.canceled_count, 1)
        self.assertEqual(result.canceled_amount, '1')
        self.assertEqual(EmailClaim.objects.filter(status='pending').count(), 1)

    def test_resend_claim_email(self):
        claim = self.create().claim
        mail.outbox.clear()

        result = ResendClaimEmail.mutate(None, self.info(self.alice), str(claim.pk))

        self.assertTrue(result.success)
        self.assertEqual(len(mail.outbox), 1)
