import base64
from types import SimpleNamespace
from unittest.mock import patch

from django.contrib.auth.models import AnonymousUser
from django.core.cache import cache
from django.test import RequestFactory, TestCase, override_settings
from solders.keypair import Keypair

from blockchain.models import RelayTransaction
from blockchain.relay_mutations import (
    CreateTransfer,
    PrepareSponsoredTransfer,
    ReconcileRelayTransaction,
    RelayQuery,
    SubmitSponsoredTransfer,
)
from blockchain.relay_service import RelayService
from blockchain.sponsor_service import apply_signature
from blockchain.transfer_transaction_builder import decode_transaction, encode_transaction

from .fakes import (
    FEE_UNITS,
    RELAY_SETTINGS,
    SPONSOR,
    FakeIdentityProvider,
    FakeSolanaClient,
    make_broadcaster,
    make_config,
    register_user,
    wallet_keypair,
)


@override_settings(**RELAY_SETTINGS)
class RelayMutationTests(TestCase):
    def setUp(self):
        cache.clear()
        self.rpc = FakeSolanaClient()
        self.identity = FakeIdentityProvider()
        self.relay = RelayService(
            config=make_config(),
            client=self.rpc,
            identity=self.identity,
            broadcaster=make_broadcaster(self.rpc),
        )
        patcher = patch('blockchain.relay_mutations.RelayService', return_value=self.relay)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.alice = register_user(self.identity, 'alice', 'alice@example.com')
        self.source = self.alice.deposit_account.address
        self.recipient = str(Keypair().pubkey())
        self.rpc.set_balance(self.source, 1_000_000)

    def info(self, user=None, access_token=None):
        extra = {'HTTP_AUTHORIZATION': f'Bearer {access_token}'} if access_token else {}
        request = RequestFactory().post('/graphql/', **extra)
        request.user = user or AnonymousUser()
        return SimpleNamespace(context=request)

    def test_prepare_returns_unsigned_sponsored_transfer(self):
        result = PrepareSponsoredTransfer.mutate(None, self.info(self.alice), self.source, self.recipient, '0.50')

        self.assertTrue(result.success)
        self.assertEqual(result.fee_payer, str(SPONSOR.pubkey()))
        self.assertEqual((result.amount_units, result.fee_units), ('480000', str(FEE_UNITS)))
        tx = decode_transaction(result.transaction)
        self.assertEqual(bytes(tx.message), base64.b64decode(result.message))
        self.assertEqual(self.rpc.sent, [])

    def test_prepare_then_submit(self):
        prepared = PrepareSponsoredTransfer.mutate(None, self.info(self.alice), self.source, self.recipient, '0.50')
        key = wallet_keypair(self.identity, self.alice)
        message = base64.b64decode(prepared.message)
        signed = apply_signature(decode_transaction(prepared.transaction), key.pubkey(), key.sign_message(message))

        result = SubmitSponsoredTransfer.mutate(None, self.info(self.alice), encode_transaction(signed))

        self.assertTrue(result.success)
        self.assertEqual(result.relay_transaction.status, 'confirmed')
        self.assertEqual(result.signatures, [result.relay_transaction.signature])
        self.assertEqual(self.rpc.balance(self.recipient), 480_000)

    def test_submit_unsigned_transaction_is_refused(self):
        prepared = PrepareSponsoredTransfer.mutate(None, self.info(self.alice), self.source, self.recipient, '0.50')

        result = SubmitSponsoredTransfer.mutate(None, self.info(self.alice), prepared.transaction)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, 'INCOMPLETE_AUTHORIZATION')
        self.assertEqual(self.rpc.sent, [])

    def test_create_transfer(self):
        result = CreateTransfer.mutate(
            None, self.info(self.alice, 'tok-alice'), self.source, self.recipient, '0.50', idempotency_key='k-1'
        )

        self.assertTrue(result.success)
        self.assertEqual(result.relay_transaction.amount_units, 480_000)
        self.assertEqual(self.rpc.balance(self.source), 500_000)

    def test_create_transfer_errors(self):
        info = self.info(self.alice, 'tok-alice')

        self.assertEqual(CreateTransfer.mutate(None, info, self.source, self.recipient, '0.02').error_code, 'INVALID_AMOUNT')
        self.assertEqual(CreateTransfer.mutate(None, info, self.source, 'nope', '0.50').error_code, 'INVALID_OWNER')
        self.assertEqual(CreateTransfer.mutate(None, info, self.source, self.recipient, '5.00').error_code, 'INSUFFICIENT_FUNDS')
        self.assertEqual(
            CreateTransfer.mutate(None, self.info(), self.source, self.recipient, '0.50').error_code,
            'MISSING_CREDENTIAL',
        )
        self.assertEqual(self.rpc.sent, [])

    def test_timeout_reports_signature_to_reconcile(self):
        self.rpc.mode = 'pending'

        result = CreateTransfer.mutate(None, self.info(self.alice, 'tok-alice'), self.source, self.recipient, '0.50')

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, 'CONFIRMATION_TIMEOUT')
        self.assertFalse(result.retryable)
        self.assertEqual(result.signatures, [RelayTransaction.objects.get().signature])

    def test_reconcile(self):
        self.rpc.mode = 'pending'
        CreateTransfer.mutate(None, self.info(self.alice, 'tok-alice'), self.source, self.recipient, '0.50')
        signature = RelayTransaction.objects.get().signature
        self.rpc.confirm_pending()

        result = ReconcileRelayTransaction.mutate(None, self.info(self.alice), signature)

        self.assertTrue(result.success)
        self.assertEqual(result.relay_transaction.status, 'confirmed')
        self.assertEqual(RelayQuery().resolve_relay_transaction(self.info(self.alice), signature).status, 'confirmed')

    def test_reconcile_someone_elses_transfer(self):
        CreateTransfer.mutate(None, self.info(self.alice, 'tok-alice'), self.source, self.recipient, '0.50')
        bob = register_user(self.identity, 'bob', 'bob@example.com')

        result = ReconcileRelayTransaction.mutate(None, self.info(bob), RelayTransaction.objects.get().signature)

        self.assertEqual(result.error_code, 'NOT_FOUND')
