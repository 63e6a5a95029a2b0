from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import RequestFactory, TestCase, override_settings
from graphql_jwt.exceptions import PermissionDenied
from graphql_jwt.shortcuts import get_token
from graphql_jwt.testcases import JSONWebTokenTestCase
from graphql_jwt.utils import jwt_decode

from blockchain.errors import MissingCredential
from blockchain.tests.fakes import RELAY_SETTINGS, FakeIdentityProvider, register_user

from .auth import read_access_token
from .jwt import get_user_by_payload, jwt_payload_handler, verify_auth_token_version
from .models import Account
from .schema import InvalidateAuthTokens, OpenSavingsAccount, PrivyLogin, Query
from .wallets import ensure_custodial_wallet, resolve_deposit_owner

User = get_user_model()


class MockContext:
    def __init__(self, user, request=None):
        self.user = user
        self.META = getattr(request, 'META', {})
        self.COOKIES = getattr(request, 'COOKIES', {})


class MockInfo:
    def __init__(self, context):
        self.context = context


class CustodialWalletTests(TestCase):
    def setUp(self):
        self.identity = FakeIdentityProvider()

    def test_existing_embedded_wallet_becomes_deposit(self):
        self.identity.add_user('did:privy:alice', email='alice@example.com', wallets=1)
        user = User.objects.create(username='alice', privy_id='did:privy:alice')

        account = ensure_custodial_wallet(user, 'deposit', identity=self.identity)

        self.assertEqual(account.address, self.identity.wallets('did:privy:alice')[0]['address'])
        self.assertEqual(self.identity.created, {})

    def test_is_idempotent(self):
        user = register_user(self.identity, 'alice', 'alice@example.com')

        again = ensure_custodial_wallet(user, 'deposit', identity=self.identity)

        self.assertEqual(again.pk, user.deposit_account.pk)
        self.assertEqual(Account.objects.filter(user=user).count(), 1)

    def test_savings_takes_the_second_wallet(self):
        user = register_user(self.identity, 'alice', 'alice@example.com')

        savings = ensure_custodial_wallet(user, 'savings', identity=self.identity)
        ensure_custodial_wallet(user, 'savings', identity=self.identity)

        self.assertNotEqual(savings.address, user.deposit_account.address)
        self.assertEqual(savings.address, self.identity.wallets('did:privy:alice')[1]['address'])
        self.assertEqual(list(self.identity.created), ['did:privy:alice:savings'])

    def test_unknown_account_type(self):
        user = register_user(self.identity, 'alice')
        with self.assertRaises(ValueError):
            ensure_custodial_wallet(user, 'checking', identity=self.identity)

    def test_user_without_identity(self):
        user = User.objects.create(username='legacy')
        with self.assertRaises(MissingCredential):
            ensure_custodial_wallet(user, identity=self.identity)

    def test_resolve_deposit_owner(self):
        user = register_user(self.identity, 'alice', 'alice@example.com')

        self.assertEqual(resolve_deposit_owner(' Alice@Example.com'), user.deposit_account.address)
        self.assertIsNone(resolve_deposit_owner('nobody@example.com'))
        self.assertIsNone(resolve_deposit_owner(''))


class AccessTokenTests(TestCase):
    def test_bearer_header(self):
        request = RequestFactory().get('/', HTTP_AUTHORIZATION='Bearer abc')
        self.assertEqual(read_access_token(request), 'abc')

    def test_cookie(self):
        request = RequestFactory().get('/', HTTP_COOKIE='privy-token=from-cookie')
        self.assertEqual(read_access_token(request), 'from-cookie')

    def test_session_header_is_not_an_access_token(self):
        request = RequestFactory().get('/', HTTP_AUTHORIZATION='JWT session-token')
        self.assertIsNone(read_access_token(request))
        self.assertIsNone(read_access_token(None))


class SessionTokenTests(TestCase):
    def setUp(self):
        self.user = User.objects.create(username='alice', privy_id='did:privy:alice')

    def test_payload_carries_token_version(self):
        payload = jwt_payload_handler(self.user)

        self.assertEqual(payload['user_id'], self.user.id)
        self.assertEqual(payload['auth_token_version'], 1)
        self.assertGreater(payload['exp'], payload['origIat'])
        self.assertEqual(get_user_by_payload(payload), self.user)

    def test_revoked_tokens_are_refused(self):
        token = get_token(self.user)
        self.assertEqual(verify_auth_token_version(token)['user_id'], self.user.id)

        self.user.increment_auth_token_version()

        with self.assertRaises(PermissionDenied):
            get_user_by_payload(jwt_decode(token))
        with self.assertRaises(PermissionDenied):
            verify_auth_token_version(token)

    def test_bad_payloads(self):
        with self.assertRaises(PermissionDenied):
            get_user_by_payload({'user_id': self.user.id})
        with self.assertRaises(PermissionDenied):
            get_user_by_payload({'user_id': 999, 'auth_token_version': 1})

    def test_invalidate_auth_tokens(self):
        result = InvalidateAuthTokens.mutate(None, MockInfo(MockContext(self.user)))

        self.assertTrue(result.success)
        self.user.refresh_from_db()
        self.assertEqual(self.user.auth_token_version, 2)


@override_settings(**RELAY_SETTINGS)
class PrivyLoginTests(TestCase):
    def setUp(self):
        self.identity = FakeIdentityProvider()
        patcher = patch('users.schema.get_identity_provider', return_value=self.identity)
        patcher.start()
        self.addCleanup(patcher.stop)

    def login(self, access_token=None, request=None):
        return PrivyLogin.mutate(None, MockInfo(MockContext(AnonymousUser(), request)), access_token=access_token)

    def test_first_login_creates_user_and_wallet(self):
        self.identity.add_user('did:privy:alice', email='Alice@Example.com', token='tok-alice')

        result = self.login('tok-alice')

        self.assertTrue(result.success)
        self.assertEqual(result.user.email, 'alice@example.com')
        self.assertEqual(result.user.username, 'alice')
        self.assertIsNotNone(result.user.deposit_account)
        self.assertEqual(jwt_decode(result.token)['user_id'], result.user.id)

    def test_second_login_reuses_user(self):
        self.identity.add_user('did:privy:alice', email='alice@example.com', token='tok-alice')
        first = self.login('tok-alice').user

        second = self.login('tok-alice').user

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(User.objects.count(), 1)
        self.assertEqual(Account.objects.count(), 1)

    def test_links_existing_user_by_email(self):
        existing = User.objects.create(username='alice-old', email='alice@example.com')
        self.identity.add_user('did:privy:alice', email='alice@example.com', token='tok-alice')

        result = self.login('tok-alice')

        self.assertEqual(result.user.pk, existing.pk)
        existing.refresh_from_db()
        self.assertEqual(existing.privy_id, 'did:privy:alice')

    def test_token_from_cookie(self):
        self.identity.add_user('did:privy:alice', email='alice@example.com', token='tok-alice')
        request = RequestFactory().post('/graphql/', HTTP_COOKIE='privy-token=tok-alice')

        self.assertTrue(self.login(request=request).success)

    def test_missing_and_unknown_tokens(self):
        self.assertEqual(self.login().error_code, 'MISSING_CREDENTIAL')
        self.assertEqual(self.login('tok-nobody').error_code, 'AUTH_MISMATCH')
        self.assertFalse(User.objects.exists())


@override_settings(**RELAY_SETTINGS)
class SavingsAccountTests(TestCase):
    def test_open_savings_account(self):
        identity = FakeIdentityProvider()
        user = register_user(identity, 'alice', 'alice@example.com')

        with patch('users.wallets.PrivyClient', return_value=identity):
            result = OpenSavingsAccount.mutate(None, MockInfo(MockContext(user)))

        self.assertTrue(result.success)
        self.assertEqual(result.account.account_type, 'savings')

    def test_requires_login(self):
        result = OpenSavingsAccount.mutate(None, MockInfo(MockContext(AnonymousUser())))
        self.assertEqual(result.error_code, 'MISSING_CREDENTIAL')


class MeQueryTests(JSONWebTokenTestCase):
    def setUp(self):
        self.identity = FakeIdentityProvider()
        self.user = register_user(self.identity, 'alice', 'alice@example.com')

    def test_me(self):
        self.client.authenticate(self.user)

        response = self.client.execute('{ me { username email accounts { accountType address } } }')

        self.assertIsNone(response.errors)
        self.assertEqual(response.data['me']['username'], 'alice')
        self.assertEqual(response.data['me']['accounts'][0]['address'], self.user.deposit_account.address)

    def test_me_after_invalidation(self):
        self.client.authenticate(self.user)
        self.client.execute('mutation { invalidateAuthTokens { success } }')

        response = self.client.execute('{ me { username } }')

        self.assertIsNotNone(response.errors)

    def test_resolve_deposit_owner_requires_login(self):
        response = self.client.execute('{ resolveDepositOwner(email: "alice@example.com") }')
        self.assertIsNotNone(response.errors)

        self.client.authenticate(self.user)
        response = self.client.execute('{ resolveDepositOwner(email: "alice@example.com") }')
        self.assertEqual(response.data['resolveDepositOwner'], self.user.deposit_account.address)

    def test_resolver_without_session(self):
        self.assertIsNone(Query().resolve_me(MockInfo(MockContext(AnonymousUser()))))
