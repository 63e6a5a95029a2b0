import base64
import json
import time
from unittest.mock import MagicMock

import jwt
import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from django.test import SimpleTestCase

from blockchain.errors import AuthMismatch, MissingCredential, NetworkUnavailable, RelayError
from blockchain.identity_provider import (
    PrivyClient,
    UserSigner,
    canonical_json,
    extract_email,
    extract_embedded_solana_wallets,
)


def response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.text = json.dumps(payload or {})
    return resp


class LinkedAccountParsingTests(SimpleTestCase):
    def test_embedded_solana_wallets_in_order(self):
        user = {
            'linked_accounts': [
                {'type': 'email', 'address': 'Alice@Example.com'},
                {'type': 'wallet', 'chain_type': 'ethereum', 'wallet_client_type': 'privy', 'id': 'eth', 'address': '0xabc'},
                {'type': 'wallet', 'chain_type': 'solana', 'wallet_client_type': 'phantom', 'id': 'ext', 'address': 'Ext111'},
                {'type': 'wallet', 'chain_type': 'solana', 'wallet_client_type': 'privy', 'id': 'w1', 'address': 'Sol111'},
                {'type': 'wallet', 'chainType': 'solana', 'walletClientType': 'embedded', 'walletId': 'w2', 'address': 'Sol222'},
            ]
        }
        wallets = extract_embedded_solana_wallets(user)

        self.assertEqual([(w.wallet_id, w.address) for w in wallets], [('w1', 'Sol111'), ('w2', 'Sol222')])

    def test_camel_case_linked_accounts(self):
        user = {'linkedAccounts': [
            {'kind': 'wallet', 'chain': 'solana', 'connectorType': 'embedded', 'id': 'w1', 'walletAddress': 'Sol111'},
        ]}
        self.assertEqual([w.address for w in extract_embedded_solana_wallets(user)], ['Sol111'])

    def test_no_wallets(self):
        self.assertEqual(extract_embedded_solana_wallets({'linked_accounts': [{'type': 'email'}]}), [])
        self.assertEqual(extract_embedded_solana_wallets(None), [])

    def test_email(self):
        self.assertEqual(extract_email({'email': {'address': ' Bob@Example.com '}}), 'bob@example.com')
        self.assertEqual(
            extract_email({'linked_accounts': [{'type': 'email', 'address': 'Carol@Example.com'}]}),
            'carol@example.com',
        )
        self.assertIsNone(extract_email({'linked_accounts': []}))

    def test_canonical_json_is_sorted_and_compact(self):
        self.assertEqual(canonical_json({'b': 1, 'a': {'d': 2, 'c': 3}}), '{"a":{"c":3,"d":2},"b":1}')


class PrivyClientTests(SimpleTestCase):
    def setUp(self):
        self.verification_key = ec.generate_private_key(ec.SECP256R1())
        public_pem = self.verification_key.public_key().public_bytes(
            serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        self.app_key = ec.generate_private_key(ec.SECP256R1())
        app_key_der = self.app_key.private_bytes(
            serialization.Encoding.DER, serialization.PrivateFormat.PKCS8, serialization.NoEncryption(),
        )
        self.session = MagicMock()
        self.session.headers = {}
        self.privy = PrivyClient(
            app_id='app-123',
            app_secret='secret',
            api_url='https://auth.example.com/',
            verification_key=public_pem,
            authorization_key='wallet-auth:' + base64.b64encode(app_key_der).decode(),
            session=self.session,
            timeout=3,
        )

    def access_token(self, **overrides):
        claims = {'sub': 'did:privy:alice', 'iss': 'privy.io', 'aud': 'app-123', 'exp': int(time.time()) + 60}
        claims.update(overrides)
        return jwt.encode(claims, self.verification_key, algorithm='ES256')

    def test_verifies_access_token(self):
        self.assertEqual(self.privy.verify_access_token(self.access_token()), 'did:privy:alice')

    def test_rejects_token_for_another_app(self):
        with self.assertRaises(AuthMismatch):
            self.privy.verify_access_token(self.access_token(aud='other-app'))

    def test_rejects_expired_token(self):
        with self.assertRaises(AuthMismatch):
            self.privy.verify_access_token(self.access_token(exp=int(time.time()) - 600))

    def test_missing_token(self):
        with self.assertRaises(MissingCredential):
            self.privy.verify_access_token('')

    def test_sign_message_with_app_key(self):
        signature = bytes(range(64))
        self.session.request.return_value = response(payload={
            'data': {'signature': base64.b64encode(signature).decode()},
        })

        result = self.privy.sign_message('wallet-1', b'message-bytes')

        self.assertEqual(result, signature)
        method, url = self.session.request.call_args[0]
        kwargs = self.session.request.call_args[1]
        self.assertEqual((method, url), ('POST', 'https://auth.example.com/v1/wallets/wallet-1/rpc'))
        body = json.loads(kwargs['data'])
        self.assertEqual(body['params']['message'], base64.b64encode(b'message-bytes').decode())

        # The authorization signature covers the canonical request
        payload = {
            'version': 1,
            'method': 'POST',
            'url': url,
            'body': body,
            'headers': {'privy-app-id': 'app-123'},
        }
        self.app_key.public_key().verify(
            base64.b64decode(kwargs['headers']['privy-authorization-signature']),
            canonical_json(payload).encode(),
            ec.ECDSA(hashes.SHA256()),
        )

    def test_sign_message_with_user_signer(self):
        user_key = ec.generate_private_key(ec.SECP256R1())
        user_der = user_key.private_bytes(
            serialization.Encoding.DER, serialization.PrivateFormat.PKCS8, serialization.NoEncryption(),
        )
        self.session.request.return_value = response(payload={
            'data': {'signature': base64.b64encode(b'\x01' * 64).decode()},
        })

        self.privy.sign_message('wallet-1', b'm', user_signer=UserSigner(base64.b64encode(user_der).decode()))

        kwargs = self.session.request.call_args[1]
        body = json.loads(kwargs['data'])
        payload = {
            'version': 1,
            'method': 'POST',
            'url': 'https://auth.example.com/v1/wallets/wallet-1/rpc',
            'body': body,
            'headers': {'privy-app-id': 'app-123'},
        }
        user_key.public_key().verify(
            base64.b64decode(kwargs['headers']['privy-authorization-signature']),
            canonical_json(payload).encode(),
            ec.ECDSA(hashes.SHA256()),
        )

    def test_missing_signature_in_response(self):
        self.session.request.return_value = response(payload={'data': {}})
        with self.assertRaises(RelayError):
            self.privy.sign_message('wallet-1', b'm')

    def test_create_wallet_passes_idempotency_key(self):
        self.session.request.return_value = response(payload={'id': 'w-new', 'address': 'Sol999'})

        wallet = self.privy.create_wallet(owner_privy_id='did:privy:alice', idempotency_key='did:privy:alice:deposit')

        self.assertEqual((wallet.wallet_id, wallet.address), ('w-new', 'Sol999'))
        kwargs = self.session.request.call_args[1]
        self.assertEqual(kwargs['headers']['privy-idempotency-key'], 'did:privy:alice:deposit')
        self.assertEqual(json.loads(kwargs['data'])['owner'], {'user_id': 'did:privy:alice'})

    def test_authorize_user_signer(self):
        self.session.request.return_value = response(payload={'authorization_key': 'k', 'expires_at': 123})
        signer = self.privy.authorize_user_signer('user-jwt')
        self.assertEqual(signer, UserSigner(authorization_key='k', expires_at=123))

    def test_authorize_user_signer_without_key(self):
        self.session.request.return_value = response(payload={})
        with self.assertRaises(AuthMismatch):
            self.privy.authorize_user_signer('user-jwt')

    def test_error_statuses(self):
        self.session.request.return_value = response(status_code=401)
        with self.assertRaises(AuthMismatch):
            self.privy.get_user('did:privy:alice')

        self.session.request.return_value = response(status_code=503)
        with self.assertRaises(NetworkUnavailable):
            self.privy.get_user('did:privy:alice')

        self.session.request.return_value = response(status_code=422)
        with self.assertRaises(RelayError):
            self.privy.get_user('did:privy:alice')

    def test_unreachable(self):
        self.session.request.side_effect = requests.ConnectionError('down')
        with self.assertRaises(NetworkUnavailable):
            self.privy.get_user('did:privy:alice')
