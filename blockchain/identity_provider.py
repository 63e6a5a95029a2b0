"""
Identity provider (Privy) adapter.

Covers the four things the relay needs from the custodial wallet service:
verifying a user's access token, reading a user's linked embedded Solana
wallets, creating wallets, and asking the service to sign a message with a
named wallet. App-owned wallets are authorized with the app's P-256
authorization key; user wallets are authorized with a short-lived user
signer key obtained per request from the user's access token.
"""
import base64
import json
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

import jwt
import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from django.conf import settings

from .errors import AuthMismatch, MissingCredential, NetworkUnavailable, RelayError

logger = logging.getLogger(__name__)

EMBEDDED_CLIENT_TYPES = ('embedded', 'privy')


@dataclass(frozen=True)
class LinkedWallet:
    wallet_id: Optional[str]
    address: Optional[str]
    chain_type: str = 'solana'


@dataclass(frozen=True)
class UserSigner:
    """Per-request signing authority for a user's wallets."""
    authorization_key: str
    expires_at: Optional[int] = None


def _first(entry: dict, *keys):
    for key in keys:
        value = entry.get(key)
        if value is not None:
            return value
    return None


def extract_embedded_solana_wallets(user: dict) -> List[LinkedWallet]:
    """All embedded Solana wallets linked to ``user``, in the order they appear."""
    accounts = (user or {}).get('linked_accounts') or (user or {}).get('linkedAccounts') or []
    wallets = []
    for entry in accounts:
        if not isinstance(entry, dict):
            continue
        kind = _first(entry, 'type', 'kind')
        chain = _first(entry, 'chain_type', 'chainType', 'chain')
        client = _first(
            entry, 'wallet_client_type', 'walletClientType', 'clientType',
            'connector_type', 'connectorType',
        )
        if kind != 'wallet' or chain != 'solana' or client not in EMBEDDED_CLIENT_TYPES:
            continue
        wallet_id = _first(entry, 'wallet_id', 'walletId', 'id')
        address = _first(entry, 'address', 'walletAddress')
        wallets.append(LinkedWallet(
            wallet_id=wallet_id if isinstance(wallet_id, str) else None,
            address=address if isinstance(address, str) else None,
        ))
    return wallets


def extract_email(user: dict) -> Optional[str]:
    user = user or {}
    email = user.get('email')
    if isinstance(email, dict) and isinstance(email.get('address'), str):
        return email['address'].strip().lower()
    for entry in user.get('linked_accounts') or user.get('linkedAccounts') or []:
        if isinstance(entry, dict) and entry.get('type') == 'email' and isinstance(entry.get('address'), str):
            return entry['address'].strip().lower()
    return None


def canonical_json(value) -> str:
    """RFC 8785 style canonical JSON: sorted keys, no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


class PrivyClient:
    """REST client for the Privy server API"""

    def __init__(self, app_id=None, app_secret=None, api_url=None,
                 verification_key=None, authorization_key=None, session=None, timeout=None):
        self.app_id = app_id if app_id is not None else settings.PRIVY_APP_ID
        self.app_secret = app_secret if app_secret is not None else settings.PRIVY_APP_SECRET
        self.api_url = (api_url or settings.PRIVY_API_URL).rstrip('/')
        self.verification_key = (
            verification_key if verification_key is not None else settings.PRIVY_VERIFICATION_KEY
        )
        self.authorization_key = (
            authorization_key if authorization_key is not None else settings.PRIVY_AUTHORIZATION_KEY
        )
        self.timeout = timeout or getattr(settings, 'PRIVY_REQUEST_TIMEOUT', 15)
        self.session = session or requests.Session()
        self.session.auth = (self.app_id, self.app_secret)
        self.session.headers.update({'privy-app-id': self.app_id, 'Content-Type': 'application/json'})

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def verify_access_token(self, access_token: str) -> str:
        """
        Verify a user access token and return its subject (``did:privy:...``).

        Raises:
            MissingCredential: no token supplied
            AuthMismatch: token is malformed, expired or not issued for this app
        """
        if not access_token:
            raise MissingCredential()
        try:
            claims = jwt.decode(
                access_token,
                self.verification_key,
                algorithms=['ES256'],
                issuer='privy.io',
                audience=self.app_id,
            )
        except jwt.InvalidTokenError as e:
            logger.info(f"[Privy] Access token rejected: {e}")
            raise AuthMismatch('Access token is invalid or expired')
        subject = claims.get('sub')
        if not subject:
            raise AuthMismatch('Access token has no subject')
        return subject

    # ------------------------------------------------------------------
    # Users and wallets
    # ------------------------------------------------------------------

    def get_user(self, privy_id: str) -> dict:
        return self._request('GET', f'/api/v1/users/{privy_id}')

    def create_wallet(self, owner_privy_id: Optional[str] = None, idempotency_key: Optional[str] = None) -> LinkedWallet:
        body = {'chain_type': 'solana'}
        if owner_privy_id:
            body['owner'] = {'user_id': owner_privy_id}
        headers = {'privy-idempotency-key': idempotency_key or str(uuid.uuid4())}
        data = self._request('POST', '/v1/wallets', body=body, headers=headers)
        logger.info(f"[Privy] Created Solana wallet {data.get('id')} for {owner_privy_id or 'app'}")
        return LinkedWallet(wallet_id=data.get('id'), address=data.get('address'))

    def authorize_user_signer(self, user_jwt: str) -> UserSigner:
        """Exchange a user's access token for a per-request signer key."""
        if not user_jwt:
            raise MissingCredential()
        data = self._request('POST', '/v1/wallets/authenticate', body={'user_jwt': user_jwt})
        key = data.get('authorization_key')
        if not key:
            raise AuthMismatch('Identity provider did not issue a user signer')
        return UserSigner(authorization_key=key, expires_at=data.get('expires_at'))

    def sign_message(self, wallet_id: str, message: bytes, user_signer: Optional[UserSigner] = None) -> bytes:
        """
        Sign raw message bytes with a custodial wallet.

        Args:
            wallet_id: identity-provider wallet id
            message: bytes to sign (a serialized transaction message)
            user_signer: signer for a user-owned wallet; app wallets use the app key

        Returns:
            64-byte ed25519 signature
        """
        path = f'/v1/wallets/{wallet_id}/rpc'
        body = {
            'method': 'signMessage',
            'params': {'message': base64.b64encode(message).decode(), 'encoding': 'base64'},
        }
        key = user_signer.authorization_key if user_signer else self.authorization_key
        headers = {}
        if key:
            headers['privy-authorization-signature'] = self.authorization_signature('POST', path, body, key)
        data = self._request('POST', path, body=body, headers=headers)
        signature = (data.get('data') or {}).get('signature')
        if not signature:
            raise RelayError('Identity provider returned no signature')
        return base64.b64decode(signature)

    def authorization_signature(self, method: str, path: str, body: dict, key: str) -> str:
        payload = {
            'version': 1,
            'method': method,
            'url': f'{self.api_url}{path}',
            'body': body,
            'headers': {'privy-app-id': self.app_id},
        }
        raw = key[len('wallet-auth:'):] if key.startswith('wallet-auth:') else key
        private_key = serialization.load_der_private_key(base64.b64decode(raw), password=None)
        signature = private_key.sign(canonical_json(payload).encode(), ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode()

    def _request(self, method: str, path: str, body=None, headers=None) -> dict:
        url = f'{self.api_url}{path}'
        try:
            response = self.session.request(
                method, url,
                data=canonical_json(body) if body is not None else None,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"[Privy] {method} {path} failed: {e}")
            raise NetworkUnavailable(f'Identity provider unreachable: {e}')

        if response.status_code in (401, 403):
            raise AuthMismatch(f'Identity provider refused {method} {path}')
        if response.status_code >= 500:
            raise NetworkUnavailable(f'Identity provider error {response.status_code}')
        if response.status_code >= 400:
            raise RelayError(f'Identity provider rejected {method} {path}: {response.text[:200]}')
        return response.json()


def get_identity_provider() -> PrivyClient:
    return PrivyClient()
