"""
Signers for the platform accounts (sponsor fee payer, escrow authority) and for
users' custodial wallets.

Every signer exposes ``pubkey`` and ``sign_message(message_bytes) -> Signature``.
Platform signers are checked against the configured address each time they are
used, so a rotated key or a misconfigured wallet id can never sign as the
sponsor or escrow.
"""
import logging
from typing import Optional

from django.conf import settings
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from .errors import InvalidFeePayer, RelayError
from .identity_provider import PrivyClient, UserSigner
from .solana_config import RelayConfig

logger = logging.getLogger(__name__)


class KeypairSigner:
    """Signs with a locally held ed25519 keypair."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @classmethod
    def from_base58(cls, secret: str) -> 'KeypairSigner':
        return cls(Keypair.from_base58_string(secret.strip()))

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    def sign_message(self, message: bytes) -> Signature:
        return self._keypair.sign_message(message)


class CustodialWalletSigner:
    """Signs through the identity provider with a named custodial wallet."""

    def __init__(self, identity: PrivyClient, wallet_id: str, address: str,
                 user_signer: Optional[UserSigner] = None):
        if not wallet_id:
            raise RelayError(f'No custodial wallet id for {address}')
        self.identity = identity
        self.wallet_id = wallet_id
        self._pubkey = Pubkey.from_string(address)
        self.user_signer = user_signer

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    def sign_message(self, message: bytes) -> Signature:
        raw = self.identity.sign_message(self.wallet_id, message, user_signer=self.user_signer)
        signature = Signature.from_bytes(raw)
        if not signature.verify(self._pubkey, message):
            logger.error(f"[Signer] Wallet {self.wallet_id} returned a signature that does not verify for {self._pubkey}")
            raise InvalidFeePayer(f'Custodial wallet {self.wallet_id} did not sign as {self._pubkey}')
        return signature


def ensure_signer_address(signer, expected: str, role: str):
    """Raise InvalidFeePayer unless ``signer`` signs as ``expected``."""
    if str(signer.pubkey) != expected:
        logger.error(f"[Signer] {role} signer {signer.pubkey} does not match configured {expected}")
        raise InvalidFeePayer(f'{role} signer does not match configured address')
    return signer


def _platform_signer(secret: str, wallet_id: str, address: str, identity: Optional[PrivyClient]):
    if secret:
        return KeypairSigner.from_base58(secret)
    return CustodialWalletSigner(identity or PrivyClient(), wallet_id, address)


def get_sponsor_signer(config: RelayConfig, identity: Optional[PrivyClient] = None):
    signer = _platform_signer(
        getattr(settings, 'SPONSOR_SECRET_KEY', ''), config.sponsor_wallet_id, config.sponsor_address, identity,
    )
    return ensure_signer_address(signer, config.sponsor_address, 'Sponsor')


def get_escrow_signer(config: RelayConfig, identity: Optional[PrivyClient] = None):
    secret = getattr(settings, 'ESCROW_SECRET_KEY', '')
    if config.escrow_owner == config.sponsor_address and not secret:
        secret = getattr(settings, 'SPONSOR_SECRET_KEY', '')
    signer = _platform_signer(secret, config.escrow_wallet_id, config.escrow_owner, identity)
    return ensure_signer_address(signer, config.escrow_owner, 'Escrow')


def get_user_wallet_signer(identity: PrivyClient, wallet_id: str, address: str, user_jwt: str):
    """Build a signer scoped to this request's user credential."""
    user_signer = identity.authorize_user_signer(user_jwt)
    return CustodialWalletSigner(identity, wallet_id, address, user_signer=user_signer)
