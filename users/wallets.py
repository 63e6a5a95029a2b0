"""
Custodial wallet provisioning.

Each user holds at most one deposit and one savings wallet, both embedded
Solana wallets at the identity provider. The first embedded wallet is the
deposit wallet and the second is savings, matching the order the identity
provider lists them in.
"""
import logging
from typing import Optional

from django.db import IntegrityError, transaction

from blockchain.errors import MissingCredential
from blockchain.identity_provider import PrivyClient, extract_embedded_solana_wallets
from send.validators import normalize_email

from .models import Account, User

logger = logging.getLogger(__name__)

WALLET_SLOTS = {'deposit': 0, 'savings': 1}


def ensure_custodial_wallet(user: User, account_type: str = 'deposit', identity: Optional[PrivyClient] = None) -> Account:
    """Return the user's wallet of ``account_type``, creating it if missing. Idempotent."""
    if account_type not in WALLET_SLOTS:
        raise ValueError(f'Unknown account type: {account_type}')

    existing = user.get_account(account_type)
    if existing and existing.address:
        return existing
    if not user.privy_id:
        raise MissingCredential('User is not linked to an identity provider account')

    identity = identity or PrivyClient()
    slot = WALLET_SLOTS[account_type]

    wallets = [w for w in extract_embedded_solana_wallets(identity.get_user(user.privy_id)) if w.address]
    if len(wallets) > slot:
        wallet = wallets[slot]
    else:
        created = identity.create_wallet(
            owner_privy_id=user.privy_id,
            idempotency_key=f'{user.privy_id}:{account_type}',
        )
        refreshed = [w for w in extract_embedded_solana_wallets(identity.get_user(user.privy_id)) if w.address]
        wallet = refreshed[slot] if len(refreshed) > slot else created
        logger.info(f"[Wallets] Provisioned {account_type} wallet {wallet.address} for user {user.id}")

    try:
        with transaction.atomic():
            account, _ = Account.objects.update_or_create(
                user=user,
                account_type=account_type,
                defaults={'wallet_id': wallet.wallet_id or '', 'address': wallet.address, 'chain_type': 'solana'},
            )
    except IntegrityError:
        # A concurrent request stored it first
        account = Account.objects.get(user=user, account_type=account_type)
    return account


def resolve_deposit_owner(email: str) -> Optional[str]:
    """Deposit wallet owner of the registered user with ``email``, if any."""
    normalized = normalize_email(email)
    if not normalized:
        return None
    account = Account.objects.filter(
        user__email=normalized, account_type='deposit',
    ).exclude(address='').first()
    return account.address if account else None
