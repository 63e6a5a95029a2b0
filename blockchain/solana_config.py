"""
Centralized Solana relay configuration.
Retrieves all settings from Django settings.py which reads from environment variables.
"""
from dataclasses import dataclass

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed


@dataclass(frozen=True)
class RelayConfig:
    """Immutable snapshot of relay settings, built once per request."""
    cluster: str
    rpc_url: str
    rpc_timeout: float
    confirmation_timeout: float
    poll_interval: float
    mint: str
    decimals: int
    fee_units: int
    treasury_owner: str
    sponsor_address: str
    sponsor_wallet_id: str
    escrow_owner: str
    escrow_wallet_id: str
    max_claims_per_tx: int
    claim_ttl_days: int
    lease_seconds: int


def get_relay_config() -> RelayConfig:
    """Build a RelayConfig from Django settings"""
    sponsor = getattr(settings, 'SPONSOR_ADDRESS', '')
    treasury = getattr(settings, 'TREASURY_OWNER_ADDRESS', '')
    if not sponsor:
        raise ImproperlyConfigured('SPONSOR_ADDRESS is not configured')
    if not treasury:
        raise ImproperlyConfigured('TREASURY_OWNER_ADDRESS is not configured')

    max_per_tx = int(getattr(settings, 'EMAIL_CLAIM_MAX_PER_TX', 8))
    if max_per_tx < 1:
        raise ImproperlyConfigured('EMAIL_CLAIM_MAX_PER_TX must be at least 1')

    escrow = getattr(settings, 'ESCROW_OWNER_ADDRESS', '') or sponsor
    escrow_wallet_id = getattr(settings, 'ESCROW_WALLET_ID', '')
    if not escrow_wallet_id and escrow == sponsor:
        escrow_wallet_id = getattr(settings, 'SPONSOR_WALLET_ID', '')

    return RelayConfig(
        cluster=getattr(settings, 'SOLANA_CLUSTER', 'devnet'),
        rpc_url=settings.SOLANA_RPC_URL,
        rpc_timeout=float(getattr(settings, 'SOLANA_RPC_TIMEOUT', 10)),
        confirmation_timeout=float(getattr(settings, 'SOLANA_CONFIRMATION_TIMEOUT', 60)),
        poll_interval=float(getattr(settings, 'SOLANA_CONFIRMATION_POLL_INTERVAL', 1.0)),
        mint=settings.USDC_MINT_ADDRESS,
        decimals=int(getattr(settings, 'USDC_DECIMALS', 6)),
        fee_units=int(getattr(settings, 'RELAY_FEE_UNITS', 20_000)),
        treasury_owner=treasury,
        sponsor_address=sponsor,
        sponsor_wallet_id=getattr(settings, 'SPONSOR_WALLET_ID', ''),
        escrow_owner=escrow,
        escrow_wallet_id=escrow_wallet_id,
        max_claims_per_tx=max_per_tx,
        claim_ttl_days=int(getattr(settings, 'EMAIL_CLAIM_TTL_DAYS', 7)),
        lease_seconds=int(getattr(settings, 'EMAIL_CLAIM_LEASE_SECONDS', 300)),
    )


def get_rpc_client(config: RelayConfig = None) -> Client:
    """Get a Solana JSON-RPC client using Django settings"""
    config = config or get_relay_config()
    return Client(config.rpc_url, commitment=Confirmed, timeout=config.rpc_timeout)
