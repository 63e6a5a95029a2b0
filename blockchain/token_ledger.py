"""
Token ledger adapter.

Thin layer over the Solana JSON-RPC client for everything the relay needs to
know about SPL token state: holding-account derivation, which token program a
mint lives under, balances and the recent-blockhash checkpoint that stamps a
transaction's validity window.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from django.core.cache import cache
from solana.exceptions import SolanaRpcException
from solana.rpc.commitment import Finalized
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.pubkey import Pubkey

from .errors import LedgerUnavailable

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = Pubkey.from_string('TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA')
TOKEN_2022_PROGRAM_ID = Pubkey.from_string('TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb')
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string('ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNr42d1bL')
SYSTEM_PROGRAM_ID = Pubkey.from_string('11111111111111111111111111111111')

# SPL layouts: token account owner is at 32..64 and amount a u64 at 64..72, mint decimals is a u8 at 44
TOKEN_ACCOUNT_OWNER_OFFSET = 32
TOKEN_ACCOUNT_AMOUNT_OFFSET = 64
MINT_DECIMALS_OFFSET = 44

MINT_CACHE_TIMEOUT = 60 * 60  # mint metadata is effectively immutable

RPC_ERRORS = (SolanaRpcException, RPCException, httpx.HTTPError, OSError)


@dataclass(frozen=True)
class Checkpoint:
    """Recent finalized blockhash and the last block height it stays valid for."""
    blockhash: Hash
    last_valid_block_height: int


def _as_pubkey(value) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(str(value))


def resolve_holding_account(owner, mint, token_program=TOKEN_PROGRAM_ID) -> Pubkey:
    """Derive the associated token account of ``owner`` for ``mint``. No I/O."""
    address, _bump = Pubkey.find_program_address(
        [bytes(_as_pubkey(owner)), bytes(_as_pubkey(token_program)), bytes(_as_pubkey(mint))],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


class TokenLedgerAdapter:
    def __init__(self, client, default_decimals: int = 6):
        self.client = client
        self.default_decimals = default_decimals

    def _call(self, method: str, *args, **kwargs):
        try:
            return getattr(self.client, method)(*args, **kwargs)
        except RPC_ERRORS as e:
            logger.warning(f"[TokenLedger] {method} failed: {e}")
            raise LedgerUnavailable(f'Ledger RPC {method} failed: {e}')

    def resolve_holding_account(self, owner, mint, token_program=TOKEN_PROGRAM_ID) -> Pubkey:
        return resolve_holding_account(owner, mint, token_program)

    def detect_program_variant(self, mint) -> Pubkey:
        """
        Return the token program that owns ``mint``.

        Token-2022 only when the mint account is owned by it; a missing mint or
        any other owner falls back to the legacy token program.
        """
        mint = _as_pubkey(mint)
        cache_key = f'solana:mint_program:{mint}'
        cached = cache.get(cache_key)
        if cached:
            return Pubkey.from_string(cached)

        info = self._call('get_account_info', mint)
        account = info.value
        program = TOKEN_PROGRAM_ID
        if account is not None and account.owner == TOKEN_2022_PROGRAM_ID:
            program = TOKEN_2022_PROGRAM_ID
        elif account is None:
            logger.warning(f"[TokenLedger] Mint {mint} not found, assuming legacy token program")
            # Don't cache a guess for a mint that may not exist yet
            return program

        cache.set(cache_key, str(program), MINT_CACHE_TIMEOUT)
        return program

    def mint_decimals(self, mint) -> int:
        mint = _as_pubkey(mint)
        cache_key = f'solana:mint_decimals:{mint}'
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        info = self._call('get_account_info', mint)
        account = info.value
        if account is None or len(bytes(account.data)) <= MINT_DECIMALS_OFFSET:
            return self.default_decimals

        decimals = bytes(account.data)[MINT_DECIMALS_OFFSET]
        cache.set(cache_key, decimals, MINT_CACHE_TIMEOUT)
        return decimals

    def read_balance(self, owner, mint, token_program=None) -> int:
        """Token balance of ``owner`` in minor units; 0 when it has no holding account."""
        token_program = token_program or self.detect_program_variant(mint)
        holding = resolve_holding_account(owner, mint, token_program)
        info = self._call('get_account_info', holding)
        account = info.value
        if account is None:
            return 0
        data = bytes(account.data)
        if len(data) < TOKEN_ACCOUNT_AMOUNT_OFFSET + 8:
            return 0
        return int.from_bytes(data[TOKEN_ACCOUNT_AMOUNT_OFFSET:TOKEN_ACCOUNT_AMOUNT_OFFSET + 8], 'little')

    def holding_owner(self, holding) -> Optional[str]:
        """Owner of an existing token holding account, or None when there is no such account."""
        info = self._call('get_account_info', _as_pubkey(holding))
        account = info.value
        if account is None:
            return None
        data = bytes(account.data)
        if len(data) < TOKEN_ACCOUNT_AMOUNT_OFFSET:
            return None
        return str(Pubkey.from_bytes(data[TOKEN_ACCOUNT_OWNER_OFFSET:TOKEN_ACCOUNT_AMOUNT_OFFSET]))

    def latest_checkpoint(self) -> Checkpoint:
        resp = self._call('get_latest_blockhash', Finalized)
        return Checkpoint(
            blockhash=resp.value.blockhash,
            last_valid_block_height=resp.value.last_valid_block_height,
        )
