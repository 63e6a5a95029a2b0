from types import SimpleNamespace

from django.core.cache import cache
from django.test import SimpleTestCase
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from blockchain.errors import LedgerUnavailable
from blockchain.token_ledger import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    TokenLedgerAdapter,
    resolve_holding_account,
)

from .fakes import MINT, FakeSolanaClient


class HoldingAccountTests(SimpleTestCase):
    def test_matches_associated_token_derivation(self):
        owner = Keypair().pubkey()
        expected, _bump = Pubkey.find_program_address(
            [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(MINT)], ASSOCIATED_TOKEN_PROGRAM_ID,
        )
        self.assertEqual(resolve_holding_account(str(owner), str(MINT)), expected)

    def test_program_variant_changes_the_address(self):
        owner = Keypair().pubkey()
        self.assertNotEqual(
            resolve_holding_account(owner, MINT, TOKEN_PROGRAM_ID),
            resolve_holding_account(owner, MINT, TOKEN_2022_PROGRAM_ID),
        )


class TokenLedgerAdapterTests(SimpleTestCase):
    def setUp(self):
        cache.clear()
        self.rpc = FakeSolanaClient(decimals=6)
        self.ledger = TokenLedgerAdapter(self.rpc)

    def test_reads_balance(self):
        owner = Keypair().pubkey()
        self.rpc.set_balance(owner, 1_234_567)
        self.assertEqual(self.ledger.read_balance(owner, MINT), 1_234_567)

    def test_missing_holding_account_reads_zero(self):
        self.assertEqual(self.ledger.read_balance(Keypair().pubkey(), MINT), 0)

    def test_mint_decimals_are_cached(self):
        self.assertEqual(self.ledger.mint_decimals(MINT), 6)
        calls = self.rpc.account_info_calls
        self.assertEqual(self.ledger.mint_decimals(MINT), 6)
        self.assertEqual(self.rpc.account_info_calls, calls)

    def test_detects_token_2022_mint(self):
        client = FakeSolanaClient(token_program=TOKEN_2022_PROGRAM_ID)
        self.assertEqual(TokenLedgerAdapter(client).detect_program_variant(MINT), TOKEN_2022_PROGRAM_ID)

    def test_missing_mint_assumes_legacy_program_without_caching(self):
        client = FakeSolanaClient(mint=Keypair().pubkey())
        ledger = TokenLedgerAdapter(client)
        self.assertEqual(ledger.detect_program_variant(MINT), TOKEN_PROGRAM_ID)
        ledger.detect_program_variant(MINT)
        self.assertEqual(client.account_info_calls, 2)

    def test_checkpoint(self):
        checkpoint = self.ledger.latest_checkpoint()
        self.assertEqual(checkpoint.last_valid_block_height, self.rpc.block_height + 150)

    def test_rpc_failure_is_ledger_unavailable(self):
        self.rpc.unreachable = True
        with self.assertRaises(LedgerUnavailable) as ctx:
            self.ledger.read_balance(Keypair().pubkey(), MINT)
        self.assertTrue(ctx.exception.retryable)

    def test_short_account_data_reads_zero(self):
        owner = Keypair().pubkey()
        holding = resolve_holding_account(owner, MINT)
        self.rpc.get_account_info = lambda pubkey, *a, **kw: SimpleNamespace(
            value=SimpleNamespace(owner=TOKEN_PROGRAM_ID, data=b'\x00' * 10) if pubkey == holding else None
        )
        self.assertEqual(self.ledger.read_balance(owner, MINT, TOKEN_PROGRAM_ID), 0)

    def test_holding_owner(self):
        owner = Keypair().pubkey()
        self.rpc.set_balance(owner, 5)

        self.assertEqual(self.ledger.holding_owner(resolve_holding_account(owner, MINT)), str(owner))
        self.assertIsNone(self.ledger.holding_owner(resolve_holding_account(Keypair().pubkey(), MINT)))
