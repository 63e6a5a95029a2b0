"""
Transfer Transaction Builder

Builds the unsigned, sponsored token-movement transactions the relay signs and
broadcasts:

- peer transfers: one source owner pays ``net`` to the destination and the
  fixed processing fee to the treasury, with the sponsor as fee payer;
- escrow sweeps: batches of pending email claims paid out of the escrow
  holding account, with escrow as both transfer authority and fee payer.

Holding accounts are always ensured with the idempotent create instruction, so
a transaction stays valid whether or not the destination account exists yet.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from send.validators import TransferIntent, validate_amount_units

from .solana_config import RelayConfig
from .token_ledger import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    Checkpoint,
    TokenLedgerAdapter,
    resolve_holding_account,
)

logger = logging.getLogger(__name__)

# Associated token account program: instruction 1 = CreateIdempotent
CREATE_IDEMPOTENT_DISCRIMINATOR = 1
# SPL token program: instruction 12 = TransferChecked
TRANSFER_CHECKED_DISCRIMINATOR = 12


@dataclass(frozen=True)
class FeeSplit:
    total_units: int
    fee_units: int
    net_units: int


def split_fee(total_units: int, fee_units: int) -> FeeSplit:
    """Split a gross amount into net and fee; total must exceed the fee."""
    validate_amount_units(total_units, fee_units)
    return FeeSplit(total_units=total_units, fee_units=fee_units, net_units=total_units - fee_units)


def create_holding_account_idempotent(payer: Pubkey, owner: Pubkey, mint: Pubkey,
                                      token_program: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    holding = resolve_holding_account(owner, mint, token_program)
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([CREATE_IDEMPOTENT_DISCRIMINATOR]),
        [
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(holding, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(token_program, is_signer=False, is_writable=False),
        ],
    )


def transfer_checked(source: Pubkey, mint: Pubkey, destination: Pubkey, authority: Pubkey,
                     amount: int, decimals: int, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    data = bytes([TRANSFER_CHECKED_DISCRIMINATOR]) + amount.to_bytes(8, 'little') + bytes([decimals])
    return Instruction(
        token_program,
        data,
        [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(destination, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )


def decode_transfer_checked(data: bytes) -> Optional[tuple]:
    """Return (amount, decimals) for TransferChecked data, else None."""
    if len(data) != 10 or data[0] != TRANSFER_CHECKED_DISCRIMINATOR:
        return None
    return int.from_bytes(data[1:9], 'little'), data[9]


def encode_transaction(tx: Transaction) -> str:
    return base64.b64encode(bytes(tx)).decode()


def decode_transaction(encoded: str) -> Transaction:
    return Transaction.from_bytes(base64.b64decode(encoded))


@dataclass
class TransferBuildResult:
    """Unsigned transaction plus everything needed to sign and record it."""
    transaction: Transaction
    checkpoint: Checkpoint
    fee_payer: Pubkey
    amount_units: int
    fee_units: int = 0
    claim_ids: List[int] = field(default_factory=list)

    @property
    def message_bytes(self) -> bytes:
        return bytes(self.transaction.message)

    @property
    def message_b64(self) -> str:
        return base64.b64encode(self.message_bytes).decode()

    @property
    def transaction_b64(self) -> str:
        return encode_transaction(self.transaction)


@dataclass(frozen=True)
class SweepLeg:
    claim_id: int
    destination_owner: str
    amount_units: int


class TransferTransactionBuilder:
    """Builds sponsored peer transfers and escrow sweep batches."""

    def __init__(self, ledger: TokenLedgerAdapter, config: RelayConfig):
        self.ledger = ledger
        self.config = config
        self.mint = Pubkey.from_string(config.mint)
        self.sponsor = Pubkey.from_string(config.sponsor_address)
        self.treasury = Pubkey.from_string(config.treasury_owner)
        self.escrow = Pubkey.from_string(config.escrow_owner)

    def _token_context(self):
        token_program = self.ledger.detect_program_variant(self.mint)
        decimals = self.ledger.mint_decimals(self.mint)
        return token_program, decimals

    @staticmethod
    def _compile(instructions: List[Instruction], payer: Pubkey, blockhash: Hash) -> Transaction:
        message = Message.new_with_blockhash(instructions, payer, blockhash)
        return Transaction.new_unsigned(message)

    def build_peer_transfer(self, intent: TransferIntent) -> TransferBuildResult:
        """
        Build the unsigned peer transfer for ``intent``.

        The destination receives ``total - fee`` and the treasury receives the
        fee; both transfers are authorized by the source owner.
        """
        split = split_fee(intent.total_units, self.config.fee_units)
        source_owner = Pubkey.from_string(intent.from_owner)
        destination_owner = Pubkey.from_string(intent.to_owner)
        token_program, decimals = self._token_context()

        source = resolve_holding_account(source_owner, self.mint, token_program)
        destination = resolve_holding_account(destination_owner, self.mint, token_program)
        treasury = resolve_holding_account(self.treasury, self.mint, token_program)

        instructions = [
            create_holding_account_idempotent(self.sponsor, destination_owner, self.mint, token_program),
        ]
        if treasury != destination:
            instructions.append(
                create_holding_account_idempotent(self.sponsor, self.treasury, self.mint, token_program)
            )
        instructions.append(
            transfer_checked(source, self.mint, destination, source_owner, split.net_units, decimals, token_program)
        )
        instructions.append(
            transfer_checked(source, self.mint, treasury, source_owner, split.fee_units, decimals, token_program)
        )

        checkpoint = self.ledger.latest_checkpoint()
        tx = self._compile(instructions, self.sponsor, checkpoint.blockhash)
        logger.info(
            f"[TransferBuilder] Built peer transfer {intent.from_owner} -> {intent.to_owner}: "
            f"net={split.net_units} fee={split.fee_units}"
        )
        return TransferBuildResult(
            transaction=tx,
            checkpoint=checkpoint,
            fee_payer=self.sponsor,
            amount_units=split.net_units,
            fee_units=split.fee_units,
        )

    def plan_sweep_batches(self, claims: Iterable) -> List[List[SweepLeg]]:
        """
        Group claims into sweep batches.

        ``claims`` yields (claim_id, destination_owner, amount_units, created_at)
        tuples. Oldest first, at most ``max_claims_per_tx`` per batch;
        non-positive amounts are dropped and empty batches skipped.
        """
        ordered = sorted(claims, key=lambda c: (c[3], c[0]))
        size = self.config.max_claims_per_tx
        batches = []
        for start in range(0, len(ordered), size):
            legs = [
                SweepLeg(claim_id=claim_id, destination_owner=destination, amount_units=amount)
                for claim_id, destination, amount, _created in ordered[start:start + size]
                if amount > 0
            ]
            if legs:
                batches.append(legs)
        return batches

    def build_escrow_sweep(self, legs: List[SweepLeg]) -> TransferBuildResult:
        """Build one sweep batch paid and authorized by escrow, with a fresh checkpoint."""
        if not legs:
            raise ValueError('Sweep batch has no transfers')
        token_program, decimals = self._token_context()
        source = resolve_holding_account(self.escrow, self.mint, token_program)

        instructions = []
        ensured = set()
        for leg in legs:
            if leg.destination_owner in ensured:
                continue
            ensured.add(leg.destination_owner)
            instructions.append(create_holding_account_idempotent(
                self.escrow, Pubkey.from_string(leg.destination_owner), self.mint, token_program
            ))
        for leg in legs:
            destination = resolve_holding_account(leg.destination_owner, self.mint, token_program)
            instructions.append(transfer_checked(
                source, self.mint, destination, self.escrow, leg.amount_units, decimals, token_program
            ))

        checkpoint = self.ledger.latest_checkpoint()
        tx = self._compile(instructions, self.escrow, checkpoint.blockhash)
        total = sum(leg.amount_units for leg in legs)
        logger.info(f"[TransferBuilder] Built escrow sweep of {len(legs)} claim(s), total={total}")
        return TransferBuildResult(
            transaction=tx,
            checkpoint=checkpoint,
            fee_payer=self.escrow,
            amount_units=total,
            claim_ids=[leg.claim_id for leg in legs],
        )
