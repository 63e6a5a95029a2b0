"""
Sponsored transfer authorization.

Every transaction the relay broadcasts carries two independent signatures:
the source owner's (client-held or custodial) and the platform sponsor's as
fee payer. Escrow sweeps carry the escrow authority's signature, which pays
its own fee.

Two flows:

1. Client-assisted: the server builds an unsigned sponsored transfer, the
   client signs the message bytes in its slot, and the server inspects and
   co-signs the returned transaction.
2. Server-built intent: the server resolves the caller's custodial wallet,
   obtains the owner signature from the identity provider with a per-request
   user signer, then adds the sponsor signature.

Both end with assert_fully_signed; nothing partially signed is ever broadcast.
"""
import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from send.validators import TransferIntent, validate_transfer_intent

from .custodial_signers import get_escrow_signer, get_sponsor_signer, get_user_wallet_signer
from .errors import (
    AuthMismatch,
    IncompleteAuthorization,
    InsufficientFunds,
    InvalidAmount,
    InvalidFeePayer,
    InvalidTransaction,
    MissingCredential,
    UnrecognizedSource,
)
from .identity_provider import PrivyClient
from .solana_config import RelayConfig
from .token_ledger import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    TokenLedgerAdapter,
    resolve_holding_account,
)
from .transfer_transaction_builder import (
    CREATE_IDEMPOTENT_DISCRIMINATOR,
    TransferBuildResult,
    TransferTransactionBuilder,
    decode_transfer_checked,
)

logger = logging.getLogger(__name__)


@dataclass
class CosignedTransfer:
    """A client transaction that passed inspection and carries the sponsor signature."""
    transaction: Transaction
    from_owner: str
    to_owner: str
    amount_units: int
    fee_units: int


def user_wallets(user) -> Dict[str, object]:
    """Map owner address -> Account for the caller's deposit and savings wallets."""
    return {
        account.address: account
        for account in user.accounts.filter(account_type__in=('deposit', 'savings'))
        if account.address
    }


def required_signers(tx: Transaction) -> List[Pubkey]:
    count = tx.message.header.num_required_signatures
    return list(tx.message.account_keys[:count])


def apply_signature(tx: Transaction, pubkey: Pubkey, signature: Signature) -> Transaction:
    """Return ``tx`` with ``signature`` placed in ``pubkey``'s slot."""
    signers = required_signers(tx)
    if pubkey not in signers:
        raise IncompleteAuthorization(f'{pubkey} is not a required signer of this transaction')
    signatures = list(tx.signatures)
    signatures[signers.index(pubkey)] = signature
    return Transaction.populate(tx.message, signatures)


def assert_fully_signed(tx: Transaction) -> Transaction:
    """Raise IncompleteAuthorization unless every required slot holds a valid signature."""
    message = bytes(tx.message)
    empty = Signature.default()
    for pubkey, signature in zip(required_signers(tx), tx.signatures):
        if signature == empty:
            raise IncompleteAuthorization(f'Missing signature for {pubkey}')
        if not signature.verify(pubkey, message):
            raise IncompleteAuthorization(f'Invalid signature for {pubkey}')
    return tx


class SponsorAuthorizationService:
    def __init__(self, config: RelayConfig, ledger: TokenLedgerAdapter,
                 identity: Optional[PrivyClient] = None, builder: Optional[TransferTransactionBuilder] = None):
        self.config = config
        self.ledger = ledger
        self.identity = identity or PrivyClient()
        self.builder = builder or TransferTransactionBuilder(ledger, config)
        self.sponsor = Pubkey.from_string(config.sponsor_address)
        self.escrow = Pubkey.from_string(config.escrow_owner)
        self.mint = Pubkey.from_string(config.mint)
        self.treasury = Pubkey.from_string(config.treasury_owner)

    def sign_as_sponsor(self, tx: Transaction) -> Transaction:
        # Resolved per use so a misconfigured sponsor can never sign
        signer = get_sponsor_signer(self.config, self.identity)
        return apply_signature(tx, signer.pubkey, signer.sign_message(bytes(tx.message)))

    def sign_as_escrow(self, tx: Transaction) -> Transaction:
        signer = get_escrow_signer(self.config, self.identity)
        signed = apply_signature(tx, signer.pubkey, signer.sign_message(bytes(tx.message)))
        return assert_fully_signed(signed)

    def resolve_source_account(self, user, from_owner: str):
        account = user_wallets(user).get(from_owner)
        if account is None:
            raise UnrecognizedSource(f'Source wallet {from_owner} is not one of your accounts')
        return account

    # ------------------------------------------------------------------
    # Client-assisted flow
    # ------------------------------------------------------------------

    def prepare_client_transfer(self, user, from_owner: str, to_owner: str, total_units: int) -> TransferBuildResult:
        """Build the unsigned sponsored transfer for the caller to sign."""
        intent = validate_transfer_intent(from_owner, to_owner, total_units, self.config.fee_units, self.config.mint)
        self.resolve_source_account(user, intent.from_owner)
        build = self.builder.build_peer_transfer(intent)
        logger.info(f"[Sponsor] Prepared client transfer for user {user.id}: {build.amount_units} + fee {build.fee_units}")
        return build

    def cosign_client_transaction(self, user, transaction_b64: str) -> CosignedTransfer:
        """
        Inspect a client-signed transaction and add the sponsor signature.

        Only holding-account creation and TransferChecked of the configured mint
        are accepted; every transfer must be authorized by one of the caller's
        wallets and exactly one leg must pay the processing fee to treasury.
        """
        try:
            tx = Transaction.from_bytes(base64.b64decode(transaction_b64, validate=True))
        except (binascii.Error, ValueError) as e:
            raise InvalidTransaction(f'Transaction could not be decoded: {e}')

        keys = list(tx.message.account_keys)
        if not keys or keys[0] != self.sponsor:
            raise InvalidFeePayer('Invalid fee payer in transaction')

        wallets = user_wallets(user)
        treasury_holdings = {
            resolve_holding_account(self.treasury, self.mint, program)
            for program in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)
        }

        fee_legs = 0
        net_units = 0
        from_owner = None
        destinations = []
        # holding account -> owner, from the holding-account creations in this transaction
        holding_owners = {}
        for ix in tx.message.instructions:
            program = keys[ix.program_id_index]
            accounts = [keys[i] for i in bytes(ix.accounts)]
            data = bytes(ix.data)

            if program == ASSOCIATED_TOKEN_PROGRAM_ID:
                if data != bytes([CREATE_IDEMPOTENT_DISCRIMINATOR]) or len(accounts) < 6:
                    raise InvalidTransaction('Only idempotent holding-account creation is allowed')
                if accounts[3] != self.mint:
                    raise InvalidTransaction('Holding account is not for the supported mint')
                holding, owner, token_program = accounts[1], accounts[2], accounts[5]
                if resolve_holding_account(owner, self.mint, token_program) == holding:
                    holding_owners[holding] = str(owner)
                continue

            if program not in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
                raise InvalidTransaction(f'Instruction for program {program} is not allowed')

            decoded = decode_transfer_checked(data)
            if decoded is None or len(accounts) < 4:
                raise InvalidTransaction('Only TransferChecked token instructions are allowed')
            amount, _decimals = decoded
            _source, mint, destination, authority = accounts[:4]
            if mint != self.mint:
                raise InvalidTransaction('Transfer is not for the supported mint')
            if authority in (self.sponsor, self.escrow):
                raise UnrecognizedSource('Platform accounts cannot authorize client transfers')
            if str(authority) not in wallets:
                raise UnrecognizedSource(f'Source wallet {authority} is not one of your accounts')
            if from_owner is not None and str(authority) != from_owner:
                raise UnrecognizedSource('All transfers must come from the same source wallet')
            from_owner = str(authority)

            if destination in treasury_holdings and amount == self.config.fee_units:
                fee_legs += 1
            else:
                net_units += amount
                destinations.append(destination)

        if fee_legs != 1:
            raise InvalidAmount('Transaction must pay exactly one processing fee to treasury')
        if net_units <= 0 or from_owner is None:
            raise InvalidAmount('Transaction moves no funds')

        to_owners = []
        for destination in destinations:
            owner = holding_owners.get(destination) or self.ledger.holding_owner(destination)
            if owner is None:
                raise InvalidTransaction(f'Destination {destination} is not a token holding account')
            to_owners.append(owner)

        message = bytes(tx.message)
        empty = Signature.default()
        for pubkey, signature in zip(required_signers(tx), tx.signatures):
            if pubkey == self.sponsor:
                continue
            if signature == empty or not signature.verify(pubkey, message):
                raise IncompleteAuthorization(f'Missing or invalid signature for {pubkey}')

        signed = assert_fully_signed(self.sign_as_sponsor(tx))
        logger.info(f"[Sponsor] Co-signed client transfer from {from_owner}: {net_units} + fee {self.config.fee_units}")
        return CosignedTransfer(
            transaction=signed,
            from_owner=from_owner,
            to_owner=','.join(to_owners),
            amount_units=net_units,
            fee_units=self.config.fee_units,
        )

    # ------------------------------------------------------------------
    # Server-built intent flow
    # ------------------------------------------------------------------

    def authorize_server_intent(self, user, intent: TransferIntent, access_token: Optional[str]):
        """
        Build and fully sign a custodial transfer for ``intent``.

        Returns:
            (signed Transaction, TransferBuildResult)
        """
        account = self.resolve_source_account(user, intent.from_owner)
        if not access_token:
            raise MissingCredential('Missing identity access token (Authorization header or privy-token cookie)')
        subject = self.identity.verify_access_token(access_token)
        if not user.privy_id or subject != user.privy_id:
            logger.warning(f"[Sponsor] Access token subject does not match user {user.id}")
            raise AuthMismatch()

        balance = self.ledger.read_balance(intent.from_owner, self.mint)
        if balance < intent.total_units:
            raise InsufficientFunds(
                f'Insufficient USDC. Have {balance} units, need {intent.total_units} units'
            )

        build = self.builder.build_peer_transfer(intent)
        owner_signer = get_user_wallet_signer(self.identity, account.wallet_id, account.address, access_token)
        tx = apply_signature(
            build.transaction, owner_signer.pubkey, owner_signer.sign_message(build.message_bytes)
        )
        tx = assert_fully_signed(self.sign_as_sponsor(tx))
        return tx, build
