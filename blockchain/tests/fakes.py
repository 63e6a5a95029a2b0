"""In-memory stand-ins for the Solana RPC node and the identity provider."""
import dataclasses
import uuid
from types import SimpleNamespace

from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from blockchain.broadcaster import RelayBroadcaster
from blockchain.errors import AuthMismatch
from blockchain.identity_provider import LinkedWallet, UserSigner
from blockchain.solana_config import RelayConfig
from blockchain.token_ledger import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    MINT_DECIMALS_OFFSET,
    TOKEN_ACCOUNT_AMOUNT_OFFSET,
    TOKEN_ACCOUNT_OWNER_OFFSET,
    TOKEN_PROGRAM_ID,
    resolve_holding_account,
)
from blockchain.transfer_transaction_builder import decode_transfer_checked

SPONSOR = Keypair()
ESCROW = Keypair()
TREASURY = Keypair().pubkey()
MINT = Keypair().pubkey()
FEE_UNITS = 20_000

RELAY_SETTINGS = dict(
    SPONSOR_ADDRESS=str(SPONSOR.pubkey()),
    SPONSOR_SECRET_KEY=str(SPONSOR),
    SPONSOR_WALLET_ID='',
    ESCROW_OWNER_ADDRESS=str(ESCROW.pubkey()),
    ESCROW_SECRET_KEY=str(ESCROW),
    ESCROW_WALLET_ID='',
    TREASURY_OWNER_ADDRESS=str(TREASURY),
    USDC_MINT_ADDRESS=str(MINT),
    RELAY_FEE_UNITS=FEE_UNITS,
)


def make_config(**overrides) -> RelayConfig:
    config = RelayConfig(
        cluster='devnet',
        rpc_url='http://fake-node',
        rpc_timeout=1.0,
        confirmation_timeout=0.0,
        poll_interval=0.0,
        mint=str(MINT),
        decimals=6,
        fee_units=FEE_UNITS,
        treasury_owner=str(TREASURY),
        sponsor_address=str(SPONSOR.pubkey()),
        sponsor_wallet_id='',
        escrow_owner=str(ESCROW.pubkey()),
        escrow_wallet_id='',
        max_claims_per_tx=8,
        claim_ttl_days=7,
        lease_seconds=300,
    )
    return dataclasses.replace(config, **overrides)


def make_broadcaster(client) -> RelayBroadcaster:
    return RelayBroadcaster(client, confirmation_timeout=0, poll_interval=0, sleep=lambda seconds: None)


def _mint_data(decimals: int) -> bytes:
    data = bytearray(82)
    data[MINT_DECIMALS_OFFSET] = decimals
    return bytes(data)


def _token_account_data(amount: int, owner=None) -> bytes:
    data = bytearray(165)
    if owner is not None:
        data[TOKEN_ACCOUNT_OWNER_OFFSET:TOKEN_ACCOUNT_AMOUNT_OFFSET] = bytes(owner)
    data[TOKEN_ACCOUNT_AMOUNT_OFFSET:TOKEN_ACCOUNT_AMOUNT_OFFSET + 8] = amount.to_bytes(8, 'little')
    return bytes(data)


class FakeSolanaClient:
    """
    Minimal JSON-RPC node.

    Executes TransferChecked instructions against in-memory balances when a
    transaction is submitted, so tests can assert on where funds ended up.
    """

    def __init__(self, mint: Pubkey = MINT, decimals: int = 6, token_program: Pubkey = TOKEN_PROGRAM_ID):
        self.mint = mint
        self.decimals = decimals
        self.token_program = token_program
        self.holdings = {}
        self.owners = {}
        self.sent = []
        self.statuses = {}
        self.block_height = 1_000
        # 'confirm' lands every submission; 'pending' leaves them unconfirmed
        self.mode = 'confirm'
        self.reject_next = 0
        self.unreachable = False
        self.account_info_calls = 0

    # -- balances ---------------------------------------------------------

    def holding(self, owner) -> Pubkey:
        return resolve_holding_account(owner, self.mint, self.token_program)

    def set_balance(self, owner, units: int):
        self.holdings[self.holding(owner)] = units
        self.owners[self.holding(owner)] = Pubkey.from_string(str(owner))

    def balance(self, owner) -> int:
        return self.holdings.get(self.holding(owner), 0)

    # -- RPC surface ------------------------------------------------------

    def get_account_info(self, pubkey, *args, **kwargs):
        self.account_info_calls += 1
        if self.unreachable:
            raise OSError('connection refused')
        if pubkey == self.mint:
            return SimpleNamespace(value=SimpleNamespace(owner=self.token_program, data=_mint_data(self.decimals)))
        if pubkey in self.holdings:
            return SimpleNamespace(value=SimpleNamespace(
                owner=self.token_program, data=_token_account_data(self.holdings[pubkey], self.owners.get(pubkey)),
            ))
        return SimpleNamespace(value=None)

    def get_latest_blockhash(self, commitment=None):
        if self.unreachable:
            raise OSError('connection refused')
        return SimpleNamespace(value=SimpleNamespace(
            blockhash=Hash.new_unique(),
            last_valid_block_height=self.block_height + 150,
        ))

    def get_block_height(self, *args, **kwargs):
        return SimpleNamespace(value=self.block_height)

    def send_raw_transaction(self, raw, opts=None):
        if self.unreachable:
            raise OSError('connection refused')
        if self.reject_next:
            self.reject_next -= 1
            raise RPCException({'code': -32002, 'message': 'Transaction simulation failed'})
        tx = Transaction.from_bytes(raw)
        signature = tx.signatures[0]
        self.sent.append(tx)
        if self.mode == 'confirm' and str(signature) not in self.statuses:
            self.statuses[str(signature)] = self._execute(tx)
        return SimpleNamespace(value=signature)

    def get_signature_statuses(self, signatures, search_transaction_history=False):
        return SimpleNamespace(value=[self.statuses.get(str(sig)) for sig in signatures])

    # -- helpers ----------------------------------------------------------

    def confirm_pending(self):
        """Land every submitted transaction that has no status yet."""
        for tx in self.sent:
            if str(tx.signatures[0]) not in self.statuses:
                self.statuses[str(tx.signatures[0])] = self._execute(tx)

    def _execute(self, tx: Transaction):
        keys = list(tx.message.account_keys)
        moves = []
        created = {}
        for ix in tx.message.instructions:
            if keys[ix.program_id_index] == ASSOCIATED_TOKEN_PROGRAM_ID:
                accounts = [keys[i] for i in bytes(ix.accounts)]
                created[accounts[1]] = accounts[2]
                continue
            if keys[ix.program_id_index] != self.token_program:
                continue
            decoded = decode_transfer_checked(bytes(ix.data))
            if decoded is None:
                continue
            accounts = [keys[i] for i in bytes(ix.accounts)]
            moves.append((accounts[0], accounts[2], decoded[0]))

        # All or nothing, like the runtime
        pending = dict(self.holdings)
        for source, destination, amount in moves:
            if pending.get(source, 0) < amount:
                return SimpleNamespace(err='InsufficientFunds', confirmation_status=None, slot=1)
            pending[source] -= amount
            pending[destination] = pending.get(destination, 0) + amount
        self.holdings = pending
        for holding, owner in created.items():
            self.owners.setdefault(holding, owner)
        return SimpleNamespace(err=None, confirmation_status=TransactionConfirmationStatus.Confirmed, slot=1)


class FakeIdentityProvider:
    """Identity provider holding real ed25519 keys for its custodial wallets."""

    def __init__(self):
        self.tokens = {}
        self.users = {}
        self.keys = {}
        self.created = {}
        self.sign_requests = []

    def add_user(self, privy_id, email=None, wallets=0, token=None):
        self.users[privy_id] = {'id': privy_id, 'linked_accounts': []}
        if email:
            self.users[privy_id]['linked_accounts'].append({'type': 'email', 'address': email})
        for _ in range(wallets):
            self._new_wallet(privy_id)
        if token:
            self.tokens[token] = privy_id
        return self.users[privy_id]

    def wallets(self, privy_id):
        return [
            entry for entry in self.users[privy_id]['linked_accounts']
            if entry.get('type') == 'wallet'
        ]

    def _new_wallet(self, privy_id):
        keypair = Keypair()
        wallet_id = f'wallet-{uuid.uuid4().hex[:12]}'
        self.keys[wallet_id] = keypair
        self.users[privy_id]['linked_accounts'].append({
            'type': 'wallet',
            'chain_type': 'solana',
            'wallet_client_type': 'privy',
            'id': wallet_id,
            'address': str(keypair.pubkey()),
        })
        return LinkedWallet(wallet_id=wallet_id, address=str(keypair.pubkey()))

    # -- PrivyClient surface ---------------------------------------------

    def verify_access_token(self, access_token):
        if access_token not in self.tokens:
            raise AuthMismatch()
        return self.tokens[access_token]

    def get_user(self, privy_id):
        return self.users[privy_id]

    def create_wallet(self, owner_privy_id=None, idempotency_key=None):
        if idempotency_key in self.created:
            return self.created[idempotency_key]
        wallet = self._new_wallet(owner_privy_id)
        self.created[idempotency_key] = wallet
        return wallet

    def authorize_user_signer(self, user_jwt):
        if user_jwt not in self.tokens:
            raise AuthMismatch()
        return UserSigner(authorization_key=f'user-key:{self.tokens[user_jwt]}')

    def sign_message(self, wallet_id, message, user_signer=None):
        self.sign_requests.append((wallet_id, user_signer))
        return bytes(self.keys[wallet_id].sign_message(message))


def register_user(identity: FakeIdentityProvider, username: str, email: str = None):
    """Create a user whose deposit wallet lives at ``identity``; their access token is ``tok-<username>``."""
    from users.models import User
    from users.wallets import ensure_custodial_wallet

    privy_id = f'did:privy:{username}'
    identity.add_user(privy_id, email=email, wallets=1, token=f'tok-{username}')
    user = User.objects.create(username=username, email=email, privy_id=privy_id)
    ensure_custodial_wallet(user, 'deposit', identity=identity)
    return user


def wallet_keypair(identity: FakeIdentityProvider, user, account_type: str = 'deposit') -> Keypair:
    return identity.keys[user.get_account(account_type).wallet_id]
