"""
Relay orchestration.

Records every signed transaction before it is broadcast, drives the
broadcaster, and reconciles anything whose outcome was not known at the time
(confirmation timeouts, transport failures after signing, crashes).
"""
import base64
from datetime import timedelta
import logging
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone
from solders.transaction import Transaction

from send.validators import validate_idempotency_key, validate_transfer_intent

from .broadcaster import (
    STATUS_CONFIRMED,
    STATUS_EXPIRED,
    STATUS_FAILED,
    RelayBroadcaster,
)
from .errors import (
    ConfirmationTimeout,
    IdempotencyConflict,
    NetworkUnavailable,
    RelayError,
    TransferInProgress,
)
from .identity_provider import PrivyClient
from .models import RelayTransaction
from .solana_config import RelayConfig, get_relay_config, get_rpc_client
from .sponsor_service import SponsorAuthorizationService
from .token_ledger import TokenLedgerAdapter

logger = logging.getLogger(__name__)

# Kinds whose confirmation or failure must be applied to the claim ledger
CLAIM_LEDGER_KINDS = ('escrow_deposit', 'claim_sweep', 'cancel_sweep')
RELAY_IDEMPOTENCY_KEY_MAX_LENGTH = RelayTransaction._meta.get_field('idempotency_key').max_length


class RelayService:
    def __init__(self, config: Optional[RelayConfig] = None, client=None, ledger=None, identity=None,
                 broadcaster=None, authorization=None):
        self.config = config or get_relay_config()
        self.client = client if client is not None else get_rpc_client(self.config)
        self.ledger = ledger or TokenLedgerAdapter(self.client, self.config.decimals)
        self.identity = identity or PrivyClient()
        self.broadcaster = broadcaster or RelayBroadcaster(
            self.client,
            confirmation_timeout=self.config.confirmation_timeout,
            poll_interval=self.config.poll_interval,
        )
        self.authorization = authorization or SponsorAuthorizationService(self.config, self.ledger, self.identity)
        self.builder = self.authorization.builder

    # ------------------------------------------------------------------
    # Recording and dispatch
    # ------------------------------------------------------------------

    def record(self, kind: str, tx: Transaction, *, user=None, from_owner='', to_owner='', amount_units=0,
               fee_units=0, last_valid_block_height=None, idempotency_key=None, metadata=None) -> RelayTransaction:
        return RelayTransaction.objects.create(
            kind=kind,
            status='submitted',
            signature=str(tx.signatures[0]),
            raw_transaction=base64.b64encode(bytes(tx)).decode(),
            last_valid_block_height=last_valid_block_height,
            user=user,
            from_owner=from_owner,
            to_owner=to_owner,
            amount_units=amount_units,
            fee_units=fee_units,
            idempotency_key=idempotency_key,
            metadata=metadata or {},
        )

    def dispatch(self, relay_tx: RelayTransaction, tx: Transaction) -> RelayTransaction:
        """
        Broadcast a recorded transaction and store its outcome.

        Re-raises the broadcaster's error after recording it; a timeout or a
        transport failure leaves the record indeterminate for reconciliation.
        """
        try:
            self.broadcaster.broadcast(tx, relay_tx.last_valid_block_height)
        except (ConfirmationTimeout, NetworkUnavailable) as e:
            e.signature = relay_tx.signature
            self._mark(relay_tx, 'indeterminate', error=e)
            raise
        except RelayError as e:
            self._mark(relay_tx, 'failed', error=e)
            raise
        self._mark(relay_tx, 'confirmed')
        return relay_tx

    def _mark(self, relay_tx: RelayTransaction, status: str, error: Optional[RelayError] = None):
        relay_tx.status = status
        fields = ['status', 'updated_at']
        if status == 'confirmed':
            relay_tx.confirmed_at = timezone.now()
            fields.append('confirmed_at')
        if error is not None:
            relay_tx.error_message = error.message
            relay_tx.error_payload = {'code': error.code, 'payload': error.payload}
            fields += ['error_message', 'error_payload']
        try:
            relay_tx.save(update_fields=fields)
        except Exception:
            logger.critical(
                f"[Relay] Could not record status {status} for {relay_tx.signature}; reconcile manually",
                exc_info=True,
            )
            raise
        logger.info(f"[Relay] {relay_tx.kind} {relay_tx.signature} -> {status}")

    # ------------------------------------------------------------------
    # Peer transfers
    # ------------------------------------------------------------------

    def _replay(self, user, idempotency_key, kind, from_owner, to_owner, total_units) -> Optional[RelayTransaction]:
        existing = RelayTransaction.objects.filter(user=user, idempotency_key=idempotency_key).first()
        if existing is None:
            return None
        same = (
            existing.kind == kind
            and existing.from_owner == from_owner
            and existing.to_owner == to_owner
            and existing.amount_units + existing.fee_units == total_units
        )
        if not same:
            raise IdempotencyConflict()
        logger.info(f"[Relay] Replaying {existing.signature} for idempotency key {idempotency_key}")
        return existing

    def create_transfer(self, user, from_owner: str, to_owner: str, total_units: int, access_token: Optional[str],
                        idempotency_key: Optional[str] = None, kind: str = 'peer',
                        metadata: Optional[dict] = None) -> RelayTransaction:
        """
        Server-built custodial transfer of ``total_units`` (fee included).

        A repeated idempotency key returns the recorded transaction instead of
        building a new one.
        """
        intent = validate_transfer_intent(from_owner, to_owner, total_units, self.config.fee_units, self.config.mint)
        idempotency_key = validate_idempotency_key(idempotency_key, max_length=RELAY_IDEMPOTENCY_KEY_MAX_LENGTH)
        if idempotency_key:
            replay = self._replay(user, idempotency_key, kind, intent.from_owner, intent.to_owner, total_units)
            if replay is not None:
                return replay

        tx, build = self.authorization.authorize_server_intent(user, intent, access_token)
        try:
            with transaction.atomic():
                relay_tx = self.record(
                    kind, tx,
                    user=user,
                    from_owner=intent.from_owner,
                    to_owner=intent.to_owner,
                    amount_units=build.amount_units,
                    fee_units=build.fee_units,
                    last_valid_block_height=build.checkpoint.last_valid_block_height,
                    idempotency_key=idempotency_key,
                    metadata=metadata,
                )
        except IntegrityError:
            # Same key stored by a concurrent request; this transaction is never sent
            raise TransferInProgress()

        self.dispatch(relay_tx, tx)
        return relay_tx

    def submit_client_transfer(self, user, transaction_b64: str) -> RelayTransaction:
        """Co-sign and broadcast a transaction the client already signed."""
        cosigned = self.authorization.cosign_client_transaction(user, transaction_b64)
        signature = str(cosigned.transaction.signatures[0])
        existing = RelayTransaction.objects.filter(signature=signature).first()
        if existing is not None:
            # Same signed bytes submitted twice; the first submission owns the outcome
            if existing.user_id != user.id:
                raise IdempotencyConflict()
            return existing
        relay_tx = self.record(
            'peer', cosigned.transaction,
            user=user,
            from_owner=cosigned.from_owner,
            to_owner=cosigned.to_owner,
            amount_units=cosigned.amount_units,
            fee_units=cosigned.fee_units,
        )
        self.dispatch(relay_tx, cosigned.transaction)
        return relay_tx

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, relay_tx: RelayTransaction) -> RelayTransaction:
        """
        Settle a record against on-chain truth.

        Confirmed records (including ones confirmed earlier whose ledger update
        did not land) re-apply their claim-ledger effects, which are idempotent.
        Still-pending records are resubmitted with their identical bytes and
        confirmed if they land within the confirmation budget.
        """
        if relay_tx.status == 'failed':
            self._apply_ledger_effects(relay_tx)
            return relay_tx

        if relay_tx.status != 'confirmed':
            outcome = self.broadcaster.lookup(relay_tx.signature, relay_tx.last_valid_block_height)
            if outcome == STATUS_CONFIRMED:
                self._mark(relay_tx, 'confirmed')
            elif outcome in (STATUS_FAILED, STATUS_EXPIRED):
                self._mark(relay_tx, 'failed', error=RelayError(f'Transaction {outcome} during reconciliation'))
            else:
                try:
                    self.broadcaster.resubmit(
                        base64.b64decode(relay_tx.raw_transaction), relay_tx.last_valid_block_height,
                    )
                except RelayError as e:
                    # Preflight may refuse bytes that already landed; the next lookup decides
                    logger.warning(f"[Relay] Resubmit of {relay_tx.signature} unsettled: {e}")
                    return relay_tx
                self._mark(relay_tx, 'confirmed')

        self._apply_ledger_effects(relay_tx)
        return relay_tx

    def _apply_ledger_effects(self, relay_tx: RelayTransaction):
        if relay_tx.kind not in CLAIM_LEDGER_KINDS:
            return
        from send.escrow_service import EmailClaimService
        service = EmailClaimService(relay=self)
        if relay_tx.status == 'confirmed':
            service.on_relay_confirmed(relay_tx)
        elif relay_tx.status == 'failed':
            service.on_relay_failed(relay_tx)

    def reconcile_open(self, older_than_seconds: int = 30, limit: int = 100) -> int:
        """Reconcile submitted/indeterminate records older than ``older_than_seconds``."""
        cutoff = timezone.now() - timedelta(seconds=older_than_seconds)
        open_records = RelayTransaction.objects.filter(
            status__in=('submitted', 'indeterminate'), created_at__lte=cutoff,
        ).order_by('created_at')[:limit]
        settled = 0
        for relay_tx in open_records:
            try:
                self.reconcile(relay_tx)
            except RelayError as e:
                logger.warning(f"[Relay] Reconcile of {relay_tx.signature} failed: {e}")
                continue
            if not relay_tx.is_open:
                settled += 1
        return settled
