"""
Relay broadcaster.

Submits a fully signed transaction once and polls its signature status until
it is confirmed, fails, the confirmation budget runs out, or the blockhash it
was stamped with expires. Never rebuilds a transaction: the only retry it
offers is re-sending the identical signed bytes.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from .errors import ConfirmationTimeout, NetworkUnavailable, OnChainRejected

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (SolanaRpcException, httpx.HTTPError, OSError)

STATUS_CONFIRMED = 'confirmed'
STATUS_FAILED = 'failed'
STATUS_PENDING = 'pending'
STATUS_EXPIRED = 'expired'

CONFIRMED_LEVELS = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


@dataclass
class BroadcastResult:
    signature: str
    slot: Optional[int] = None


class RelayBroadcaster:
    def __init__(self, client, confirmation_timeout: float = 60.0, poll_interval: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def signature_of(tx: Transaction) -> str:
        return str(tx.signatures[0])

    def send(self, raw: bytes) -> str:
        """Submit signed bytes once; returns the signature string."""
        try:
            resp = self.client.send_raw_transaction(
                raw, opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed)
            )
        except RPCException as e:
            payload = e.args[0] if e.args else None
            logger.warning(f"[Broadcaster] Transaction rejected on submit: {payload}")
            raise OnChainRejected(f'Transaction rejected: {payload}', payload=payload)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"[Broadcaster] Submit failed: {e}")
            raise NetworkUnavailable(f'Could not reach the network: {e}')
        return str(resp.value)

    def broadcast(self, tx: Transaction, last_valid_block_height: Optional[int] = None) -> BroadcastResult:
        signature = self.signature_of(tx)
        logger.info(f"[Broadcaster] Submitting {signature}")
        self.send(bytes(tx))
        return self.wait_for_confirmation(signature, last_valid_block_height)

    def resubmit(self, raw: bytes, last_valid_block_height: Optional[int] = None) -> BroadcastResult:
        """Re-send identical signed bytes; the network deduplicates by signature."""
        signature = self.signature_of(Transaction.from_bytes(raw))
        logger.info(f"[Broadcaster] Resubmitting {signature}")
        self.send(raw)
        return self.wait_for_confirmation(signature, last_valid_block_height)

    def _status(self, signature: str, search_history: bool = False):
        try:
            resp = self.client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=search_history
            )
        except RPCException as e:
            raise NetworkUnavailable(f'Signature status lookup failed: {e}')
        except TRANSPORT_ERRORS as e:
            raise NetworkUnavailable(f'Could not reach the network: {e}')
        return resp.value[0] if resp.value else None

    def _block_height(self) -> Optional[int]:
        try:
            return self.client.get_block_height().value
        except (RPCException,) + TRANSPORT_ERRORS as e:
            logger.debug(f"[Broadcaster] Block height lookup failed: {e}")
            return None

    def wait_for_confirmation(self, signature: str, last_valid_block_height: Optional[int] = None) -> BroadcastResult:
        """
        Poll until ``signature`` is confirmed.

        Raises:
            OnChainRejected: the transaction executed with an error
            ConfirmationTimeout: no outcome within the budget or blockhash window
        """
        deadline = self._clock() + self.confirmation_timeout
        while True:
            try:
                status = self._status(signature)
            except NetworkUnavailable as e:
                # The transaction is already submitted; a blip is not a failure
                logger.warning(f"[Broadcaster] Status poll for {signature} failed: {e}")
                status = None

            if status is not None:
                if status.err is not None:
                    logger.warning(f"[Broadcaster] {signature} failed on chain: {status.err}")
                    raise OnChainRejected(f'Transaction failed on chain: {status.err}', payload=str(status.err))
                if status.confirmation_status in CONFIRMED_LEVELS:
                    logger.info(f"[Broadcaster] {signature} confirmed in slot {status.slot}")
                    return BroadcastResult(signature=signature, slot=status.slot)

            if self._clock() >= deadline:
                break
            if last_valid_block_height is not None:
                height = self._block_height()
                if height is not None and height > last_valid_block_height:
                    logger.warning(f"[Broadcaster] Blockhash window passed for {signature}")
                    break
            self._sleep(self.poll_interval)

        raise ConfirmationTimeout(f'Transaction {signature} not confirmed in time', signature=signature)

    def lookup(self, signature: str, last_valid_block_height: Optional[int] = None) -> str:
        """Classify a signature as confirmed, failed, pending or expired."""
        status = self._status(signature, search_history=True)
        if status is not None:
            if status.err is not None:
                return STATUS_FAILED
            if status.confirmation_status in CONFIRMED_LEVELS:
                return STATUS_CONFIRMED
            return STATUS_PENDING
        if last_valid_block_height is not None:
            height = self._block_height()
            if height is not None and height > last_valid_block_height:
                return STATUS_EXPIRED
        return STATUS_PENDING
