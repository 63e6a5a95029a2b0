"""
Email claim ledger.

Money sent to an email address moves in two legs:

1. escrow deposit: a sponsored custodial transfer from the sender into the
   escrow holding account (amount + processing fee, so escrow receives exactly
   the claim amount). The EmailClaim row is created only once that transfer
   is confirmed.
2. sweep: escrow pays claims out in batches, to the recipient's deposit
   wallet (claim) or back to the sender's source wallet (cancel).

Each sweep batch first leases its claims with a conditional update, so two
concurrent sweeps can never move the same escrowed funds. Claims leave
escrow only after their batch confirmed, again by conditional update on both
status and lease. Expired claims can no longer be claimed but stay refundable
to the sender.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Iterable, List, Optional

from django.core.cache import cache
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from blockchain.errors import (
    ClaimExpired,
    ClaimNotFound,
    ClaimNotPending,
    ConfirmationTimeout,
    EmailMismatch,
    IdempotencyConflict,
    InvalidClaimToken,
    OnChainRejected,
    RelayError,
    TransferInProgress,
)
from blockchain.models import RelayTransaction
from blockchain.relay_service import RelayService
from users.wallets import ensure_custodial_wallet

from .claim_token import ClaimTokenPayload, inspect_expired_claim_token, sign_claim_token, verify_claim_token
from .email_dispatch import ClaimEmailDispatcher
from .models import EmailClaim
from .validators import (
    from_minor_units,
    normalize_email,
    parse_owner,
    validate_amount_units,
    validate_idempotency_key,
    validate_recipient_email,
)

logger = logging.getLogger(__name__)

NOTE_MAX_LENGTH = 160

# Claims whose funds are still in escrow
REFUNDABLE_STATUSES = ('pending', 'expired')


@dataclass
class SettlementResult:
    """Outcome of a claim or cancel request, including partial progress."""
    signatures: List[str] = field(default_factory=list)
    settled_count: int = 0
    settled_units: int = 0


@dataclass(frozen=True)
class PendingSummary:
    recipient_email: str
    count: int
    total_units: int


class EmailClaimService:
    def __init__(self, relay: Optional[RelayService] = None, mailer=None):
        self.relay = relay or RelayService()
        self.config = self.relay.config
        self.mailer = mailer or ClaimEmailDispatcher()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_email_claim(self, user, recipient_email: str, from_owner: str, amount_units: int,
                           access_token: Optional[str], note: str = '',
                           idempotency_key: Optional[str] = None) -> EmailClaim:
        """
        Escrow ``amount_units`` for ``recipient_email`` and email them a claim link.

        The sender pays ``amount_units`` plus the processing fee. Email delivery
        failures are logged and never undo the claim.
        """
        email = validate_recipient_email(recipient_email)
        validate_amount_units(amount_units)
        from_owner = str(parse_owner(from_owner))
        note = (note or '').strip()[:NOTE_MAX_LENGTH]
        idempotency_key = validate_idempotency_key(idempotency_key)

        if idempotency_key:
            existing = self._existing_claim(user, idempotency_key, email, from_owner, amount_units)
            if existing is not None:
                return existing

        lock_key = f'email_claim:inflight:{user.id}:{idempotency_key or f"{email}:{from_owner}:{amount_units}"}'
        lock_timeout = int(self.config.confirmation_timeout) + 60
        if not cache.add(lock_key, 1, timeout=lock_timeout):
            raise TransferInProgress()
        try:
            metadata = {
                'recipient_email': email,
                'amount_units': amount_units,
                'note': note,
                'idempotency_key': idempotency_key,
            }
            relay_tx = self.relay.create_transfer(
                user,
                from_owner,
                self.config.escrow_owner,
                amount_units + self.config.fee_units,
                access_token,
                idempotency_key=f'claim:{idempotency_key}' if idempotency_key else None,
                kind='escrow_deposit',
                metadata=metadata,
            )
            if relay_tx.status == 'failed':
                # Replayed key whose deposit never landed; a new key starts over
                raise OnChainRejected(
                    relay_tx.error_message or 'Escrow deposit failed', payload=relay_tx.error_payload,
                )
            if relay_tx.status != 'confirmed':
                # Replayed key whose deposit has not been settled yet
                raise TransferInProgress(
                    'Escrow deposit is still awaiting confirmation', signature=relay_tx.signature,
                )
            claim = self.materialize_claim(relay_tx)
        finally:
            cache.delete(lock_key)

        if not claim.email_message_id:
            self.send_claim_email(claim)
        return claim

    def _existing_claim(self, user, idempotency_key, email, from_owner, amount_units) -> Optional[EmailClaim]:
        claim = EmailClaim.objects.filter(sender_user=user, idempotency_key=idempotency_key).first()
        if claim is None:
            return None
        if (claim.recipient_email, claim.sender_from_owner, claim.amount_units) != (email, from_owner, amount_units):
            raise IdempotencyConflict()
        logger.info(f"[EmailClaim] Returning existing claim {claim.pk} for idempotency key {idempotency_key}")
        return claim

    def materialize_claim(self, relay_tx: RelayTransaction) -> EmailClaim:
        """Create the claim for a confirmed escrow deposit. Idempotent per signature."""
        existing = EmailClaim.objects.filter(escrow_signature=relay_tx.signature).first()
        if existing is not None:
            return existing

        meta = relay_tx.metadata or {}
        confirmed_at = relay_tx.confirmed_at or timezone.now()
        try:
            with transaction.atomic():
                claim = EmailClaim.objects.create(
                    sender_user=relay_tx.user,
                    sender_from_owner=relay_tx.from_owner,
                    recipient_email=meta['recipient_email'],
                    amount_units=relay_tx.amount_units,
                    note=meta.get('note', ''),
                    escrow_signature=relay_tx.signature,
                    escrow_wallet_address=self.config.escrow_owner,
                    relay_transaction=relay_tx,
                    idempotency_key=meta.get('idempotency_key'),
                    token_expires_at=confirmed_at + timedelta(days=self.config.claim_ttl_days),
                )
        except IntegrityError:
            claim = EmailClaim.objects.filter(escrow_signature=relay_tx.signature).first()
            if claim is None:
                logger.critical(
                    f"[EmailClaim] Escrow deposit {relay_tx.signature} confirmed but claim could not be stored",
                    exc_info=True,
                )
                raise
            return claim
        except DatabaseError:
            logger.critical(
                f"[EmailClaim] Escrow deposit {relay_tx.signature} confirmed but claim could not be stored",
                exc_info=True,
            )
            raise
        logger.info(f"[EmailClaim] Claim {claim.pk}: {claim.amount_units} units for {claim.recipient_email}")
        return claim

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    def claim_token_for(self, claim: EmailClaim) -> str:
        return sign_claim_token(ClaimTokenPayload(
            claim_id=str(claim.token_id),
            recipient_email=claim.recipient_email,
            expires_at=claim.token_expires_at,
        ))

    def send_claim_email(self, claim: EmailClaim) -> Optional[str]:
        try:
            message_id = self.mailer.send(
                recipient_email=claim.recipient_email,
                sender_email=claim.sender_user.email or '',
                amount=from_minor_units(claim.amount_units, self.config.decimals),
                claim_token=self.claim_token_for(claim),
                expires_at=claim.token_expires_at,
                note=claim.note,
            )
        except Exception:
            # The claim stands; the sender can resend the invitation
            logger.exception(f"[EmailClaim] Failed to send invitation for claim {claim.pk}")
            return None
        EmailClaim.objects.filter(pk=claim.pk).update(email_message_id=message_id, email_sent_at=timezone.now())
        claim.email_message_id = message_id
        return message_id

    def resend_claim_email(self, user, claim_id) -> EmailClaim:
        claim = EmailClaim.objects.filter(pk__in=_claim_pks([claim_id]), sender_user=user).first()
        if claim is None:
            raise ClaimNotFound()
        if claim.status != 'pending':
            raise ClaimNotPending()
        if claim.is_expired:
            # Stays pending so the sender can still cancel it
            raise ClaimExpired()
        if self.send_claim_email(claim) is None:
            raise RelayError('Could not send the claim email')
        return claim

    # ------------------------------------------------------------------
    # Tokens and listings
    # ------------------------------------------------------------------

    def resolve_token(self, token: str) -> ClaimTokenPayload:
        """
        Verify a claim token.

        An expired but correctly signed token flips its claim to expired and
        raises ClaimExpired; anything else unverifiable raises InvalidClaimToken.
        """
        payload = verify_claim_token(token)
        if payload is not None:
            return payload
        expired = inspect_expired_claim_token(token)
        if expired is not None:
            claim = EmailClaim.objects.filter(token_id=_as_uuid(expired.claim_id)).first()
            if claim is not None:
                self.expire_claim(claim)
            raise ClaimExpired()
        raise InvalidClaimToken()

    def list_pending_for_token(self, token: str):
        payload = self.resolve_token(token)
        return EmailClaim.objects.eligible().for_recipient(payload.recipient_email).oldest_first()

    def summarize_pending_for_token(self, token: str) -> PendingSummary:
        payload = self.resolve_token(token)
        claims = list(
            EmailClaim.objects.eligible().for_recipient(payload.recipient_email).values_list('amount_units', flat=True)
        )
        return PendingSummary(recipient_email=payload.recipient_email, count=len(claims), total_units=sum(claims))

    def list_sent(self, user):
        return EmailClaim.objects.eligible().filter(sender_user=user).order_by('-created_at')

    # ------------------------------------------------------------------
    # Claim / cancel / expire
    # ------------------------------------------------------------------

    def claim_all(self, user, token: Optional[str] = None, claim_ids: Optional[Iterable] = None) -> SettlementResult:
        """
        Sweep every eligible claim for the signed-in recipient to their deposit wallet.

        With a token, the token's recipient must be the signed-in email. Without
        one (dashboard), claims are selected by the user's email, optionally
        narrowed to ``claim_ids``.
        """
        user_email = normalize_email(user.email)
        if token:
            payload = self.resolve_token(token)
            if user_email != payload.recipient_email:
                raise EmailMismatch()
            claim = EmailClaim.objects.filter(token_id=_as_uuid(payload.claim_id)).first()
            if claim is None:
                raise ClaimNotFound()
            if claim.recipient_email != payload.recipient_email:
                raise InvalidClaimToken()
        if not user_email:
            raise EmailMismatch('Signed-in account has no email')

        claims = EmailClaim.objects.for_recipient(user_email)
        if claim_ids:
            ids = _claim_pks(claim_ids)
            requested = claims.filter(pk__in=ids)
            if requested.count() != len(set(ids)):
                raise ClaimNotFound()
            claims = requested
            if not claims.filter(status='pending').exists() and claims.filter(status__in=('canceled', 'expired')).exists():
                raise ClaimNotPending()

        now = timezone.now()
        eligible = claims.eligible(now)
        if not eligible.exists():
            # Nothing left to settle: repeated requests are no-ops
            return SettlementResult()

        destination = ensure_custodial_wallet(user, 'deposit', identity=self.relay.identity).address
        return self._sweep(
            user,
            kind='claim_sweep',
            claims=eligible,
            destination_for=lambda claim: destination,
            settle={'status': 'claimed', 'claimed_by_user_id': user.id},
            require_unexpired=True,
        )

    def cancel(self, user, claim_ids: Optional[Iterable] = None) -> SettlementResult:
        """
        Return the sender's unsettled claims (optionally only ``claim_ids``) to their source wallets.

        Expired claims are refunded too: expiry only ends the recipient's right to claim.
        """
        claims = EmailClaim.objects.filter(sender_user=user)
        if claim_ids:
            ids = _claim_pks(claim_ids)
            claims = claims.filter(pk__in=ids)
            if claims.count() != len(set(ids)):
                raise ClaimNotFound()
            if claims.filter(status='claimed').exists():
                raise ClaimNotPending()

        refundable = claims.filter(status__in=REFUNDABLE_STATUSES)
        if not refundable.exists():
            return SettlementResult()

        return self._sweep(
            user,
            kind='cancel_sweep',
            claims=refundable,
            destination_for=lambda claim: claim.sender_from_owner,
            settle={'status': 'canceled'},
            require_unexpired=False,
        )

    def expire_claim(self, claim: EmailClaim) -> bool:
        """Flip a pending, past-expiry claim to expired. Returns False if it was not pending."""
        updated = EmailClaim.objects.filter(
            pk=claim.pk, status='pending', token_expires_at__lte=timezone.now(),
        ).unleased().update(status='expired', updated_at=timezone.now())
        if updated:
            claim.status = 'expired'
            logger.info(f"[EmailClaim] Claim {claim.pk} expired")
        return bool(updated)

    def expire_stale_claims(self) -> int:
        now = timezone.now()
        count = EmailClaim.objects.filter(
            status='pending', token_expires_at__lte=now,
        ).unleased(now).update(status='expired', updated_at=now)
        if count:
            logger.info(f"[EmailClaim] Expired {count} stale claim(s)")
        return count

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def _lease(self, claim_ids: List[int], require_unexpired: bool) -> uuid.UUID:
        now = timezone.now()
        lock_id = uuid.uuid4()
        candidates = EmailClaim.objects.filter(pk__in=claim_ids, status__in=REFUNDABLE_STATUSES).unleased(now)
        if require_unexpired:
            candidates = candidates.filter(token_expires_at__gt=now)
        candidates.update(
            sweep_lock_id=lock_id,
            sweep_locked_until=now + timedelta(seconds=self.config.lease_seconds),
        )
        return lock_id

    def _release(self, lock_id) -> int:
        return EmailClaim.objects.filter(sweep_lock_id=lock_id, status__in=REFUNDABLE_STATUSES).update(
            sweep_lock_id=None, sweep_locked_until=None,
        )

    def _sweep(self, user, kind: str, claims, destination_for: Callable, settle: dict,
               require_unexpired: bool) -> SettlementResult:
        result = SettlementResult()
        snapshot = list(claims.oldest_first())
        batches = self.relay.builder.plan_sweep_batches(
            (c.pk, destination_for(c), c.amount_units, c.created_at) for c in snapshot
        )

        for legs in batches:
            lock_id = self._lease([leg.claim_id for leg in legs], require_unexpired)
            leased = set(EmailClaim.objects.filter(sweep_lock_id=lock_id).values_list('pk', flat=True))
            legs = [leg for leg in legs if leg.claim_id in leased]
            if not legs:
                continue

            try:
                build = self.relay.builder.build_escrow_sweep(legs)
                tx = self.relay.authorization.sign_as_escrow(build.transaction)
                relay_tx = self.relay.record(
                    kind, tx,
                    user=user,
                    from_owner=self.config.escrow_owner,
                    to_owner=','.join(sorted({leg.destination_owner for leg in legs})),
                    amount_units=build.amount_units,
                    last_valid_block_height=build.checkpoint.last_valid_block_height,
                    metadata={
                        'claim_ids': build.claim_ids,
                        'lock_id': str(lock_id),
                        'settle': settle,
                    },
                )
                # Recorded: the lease now lives until reconciliation settles or releases it
                EmailClaim.objects.filter(sweep_lock_id=lock_id).update(sweep_locked_until=None)
            except RelayError as e:
                self._release(lock_id)
                raise e.with_progress(result.signatures, result.settled_count)
            except Exception:
                self._release(lock_id)
                raise

            try:
                self.relay.dispatch(relay_tx, tx)
            except ConfirmationTimeout as e:
                logger.warning(f"[EmailClaim] Sweep {relay_tx.signature} unconfirmed; claims stay leased")
                raise e.with_progress(result.signatures, result.settled_count)
            except RelayError as e:
                if relay_tx.status == 'failed':
                    self._release(lock_id)
                raise e.with_progress(result.signatures, result.settled_count)

            settled = self.finalize_sweep(relay_tx)
            result.signatures.append(relay_tx.signature)
            result.settled_count += settled
            result.settled_units += sum(leg.amount_units for leg in legs)

        return result

    def finalize_sweep(self, relay_tx: RelayTransaction) -> int:
        """Apply a confirmed sweep to its leased claims. Returns the number of rows moved."""
        meta = relay_tx.metadata or {}
        settle = meta.get('settle') or {}
        now = timezone.now()
        values = {
            'status': settle.get('status'),
            'claim_signature': relay_tx.signature,
            'sweep_lock_id': None,
            'sweep_locked_until': None,
            'updated_at': now,
        }
        if values['status'] == 'claimed':
            values['claimed_by_user_id'] = settle.get('claimed_by_user_id')
            values['claimed_at'] = now
        elif values['status'] == 'canceled':
            values['canceled_at'] = now
        else:
            raise ValueError(f'Unknown sweep settlement for {relay_tx.signature}')

        try:
            updated = EmailClaim.objects.filter(
                pk__in=meta.get('claim_ids') or [],
                status__in=REFUNDABLE_STATUSES,
                sweep_lock_id=meta.get('lock_id'),
            ).update(**values)
        except DatabaseError:
            logger.critical(
                f"[EmailClaim] Sweep {relay_tx.signature} confirmed but claims could not be updated",
                exc_info=True,
            )
            raise
        logger.info(f"[EmailClaim] Sweep {relay_tx.signature} settled {updated} claim(s) as {values['status']}")
        return updated

    # ------------------------------------------------------------------
    # Reconciliation hooks
    # ------------------------------------------------------------------

    def on_relay_confirmed(self, relay_tx: RelayTransaction):
        if relay_tx.kind == 'escrow_deposit':
            claim = self.materialize_claim(relay_tx)
            if not claim.email_message_id:
                self.send_claim_email(claim)
        elif relay_tx.kind in ('claim_sweep', 'cancel_sweep'):
            self.finalize_sweep(relay_tx)

    def on_relay_failed(self, relay_tx: RelayTransaction):
        if relay_tx.kind in ('claim_sweep', 'cancel_sweep'):
            lock_id = (relay_tx.metadata or {}).get('lock_id')
            if lock_id:
                released = self._release(lock_id)
                if released:
                    logger.info(f"[EmailClaim] Released {released} claim(s) from failed sweep {relay_tx.signature}")


def _claim_pks(claim_ids) -> List[int]:
    try:
        return [int(i) for i in claim_ids]
    except (TypeError, ValueError):
        raise ClaimNotFound()


def _as_uuid(value):
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise InvalidClaimToken()
