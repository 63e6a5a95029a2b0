"""
Sponsored transfer GraphQL mutations.

Two flows move USDC between custodial wallets, both paid for by the sponsor
and both charging the fixed processing fee to treasury:

* client-assisted: ``prepareSponsoredTransfer`` returns the unsigned
  transaction, the client signs it with its embedded wallet and hands it back
  through ``submitSponsoredTransfer``;
* server-built: ``createTransfer`` signs through the identity provider using
  the caller's access token.
"""
import logging

import graphene
from django.conf import settings
from graphene_django import DjangoObjectType

from users.auth import read_access_token
from send.validators import from_minor_units, to_minor_units

from .errors import MissingCredential, RelayError
from .models import RelayTransaction
from .relay_service import RelayService

logger = logging.getLogger(__name__)


class RelayTransactionType(DjangoObjectType):
    amount = graphene.String(description="Net amount in USDC")
    fee = graphene.String(description="Processing fee in USDC")

    class Meta:
        model = RelayTransaction
        fields = (
            'id',
            'kind',
            'status',
            'signature',
            'from_owner',
            'to_owner',
            'error_message',
            'created_at',
            'confirmed_at',
        )

    def resolve_amount(self, info):
        return str(from_minor_units(self.amount_units, settings.USDC_DECIMALS))

    def resolve_fee(self, info):
        return str(from_minor_units(self.fee_units, settings.USDC_DECIMALS))


def authenticated_user(info):
    user = getattr(info.context, 'user', None)
    if not (user and getattr(user, 'is_authenticated', False)):
        return None
    return user


class RelayResultMixin:
    """Fields every money-moving mutation reports, including partial results on failure"""
    success = graphene.Boolean()
    error = graphene.String()
    error_code = graphene.String()
    retryable = graphene.Boolean()
    signatures = graphene.List(graphene.String)

    @classmethod
    def failure(cls, error: RelayError, **extra):
        return cls(
            success=False,
            error=error.message,
            error_code=error.code,
            retryable=error.retryable,
            signatures=error.all_signatures(),
            **extra,
        )

    @classmethod
    def unauthenticated(cls):
        return cls(success=False, error='Authentication required', error_code=MissingCredential.code)


class PrepareSponsoredTransfer(RelayResultMixin, graphene.Mutation):
    """Build an unsigned sponsored transfer for the client to sign"""

    class Arguments:
        from_owner = graphene.String(required=True)
        to_owner = graphene.String(required=True)
        amount = graphene.String(required=True, description="Total USDC debited, processing fee included")

    transaction = graphene.String(description="Base64 unsigned transaction")
    message = graphene.String(description="Base64 message bytes to sign")
    fee_payer = graphene.String()
    amount_units = graphene.String()
    fee_units = graphene.String()
    last_valid_block_height = graphene.String()

    @classmethod
    def mutate(cls, root, info, from_owner, to_owner, amount):
        user = authenticated_user(info)
        if user is None:
            return cls.unauthenticated()
        try:
            service = RelayService()
            total_units = to_minor_units(amount, service.config.decimals)
            build = service.authorization.prepare_client_transfer(user, from_owner, to_owner, total_units)
        except RelayError as e:
            return cls.failure(e)

        return cls(
            success=True,
            transaction=build.transaction_b64,
            message=build.message_b64,
            fee_payer=str(build.fee_payer),
            amount_units=str(build.amount_units),
            fee_units=str(build.fee_units),
            last_valid_block_height=str(build.checkpoint.last_valid_block_height),
        )


class SubmitSponsoredTransfer(RelayResultMixin, graphene.Mutation):
    """Co-sign and broadcast a transfer the client signed"""

    class Arguments:
        signed_transaction = graphene.String(required=True, description="Base64 client-signed transaction")

    relay_transaction = graphene.Field(RelayTransactionType)

    @classmethod
    def mutate(cls, root, info, signed_transaction):
        user = authenticated_user(info)
        if user is None:
            return cls.unauthenticated()
        try:
            relay_tx = RelayService().submit_client_transfer(user, signed_transaction)
        except RelayError as e:
            return cls.failure(e)
        return cls(success=relay_tx.status == 'confirmed', relay_transaction=relay_tx, signatures=[relay_tx.signature])


class CreateTransfer(RelayResultMixin, graphene.Mutation):
    """Server-built custodial transfer signed through the identity provider"""

    class Arguments:
        from_owner = graphene.String(required=True)
        to_owner = graphene.String(required=True)
        amount = graphene.String(required=True, description="Total USDC debited, processing fee included")
        idempotency_key = graphene.String(required=False)

    relay_transaction = graphene.Field(RelayTransactionType)

    @classmethod
    def mutate(cls, root, info, from_owner, to_owner, amount, idempotency_key=None):
        user = authenticated_user(info)
        if user is None:
            return cls.unauthenticated()
        try:
            service = RelayService()
            total_units = to_minor_units(amount, service.config.decimals)
            relay_tx = service.create_transfer(
                user,
                from_owner,
                to_owner,
                total_units,
                read_access_token(info.context),
                idempotency_key=idempotency_key,
            )
        except RelayError as e:
            return cls.failure(e)
        return cls(success=relay_tx.status == 'confirmed', relay_transaction=relay_tx, signatures=[relay_tx.signature])


class ReconcileRelayTransaction(RelayResultMixin, graphene.Mutation):
    """Re-check an unconfirmed transfer against the chain"""

    class Arguments:
        signature = graphene.String(required=True)

    relay_transaction = graphene.Field(RelayTransactionType)

    @classmethod
    def mutate(cls, root, info, signature):
        user = authenticated_user(info)
        if user is None:
            return cls.unauthenticated()
        relay_tx = RelayTransaction.objects.filter(signature=signature).first()
        if relay_tx is None or (relay_tx.user_id != user.id and not user.is_staff):
            return cls(success=False, error='Transaction not found', error_code='NOT_FOUND')
        try:
            relay_tx = RelayService().reconcile(relay_tx)
        except RelayError as e:
            return cls.failure(e, relay_transaction=relay_tx)
        return cls(success=relay_tx.status == 'confirmed', relay_transaction=relay_tx, signatures=[relay_tx.signature])


class RelayQuery(graphene.ObjectType):
    relay_transaction = graphene.Field(RelayTransactionType, signature=graphene.String(required=True))

    def resolve_relay_transaction(self, info, signature):
        user = authenticated_user(info)
        if user is None:
            return None
        return RelayTransaction.objects.filter(signature=signature, user=user).first()

