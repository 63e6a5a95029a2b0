import logging

import graphene
from django.conf import settings
from graphene_django import DjangoObjectType
from graphql import GraphQLError

from blockchain.errors import RelayError
from blockchain.relay_mutations import RelayResultMixin, authenticated_user
from users.auth import read_access_token

from .escrow_service import EmailClaimService
from .models import EmailClaim
from .validators import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)


def _usdc(units):
    return str(from_minor_units(units, settings.USDC_DECIMALS))


class EmailClaimType(DjangoObjectType):
    """GraphQL type for EmailClaim model"""
    amount = graphene.String()
    sender_email = graphene.String()

    class Meta:
        model = EmailClaim
        fields = (
            'id',
            'recipient_email',
            'currency',
            'note',
            'status',
            'escrow_signature',
            'claim_signature',
            'created_at',
            'claimed_at',
            'canceled_at',
            'token_expires_at',
        )

    def resolve_amount(self, info):
        return _usdc(self.amount_units)

    def resolve_sender_email(self, info):
        return self.sender_user.email


class PendingEmailClaimsSummaryType(graphene.ObjectType):
    recipient_email = graphene.String()
    count = graphene.Int()
    total_amount = graphene.String()


def _token_error(e: RelayError):
    return GraphQLError(e.message, extensions={'code': e.code})


class Query(graphene.ObjectType):
    """Email claim queries"""
    pending_email_claims = graphene.List(EmailClaimType, token=graphene.String(required=True))
    pending_email_claims_summary = graphene.Field(PendingEmailClaimsSummaryType, token=graphene.String(required=True))
    sent_email_claims = graphene.List(EmailClaimType)

    def resolve_pending_email_claims(self, info, token):
        """Pending, unexpired claims for the email a claim link was sent to"""
        try:
            return list(EmailClaimService().list_pending_for_token(token).select_related('sender_user'))
        except RelayError as e:
            raise _token_error(e)

    def resolve_pending_email_claims_summary(self, info, token):
        try:
            summary = EmailClaimService().summarize_pending_for_token(token)
        except RelayError as e:
            raise _token_error(e)
        return PendingEmailClaimsSummaryType(
            recipient_email=summary.recipient_email,
            count=summary.count,
            total_amount=_usdc(summary.total_units),
        )

    def resolve_sent_email_claims(self, info):
        user = authenticated_user(info)
        if user is None:
            return []
        return EmailClaimService().list_sent(user).select_related('sender_user')


class CreateEmailClaim(RelayResultMixin, graphene.Mutation):
    """Escrow USDC for an email address and send the claim link"""

    class Arguments:
        recipient_email = graphene.String(required=True)
        from_owner = graphene.String(required=True)
        amount = graphene.String(required=True, description="USDC the recipient receives; the processing fee is added on top")
        note = graphene.String(required=False)
        idempotency_key = graphene.String(required=False)

    claim = graphene.Field(EmailClaimType)
    email_sent = graphene.Boolean()

    @classmethod
    def mutate(cls, root, info, recipient_email, from_owner, amount, note='', idempotency_key=None):
        user = authenticated_user(info)
        if user is None:
            return cls.unauthenticated()
        try:
            service = EmailClaimService()
            claim = service.create_email_claim(
                user,
                recipient_email,
                from_owner,
                to_minor_units(amount, service.config.decimals),
                read_access_token(info.context),
                note=note or '',
                idempotency_key=idempotency_key,
            )
        except RelayError as e:
            return cls.failure(e)
        return cls(
            success=True,
            claim=claim,
            email_sent=bool(claim.email_message_id),
            signatures=[claim.escrow_signature],
        )


class ClaimEmailTransfers(RelayResultMixin, graphene.Mutation):
    """
    Claim every pending transfer sent to the signed-in email.

    With a token, the token must belong to the signed-in email. Without one,
    claims are picked from the dashboard, optionally narrowed by id.
    """

    class Arguments:
        token = graphene.String(required=False)
        claim_ids = graphene.List(graphene.ID, required=False)

    claimed_count = graphene.Int()
    claimed_amount = graphene.String()

    @classmethod
    def mutate(cls, root, info, token=None, claim_ids=None):
        user = authenticated_user(info)
        if user is None:
            return cls.unauthenticated()
        try:
            result = EmailClaimService().claim_all(user, token=token, claim_ids=claim_ids)
        except RelayError as e:
            return cls.failure(e, claimed_count=e.settled_count)
        return cls(
            success=True,
            signatures=result.signatures,
            claimed_count=result.settled_count,
            claimed_amount=_usdc(result.settled_units),
        )


class CancelEmailClaims(RelayResultMixin, graphene.Mutation):
    """Return the sender's pending claims to the wallets they came from"""

    class Arguments:
        claim_ids = graphene.List(graphene.ID, required=False)

    canceled_count = graphene.Int()
    canceled_amount = graphene.String()

    @classmethod
    def mutate(cls, root, info, claim_ids=None):
        user = authenticated_user(info)
        if user is None:
            return cls.unauthenticated()
        try:
            result = EmailClaimService().cancel(user, claim_ids=claim_ids)
        except RelayError as e:
            return cls.failure(e, canceled_count=e.settled_count)
        return cls(
            success=True,
            signatures=result.signatures,
            canceled_count=result.settled_count,
            canceled_amount=_usdc(result.settled_units),
        )


class ResendClaimEmail(RelayResultMixin, graphene.Mutation):
    class Arguments:
        claim_id = graphene.ID(required=True)

    claim = graphene.Field(EmailClaimType)

    @classmethod
    def mutate(cls, root, info, claim_id):
        user = authenticated_user(info)
        if user is None:
            return cls.unauthenticated()
        try:
            claim = EmailClaimService().resend_claim_email(user, claim_id)
        except RelayError as e:
            return cls.failure(e)
        return cls(success=True, claim=claim)


class Mutation(graphene.ObjectType):
    """Email claim mutations"""
    create_email_claim = CreateEmailClaim.Field()
    claim_email_transfers = ClaimEmailTransfers.Field()
    cancel_email_claims = CancelEmailClaims.Field()
    resend_claim_email = ResendClaimEmail.Field()
