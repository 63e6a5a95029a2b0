"""
Blockchain GraphQL schema - Solana relay operations
"""
import graphene

from .relay_mutations import (
    CreateTransfer,
    PrepareSponsoredTransfer,
    ReconcileRelayTransaction,
    RelayQuery,
    RelayTransactionType,
    SubmitSponsoredTransfer,
)


class Query(RelayQuery, graphene.ObjectType):
    """Blockchain-related queries"""
    pass


class Mutation(graphene.ObjectType):
    """Blockchain-related mutations"""
    prepare_sponsored_transfer = PrepareSponsoredTransfer.Field()
    submit_sponsored_transfer = SubmitSponsoredTransfer.Field()
    create_transfer = CreateTransfer.Field()
    reconcile_relay_transaction = ReconcileRelayTransaction.Field()


__all__ = ['Query', 'Mutation', 'RelayTransactionType']
