from users import schema as users_schema
from blockchain import schema as blockchain_schema
from send import schema as send_schema
from exchange_rates import schema as exchange_rates_schema
import graphene
import logging

logger = logging.getLogger(__name__)

class Query(
	users_schema.Query,
	blockchain_schema.Query,
	send_schema.Query,
	exchange_rates_schema.Query,
	graphene.ObjectType
):
	pass

class Mutation(
	users_schema.Mutation,
	blockchain_schema.Mutation,
	send_schema.Mutation,
	graphene.ObjectType
):
	pass

# Register all types
types = [
	users_schema.UserType,
	users_schema.AccountType,
	blockchain_schema.RelayTransactionType,
	send_schema.EmailClaimType,
	send_schema.PendingEmailClaimsSummaryType,
	exchange_rates_schema.DisplayRateType,
]

schema = graphene.Schema(
	query=Query,
	mutation=Mutation,
	types=types
)

__all__ = ['schema']
