import graphene
from graphql import GraphQLError

from .services import ExchangeRateUnavailable, exchange_rate_service


class DisplayRateType(graphene.ObjectType):
    base = graphene.String()
    target = graphene.String()
    rate = graphene.Decimal()
    amount = graphene.Decimal()
    converted = graphene.Decimal()
    as_of = graphene.String()
    source = graphene.String()
    timestamp = graphene.DateTime()


class Query(graphene.ObjectType):
    # USD -> display currency, for showing balances only
    display_rate = graphene.Field(
        DisplayRateType,
        currency=graphene.String(),
        amount=graphene.String(default_value='0'),
    )

    def resolve_display_rate(self, info, currency=None, amount='0'):
        user = getattr(info.context, 'user', None)
        if not (user and getattr(user, 'is_authenticated', False)):
            raise GraphQLError('Authentication required')
        try:
            return exchange_rate_service.get_display_rate(currency, amount, user=user)
        except ValueError as e:
            raise GraphQLError(str(e))
        except ExchangeRateUnavailable as e:
            raise GraphQLError(f'FX failed: {e}')
