import logging

import graphene
import graphql_jwt
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.utils import timezone
from graphene_django import DjangoObjectType
from graphql_jwt.decorators import login_required
from graphql_jwt.utils import jwt_encode

from blockchain.errors import RelayError
from blockchain.identity_provider import extract_email, get_identity_provider

from .auth import read_access_token
from .jwt import jwt_payload_handler
from .models import Account
from .wallets import ensure_custodial_wallet, resolve_deposit_owner

logger = logging.getLogger(__name__)

User = get_user_model()


class AccountType(DjangoObjectType):
	class Meta:
		model = Account
		fields = ('id', 'account_type', 'wallet_id', 'address', 'chain_type', 'created_at')


class UserType(DjangoObjectType):
	accounts = graphene.List(AccountType)

	class Meta:
		model = User
		fields = ('id', 'username', 'email', 'first_name', 'last_name', 'display_currency')

	def resolve_accounts(self, info):
		return Account.objects.filter(user=self)


def _upsert_privy_user(privy_id, email):
	"""Find or create the local user for an identity-provider subject"""
	user = User.objects.filter(privy_id=privy_id).first()
	if user is None and email:
		# Account created before it was linked, e.g. by an admin
		user = User.objects.filter(email=email, privy_id__isnull=True).first()
		if user is not None:
			user.privy_id = privy_id
	if user is None:
		user = User(privy_id=privy_id, username=privy_id.rsplit(':', 1)[-1][:150], email=email or None)
	elif email and user.email != email:
		user.email = email
	user.last_login = timezone.now()
	try:
		with transaction.atomic():
			user.save()
	except IntegrityError:
		# A concurrent login created it first
		user = User.objects.get(privy_id=privy_id)
	return user


class PrivyLogin(graphene.Mutation):
	"""
	Exchange an identity-provider access token for a session token.

	Creates the local user on first login and provisions the deposit wallet.
	The user's email always comes from the identity provider.
	"""
	class Arguments:
		access_token = graphene.String(required=False)

	success = graphene.Boolean()
	error = graphene.String()
	error_code = graphene.String()
	token = graphene.String()
	user = graphene.Field(UserType)

	@classmethod
	def mutate(cls, root, info, access_token=None):
		access_token = access_token or read_access_token(info.context)
		if not access_token:
			return cls(success=False, error='Missing access token', error_code='MISSING_CREDENTIAL')

		identity = get_identity_provider()
		try:
			privy_id = identity.verify_access_token(access_token)
			email = extract_email(identity.get_user(privy_id))
			user = _upsert_privy_user(privy_id, email)
			ensure_custodial_wallet(user, 'deposit', identity=identity)
		except RelayError as e:
			logger.warning(f"Privy login failed: {e}")
			return cls(success=False, error=e.message, error_code=e.code)

		logger.info(f"User {user.id} signed in via identity provider")
		return cls(success=True, token=jwt_encode(jwt_payload_handler(user)), user=user)


class OpenSavingsAccount(graphene.Mutation):
	"""Provision the savings wallet. Returns the existing one when already open."""
	success = graphene.Boolean()
	error = graphene.String()
	error_code = graphene.String()
	account = graphene.Field(AccountType)

	@classmethod
	def mutate(cls, root, info):
		user = getattr(info.context, 'user', None)
		if not (user and getattr(user, 'is_authenticated', False)):
			return cls(success=False, error='Authentication required', error_code='MISSING_CREDENTIAL')
		try:
			account = ensure_custodial_wallet(user, 'savings')
		except RelayError as e:
			return cls(success=False, error=e.message, error_code=e.code)
		return cls(success=True, account=account)


class InvalidateAuthTokens(graphene.Mutation):
	success = graphene.Boolean()
	error = graphene.String()

	@classmethod
	def mutate(cls, root, info):
		user = getattr(info.context, 'user', None)
		if not (user and getattr(user, 'is_authenticated', False)):
			return InvalidateAuthTokens(success=False, error="Authentication required")

		user.increment_auth_token_version()
		return InvalidateAuthTokens(success=True, error=None)


class Query(graphene.ObjectType):
	me = graphene.Field(UserType)
	resolve_deposit_owner = graphene.Field(graphene.String, email=graphene.String(required=True))

	def resolve_me(self, info):
		user = getattr(info.context, 'user', None)
		if not (user and getattr(user, 'is_authenticated', False)):
			return None
		return user

	@login_required
	def resolve_resolve_deposit_owner(self, info, email):
		return resolve_deposit_owner(email)


class Mutation(graphene.ObjectType):
	privy_login = PrivyLogin.Field()
	open_savings_account = OpenSavingsAccount.Field()
	invalidate_auth_tokens = InvalidateAuthTokens.Field()
	refresh_token = graphql_jwt.Refresh.Field()
