from datetime import datetime, timedelta, timezone
import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from graphql_jwt.exceptions import JSONWebTokenError, PermissionDenied
from graphql_jwt.utils import jwt_decode

logger = logging.getLogger(__name__)


def jwt_payload_handler(user, context=None):
    """Session token payload carrying auth_token_version so old tokens can be revoked"""
    now = datetime.now(timezone.utc)
    delta = settings.GRAPHQL_JWT.get('JWT_EXPIRATION_DELTA', timedelta(hours=1))
    payload = {
        'user_id': user.id,
        'username': user.get_username(),
        'privy_id': user.privy_id,
        'origIat': int(now.timestamp()),
        'auth_token_version': user.auth_token_version,
        'exp': int((now + delta).timestamp()),
        'type': 'access',
    }
    logger.debug(f"Generated JWT payload for user {user.id}")
    return payload


def get_user_by_payload(payload):
    """Resolve the session user, rejecting tokens issued before the last revocation"""
    user_id = payload.get('user_id')
    token_version = payload.get('auth_token_version')
    if not user_id or token_version is None:
        raise PermissionDenied('Invalid token payload')

    User = get_user_model()
    user = User.objects.filter(id=user_id, is_active=True).first()
    if user is None:
        raise PermissionDenied('User not found')
    if user.auth_token_version != token_version:
        logger.info(f"Token version mismatch for user {user_id}: token={token_version}, user={user.auth_token_version}")
        raise PermissionDenied('Token has been revoked')
    return user


def verify_auth_token_version(token):
    """Decode ``token`` and check it was not revoked. Returns the payload."""
    try:
        payload = jwt_decode(token)
    except JSONWebTokenError as e:
        logger.info(f"Token verification failed: {e}")
        raise PermissionDenied(str(e))
    get_user_by_payload(payload)
    return payload
