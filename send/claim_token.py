"""
Claim tokens: signed, time-bounded links that let an email recipient find and
claim the funds waiting for them.

HS256 JWTs signed with CLAIM_TOKEN_SECRET. ``claimId`` is the claim's
``token_id``, never its database id.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Optional

import jwt
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

ALGORITHM = 'HS256'


@dataclass(frozen=True)
class ClaimTokenPayload:
    claim_id: str
    recipient_email: str
    expires_at: datetime


def _secret(secret=None) -> str:
    secret = secret or getattr(settings, 'CLAIM_TOKEN_SECRET', '')
    if not secret:
        raise ImproperlyConfigured('CLAIM_TOKEN_SECRET is not configured')
    if secret in (settings.SECRET_KEY, getattr(settings, 'GRAPHQL_JWT', {}).get('JWT_SECRET_KEY')):
        raise ImproperlyConfigured('CLAIM_TOKEN_SECRET must differ from the session secrets')
    return secret


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt_timezone.utc)
    return value.astimezone(dt_timezone.utc)


def sign_claim_token(payload: ClaimTokenPayload, secret=None) -> str:
    expires_at = _to_utc(payload.expires_at)
    claims = {
        'claimId': str(payload.claim_id),
        'recipientEmail': payload.recipient_email.strip().lower(),
        'expiresAt': expires_at.isoformat().replace('+00:00', 'Z'),
        'exp': int(expires_at.timestamp()),
    }
    return jwt.encode(claims, _secret(secret), algorithm=ALGORITHM)


def _normalize(raw: dict) -> Optional[ClaimTokenPayload]:
    # Older links carry cid/eml and only a numeric exp
    claim_id = raw.get('claimId', raw.get('cid'))
    email = raw.get('recipientEmail', raw.get('eml'))
    expires_at = None
    if isinstance(raw.get('expiresAt'), str):
        try:
            expires_at = _to_utc(datetime.fromisoformat(raw['expiresAt'].replace('Z', '+00:00')))
        except ValueError:
            expires_at = None
    if expires_at is None and isinstance(raw.get('exp'), (int, float)):
        expires_at = datetime.fromtimestamp(raw['exp'], tz=dt_timezone.utc)

    if not isinstance(claim_id, str) or not isinstance(email, str) or expires_at is None:
        return None
    return ClaimTokenPayload(claim_id=claim_id, recipient_email=email.strip().lower(), expires_at=expires_at)


def verify_claim_token(token: str, secret=None) -> Optional[ClaimTokenPayload]:
    """Return the payload of a valid, unexpired token, else None."""
    if not token:
        return None
    try:
        raw = jwt.decode(token, _secret(secret), algorithms=[ALGORITHM])
    except jwt.InvalidTokenError as e:
        logger.info(f"[ClaimToken] Rejected token: {e}")
        return None
    return _normalize(raw)


def inspect_expired_claim_token(token: str, secret=None) -> Optional[ClaimTokenPayload]:
    """
    Payload of a correctly signed token that has expired, else None.

    Lets the claim flow flip the claim to expired instead of reporting a bad link.
    """
    if not token:
        return None
    try:
        raw = jwt.decode(token, _secret(secret), algorithms=[ALGORITHM], options={'verify_exp': False})
    except jwt.InvalidTokenError:
        return None
    payload = _normalize(raw)
    if payload is None or payload.expires_at > datetime.now(dt_timezone.utc):
        return None
    return payload
