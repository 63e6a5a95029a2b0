"""
Django settings for the Haven relay backend.

All deploy-specific values are read from the environment (or a local .env)
through python-decouple. Blockchain and relay settings are grouped at the
bottom and consumed through blockchain.solana_config.get_relay_config().
"""
from datetime import timedelta
from pathlib import Path

from decouple import config, Csv

from .logging import LOGGING  # noqa: F401

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config('SECRET_KEY', default='dev-insecure-secret-key-change-me')
DEBUG = config('DEBUG', default=False, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='localhost,127.0.0.1', cast=Csv())

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'graphene_django',
    'users',
    'blockchain',
    'send',
    'exchange_rates',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [BASE_DIR / 'templates'],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'config.wsgi.application'
ASGI_APPLICATION = 'config.asgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': config('DB_NAME', default='haven'),
        'USER': config('DB_USER', default='haven'),
        'PASSWORD': config('DB_PASSWORD', default=''),
        'HOST': config('DB_HOST', default='localhost'),
        'PORT': config('DB_PORT', default='5432'),
        'CONN_MAX_AGE': config('DB_CONN_MAX_AGE', default=60, cast=int),
    }
}

CACHES = {
    'default': {
        'BACKEND': config('CACHE_BACKEND', default='django.core.cache.backends.redis.RedisCache'),
        'LOCATION': config('REDIS_URL', default='redis://localhost:6379/1'),
    }
}

AUTH_USER_MODEL = 'users.User'
AUTHENTICATION_BACKENDS = [
    'graphql_jwt.backends.JSONWebTokenBackend',
    'django.contrib.auth.backends.ModelBackend',
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ---------------------------------------------------------------------------
# GraphQL / session JWT
# ---------------------------------------------------------------------------
GRAPHENE = {
    'SCHEMA': 'config.schema.schema',
    'MIDDLEWARE': [
        'graphql_jwt.middleware.JSONWebTokenMiddleware',
    ],
}

GRAPHQL_JWT = {
    'JWT_VERIFY_EXPIRATION': True,
    'JWT_EXPIRATION_DELTA': timedelta(hours=1),
    'JWT_REFRESH_EXPIRATION_DELTA': timedelta(days=7),
    'JWT_SECRET_KEY': config('SESSION_JWT_SECRET', default=SECRET_KEY),
    'JWT_PAYLOAD_HANDLER': 'users.jwt.jwt_payload_handler',
    'JWT_GET_USER_BY_PAYLOAD_HANDLER': 'users.jwt.get_user_by_payload',
    'JWT_AUTH_HEADER_PREFIX': 'JWT',
    'JWT_COOKIE_NAME': '__session',
}

# ---------------------------------------------------------------------------
# Celery
# ---------------------------------------------------------------------------
CELERY_BROKER_URL = config('CELERY_BROKER_URL', default='redis://localhost:6379/0')
CELERY_RESULT_BACKEND = config('CELERY_RESULT_BACKEND', default=CELERY_BROKER_URL)
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE

# ---------------------------------------------------------------------------
# Email (claim invitations)
# ---------------------------------------------------------------------------
EMAIL_BACKEND = config('EMAIL_BACKEND', default='django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = config('EMAIL_HOST', default='localhost')
EMAIL_PORT = config('EMAIL_PORT', default=587, cast=int)
EMAIL_HOST_USER = config('EMAIL_HOST_USER', default='')
EMAIL_HOST_PASSWORD = config('EMAIL_HOST_PASSWORD', default='')
EMAIL_USE_TLS = config('EMAIL_USE_TLS', default=True, cast=bool)
DEFAULT_FROM_EMAIL = config('EMAIL_FROM', default='Haven Vaults <transfer@havenvaults.com>')
APP_URL = config('APP_URL', default='http://localhost:3000')

# ---------------------------------------------------------------------------
# Identity provider (custodial wallets)
# ---------------------------------------------------------------------------
PRIVY_API_URL = config('PRIVY_API_URL', default='https://api.privy.io')
PRIVY_APP_ID = config('PRIVY_APP_ID', default='')
PRIVY_APP_SECRET = config('PRIVY_APP_SECRET', default='')
# PEM public key used to verify identity-provider access tokens (ES256)
PRIVY_VERIFICATION_KEY = config('PRIVY_VERIFICATION_KEY', default='').replace('\\n', '\n')
# base64 PKCS8 P-256 key that authorizes requests against app-owned wallets
PRIVY_AUTHORIZATION_KEY = config('PRIVY_AUTHORIZATION_KEY', default='')
PRIVY_REQUEST_TIMEOUT = config('PRIVY_REQUEST_TIMEOUT', default=15, cast=int)

# ---------------------------------------------------------------------------
# Solana / relay
# ---------------------------------------------------------------------------
SOLANA_CLUSTER = config('SOLANA_CLUSTER', default='devnet')
SOLANA_RPC_URL = config('SOLANA_RPC_URL', default='https://api.devnet.solana.com')
SOLANA_RPC_TIMEOUT = config('SOLANA_RPC_TIMEOUT', default=10, cast=float)
SOLANA_CONFIRMATION_TIMEOUT = config('SOLANA_CONFIRMATION_TIMEOUT', default=60, cast=float)
SOLANA_CONFIRMATION_POLL_INTERVAL = config('SOLANA_CONFIRMATION_POLL_INTERVAL', default=1.0, cast=float)

USDC_MINT_ADDRESS = config('USDC_MINT_ADDRESS', default='4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU')
USDC_DECIMALS = config('USDC_DECIMALS', default=6, cast=int)
# Fixed processing fee in minor units (0.02 USDC)
RELAY_FEE_UNITS = config('RELAY_FEE_UNITS', default=20_000, cast=int)

TREASURY_OWNER_ADDRESS = config('TREASURY_OWNER_ADDRESS', default='')
SPONSOR_ADDRESS = config('SPONSOR_ADDRESS', default='')
SPONSOR_WALLET_ID = config('SPONSOR_WALLET_ID', default='')
SPONSOR_SECRET_KEY = config('SPONSOR_SECRET_KEY', default='')
ESCROW_OWNER_ADDRESS = config('ESCROW_OWNER_ADDRESS', default=SPONSOR_ADDRESS)
ESCROW_WALLET_ID = config('ESCROW_WALLET_ID', default='')
ESCROW_SECRET_KEY = config('ESCROW_SECRET_KEY', default='')

EMAIL_CLAIM_MAX_PER_TX = config('EMAIL_CLAIM_MAX_PER_TX', default=8, cast=int)
EMAIL_CLAIM_TTL_DAYS = config('EMAIL_CLAIM_TTL_DAYS', default=7, cast=int)
EMAIL_CLAIM_LEASE_SECONDS = config('EMAIL_CLAIM_LEASE_SECONDS', default=300, cast=int)
EMAIL_CLAIM_EXPIRY_SWEEP_ENABLED = config('EMAIL_CLAIM_EXPIRY_SWEEP_ENABLED', default=False, cast=bool)

# Kept separate from SECRET_KEY and the session JWT secret
CLAIM_TOKEN_SECRET = config('CLAIM_TOKEN_SECRET', default='')


# Display-only currency conversion
FX_REQUEST_TIMEOUT = config('FX_REQUEST_TIMEOUT', default=10, cast=int)
