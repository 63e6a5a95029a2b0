"""
Relay error taxonomy.

Every failure a transfer can hit is a RelayError subclass with a stable
``code`` (returned to GraphQL clients as ``errorCode``) and a ``retryable``
flag. Errors raised part-way through a batched sweep carry the signatures
that did settle and how many claims they settled, so callers can always
report partial results. ``signature`` names a transaction whose outcome is
still unknown and must be reconciled.
"""


class RelayError(Exception):
    code = 'RELAY_ERROR'
    retryable = False
    default_message = 'Relay request failed'

    def __init__(self, message=None, *, signatures=None, settled_count=0, payload=None, signature=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.signature = signature
        self.signatures = list(signatures or [])
        self.settled_count = settled_count
        self.payload = payload

    def with_progress(self, signatures, settled_count):
        """Attach the partial progress of a multi-batch operation."""
        self.signatures = list(signatures)
        self.settled_count = settled_count
        return self

    def all_signatures(self):
        """Settled signatures followed by the unsettled one, if any."""
        if self.signature and self.signature not in self.signatures:
            return self.signatures + [self.signature]
        return list(self.signatures)


# Validation (raised before any I/O)

class InvalidAmount(RelayError):
    code = 'INVALID_AMOUNT'
    default_message = 'Amount must be a positive integer greater than the processing fee'


class InvalidOwner(RelayError):
    code = 'INVALID_OWNER'
    default_message = 'Owner is not a valid public key'


class InvalidEmail(RelayError):
    code = 'INVALID_EMAIL'
    default_message = 'Recipient email is not valid'


class InvalidIdempotencyKey(RelayError):
    code = 'INVALID_IDEMPOTENCY_KEY'
    default_message = 'Idempotency key must be a string of at most 128 characters'


class IdempotencyConflict(RelayError):
    code = 'IDEMPOTENCY_CONFLICT'
    default_message = 'Idempotency key was already used for a different request'


# Authorization

class UnrecognizedSource(RelayError):
    code = 'UNRECOGNIZED_SOURCE'
    default_message = 'Source wallet does not belong to the caller'


class InvalidFeePayer(RelayError):
    code = 'INVALID_FEE_PAYER'
    default_message = 'Fee payer does not match the configured sponsor'


class MissingCredential(RelayError):
    code = 'MISSING_CREDENTIAL'
    default_message = 'A bearer credential is required'


class AuthMismatch(RelayError):
    code = 'AUTH_MISMATCH'
    default_message = 'Credential does not belong to the signed-in user'


class IncompleteAuthorization(RelayError):
    code = 'INCOMPLETE_AUTHORIZATION'
    default_message = 'Transaction is missing a required signature'


class InvalidTransaction(RelayError):
    code = 'INVALID_TRANSACTION'
    default_message = 'Transaction is malformed or moves funds the relay does not sponsor'


class InsufficientFunds(RelayError):
    code = 'INSUFFICIENT_FUNDS'
    default_message = 'Insufficient balance'


# Ledger / network

class LedgerUnavailable(RelayError):
    code = 'LEDGER_UNAVAILABLE'
    retryable = True
    default_message = 'Ledger RPC is unavailable'


class NetworkUnavailable(RelayError):
    code = 'NETWORK_UNAVAILABLE'
    retryable = True
    default_message = 'Network is unavailable'


class OnChainRejected(RelayError):
    code = 'ON_CHAIN_REJECTED'
    default_message = 'Transaction was rejected by the network'


class ConfirmationTimeout(RelayError):
    """Outcome unknown; the signature must be reconciled before anything is retried."""
    code = 'CONFIRMATION_TIMEOUT'
    default_message = 'Transaction was not confirmed in time'


class TransferInProgress(RelayError):
    code = 'TRANSFER_IN_PROGRESS'
    retryable = True
    default_message = 'An identical transfer is already in progress'


# Claim ledger

class ClaimNotFound(RelayError):
    code = 'CLAIM_NOT_FOUND'
    default_message = 'Claim not found'


class ClaimNotPending(RelayError):
    code = 'CLAIM_NOT_PENDING'
    default_message = 'Claim is no longer pending'


class ClaimExpired(RelayError):
    code = 'CLAIM_EXPIRED'
    default_message = 'Claim link has expired'


class EmailMismatch(RelayError):
    code = 'EMAIL_MISMATCH'
    default_message = 'Signed-in email does not match the claim recipient'


class InvalidClaimToken(RelayError):
    code = 'INVALID_CLAIM_TOKEN'
    default_message = 'Claim link is invalid'
