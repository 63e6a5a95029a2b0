from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN

from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from solders.pubkey import Pubkey

from blockchain.errors import InvalidAmount, InvalidEmail, InvalidIdempotencyKey, InvalidOwner

IDEMPOTENCY_KEY_MAX_LENGTH = 128


@dataclass(frozen=True)
class TransferIntent:
    """A requested movement of ``total_units`` of ``mint`` between two owners."""
    from_owner: str
    to_owner: str
    total_units: int
    mint: str


def parse_owner(owner) -> Pubkey:
    """Decode a base58 owner into a 32-byte public key or raise InvalidOwner."""
    if isinstance(owner, Pubkey):
        return owner
    if not isinstance(owner, str) or not owner.strip():
        raise InvalidOwner('Owner address is required')
    try:
        return Pubkey.from_string(owner.strip())
    except ValueError:
        raise InvalidOwner(f'Invalid owner address: {owner}')


def validate_amount_units(total_units, fee_units: int = 0) -> int:
    # bool is an int subclass; True is not an amount
    if isinstance(total_units, bool) or not isinstance(total_units, int):
        raise InvalidAmount('Amount must be an integer number of minor units')
    if total_units <= 0:
        raise InvalidAmount('Amount must be greater than 0')
    if total_units <= fee_units:
        raise InvalidAmount(f'Amount must be greater than the processing fee ({fee_units} units)')
    return total_units


def validate_transfer_intent(from_owner, to_owner, total_units, fee_units: int, mint: str = '') -> TransferIntent:
    """Check amount and owner invariants of a transfer. Performs no I/O."""
    validate_amount_units(total_units, fee_units)
    source = parse_owner(from_owner)
    destination = parse_owner(to_owner)
    return TransferIntent(
        from_owner=str(source),
        to_owner=str(destination),
        total_units=total_units,
        mint=mint,
    )


def validate_idempotency_key(key, max_length: int = IDEMPOTENCY_KEY_MAX_LENGTH):
    """Normalize an optional client idempotency key; blank means none."""
    if key is None:
        return None
    if not isinstance(key, str):
        raise InvalidIdempotencyKey()
    key = key.strip()
    if len(key) > max_length:
        raise InvalidIdempotencyKey(f'Idempotency key must be at most {max_length} characters')
    return key or None


def to_minor_units(amount, decimals: int) -> int:
    """
    Convert a UI amount (str, Decimal, int or float) to integer minor units.

    Sub-unit precision is truncated, never rounded up.
    """
    if isinstance(amount, bool) or amount is None:
        raise InvalidAmount('Amount must be a valid number')
    try:
        if isinstance(amount, float):
            value = Decimal(repr(amount))
        else:
            value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount('Amount must be a valid number')

    if not value.is_finite():
        raise InvalidAmount('Amount must be a finite number')
    if value <= 0:
        raise InvalidAmount('Amount must be greater than 0')

    units = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(units)


def from_minor_units(units: int, decimals: int) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


def normalize_email(email) -> str:
    return (email or '').strip().lower()


def validate_recipient_email(email) -> str:
    """Return the normalized email or raise InvalidEmail"""
    normalized = normalize_email(email)
    if not normalized:
        raise InvalidEmail('Recipient email is required')
    try:
        validate_email(normalized)
    except ValidationError:
        raise InvalidEmail(f'Invalid recipient email: {email}')
    return normalized
