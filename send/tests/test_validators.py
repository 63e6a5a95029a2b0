from decimal import Decimal

from django.test import SimpleTestCase
from solders.keypair import Keypair

from blockchain.errors import InvalidAmount, InvalidEmail, InvalidOwner
from send.validators import (
    from_minor_units,
    parse_owner,
    to_minor_units,
    validate_amount_units,
    validate_recipient_email,
    validate_transfer_intent,
)

FEE = 20_000


class TransferIntentTests(SimpleTestCase):
    def setUp(self):
        self.source = str(Keypair().pubkey())
        self.destination = str(Keypair().pubkey())

    def test_accepts_amount_above_fee(self):
        intent = validate_transfer_intent(self.source, self.destination, FEE + 1, FEE, 'mint')
        self.assertEqual(intent.total_units, FEE + 1)
        self.assertEqual(intent.from_owner, self.source)
        self.assertEqual(intent.mint, 'mint')

    def test_amount_equal_to_fee(self):
        with self.assertRaises(InvalidAmount):
            validate_transfer_intent(self.source, self.destination, FEE, FEE)

    def test_non_positive_amounts(self):
        for amount in (0, -1):
            with self.assertRaises(InvalidAmount):
                validate_transfer_intent(self.source, self.destination, amount, FEE)

    def test_non_integer_amounts(self):
        for amount in (1.5, '500000', True, None, Decimal('500000')):
            with self.assertRaises(InvalidAmount):
                validate_amount_units(amount, FEE)

    def test_amount_is_checked_before_owners(self):
        with self.assertRaises(InvalidAmount):
            validate_transfer_intent('not-a-key', 'also-not', 0, FEE)

    def test_bad_owners(self):
        for owner in ('', '   ', None, 'xyz', '0' * 44):
            with self.assertRaises(InvalidOwner):
                validate_transfer_intent(owner, self.destination, FEE + 1, FEE)

    def test_owner_whitespace_is_trimmed(self):
        self.assertEqual(str(parse_owner(f'  {self.source} ')), self.source)


class MinorUnitTests(SimpleTestCase):
    def test_converts_ui_amounts(self):
        self.assertEqual(to_minor_units('1.5', 6), 1_500_000)
        self.assertEqual(to_minor_units(Decimal('0.02'), 6), 20_000)
        self.assertEqual(to_minor_units(3, 6), 3_000_000)
        self.assertEqual(to_minor_units(0.1, 6), 100_000)

    def test_truncates_sub_unit_precision(self):
        self.assertEqual(to_minor_units('0.0000019', 6), 1)

    def test_rejects_bad_amounts(self):
        for amount in ('', 'abc', '-1', '0', 'NaN', 'Infinity', None, True):
            with self.assertRaises(InvalidAmount):
                to_minor_units(amount, 6)

    def test_back_to_ui_amount(self):
        self.assertEqual(from_minor_units(20_000, 6), Decimal('0.02'))


class RecipientEmailTests(SimpleTestCase):
    def test_normalizes(self):
        self.assertEqual(validate_recipient_email('  Bob@Example.COM '), 'bob@example.com')

    def test_rejects_invalid(self):
        for email in ('', None, 'not-an-email', 'a@', '@b.com'):
            with self.assertRaises(InvalidEmail):
                validate_recipient_email(email)
