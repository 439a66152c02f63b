import unittest
from datetime import datetime, timedelta

from customer_utils import (
    days_until_expiry,
    format_cpf,
    is_active,
    is_valid_cpf,
    is_valid_whatsapp,
)


class CpfTests(unittest.TestCase):
    def test_accepts_valid_cpf_with_or_without_punctuation(self) -> None:
        self.assertTrue(is_valid_cpf("529.982.247-25"))
        self.assertTrue(is_valid_cpf("52998224725"))
        self.assertTrue(is_valid_cpf("111.444.777-35"))

    def test_rejects_wrong_check_digits(self) -> None:
        self.assertFalse(is_valid_cpf("529.982.247-26"))
        self.assertFalse(is_valid_cpf("111.444.777-53"))

    def test_rejects_repeated_digits_and_bad_length(self) -> None:
        self.assertFalse(is_valid_cpf("111.111.111-11"))
        self.assertFalse(is_valid_cpf("00000000000"))
        self.assertFalse(is_valid_cpf("5299822472"))
        self.assertFalse(is_valid_cpf(""))

    def test_format(self) -> None:
        self.assertEqual(format_cpf("52998224725"), "529.982.247-25")
        self.assertEqual(format_cpf("123"), "123")


class WhatsappTests(unittest.TestCase):
    def test_needs_at_least_ten_digits(self) -> None:
        self.assertTrue(is_valid_whatsapp("(11) 98765-4321"))
        self.assertTrue(is_valid_whatsapp("1133334444"))
        self.assertFalse(is_valid_whatsapp("98765-4321"))


class MembershipTests(unittest.TestCase):
    now = datetime(2024, 6, 1, 12, 0, 0)

    def test_active_before_one_year(self) -> None:
        enrolled = self.now - timedelta(days=364, hours=23)
        self.assertTrue(is_active(enrolled, self.now))
        self.assertEqual(days_until_expiry(enrolled, self.now), 1)

    def test_inactive_at_exactly_one_year(self) -> None:
        enrolled = self.now - timedelta(days=365)
        self.assertFalse(is_active(enrolled, self.now))
        self.assertEqual(days_until_expiry(enrolled, self.now), 0)

    def test_days_until_expiry_never_negative(self) -> None:
        enrolled = self.now - timedelta(days=800)
        self.assertFalse(is_active(enrolled, self.now))
        self.assertEqual(days_until_expiry(enrolled, self.now), 0)

    def test_new_member(self) -> None:
        self.assertTrue(is_active(self.now, self.now))
        self.assertEqual(days_until_expiry(self.now, self.now), 365)


if __name__ == "__main__":
    unittest.main()
