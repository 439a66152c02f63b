"""Customer helpers: CPF / WhatsApp validation and membership status"""
import re
from datetime import datetime, timedelta
from typing import Optional

from config import settings
from timezone_utils import utcnow

_NON_DIGITS = re.compile(r"\D")


def only_digits(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def _check_digit(digits: list[int], weight_start: int) -> int:
    total = sum(d * w for d, w in zip(digits, range(weight_start, 1, -1)))
    remainder = (total * 10) % 11
    return 0 if remainder == 10 else remainder


def is_valid_cpf(cpf: str) -> bool:
    """Validate a CPF by length and both check digits; punctuation is ignored"""
    digits = only_digits(cpf)
    if len(digits) != 11:
        return False
    # 000.000.000-00, 111.111.111-11, ... pass the checksum but are not issued
    if digits == digits[0] * 11:
        return False

    numbers = [int(d) for d in digits]
    if _check_digit(numbers[:9], 10) != numbers[9]:
        return False
    return _check_digit(numbers[:10], 11) == numbers[10]


def format_cpf(cpf: str) -> str:
    """12345678909 -> 123.456.789-09; anything not 11 digits is returned as-is"""
    digits = only_digits(cpf)
    if len(digits) != 11:
        return cpf
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def is_valid_whatsapp(number: str) -> bool:
    return len(only_digits(number)) >= 10


def membership_age(enrolled_at: datetime, now: Optional[datetime] = None) -> timedelta:
    return (now or utcnow()) - enrolled_at


def is_active(enrolled_at: datetime, now: Optional[datetime] = None) -> bool:
    """Active while less than MEMBERSHIP_DAYS have passed; at exactly the limit it is expired"""
    return membership_age(enrolled_at, now) < timedelta(days=settings.MEMBERSHIP_DAYS)


def days_until_expiry(enrolled_at: datetime, now: Optional[datetime] = None) -> int:
    remaining = settings.MEMBERSHIP_DAYS - membership_age(enrolled_at, now).days
    return max(remaining, 0)
