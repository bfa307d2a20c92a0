import re
from typing import Optional

from errors import ValidationError


class ISBNValidator:
    """ISBN-10 / ISBN-13 checks, used when strict ISBN validation is enabled."""

    @staticmethod
    def normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: str) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == 'X':
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            # sum(i * d_i) for i in 1..10 must be divisible by 11
            return (total + 10 * check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class EmailValidator:
    # Deliberately loose: something@something.tld
    _PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @staticmethod
    def normalize(email: Optional[str]) -> str:
        return (email or "").strip().lower()

    @staticmethod
    def is_valid(email: Optional[str]) -> bool:
        return bool(EmailValidator._PATTERN.match(EmailValidator.normalize(email)))


class TextValidator:
    """Required-field checks shared by the facade."""

    @staticmethod
    def require(field: str, value: Optional[str], label: Optional[str] = None) -> str:
        """Return the stripped value or raise ``ValidationError`` if it is blank."""
        text = (value or "").strip()
        if not text:
            raise ValidationError(field, f"{label or field.capitalize()} is required.")
        return text

    @staticmethod
    def optional(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        text = value.strip()
        return text or None

    @staticmethod
    def validate_birth_year(year: Optional[int], current_year: int) -> Optional[int]:
        if year is None:
            return None
        if year < 0 or year > current_year:
            raise ValidationError("birthYear", f"Birth year must be between 0 and {current_year}.")
        return year
