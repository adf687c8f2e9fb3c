import re
from typing import Any, Optional

from errors import ValidationError

_INT_RE = re.compile(r"^[+-]?\d+$")


class FieldValidator:
    """Input checks shared by the catalog and the ledger.

    Accepts ints and integer-looking strings (CLI prompts and form posts send
    text); rejects bools, floats and everything else with ``ValidationError``
    naming the offending field.
    """

    @staticmethod
    def require_text(value: Optional[str], field: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{field} is required", field=field)
        return str(value).strip()

    @staticmethod
    def optional_text(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @staticmethod
    def integer(value: Any, field: str) -> int:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"{field} is required", field=field)
        # bool, int'in alt sınıfıdır; True'yu 1 kopya olarak kabul etme
        if isinstance(value, bool):
            raise ValidationError(f"{field} must be an integer", field=field, value=value)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and _INT_RE.match(value.strip()):
            return int(value.strip())
        raise ValidationError(f"{field} must be an integer", field=field, value=value)

    @staticmethod
    def non_negative_int(value: Any, field: str) -> int:
        number = FieldValidator.integer(value, field)
        if number < 0:
            raise ValidationError(f"{field} must be 0 or more", field=field, value=number)
        return number

    @staticmethod
    def positive_int(value: Any, field: str) -> int:
        number = FieldValidator.integer(value, field)
        if number < 1:
            raise ValidationError(f"{field} must be at least 1", field=field, value=number)
        return number
