"""
Input validators for `input` nodes: none | email | phone | number | date.

Each validator returns the normalised value or raises InputValidationError.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Callable

from core.errors import InputValidationError

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PHONE_CHARS_RE = re.compile(r"^\+?[\d\s().-]+$")
NUMBER_RE = re.compile(r"^[+-]?(\d+([.,]\d+)?|[.,]\d+)$")

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%d/%m/%y")


def _none(value: str) -> str:
    return value


def _email(value: str) -> str:
    if not EMAIL_RE.match(value):
        raise InputValidationError("email", value)
    return value.lower()


def _phone(value: str) -> str:
    if not PHONE_CHARS_RE.match(value):
        raise InputValidationError("phone", value)
    digits = re.sub(r"\D", "", value)
    if not 8 <= len(digits) <= 15:
        raise InputValidationError("phone", value)
    return ("+" if value.startswith("+") else "") + digits


def _number(value: str) -> str:
    if not NUMBER_RE.match(value):
        raise InputValidationError("number", value)
    return value.replace(",", ".")


def _date(value: str) -> str:
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    raise InputValidationError("date", value)


VALIDATORS: dict[str, Callable[[str], str]] = {
    "none": _none,
    "text": _none,
    "email": _email,
    "phone": _phone,
    "number": _number,
    "date": _date,
}


def validate_input(validation: str, value: str) -> str:
    """Validate and normalise user input. Empty input always fails."""
    kind = (validation or "none").strip().lower()
    fn = VALIDATORS.get(kind, _none)
    text = (value or "").strip()
    if not text:
        raise InputValidationError(kind, text)
    return fn(text)
