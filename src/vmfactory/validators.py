"""Input validators for wizard prompts.

The ``is_*`` predicates mirror the checks operators already know from the
shell wizards; the ``require_*`` helpers turn a failed check into a
``ValidationError`` naming the field. There is no retry: callers let the
error propagate and the wizard exits.
"""

import re

from vmfactory.errors import ValidationError

_IP_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_positive_int(value: str) -> bool:
    """Digits only and greater than zero."""
    return value.isdigit() and value.isascii() and int(value) > 0


def is_cidr(value: str) -> bool:
    """Prefix length between 0 and 32."""
    return value.isdigit() and value.isascii() and 0 <= int(value) <= 32


def is_ip(value: str) -> bool:
    """IPv4 dotted quad with every octet in 0-255."""
    match = _IP_RE.match(value)
    if not match:
        return False
    return all(0 <= int(octet) <= 255 for octet in match.groups())


def is_port(value: str) -> bool:
    return value.isdigit() and value.isascii() and 1 <= int(value) <= 65535


def require_positive_int(value: str, field: str) -> int:
    if not is_positive_int(value):
        raise ValidationError(field, f"{field} must be a positive integer.")
    return int(value)


def require_cidr(value: str, field: str = "CIDR prefix") -> int:
    if not is_cidr(value):
        raise ValidationError(field, f"Invalid {field}. Must be 0-32.")
    return int(value)


def require_ip(value: str, field: str) -> str:
    if not is_ip(value):
        raise ValidationError(field, f"Invalid {field} format.")
    return value


def require_port(value: str, field: str) -> int:
    if not is_port(value):
        raise ValidationError(field, f"{field} must be a port number between 1 and 65535.")
    return int(value)


def require_email(value: str, field: str) -> str:
    if not _EMAIL_RE.match(value):
        raise ValidationError(field, f"{field} must be an email address.")
    return value


def require_choice(value: str, count: int, field: str) -> int:
    """Validate a 1-based menu choice and return the 0-based index."""
    if not (value.isdigit() and value.isascii()) or not 1 <= int(value) <= count:
        raise ValidationError(field, f"Invalid {field.lower()}.")
    return int(value) - 1
