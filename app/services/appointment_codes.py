"""Support reference codes for appointments (e.g. RDV-A3B5C7D9)."""

import re
import secrets
import string

CODE_PREFIX = "RDV-"
CODE_LENGTH = 8
_ALPHABET = string.ascii_uppercase + string.digits
_CODE_PATTERN = re.compile(rf"^{CODE_PREFIX}[A-Z0-9]{{{CODE_LENGTH}}}$")


def generate_appointment_code() -> str:
    """Generate a random, non-chronological appointment code."""
    return CODE_PREFIX + "".join(secrets.choice(_ALPHABET) for _ in range(CODE_LENGTH))


def is_valid_appointment_code(code: str) -> bool:
    """Check if a string has the appointment code format."""
    return bool(_CODE_PATTERN.match(code))
