"""
Validation helpers for StudyDB.

These validators are shared by the server write paths and the field client
so both reject bad input with the same user-friendly messages, before any
record is touched.
"""

from datetime import datetime, timezone
from typing import Optional, Tuple


class ValidationError(Exception):
    """Custom exception for validation errors with user-friendly messages."""

    def __init__(self, field: str, value, message: str):
        self.field = field
        self.value = value
        self.message = message
        super().__init__(f"{field}: {message}")


class NotFoundError(Exception):
    """A referenced experiment or subject does not exist."""

    def __init__(self, entity: str, key):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


# =============================================================================
# CONSTANTS
# =============================================================================

SCORE_MIN = 0
SCORE_MAX = 4

SUBJECT_STATUSES = ('alive', 'dead', 'sacrificed', 'excluded')
TERMINAL_STATUSES = ('dead', 'sacrificed', 'excluded')

EXIT_TYPES = (
    'natural_death',
    'sacrificed_endpoint',
    'sacrificed_scheduled',
    'excluded',
    'other',
)

CSS_OPERATORS = ('>=', '>', '=', '<', '<=')

# Latest instant a client clock may claim (end of year 9999), in ms since the epoch
MAX_CLIENT_TIMESTAMP_MS = int(datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc).timestamp() * 1000)


# =============================================================================
# FIELD VALIDATORS
# =============================================================================

def validate_score(value: Optional[int], field: str = 'score') -> Tuple[bool, str]:
    """
    Validate a stool or behavior score.

    Args:
        value: Score to validate (None means "not scored")
        field: Field name used in the message

    Returns:
        (is_valid, error_message)
    """
    if value is None:
        return True, ""
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{field} must be a whole number, got: {value!r}"
    if value < SCORE_MIN or value > SCORE_MAX:
        return False, f"{field} must be between {SCORE_MIN} and {SCORE_MAX}, got: {value}"
    return True, ""


def validate_weight(value: Optional[float]) -> Tuple[bool, str]:
    """Validate a body weight in grams (None means "not weighed")."""
    if value is None:
        return True, ""
    if value <= 0:
        return False, f"Weight must be greater than 0 grams, got: {value}"
    if value >= 1000:
        return False, f"Weight must be under 1000 grams, got: {value}"
    return True, ""


def validate_exit_type(value: str) -> Tuple[bool, str]:
    """Validate a subject exit type."""
    if not value:
        return False, "Exit type is required"
    if value not in EXIT_TYPES:
        return False, f"Exit type must be one of {', '.join(EXIT_TYPES)}, got: {value}"
    return True, ""


def validate_client_timestamp(value: int) -> Tuple[bool, str]:
    """Validate a client creation time in milliseconds since the epoch."""
    if value < 0 or value > MAX_CLIENT_TIMESTAMP_MS:
        return False, f"Client timestamp must be between 0 and {MAX_CLIENT_TIMESTAMP_MS} ms, got: {value}"
    return True, ""


def validate_css_operator(value: Optional[str]) -> Tuple[bool, str]:
    """Validate an endpoint CSS comparison operator."""
    if value is None:
        return True, ""
    if value not in CSS_OPERATORS:
        return False, f"CSS operator must be one of {' '.join(CSS_OPERATORS)}, got: {value}"
    return True, ""


def require(check: Tuple[bool, str], field: str, value):
    """Raise ValidationError when a (is_valid, message) check failed."""
    valid, msg = check
    if not valid:
        raise ValidationError(field, value, msg)


def exit_status_for(exit_type: str) -> str:
    """Map an exit type to the terminal subject status it produces."""
    if exit_type == 'natural_death':
        return 'dead'
    if exit_type == 'excluded':
        return 'excluded'
    return 'sacrificed'
