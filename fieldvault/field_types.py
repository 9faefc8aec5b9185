"""
Field type catalogue of the tabular platform and the encryption each type gets.

Text -> AES-256-CBC, numbers/dates/times -> OPE, booleans/selections -> HMAC-SHA256,
references to records or workspace users -> not encrypted.
"""

import logging
from typing import Dict, Iterable, Mapping, Optional

from .models import Algorithm, FieldEncryptionPolicy

logger = logging.getLogger(__name__)

SHORT_TEXT = "SHORT_TEXT"
TEXT = "TEXT"
RICH_TEXT = "RICH_TEXT"
EMAIL = "EMAIL"
URL = "URL"
PHONE = "PHONE"

INTEGER = "INTEGER"
NUMERIC = "NUMERIC"
CURRENCY = "CURRENCY"
PERCENTAGE = "PERCENTAGE"
RATING = "RATING"
DATE = "DATE"
DATETIME = "DATETIME"
TIME = "TIME"
YEAR = "YEAR"
MONTH = "MONTH"
DAY = "DAY"
HOUR = "HOUR"
MINUTE = "MINUTE"
SECOND = "SECOND"

CHECKBOX_YES_NO = "CHECKBOX_YES_NO"
CHECKBOX_ONE = "CHECKBOX_ONE"
CHECKBOX_LIST = "CHECKBOX_LIST"
SELECT_ONE = "SELECT_ONE"
SELECT_LIST = "SELECT_LIST"

SELECT_ONE_RECORD = "SELECT_ONE_RECORD"
SELECT_LIST_RECORD = "SELECT_LIST_RECORD"
SELECT_ONE_WORKSPACE_USER = "SELECT_ONE_WORKSPACE_USER"
SELECT_LIST_WORKSPACE_USER = "SELECT_LIST_WORKSPACE_USER"

TEXT_TYPES = frozenset({SHORT_TEXT, TEXT, RICH_TEXT, EMAIL, URL, PHONE})
NUMBER_TYPES = frozenset({INTEGER, NUMERIC, CURRENCY, PERCENTAGE, RATING})
DATE_TIME_TYPES = frozenset({DATE, DATETIME, TIME, YEAR, MONTH, DAY, HOUR, MINUTE, SECOND})
SELECTION_TYPES = frozenset({CHECKBOX_YES_NO, CHECKBOX_ONE, CHECKBOX_LIST, SELECT_ONE, SELECT_LIST})
REFERENCE_TYPES = frozenset({
    SELECT_ONE_RECORD,
    SELECT_LIST_RECORD,
    SELECT_ONE_WORKSPACE_USER,
    SELECT_LIST_WORKSPACE_USER,
})
# Selection types whose value is a list of options (fan out to one digest per option)
LIST_TYPES = frozenset({CHECKBOX_LIST, SELECT_LIST})

# Only short text is indexed by default; long text, email etc. are encrypt-only.
_SEARCHABLE_TEXT = frozenset({SHORT_TEXT})


# Generic type names accepted alongside the platform's own.
TYPE_ALIASES = {
    "NUMBER": NUMERIC,
    "BOOLEAN": CHECKBOX_YES_NO,
    "CHECKBOX": CHECKBOX_YES_NO,
    "SELECTION": SELECT_ONE,
    "SINGLE_SELECT": SELECT_ONE,
    "MULTI_SELECT": SELECT_LIST,
    "REFERENCE": SELECT_ONE_RECORD,
    "USER": SELECT_ONE_WORKSPACE_USER,
}

_KNOWN_TYPES = TEXT_TYPES | NUMBER_TYPES | DATE_TIME_TYPES | SELECTION_TYPES | REFERENCE_TYPES
# Single yes/no values: "yes", "1", True all mean the same thing
BOOLEAN_TYPES = frozenset({CHECKBOX_YES_NO, CHECKBOX_ONE})


def normalize_field_type(field_type: str) -> str:
    """"single-select" -> "SELECT_ONE"; platform names pass through upper-cased."""
    t = (field_type or "").strip().upper().replace("-", "_").replace(" ", "_")
    return TYPE_ALIASES.get(t, t)


def is_boolean_type(field_type: Optional[str]) -> bool:
    return normalize_field_type(field_type or "") in BOOLEAN_TYPES


def algorithm_for_field_type(field_type: str) -> Algorithm:
    """Fixed type -> algorithm table. Reference types are not encrypted; unknown types are logged and skipped."""
    t = normalize_field_type(field_type)
    if t in TEXT_TYPES:
        return Algorithm.CIPHER
    if t in NUMBER_TYPES or t in DATE_TIME_TYPES:
        return Algorithm.ORDER_PRESERVING
    if t in SELECTION_TYPES:
        return Algorithm.KEYED_HASH
    if t not in _KNOWN_TYPES:
        logger.warning("Unknown field type %r; field is not encrypted", field_type)
    return Algorithm.NONE


def default_policy(field_type: str) -> FieldEncryptionPolicy:
    algorithm = algorithm_for_field_type(field_type)
    t = normalize_field_type(field_type)
    if algorithm == Algorithm.NONE:
        return FieldEncryptionPolicy(enabled=False, algorithm=Algorithm.NONE, field_type=t or None)
    if algorithm == Algorithm.CIPHER:
        return FieldEncryptionPolicy(
            algorithm=algorithm,
            searchable=t in _SEARCHABLE_TEXT,
            key_rotation=True,
            field_type=t,
        )
    if algorithm == Algorithm.ORDER_PRESERVING:
        return FieldEncryptionPolicy(
            algorithm=algorithm,
            searchable=True,
            order_preserving=True,
            key_rotation=True,
            field_type=t,
        )
    return FieldEncryptionPolicy(algorithm=algorithm, searchable=True, field_type=t)


def policies_for_fields(field_types: Mapping[str, str], e2ee: bool = False) -> Dict[str, FieldEncryptionPolicy]:
    """Build field name -> policy for a table definition (field name -> field type)."""
    out: Dict[str, FieldEncryptionPolicy] = {}
    for name, field_type in field_types.items():
        policy = default_policy(field_type)
        if e2ee and policy.enabled:
            policy = policy.model_copy(update={"e2ee": True})
        out[name] = policy
    return out


def encrypted_field_names(field_types: Mapping[str, str]) -> Iterable[str]:
    return [n for n, t in field_types.items() if algorithm_for_field_type(t) != Algorithm.NONE]
