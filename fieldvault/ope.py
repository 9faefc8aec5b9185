"""
Order-preserving encoding for numbers, dates and times.

The normalized position of a value inside its (min, max) range is quantized into one of
2**52 buckets; the token is bucket * 2**12 + HMAC(key, range|bucket) mod 2**12, written as a
fixed-width decimal string. Tokens therefore sort like their values (numerically and
lexicographically), and the keyed low bits differ between keys.

Limitations:
- Comparison only. There is no decrypt; the plaintext is not recoverable from a token.
- Values that fall in the same bucket produce the same token (compare == 0).
- Tokens are only comparable when produced with the same key and range.
- Values outside the range are clamped to its edges (metadata["clamped"] is set).
"""

import hashlib
import hmac
import math
import re
from datetime import date, datetime, time, timezone
from typing import NamedTuple, Optional, Tuple, Union

from . import config
from .cipher import generate_key, require_key
from .models import Algorithm, EncryptedValue

ALGORITHM = Algorithm.ORDER_PRESERVING

BUCKET_BITS = 52
NOISE_BITS = 12
TOKEN_WIDTH = 20  # digits of 2**64 - 1

Range = Tuple[float, float]
Encodable = Union[int, float, date, datetime, time, str]

DEFAULT_NUMBER_RANGE: Range = (-1e12, 1e12)
# 1900-01-01 .. 2200-01-01 in epoch milliseconds
DEFAULT_DATE_RANGE: Range = (-2_208_988_800_000.0, 7_258_118_400_000.0)
TIME_RANGE: Range = (0.0, 86_400.0)

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")


class RangeWindow(NamedTuple):
    min: EncryptedValue
    max: EncryptedValue


class OpeSearchTokens(NamedTuple):
    exact: EncryptedValue
    range: RangeWindow


def _check_range(value_range: Range) -> Range:
    lo, hi = float(value_range[0]), float(value_range[1])
    if not (math.isfinite(lo) and math.isfinite(hi)) or hi <= lo:
        raise ValueError(f"Invalid range {value_range!r}: need finite min < max")
    return lo, hi


def _bucket_noise(raw_key: bytes, lo: float, hi: float, bucket: int) -> int:
    digest = hmac.new(raw_key, f"{lo!r}|{hi!r}|{bucket}".encode("utf-8"), hashlib.sha256).digest()
    return int.from_bytes(digest[:4], "big") % (1 << NOISE_BITS)


def encrypt_number(value: float, key: Optional[str] = None, value_range: Optional[Range] = None) -> EncryptedValue:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"encrypt_number expects a number, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError("Cannot encode NaN or infinity")
    generated = None
    if key is None:
        key = generated = generate_key()
    raw_key = require_key(key)
    lo, hi = _check_range(value_range or DEFAULT_NUMBER_RANGE)
    position = (float(value) - lo) / (hi - lo)
    clamped = position < 0.0 or position > 1.0
    position = min(max(position, 0.0), 1.0)
    bucket = min(int(position * (1 << BUCKET_BITS)), (1 << BUCKET_BITS) - 1)
    token = (bucket << NOISE_BITS) + _bucket_noise(raw_key, lo, hi, bucket)
    metadata = {"range": [lo, hi]}
    if clamped:
        metadata["clamped"] = True
    return EncryptedValue(
        data=str(token).zfill(TOKEN_WIDTH),
        algorithm=ALGORITHM,
        metadata=metadata,
        generated_key=generated,
    )


def date_to_millis(value: Union[date, datetime, str]) -> float:
    """Epoch milliseconds; naive datetimes and plain dates are taken as UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip())
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp() * 1000.0
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp() * 1000.0
    raise TypeError(f"Expected a date, got {type(value).__name__}")


def time_to_seconds(value: Union[str, time]) -> float:
    """Seconds since midnight for "HH:mm[:ss]" strings or time objects."""
    if isinstance(value, time):
        return float(value.hour * 3600 + value.minute * 60 + value.second)
    m = _TIME_RE.match(str(value).strip())
    if not m:
        raise ValueError(f"Invalid time {value!r}; expected HH:mm or HH:mm:ss")
    hours, minutes, seconds = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
    return float(hours * 3600 + minutes * 60 + seconds)


def encrypt_date(value: Union[date, datetime, str], key: Optional[str] = None,
                 value_range: Optional[Range] = None) -> EncryptedValue:
    return encrypt_number(date_to_millis(value), key, value_range or DEFAULT_DATE_RANGE)


def encrypt_time(value: Union[str, time], key: Optional[str] = None) -> EncryptedValue:
    return encrypt_number(time_to_seconds(value), key, TIME_RANGE)


def get_value_type(value: object) -> Optional[str]:
    """"number", "date" (also ISO-8601 strings), "time" or None when the value cannot be encoded."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return "number" if math.isfinite(value) else None
    if isinstance(value, (date, datetime)):
        return "date"
    if isinstance(value, time):
        return "time"
    if isinstance(value, str):
        if _TIME_RE.match(value.strip()):
            return "time"
        if _is_iso_date(value):
            return "date"
    return None


def _is_iso_date(value: str) -> bool:
    try:
        datetime.fromisoformat(value.strip())
    except ValueError:
        return False
    return True


def can_encrypt(value: object) -> bool:
    return get_value_type(value) is not None


def numeric_domain(value: Encodable, value_range: Optional[Range] = None) -> Tuple[float, Range]:
    """Reduce an encodable value to (number, range) as encrypt_* would."""
    kind = get_value_type(value)
    if kind == "number":
        return float(value), _check_range(value_range or DEFAULT_NUMBER_RANGE)  # type: ignore[arg-type]
    if kind == "date":
        return date_to_millis(value), _check_range(value_range or DEFAULT_DATE_RANGE)  # type: ignore[arg-type]
    if kind == "time":
        return time_to_seconds(value), TIME_RANGE  # type: ignore[arg-type]
    raise TypeError(f"Value of type {type(value).__name__} cannot be order-preserving encoded")


def encode(value: Encodable, key: str, value_range: Optional[Range] = None) -> EncryptedValue:
    """Dispatch on value type: numbers, dates/datetimes, or HH:mm[:ss] times."""
    number, rng = numeric_domain(value, value_range)
    return encrypt_number(number, key, rng)


def _token_int(value: EncryptedValue) -> int:
    if value.algorithm != ALGORITHM:
        raise ValueError(f"Expected {ALGORITHM.value} token, got {value.algorithm.value}")
    return int(value.data)


def _same_range(*values: EncryptedValue) -> None:
    ranges = {tuple((v.metadata or {}).get("range") or ()) for v in values}
    if len(ranges) > 1:
        raise ValueError("Tokens were encoded with different ranges and are not comparable")


def compare(a: EncryptedValue, b: EncryptedValue) -> int:
    """-1, 0 or 1 like the underlying values (within bucket resolution)."""
    ta, tb = _token_int(a), _token_int(b)
    _same_range(a, b)
    return (ta > tb) - (ta < tb)


def is_in_range(token: EncryptedValue, min_token: EncryptedValue, max_token: EncryptedValue) -> bool:
    t = _token_int(token)
    _same_range(token, min_token, max_token)
    return _token_int(min_token) <= t <= _token_int(max_token)


def generate_search_tokens(
    value: Encodable,
    key: str,
    value_range: Optional[Range] = None,
    tolerance: Optional[float] = None,
) -> OpeSearchTokens:
    """
    Exact token plus the tolerance window containing the value. Windows are fixed slices
    of width tolerance * (max - min), so nearby values share the same window pair.
    """
    if tolerance is None:
        tolerance = config.OPE_TOLERANCE
    if not 0 < tolerance <= 1:
        raise ValueError("tolerance must be in (0, 1]")
    number, (lo, hi) = numeric_domain(value, value_range)
    width = (hi - lo) * tolerance
    slot = int((min(max(number, lo), hi) - lo) // width)
    w_lo = lo + slot * width
    w_hi = min(w_lo + width, hi)
    return OpeSearchTokens(
        exact=encrypt_number(number, key, (lo, hi)),
        range=RangeWindow(
            min=encrypt_number(w_lo, key, (lo, hi)),
            max=encrypt_number(w_hi, key, (lo, hi)),
        ),
    )
