"""Field normalizers.

Every function here is pure and total: unparseable input yields ``None``
and never raises. Applying a normalizer to its own output returns the same
value, so a normalized record is a fixed point of ``normalize_record``.
"""
import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, NamedTuple, Optional, Sequence

_WHITESPACE = re.compile(r"\s+")
_PRICE_TOKEN = re.compile(r"\d[\d,]*(?:\.\d+)?")
_COUNT_TOKEN = re.compile(r"(\d+(?:,\d+)*(?:\.\d+)?)\s*([Kk])?")
_RATING_TOKEN = re.compile(r"\d+(?:\.\d+)?")


def clean_text(value: Any) -> Optional[str]:
    """Collapse whitespace and trim; empty strings are treated as absent."""
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return None
    text = _WHITESPACE.sub(" ", str(value)).strip()
    return text or None


def clean_price(value: Any) -> Optional[float]:
    """Parse the first numeric token, tolerating comma thousands separators.

    >>> clean_price("1,234.50 AED")
    1234.5
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) and value >= 0 else None
    match = _PRICE_TOKEN.search(str(value))
    if not match:
        return None
    try:
        price = float(match.group(0).replace(",", ""))
    except ValueError:
        return None
    return price if math.isfinite(price) else None


def clean_rating(value: Any) -> Optional[float]:
    """A rating is a decimal in the printed range 1-5."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        rating = float(value)
    else:
        match = _RATING_TOKEN.search(str(value))
        if not match:
            return None
        rating = float(match.group(0))
    if 1.0 <= rating <= 5.0:
        return rating
    return None


def clean_reviews_count(value: Any) -> Optional[int]:
    """Integer review count; ``1.2K`` expands to ``1200``."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        if not math.isfinite(value) or value < 0:
            return None
        return _round_half_up(Decimal(str(value)))
    match = _COUNT_TOKEN.search(str(value))
    if not match:
        return None
    try:
        number = Decimal(match.group(1).replace(",", ""))
    except InvalidOperation:
        return None
    if match.group(2):
        number *= 1000
    return _round_half_up(number)


def _round_half_up(number: Decimal) -> int:
    return int(number.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class TextPattern(NamedTuple):
    name: str
    regex: "re.Pattern"
    normalize: Callable[[Any], Any]


# Listing cards print ratings like "4.3" and counts like "(43)", "43 Ratings"
# or "(1.2K)". Order matters: the first pattern that yields a value wins.
LISTING_RATING_PATTERNS = (
    TextPattern("decimal", re.compile(r"\b([1-5]\.\d{1,2})\b"), clean_rating),
    TextPattern("stars", re.compile(r"([1-5])\s*(?:stars?|out of 5)", re.I), clean_rating),
)

LISTING_REVIEW_PATTERNS = (
    TextPattern("parenthesized", re.compile(r"\((\d+(?:,\d+)*(?:\.\d+)?K?)\)", re.I), clean_reviews_count),
    TextPattern("counted", re.compile(r"(\d+(?:,\d+)*)\s*(?:ratings?|reviews?)", re.I), clean_reviews_count),
    TextPattern("abbreviated", re.compile(r"(\d+(?:\.\d+)?K)\s*(?:ratings?|reviews?)", re.I), clean_reviews_count),
)

DETAIL_RATING_PATTERNS = (
    TextPattern("scored", re.compile(r"\b([1-5]\.\d{1,2})\s*(?:out of 5|/\s*5|stars?)", re.I), clean_rating),
    TextPattern("decimal", re.compile(r"\b([1-5]\.\d{1,2})\b"), clean_rating),
)

DETAIL_REVIEW_PATTERNS = (
    TextPattern("based_on", re.compile(r"Based on ([\d,]+)\s*(?:ratings?|reviews?)", re.I), clean_reviews_count),
    TextPattern("counted", re.compile(r"(\d+(?:,\d+)*)\s*(?:ratings?|reviews?)", re.I), clean_reviews_count),
    TextPattern("parenthesized", re.compile(r"\((\d+(?:,\d+)*)\)"), clean_reviews_count),
)


def match_first(text: Optional[str], patterns: Sequence[TextPattern]) -> Any:
    """Run a pattern table against ``text`` and return the first normalized hit."""
    if not text:
        return None
    for pattern in patterns:
        match = pattern.regex.search(text)
        if not match:
            continue
        value = pattern.normalize(match.group(1))
        if value is not None:
            return value
    return None


FIELD_NORMALIZERS = {
    "title": clean_text,
    "url": clean_text,
    "image": clean_text,
    "brand": clean_text,
    "description": clean_text,
    "currentPrice": clean_price,
    "originalPrice": clean_price,
    "discount": clean_text,
    "rating": clean_rating,
    "reviewsCount": clean_reviews_count,
    "sku": clean_text,
    "currency": clean_text,
    "scrapedAt": clean_text,
}


def normalize_record(record: dict) -> dict:
    """Return a copy of ``record`` with every known field normalized."""
    normalized = dict(record)
    for field, normalizer in FIELD_NORMALIZERS.items():
        if field in normalized:
            normalized[field] = normalizer(normalized[field])
    return normalized
