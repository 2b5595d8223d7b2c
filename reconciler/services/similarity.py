"""Text, amount and date similarity helpers used by every matcher.

All functions are pure and tolerate missing input: empty text, zero amounts
and absent dates score as "no evidence" rather than raising.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import date
from decimal import Decimal

STOP_WORDS = frozenset(
    {"from", "to", "the", "and", "for", "with", "payment", "transfer", "in", "out", "ltd", "limited"}
)

# Bank descriptions repeat scheme, card and currency noise that says nothing about the vendor
VENDOR_STOP_WORDS = STOP_WORDS | {
    "plc",
    "inc",
    "corp",
    "llc",
    "card",
    "visa",
    "mastercard",
    "debit",
    "credit",
    "pos",
    "atm",
    "ref",
    "reference",
    "direct",
    "faster",
    "bacs",
    "chaps",
    "fps",
    "gbp",
    "usd",
    "eur",
    "aud",
    "purchase",
    "sale",
    "fee",
    "charge",
}

COUNTRY_CODES = frozenset({"gb", "uk", "au", "us", "de", "fr", "es", "it", "nl", "ie", "ca", "nz"})

MAX_VENDOR_KEYWORDS = 5

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WWW = re.compile(r"www\.")
_URL = re.compile(r"https?://\S+")
_DOMAIN_SUFFIX = re.compile(r"\.(com|co\.uk|org|net|io|app|co|uk|au|de|fr|es|it|nl|ie|ca|nz)")
_INTL_PHONE = re.compile(r"\+?\d{1,4}[\s\-]?\d{6,14}")
_LOCAL_PHONE = re.compile(r"\d{3}[\s\-]?\d{3}[\s\-]?\d{4}")
_TWO_LETTER = re.compile(r"\b[a-z]{2}\b")
_NUMERIC_REF = re.compile(r"\b\d{5,}\b")
_PREFIXED_REF = re.compile(r"\b[a-z]{1,2}\d{5,}\b")

_COMPANY_SUFFIX = re.compile(r"\b(ltd|limited|plc|inc|llc|llp|co|company)\b")
_TRADING_SUFFIX = re.compile(
    r"\b(ltd|limited|plc|inc|llc|llp|co|company|holdings|group|enterprises?|properties|investments?)\b"
)


# =============================================================================
# Keywords
# =============================================================================


def extract_keywords(text: str | None) -> list[str]:
    """Lower-case tokens longer than two characters, minus stop-words."""
    if not text:
        return []
    cleaned = _NON_ALNUM.sub(" ", text.lower())
    return [word for word in cleaned.split() if len(word) > 2 and word not in STOP_WORDS]


def extract_vendor_keywords(text: str | None) -> list[str]:
    """Extract up to five vendor tokens from a noisy bank description.

    URLs, domain suffixes, phone numbers, country codes and long reference
    numbers are removed before the banking stop-word filter runs.
    """
    if not text:
        return []

    cleaned = text.lower()
    cleaned = _WWW.sub(" ", cleaned)
    cleaned = _URL.sub(" ", cleaned)
    cleaned = _DOMAIN_SUFFIX.sub(" ", cleaned)
    cleaned = _INTL_PHONE.sub(" ", cleaned)
    cleaned = _LOCAL_PHONE.sub(" ", cleaned)
    cleaned = _TWO_LETTER.sub(
        lambda match: " " if match.group(0) in COUNTRY_CODES else match.group(0), cleaned
    )
    cleaned = _NUMERIC_REF.sub(" ", cleaned)
    cleaned = _PREFIXED_REF.sub(" ", cleaned)
    cleaned = _NON_ALNUM.sub(" ", cleaned)

    tokens = [word for word in cleaned.split() if len(word) > 2 and word not in VENDOR_STOP_WORDS]
    return tokens[:MAX_VENDOR_KEYWORDS]


# =============================================================================
# String similarity
# =============================================================================


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def levenshtein_similarity(a: str | None, b: str | None) -> float:
    """Edit-distance similarity in [0, 1].

    Strings whose lengths differ by more than half the longer one score 0
    without running the distance computation.
    """
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    if abs(len(a) - len(b)) / longest > 0.5:
        return 0.0
    return 1 - levenshtein_distance(a, b) / longest


def string_similarity(a: str | None, b: str | None) -> float:
    """Keyword similarity: exact 1.0, containment 0.8, else partial overlap ratio."""
    if not a or not b:
        return 0.0
    left = a.lower()
    right = b.lower()
    if left == right:
        return 1.0
    if left in right or right in left:
        return 0.8

    words_left = extract_keywords(left)
    words_right = extract_keywords(right)
    if not words_left or not words_right:
        return 0.0

    matches = [
        word for word in words_left if any(word in other or other in word for other in words_right)
    ]
    return len(matches) / max(len(words_left), len(words_right))


def graded_keyword_overlap(entry_keywords: Sequence[str], pattern_keywords: Sequence[str]) -> float:
    """Weighted overlap normalised by the pattern's keyword count.

    Exact tokens weigh 1.0, substrings 0.7, near spellings (edit similarity
    >= 0.75) 0.5.
    """
    if not pattern_keywords:
        return 0.0
    total = 0.0
    for entry_kw in entry_keywords:
        for pattern_kw in pattern_keywords:
            if entry_kw == pattern_kw:
                total += 1.0
            elif entry_kw in pattern_kw or pattern_kw in entry_kw:
                total += 0.7
            elif levenshtein_similarity(entry_kw, pattern_kw) >= 0.75:
                total += 0.5
    return total / len(pattern_keywords)


def descriptions_related(a: str | None, b: str | None) -> bool:
    """True when two descriptions share at least half of the shorter one's words."""
    if not a or not b:
        return False
    words_a = [w for w in _NON_ALNUM.sub(" ", a.lower()).split() if len(w) >= 3]
    words_b = [w for w in _NON_ALNUM.sub(" ", b.lower()).split() if len(w) >= 3]
    if not words_a or not words_b:
        return False
    shared = [w for w in words_a if w in words_b]
    return len(shared) / min(len(words_a), len(words_b)) >= 0.5


# =============================================================================
# Names
# =============================================================================


def normalize_name(name: str | None, *, strip_trading_words: bool = False) -> str:
    """Lower-case a person or company name and drop legal-form suffixes."""
    if not name:
        return ""
    suffix = _TRADING_SUFFIX if strip_trading_words else _COMPANY_SUFFIX
    cleaned = suffix.sub("", name.lower())
    cleaned = _NON_ALNUM.sub(" ", cleaned)
    return " ".join(cleaned.split())


def _word_hit(word: str, description: str, description_words: list[str]) -> bool:
    # Three-letter words must match whole words so "the" never hits "together"
    if len(word) >= 4:
        return word in description
    return word in description_words


def name_in_description(
    description: str | None,
    name: str | None,
    business_name: str | None = None,
) -> float:
    """Grade how strongly a bank description names a borrower or investor.

    Full business name 1.0, full personal name 0.9, a business-name word 0.8
    (0.85 for an exact three-letter word), a personal-name word 0.7 (0.75).
    """
    if not description:
        return 0.0

    name_norm = normalize_name(name)
    business_norm = normalize_name(business_name)
    description_norm = normalize_name(description)
    description_words = description_norm.split()

    if len(business_norm) >= 3 and business_norm in description_norm:
        return 1.0
    if len(name_norm) >= 3 and name_norm in description_norm:
        return 0.9

    for source, long_score, short_score in (
        (business_norm, 0.8, 0.85),
        (name_norm, 0.7, 0.75),
    ):
        for word in (w for w in source.split() if len(w) >= 3):
            if _word_hit(word, description_norm, description_words):
                return long_score if len(word) >= 4 else short_score
    return 0.0


def name_score(text: str | None, name: str | None) -> float:
    """Looser name search used for coarse pot assignment.

    The whole normalised name scores 0.95; otherwise the share of its words
    present in the text, boosted when the leading word is one of them.
    """
    if not text or not name:
        return 0.0
    text_norm = normalize_name(text, strip_trading_words=True)
    name_norm = normalize_name(name, strip_trading_words=True)
    if len(name_norm) < 3:
        return 0.0
    if name_norm in text_norm:
        return 0.95

    name_words = [w for w in name_norm.split() if len(w) >= 3]
    if not name_words:
        return 0.0
    matched = [w for w in name_words if w in text_norm]
    if not matched:
        return 0.0
    ratio = len(matched) / len(name_words)
    if name_words[0] in matched:
        return 0.7 + 0.2 * ratio
    return 0.5 * ratio


# =============================================================================
# Amounts and dates
# =============================================================================


def to_decimal(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def amounts_match(
    a: Decimal | int | float | None,
    b: Decimal | int | float | None,
    tolerance_percent: Decimal | int | float = 1,
) -> bool:
    """Compare absolute amounts within a percentage of the larger one."""
    left = abs(to_decimal(a))
    right = abs(to_decimal(b))
    if left == 0 and right == 0:
        return True
    if left == 0 or right == 0:
        return False
    tolerance = max(left, right) * to_decimal(tolerance_percent) / Decimal("100")
    return abs(left - right) <= tolerance


def days_between(d1: date | None, d2: date | None) -> int | None:
    if d1 is None or d2 is None:
        return None
    return abs((d1 - d2).days)


def dates_within_days(d1: date | None, d2: date | None, days: int) -> bool:
    diff = days_between(d1, d2)
    return diff is not None and diff <= days


def date_proximity_score(d1: date | None, d2: date | None) -> float:
    """Step score for how close two dates are; missing dates score 0."""
    diff = days_between(d1, d2)
    if diff is None:
        return 0.0
    if diff == 0:
        return 1.0
    if diff <= 1:
        return 0.95
    if diff <= 3:
        return 0.85
    if diff <= 7:
        return 0.70
    if diff <= 14:
        return 0.50
    if diff <= 30:
        return 0.30
    return 0.1
