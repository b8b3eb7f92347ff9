"""Normalization and derived-field functions for Eventor result ingestion.

All functions accept loosely-typed XML text (str | int | None) and return the
appropriate type or None.  None of them raise on bad input: a missing or
garbled value is data, not an error.
"""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_LEADING_YEAR_RE = re.compile(r"^\s*(\d{4})")
_DIGITS_RE = re.compile(r"^\d+$")

_TWO_PLACES = Decimal("0.01")

# Eventor ClassTypeId → scoring tier ("klassfaktor")
CLASS_FACTORS: dict[int, int] = {16: 125, 17: 100, 19: 75}

CLASS_TYPE_ELITE = 16
CLASS_TYPE_AGE_GRADED = 17
CLASS_TYPE_OPEN_NOVICE = 19


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: str | int | None) -> int | None:
    """Parse the leading integer of a value ("12", " 7 ", "114abc").

    Returns None for None, empty strings, booleans and non-numeric text.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    m = _LEADING_INT_RE.match(str(value))
    return int(m.group(1)) if m else None


# ---------------------------------------------------------------------------
# Rule 4: time_to_seconds
# ---------------------------------------------------------------------------

def time_to_seconds(value: str | int | None) -> int | None:
    """Convert an Eventor duration to whole seconds.

    Accepted shapes:
      "MM:SS"     → minutes * 60 + seconds
      "HH:MM:SS"  → hours * 3600 + minutes * 60 + seconds
      "45" / 45   → already seconds (relay time-behind is sometimes bare)

    Returns None for empty input, non-numeric components, negative bare
    integers or any other shape.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None

    v = trim(value)
    if v is None:
        return None
    if _DIGITS_RE.match(v):
        return int(v)

    parts = v.split(":")
    if not all(_DIGITS_RE.match(p.strip()) for p in parts):
        return None
    nums = [int(p) for p in parts]
    if len(nums) == 2:
        return nums[0] * 60 + nums[1]
    if len(nums) == 3:
        return nums[0] * 3600 + nums[1] * 60 + nums[2]
    return None


# ---------------------------------------------------------------------------
# Rule 5: leading_year / compute_age
# ---------------------------------------------------------------------------

def leading_year(value: str | None) -> int | None:
    """Return the 4-digit year a date string starts with ("1987-04-02" → 1987)."""
    v = trim(value)
    if v is None:
        return None
    m = _LEADING_YEAR_RE.match(v)
    return int(m.group(1)) if m else None


def compute_age(
    event_year: int | None,
    birth_date: str | None,
    age: str | int | None = None,
) -> int | None:
    """Competitor age in the event year.

    Uses ``event_year - birth_year`` when both are known; otherwise falls
    back to an explicit ``Age`` value from the source document.
    """
    birth_year = leading_year(birth_date)
    if event_year is not None and birth_year is not None:
        return event_year - birth_year
    return parse_int(age)


# ---------------------------------------------------------------------------
# Rule 6: class factor / class type
# ---------------------------------------------------------------------------

def class_factor_for_type(class_type_id: int | None) -> int | None:
    """Map an Eventor ClassTypeId to its scoring factor (16→125, 17→100, 19→75)."""
    if class_type_id is None:
        return None
    return CLASS_FACTORS.get(class_type_id)


# H21, D35, W21E, M45, HD10, H21 Kort, D21 Elit ...
_AGE_GRADED_RE = re.compile(
    r"^(h|d|m|w|hd|dh)\s?\d{1,2}\s?([a-z]|elit|kort|lång|lang|long|short|motion)?$",
    re.IGNORECASE,
)
_OPEN_RE = re.compile(r"^(open|elit|elite|herrar|damer|men|women)(\s.*)?$", re.IGNORECASE)
_NOVICE_RE = re.compile(
    r"^(öppen|oppen)\s?\d{1,2}"
    r"|^u\s?[1-4]$"
    r"|^(gul|vit|grön|gron|orange|violett|blå|bla|svart|röd|rod)(\s.*)?$"
    r"|^(inskolning|nybörjare|nyborjare|motion|ungdom)(\s.*)?$",
    re.IGNORECASE,
)


def class_type_from_name(class_name: str | None) -> int | None:
    """Infer a ClassTypeId from class-name text.

    Age-graded and open classes → 17, named colour / novice classes → 19,
    anything else → None (no factor).
    """
    v = normalize_space(class_name)
    if v is None:
        return None
    if _NOVICE_RE.match(v):
        return CLASS_TYPE_OPEN_NOVICE
    if _AGE_GRADED_RE.match(v) or _OPEN_RE.match(v):
        return CLASS_TYPE_AGE_GRADED
    return None


def resolve_class_type(
    explicit_class_type_id: int | None,
    class_name: str | None,
) -> tuple[int | None, bool]:
    """Return (class_type_id, disagrees).

    The explicit numeric id always wins.  ``disagrees`` is True when both
    signals are available and map to different factors; callers report it
    instead of reconciling the two.
    """
    inferred = class_type_from_name(class_name)
    if explicit_class_type_id is None:
        return inferred, False
    disagrees = (
        inferred is not None
        and class_factor_for_type(inferred) != class_factor_for_type(explicit_class_type_id)
    )
    return explicit_class_type_id, disagrees


# ---------------------------------------------------------------------------
# Rule 7: compute_points
# ---------------------------------------------------------------------------

def compute_points(
    factor: int | Decimal | None,
    position: int | None,
    start_count: int | None,
) -> Decimal | None:
    """Relative performance score: factor * (1 - position / start_count).

    None unless all three inputs are present and start_count > 0.
    Rounded half-up to two decimals.
    """
    if factor is None or position is None or start_count is None:
        return None
    if start_count <= 0:
        return None
    try:
        raw = Decimal(factor) * (1 - Decimal(position) / Decimal(start_count))
    except InvalidOperation:
        return None
    return raw.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
