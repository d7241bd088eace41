import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

Number = Union[int, float]

NOTATION_SUFFIXES: List[Tuple[str, float]] = [
    ("K", 1e3),
    ("M", 1e6),
    ("B", 1e9),
    ("T", 1e12),
    ("q", 1e15),
    ("Q", 1e18),
    ("s", 1e21),
    ("S", 1e24),
    ("O", 1e27),
    ("N", 1e30),
    ("D", 1e33),
] + [("A" + letter, 10.0 ** (36 + 3 * index)) for index, letter in enumerate("ABCDEFGHIJ")]

SUFFIX_MULTIPLIERS = {suffix: multiplier for suffix, multiplier in NOTATION_SUFFIXES}

# q/Q and s/S are different tiers; every other suffix is case-insensitive.
CASE_SENSITIVE_LETTERS = {"q", "Q", "s", "S"}

_MAGNITUDE_RE = re.compile(r"^(\d+(?:\.\d*)?|\.\d+)([A-Za-z]{0,2})$")
_NOTATION_CASE_RE = re.compile(r"^([\d.,]+)\s*([A-Za-z]*)$")


@dataclass(frozen=True)
class Duration:
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    def __str__(self) -> str:
        return format_duration(self)

    @property
    def total_seconds(self) -> int:
        return self.hours * 3600 + self.minutes * 60 + self.seconds


@dataclass(frozen=True)
class TierInfo:
    number: Optional[int]
    has_plus: bool
    display: str


@dataclass(frozen=True)
class HourlyRates:
    coins: str
    cells: str
    dice: str


def _resolve_suffix(suffix: str) -> Optional[float]:
    if not suffix:
        return 1.0
    if suffix in SUFFIX_MULTIPLIERS:
        return SUFFIX_MULTIPLIERS[suffix]
    if len(suffix) == 1 and suffix not in CASE_SENSITIVE_LETTERS:
        return SUFFIX_MULTIPLIERS.get(suffix.upper())
    if len(suffix) == 2:
        return SUFFIX_MULTIPLIERS.get(suffix.upper())
    return None


def parse_magnitude(value) -> float:
    """Turn a plain or notation-suffixed amount into a float.

    Accepts numbers, strings like ``"1,234"``, ``"10.5q"`` or ``"3.2AB"``.
    Anything that cannot be read as an amount yields ``0.0``.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        if math.isnan(value) or math.isinf(value):
            return 0.0
        return float(value)

    text = str(value).strip().replace(",", "").replace(" ", "")
    if not text:
        return 0.0

    match = _MAGNITUDE_RE.match(text)
    if not match:
        logger.debug("Unparseable magnitude %r", value)
        return 0.0

    multiplier = _resolve_suffix(match.group(2))
    if multiplier is None:
        logger.debug("Unknown notation suffix in %r", value)
        return 0.0
    return float(match.group(1)) * multiplier


def _strip_zeros(text: str) -> str:
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_magnitude(value, decimal_separator: str = ".", precision: int = 2) -> str:
    """Render an amount with the largest notation suffix not exceeding it.

    Amounts below 1000 are rendered without a suffix, so the mantissa is
    never below 1.
    """
    amount = parse_magnitude(value)
    sign = "-" if amount < 0 else ""
    amount = abs(amount)

    index = -1
    for position, (_, multiplier) in enumerate(NOTATION_SUFFIXES):
        if multiplier <= amount:
            index = position
        else:
            break

    if index < 0:
        text = _strip_zeros(f"{amount:.{precision}f}")
        if text == "1000":
            text, suffix = "1", NOTATION_SUFFIXES[0][0]
        else:
            suffix = ""
    else:
        suffix, multiplier = NOTATION_SUFFIXES[index]
        text = _strip_zeros(f"{amount / multiplier:.{precision}f}")
        if float(text) >= 1000 and index + 1 < len(NOTATION_SUFFIXES):
            suffix, multiplier = NOTATION_SUFFIXES[index + 1]
            text = _strip_zeros(f"{amount / multiplier:.{precision}f}")

    if text == "0":
        sign = ""
    if decimal_separator != ".":
        text = text.replace(".", decimal_separator)
    return f"{sign}{text}{suffix}"


def standardize_notation_case(value) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    match = _NOTATION_CASE_RE.match(text)
    if not match:
        return text
    number, suffix = match.groups()
    fixed = "".join(
        letter if letter in CASE_SENSITIVE_LETTERS else letter.upper() for letter in suffix
    )
    return f"{number}{fixed}"


def normalize_decimal_separator(value, decimal_separator: str = ".") -> str:
    text = "" if value is None else str(value).strip()
    if decimal_separator == ",":
        return text.replace(",", ".")
    return text.replace(",", "")


def parse_duration(value) -> Duration:
    """Extract hour/minute/second components from loosely formatted text.

    Components may appear in any order or subset (``"45s1h"``, ``"90m"``).
    Days fold into hours. Nothing carries between units, so ``"90m"`` stays
    ninety minutes. ``"1:30:45"`` is also understood.
    """
    if isinstance(value, Duration):
        return value
    if value is None:
        return Duration()

    text = re.sub(r"\s+", "", str(value).lower())
    if not text:
        return Duration()

    clock = re.fullmatch(r"(\d+):(\d{1,2})(?::(\d{1,2}))?", text)
    if clock:
        return Duration(int(clock.group(1)), int(clock.group(2)), int(clock.group(3) or 0))

    def component(unit: str) -> int:
        found = re.search(rf"(?<![\d.])(\d+){unit}", text)
        return int(found.group(1)) if found else 0

    days = component("d")
    return Duration(
        hours=days * 24 + component("h"),
        minutes=component("m"),
        seconds=component("s"),
    )


def format_duration(duration: Duration) -> str:
    return f"{duration.hours}h{duration.minutes}m{duration.seconds}s"


def normalize_duration(value) -> str:
    return format_duration(parse_duration(value))


def duration_to_hours(value) -> float:
    return parse_duration(value).total_seconds / 3600


def format_duration_for_remote(value) -> str:
    duration = parse_duration(value)
    return f"{duration.hours}h {duration.minutes}m {duration.seconds}s"


def format_rate(amount, hours: float, decimal_separator: str = ".") -> str:
    if hours <= 0:
        return "0"
    return format_magnitude(parse_magnitude(amount) / hours, decimal_separator)


def calculate_hourly_rates(
    duration,
    coins,
    cells,
    dice,
    decimal_separator: str = ".",
) -> HourlyRates:
    hours = duration_to_hours(duration)
    return HourlyRates(
        coins=format_rate(coins, hours, decimal_separator),
        cells=format_rate(cells, hours, decimal_separator),
        dice=format_rate(dice, hours, decimal_separator),
    )


def parse_tier(value) -> TierInfo:
    if value is None or isinstance(value, bool):
        return TierInfo(number=None, has_plus=False, display="Unknown")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return TierInfo(number=None, has_plus=False, display="Unknown")
        number = int(value)
        return TierInfo(number=number, has_plus=False, display=str(number))

    text = str(value).strip()
    match = re.fullmatch(r"(\d+)\s*(\+?)", text)
    if not match:
        return TierInfo(number=None, has_plus=False, display=text or "Unknown")
    number = int(match.group(1))
    has_plus = bool(match.group(2))
    return TierInfo(number=number, has_plus=has_plus, display=f"{number}+" if has_plus else str(number))


def parse_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return int(value)
    text = str(value).strip().replace(",", "")
    if re.fullmatch(r"\d+(\.0+)?", text):
        return int(float(text))
    return None


def title_case(text) -> str:
    if not text:
        return ""
    return re.sub(r"\w\S*", lambda m: m.group(0)[0].upper() + m.group(0)[1:].lower(), str(text))


def ordinal_suffix(number: int) -> str:
    if 10 <= number % 100 <= 20:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(number % 10, "th")
