import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .aliases import decimal_for_language, ocr_labels
from .autocorrect import Autocorrecter
from .notation import normalize_decimal_separator, normalize_duration, parse_magnitude, parse_tier

logger = logging.getLogger(__name__)

_AMOUNT_RE = re.compile(r"([\d.,]+[A-Za-z]{0,2})")
_DURATION_RE = re.compile(r"((?:\d+\s*[dhms]\s*)+)", re.IGNORECASE)
_MISREADS = {"O": "0", "o": "0", "B": "8", "S": "5", "I": "1", "l": "1", "Z": "2", "G": "6"}

_PASTE_FIELDS = [
    ("tier", r"Tier", r"\d+\s*\+?"),
    ("wave", r"Wave", r"\d+"),
    ("roundDuration", r"Real\s*Time", r"(?:\d+\s*[dhms]\s*)+"),
    ("totalCoins", r"Coins\s*Earned", r"[\d.,]+[A-Za-z]{0,2}"),
    ("totalCells", r"Cells\s*Earned", r"[\d.,]+[A-Za-z]{0,2}"),
    ("totalDice", r"Reroll\s*Shards\s*Earned", r"[\d.,]+[A-Za-z]{0,2}"),
]


def fix_ocr_misreads(text: Optional[str]) -> str:
    """Swap letters OCR commonly reads in place of digits.

    Only letters followed by another digit-like character are touched, so a
    trailing notation suffix such as ``B`` or ``S`` is kept.
    """
    if not text:
        return "0"
    token = str(text).strip().replace(" ", "")
    fixed = []
    for index, char in enumerate(token):
        following = token[index + 1] if index + 1 < len(token) else ""
        digit_like = following.isdigit() or (following != "" and following in ".,")
        if char in _MISREADS and digit_like:
            fixed.append(_MISREADS[char])
        else:
            fixed.append(char)
    result = "".join(fixed)
    if parse_magnitude(result) == 0:
        digits = re.match(r"[\d.]+", result)
        return digits.group(0) if digits else "0"
    return result


def _label_value(text: str, label: str, value_pattern: str) -> str:
    match = re.search(
        rf"\b{label}\b[ \t]*[:|\-]?[ \t]*({value_pattern})", text, re.IGNORECASE
    )
    return match.group(1).strip() if match else ""


def parse_battle_report(text: Optional[str], decimal_separator: str = ".") -> Dict[str, Any]:
    """Pull run fields out of the game's copied Battle Report text.

    Returns a raw field map ready for ``normalize_incoming``; labels that are
    not found are simply absent.
    """
    if not text:
        return {}
    text = str(text).replace("\r", "")
    data: Dict[str, Any] = {}

    for key, label, pattern in _PASTE_FIELDS:
        value = _label_value(text, label, pattern)
        if not value:
            continue
        if key == "tier":
            tier = parse_tier(value.replace(" ", ""))
            if tier.number is None:
                continue
            data["tier"] = tier.number
            data["tierDisplay"] = tier.display
            data["tierHasPlus"] = tier.has_plus
            if tier.has_plus:
                data["type"] = "Tournament"
        elif key == "wave":
            data["wave"] = int(value)
        elif key == "roundDuration":
            data["roundDuration"] = normalize_duration(value)
        else:
            data[key] = normalize_decimal_separator(value, decimal_separator)

    killed = re.search(r"Killed\s*By[ \t]*[:|\-]?[ \t]*([A-Za-z][A-Za-z'\-]*)", text, re.IGNORECASE)
    if killed:
        data["killedBy"] = killed.group(1)

    battle_date = re.search(r"Battle\s*Date[ \t]*[:|\-]?[ \t]*([^\n\t]+)", text, re.IGNORECASE)
    if battle_date:
        data["Battle Date"] = battle_date.group(1).strip()

    return data


def _squash(text: str) -> str:
    return re.sub(r"\s+", "", text).lower()


def _find_labelled_line(lines: List[str], labels: Iterable[str], fuzzy: bool = True) -> Optional[str]:
    keys = [_squash(label) for label in labels]
    for line in lines:
        squashed = _squash(line)
        for key in keys:
            if key and key in squashed:
                return line
    if not fuzzy:
        return None

    corrector = Autocorrecter(keys)
    for line in lines:
        head = re.split(r"[\d]", line, maxsplit=1)[0]
        if not head.strip():
            continue
        if corrector.best_match(_squash(head), threshold=0.85):
            return line
    return None


def _value_after_label(line: str, labels: Iterable[str]) -> str:
    lowered = line.lower()
    for label in labels:
        position = lowered.find(label.lower())
        if position != -1:
            return line[position + len(label):].strip()
    return line


def extract_from_ocr_lines(lines: Iterable[str], scan_language: str = "English") -> Dict[str, Any]:
    """Turn OCR'd Battle Report lines into a raw field map.

    Labels in every supported language are recognised regardless of the
    user's scan language; the language only decides the decimal separator.
    """
    lines = [str(line) for line in lines or [] if str(line).strip()]
    decimal = decimal_for_language(scan_language)
    data: Dict[str, Any] = {}

    for key, field in (("tier", "tier"), ("wave", "wave")):
        labels = ocr_labels(field)
        for line in lines:
            match = re.search(
                rf"(?:{'|'.join(re.escape(label) for label in labels)})\s*(\d+\s*\+?)", line, re.IGNORECASE
            )
            if match:
                value = match.group(1).replace(" ", "")
                if key == "tier":
                    tier = parse_tier(value)
                    data["tier"] = tier.number
                    data["tierDisplay"] = tier.display
                    data["tierHasPlus"] = tier.has_plus
                else:
                    data["wave"] = int(value.rstrip("+"))
                break

    for key, field in (("totalCoins", "coins"), ("totalCells", "cells"), ("totalDice", "dice")):
        labels = ocr_labels(field)
        line = _find_labelled_line(lines, labels)
        if line is None:
            continue
        match = _AMOUNT_RE.search(_value_after_label(line, labels))
        if match:
            data[key] = fix_ocr_misreads(normalize_decimal_separator(match.group(1), decimal))

    duration_labels = ocr_labels("duration")
    line = _find_labelled_line(lines, duration_labels, fuzzy=False)
    if line is not None:
        match = _DURATION_RE.search(_value_after_label(line, duration_labels))
        if match:
            data["roundDuration"] = normalize_duration(match.group(1))

    killed_labels = ocr_labels("killed_by")
    line = _find_labelled_line(lines, killed_labels, fuzzy=False)
    if line is not None:
        remainder = _value_after_label(line, killed_labels)
        position = lines.index(line)
        if not remainder and position + 1 < len(lines):
            # label and value sometimes come back as separate lines
            remainder = lines[position + 1].strip()
        if remainder:
            data["killedBy"] = remainder.split()[0]

    logger.debug("OCR extraction produced %s", data)
    return data


def datetime_from_filename(filename: Optional[str]) -> Optional[datetime]:
    """Capture time encoded in a screenshot's file name, if any."""
    if not filename:
        return None

    screenshot = re.search(r"Screenshot_(\d{8})[_-](\d{6})", filename, re.IGNORECASE)
    if screenshot:
        try:
            return datetime.strptime(screenshot.group(1) + screenshot.group(2), "%Y%m%d%H%M%S")
        except ValueError:
            pass

    patterns = [
        (r"(\d{4})[-_.](\d{2})[-_.](\d{2})", "ymd"),
        (r"(\d{2})[-_.](\d{2})[-_.](\d{4})", "mdy"),
        (r"(\d{2})[-_.](\d{2})[-_.](\d{2})", "mdy"),
    ]
    for pattern, order in patterns:
        match = re.search(pattern, filename)
        if not match:
            continue
        if order == "ymd":
            year, month, day = match.groups()
        else:
            month, day, year = match.groups()
            if len(year) == 2:
                year = f"20{year}"
        try:
            captured = datetime(int(year), int(month), int(day))
        except ValueError:
            continue

        rest = filename[match.end():]
        clock = re.search(r"(\d{1,2})[-_.:](\d{2})(?:[-_.:](\d{2}))?\s*(am|pm)?", rest, re.IGNORECASE)
        if clock:
            hour = int(clock.group(1))
            meridiem = (clock.group(4) or "").lower()
            if meridiem == "pm" and hour < 12:
                hour += 12
            elif meridiem == "am" and hour == 12:
                hour = 0
            try:
                captured = captured.replace(
                    hour=hour, minute=int(clock.group(2)), second=int(clock.group(3) or 0)
                )
            except ValueError:
                pass
        return captured

    return None
