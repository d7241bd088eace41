import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .aliases import CANONICAL_KEYS, DEFAULT_FIELDS, FIELD_ALIASES, REMOTE_ALIASES, RUN_ID_KEYS
from .models import RunRecord, RunType
from .notation import (
    format_duration_for_remote,
    normalize_decimal_separator,
    normalize_duration,
    parse_int,
    parse_magnitude,
    parse_tier,
    standardize_notation_case,
    title_case,
)

logger = logging.getLogger(__name__)

INTERNAL_KEYS = {
    "runId",
    "id",
    "_id",
    "timestamp",
    "settings",
    "screenshotBuffer",
    "screenshotName",
    "lastUpdated",
    "runCount",
}

_DERIVED_KEYS = {"Battle Date", "battleDate", "reportTimestamp", "tierHasPlus", "Real Time"}
_KNOWN_KEYS = (
    {alias for aliases in FIELD_ALIASES.values() for alias in aliases}
    | {alias for aliases in REMOTE_ALIASES.values() for alias in aliases}
    | set(RUN_ID_KEYS)
    | _DERIVED_KEYS
    | INTERNAL_KEYS
)

_MONTH_RE = re.compile(r"^(jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)\b", re.IGNORECASE)
_AMOUNT_FIELDS = ("coins", "cells", "dice")


def should_discard_key(key: str) -> bool:
    """OCR junk that shows up as keys: dates, bare numbers, stray labels."""
    key = key.strip()
    if not key:
        return True
    if _MONTH_RE.match(key):
        return True
    if re.match(r"^\d", key) and " " not in key:
        return True
    if re.match(r"^\d+[hms]$", key, re.IGNORECASE):
        return True
    if re.match(r"^Battle Report\b", key) and key != "Battle Report Coins earned":
        return True
    return False


def format_date(value: datetime) -> str:
    return f"{value.month}/{value.day}/{value:%y}"


def format_time(value: datetime) -> str:
    return value.strftime("%H:%M:%S")


def parse_battle_date(text) -> Optional[datetime]:
    if not text:
        return None
    text = re.sub(r"\s+", " ", str(text)).strip()
    patterns = [
        "%b %d, %Y %H:%M",
        "%b %d, %Y %H:%M:%S",
        "%b %d, %Y %I:%M %p",
        "%B %d, %Y %H:%M",
        "%B %d, %Y %I:%M %p",
        "%d %b %Y %H:%M",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%d %H:%M",
    ]
    for fmt in patterns:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def parse_run_datetime(date_text, time_text) -> Optional[datetime]:
    if not date_text:
        return None
    date_text = str(date_text).strip()
    parsed_date = None
    for fmt in ("%m/%d/%y", "%m/%d/%Y", "%Y-%m-%d", "%d.%m.%Y"):
        try:
            parsed_date = datetime.strptime(date_text, fmt)
            break
        except ValueError:
            continue
    if parsed_date is None:
        return None

    time_text = str(time_text or "").strip()
    for fmt in ("%H:%M:%S", "%H:%M", "%I:%M %p", "%I:%M:%S %p"):
        try:
            parsed_time = datetime.strptime(time_text.upper(), fmt)
            return parsed_date.replace(
                hour=parsed_time.hour, minute=parsed_time.minute, second=parsed_time.second
            )
        except ValueError:
            continue
    return parsed_date


def build_battle_date(date_text, time_text) -> Optional[str]:
    if not date_text or not time_text:
        return None
    parsed = parse_run_datetime(date_text, time_text)
    if parsed is None:
        return None
    return f"{parsed:%b} {parsed.day}, {parsed.year} {parsed:%H:%M}"


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _first_present(source: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in source and not _is_blank(source[key]):
            return source[key]
    return None


def clean_amount(raw, decimal_separator: str = ".") -> Any:
    if _is_blank(raw):
        return DEFAULT_FIELDS["coins"]
    if isinstance(raw, bool):
        return DEFAULT_FIELDS["coins"]
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            logger.warning("Unreadable amount %r, using default", raw)
            return DEFAULT_FIELDS["coins"]
        return int(raw) if float(raw).is_integer() else raw
    text = standardize_notation_case(normalize_decimal_separator(raw, decimal_separator))
    text = text.replace(" ", "")
    if parse_magnitude(text) == 0 and not re.fullmatch(r"0+(\.0*)?[A-Za-z]{0,2}", text):
        logger.warning("Unreadable amount %r, using default", raw)
        return DEFAULT_FIELDS["coins"]
    return text


def clean_field_value(name: str, raw, decimal_separator: str = ".") -> Any:
    """Parse one user-facing value into the canonical form for ``name``."""
    if name == "tier":
        tier = parse_tier(raw)
        if tier.number is None:
            if not _is_blank(raw) and str(raw).strip() != "Unknown":
                logger.warning("Unreadable tier %r, using default", raw)
            return DEFAULT_FIELDS["tier"]
        return tier.display
    if name == "wave":
        wave = parse_int(raw)
        if wave is None:
            if not _is_blank(raw) and str(raw).strip() != "Unknown":
                logger.warning("Unreadable wave %r, using default", raw)
            return DEFAULT_FIELDS["wave"]
        return wave
    if name in _AMOUNT_FIELDS:
        return clean_amount(raw, decimal_separator)
    if name == "duration":
        return normalize_duration(raw)
    if name == "killed_by":
        text = title_case(str(raw or "").strip())
        return text or DEFAULT_FIELDS["killed_by"]
    if name == "type":
        return RunType.parse(raw).value
    if name == "notes":
        text = str(raw or "").strip()
        return "" if text.lower() == "n/a" else text
    if name in {"date", "time"}:
        return str(raw or "").strip()
    raise KeyError(name)


def normalize_incoming(
    extracted: Optional[Mapping[str, Any]],
    fallback: Optional[Mapping[str, Any]] = None,
    now: Optional[Callable[[], datetime]] = None,
    decimal_separator: str = ".",
) -> RunRecord:
    """Build a complete RunRecord out of whatever field names a source used.

    ``extracted`` is searched before ``fallback``. Missing or unreadable
    fields get their defaults; this never raises.
    """
    sources = [source for source in (extracted, fallback) if isinstance(source, Mapping)]
    record = RunRecord()

    primary = extracted if isinstance(extracted, Mapping) else {}
    explicit_type = _first_present(primary, FIELD_ALIASES["type"]) is not None
    for name, aliases in FIELD_ALIASES.items():
        raw = None
        for source in sources:
            raw = _first_present(source, aliases)
            if raw is not None:
                break
        if raw is None:
            continue
        try:
            value = clean_field_value(name, raw, decimal_separator)
        except (TypeError, ValueError, AttributeError, OverflowError):
            logger.warning("Could not normalize %s=%r, using default", name, raw, exc_info=True)
            continue
        setattr(record, name, value)

    if primary.get("tierHasPlus") and record.tier_number is not None:
        record.tier = f"{record.tier_number}+"
    if record.tier_has_plus and not explicit_type:
        record.type = RunType.TOURNAMENT.value

    for source in sources:
        run_id = _first_present(source, RUN_ID_KEYS)
        if run_id is not None:
            record.run_id = str(run_id)
            break

    if not record.date or not record.time:
        captured = None
        for source in sources:
            captured = parse_battle_date(_first_present(source, ["Battle Date", "battleDate"]))
            if captured is None:
                captured = _parse_timestamp(source.get("reportTimestamp"))
            if captured is not None:
                break
        if captured is None:
            captured = (now or datetime.now)()
        record.date = record.date or format_date(captured)
        record.time = record.time or format_time(captured)

    for key, value in primary.items():
        if not isinstance(key, str) or key in _KNOWN_KEYS or key in CANONICAL_KEYS.values():
            continue
        if should_discard_key(key) or value is None:
            continue
        record.extras[key] = value

    return record


def prepare_for_submission(run: RunRecord) -> Dict[str, Any]:
    payload: Dict[str, Any] = dict(run.extras)
    tier = parse_tier(run.tier)
    wave = run.wave_number

    canonical = {
        "tier": tier.number if tier.number is not None else DEFAULT_FIELDS["tier"],
        "wave": wave if wave is not None else DEFAULT_FIELDS["wave"],
        "coins": DEFAULT_FIELDS["coins"] if _is_blank(run.coins) else run.coins,
        "cells": DEFAULT_FIELDS["cells"] if _is_blank(run.cells) else run.cells,
        "dice": DEFAULT_FIELDS["dice"] if _is_blank(run.dice) else run.dice,
        "duration": normalize_duration(run.duration),
        "killed_by": run.killed_by or DEFAULT_FIELDS["killed_by"],
        "type": RunType.parse(run.type).value,
        "date": run.date or "",
        "time": run.time or "",
        "notes": run.notes or "",
    }
    for name, value in canonical.items():
        payload[CANONICAL_KEYS[name]] = value
        for alias in REMOTE_ALIASES.get(name, []):
            payload[alias] = value

    payload["tierDisplay"] = tier.display if tier.number is not None else DEFAULT_FIELDS["tier"]
    payload["tierHasPlus"] = tier.has_plus
    payload["Real Time"] = format_duration_for_remote(canonical["duration"])

    battle_date = build_battle_date(run.date, run.time)
    if battle_date:
        payload["Battle Date"] = battle_date
    if run.run_id:
        payload["runId"] = run.run_id
    return payload


def sanitize_for_upload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in payload.items()
        if key not in INTERNAL_KEYS and value is not None
    }


def merge_edits(original: RunRecord, edits: Mapping[str, Any]) -> Tuple[RunRecord, List[str]]:
    """Apply edited field values to a clone of ``original``.

    Only fields whose value differs from the original are overwritten and
    reported back as changed.
    """
    merged = original.copy()
    changed: List[str] = []
    for name, value in edits.items():
        if not hasattr(merged, name) or name in {"run_id", "extras"}:
            continue
        if str(getattr(original, name)) == str(value):
            continue
        setattr(merged, name, value)
        changed.append(name)
    if "tier" in changed and merged.tier_has_plus and "type" not in edits:
        merged.type = RunType.TOURNAMENT.value
    return merged, changed
