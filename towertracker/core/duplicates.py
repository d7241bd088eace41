import logging
import math
from typing import Any, Iterable, List, Mapping, Sequence, Set, Tuple, Union

from .models import DuplicateMatch, RunRecord
from .notation import format_magnitude, normalize_duration, parse_int, parse_magnitude, parse_tier
from .sanitise import normalize_incoming

logger = logging.getLogger(__name__)

RunLike = Union[RunRecord, Mapping[str, Any]]


def _as_record(run: RunLike) -> RunRecord:
    if isinstance(run, RunRecord):
        return run
    return normalize_incoming(run)


def _same_number(left, right, parse) -> bool:
    left_value = parse(left)
    right_value = parse(right)
    if left_value is None or right_value is None:
        return str(left).strip().lower() == str(right).strip().lower()
    return left_value == right_value


def _same_tier(left, right) -> bool:
    return _same_number(left, right, lambda value: parse_tier(value).number)


def _same_amount(left, right) -> bool:
    return math.isclose(parse_magnitude(left), parse_magnitude(right), rel_tol=1e-9, abs_tol=1e-9)


def is_same_run(candidate: RunRecord, existing: RunRecord) -> bool:
    return (
        _same_tier(candidate.tier, existing.tier)
        and _same_number(candidate.wave, existing.wave, parse_int)
        and normalize_duration(candidate.duration) == normalize_duration(existing.duration)
        and _same_amount(candidate.coins, existing.coins)
    )


def find_duplicate(candidate: RunLike, history: Sequence[RunLike]) -> DuplicateMatch:
    """Return the first run in ``history`` sharing tier, wave, duration and coins.

    Runs without an id cannot be matched since there is nothing to update.
    """
    record = _as_record(candidate)
    for entry in history or []:
        existing = _as_record(entry)
        if not existing.run_id:
            continue
        if is_same_run(record, existing):
            logger.info("Run matches existing run %s", existing.run_id)
            return DuplicateMatch(is_duplicate=True, matched_run_id=existing.run_id)
    return DuplicateMatch()


def run_fingerprint(run: RunLike) -> str:
    record = _as_record(run)
    tier = record.tier_number if record.tier_number is not None else record.tier
    wave = record.wave_number if record.wave_number is not None else record.wave
    parts = [
        str(tier),
        str(wave),
        normalize_duration(record.duration),
        format_magnitude(record.coins),
        format_magnitude(record.cells),
        format_magnitude(record.dice),
        str(record.type).lower(),
        str(record.killed_by).lower(),
    ]
    return "|".join(parts)


def dedupe_runs(
    runs: Iterable[RunLike],
    existing: Iterable[RunLike] = (),
) -> Tuple[List[RunRecord], List[RunRecord]]:
    """Split ``runs`` into ones not seen before and repeats.

    Used when importing a batch of runs so nothing already tracked, or
    repeated inside the batch itself, is stored twice.
    """
    seen: Set[str] = {run_fingerprint(run) for run in existing}
    unique: List[RunRecord] = []
    duplicates: List[RunRecord] = []
    for run in runs:
        record = _as_record(run)
        fingerprint = run_fingerprint(record)
        if fingerprint in seen:
            duplicates.append(record)
            continue
        seen.add(fingerprint)
        unique.append(record)
    return unique, duplicates
