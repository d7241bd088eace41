import re
from typing import Iterable, List, Optional, Tuple

_ROLE_RE = re.compile(r"^(\d+)\s+Runs?\s+Tracked$", re.IGNORECASE)
FIRST_RUN_ROLE = "Run Tracker"


def role_threshold(name: str) -> Optional[int]:
    """Run count a milestone role is awarded at, from its name."""
    name = name.strip()
    if name.lower() == FIRST_RUN_ROLE.lower():
        return 1
    match = _ROLE_RE.match(name)
    return int(match.group(1)) if match else None


def parse_role_thresholds(roles: Iterable[Tuple[int, str]]) -> List[Tuple[int, int]]:
    """``(role_id, name)`` pairs to ``(threshold, role_id)``, highest first."""
    thresholds = []
    for role_id, name in roles:
        threshold = role_threshold(name)
        if threshold is not None:
            thresholds.append((threshold, role_id))
    thresholds.sort(reverse=True)
    return thresholds


def role_for_count(thresholds: List[Tuple[int, int]], run_count: int) -> Optional[int]:
    for threshold, role_id in thresholds:
        if run_count >= threshold:
            return role_id
    return None
