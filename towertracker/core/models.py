import copy
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .notation import parse_int, parse_tier

Amount = Union[int, float, str]


class TrackerError(Exception):
    pass


class Stage(str, Enum):
    INITIAL = "initial"
    AWAITING_UPLOAD = "awaiting_upload"
    AWAITING_PASTE = "awaiting_paste"
    MANUAL_ENTRY = "manual_entry"
    REVIEWING_DATA = "reviewing_data"
    EDITING_FIELDS = "editing_fields"
    SUBMITTING = "submitting"
    POST_SUBMIT = "post_submit"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STAGES = frozenset({Stage.CANCELLED, Stage.TIMED_OUT})


class RunType(str, Enum):
    FARMING = "Farming"
    OVERNIGHT = "Overnight"
    TOURNAMENT = "Tournament"
    MILESTONE = "Milestone"

    @classmethod
    def parse(cls, value, default: Optional["RunType"] = None) -> "RunType":
        if isinstance(value, RunType):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return default or cls.FARMING


class EntryMethod(str, Enum):
    MANUAL = "Manual"
    EXTRACTED = "Extracted"
    PASTED = "Pasted"
    EDITED = "Edited"


@dataclass
class RunRecord:
    tier: str = "Unknown"
    wave: Union[int, str] = "Unknown"
    duration: str = "0h0m0s"
    killed_by: str = "Apathy"
    coins: Amount = "0"
    cells: Amount = "0"
    dice: Amount = "0"
    type: str = RunType.FARMING.value
    date: str = ""
    time: str = ""
    notes: str = ""
    run_id: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def tier_number(self) -> Optional[int]:
        return parse_tier(self.tier).number

    @property
    def tier_has_plus(self) -> bool:
        return parse_tier(self.tier).has_plus

    @property
    def wave_number(self) -> Optional[int]:
        return parse_int(self.wave)

    def copy(self) -> "RunRecord":
        return copy.deepcopy(self)

    def get(self, name: str) -> Any:
        return getattr(self, name)


RUN_FIELDS = [f.name for f in fields(RunRecord) if f.name not in {"run_id", "extras"}]


@dataclass
class DuplicateMatch:
    is_duplicate: bool = False
    matched_run_id: Optional[str] = None


@dataclass
class Screenshot:
    url: str = ""
    filename: str = ""
    data: Optional[bytes] = None


_SETTINGS_KEYS = {
    "scan_language": "scanLanguage",
    "timezone": "timezone",
    "default_run_type": "defaultRunType",
    "auto_detect_duplicates": "autoDetectDuplicates",
    "confirm_before_submit": "confirmBeforeSubmit",
    "decimal_preference": "decimalPreference",
    "default_tracker": "defaultTracker",
    "include_tier": "includeTier",
    "include_wave": "includeWave",
    "include_duration": "includeDuration",
    "include_coins": "includeTotalCoins",
    "include_cells": "includeTotalCells",
    "include_dice": "includeTotalDice",
    "include_coins_per_hour": "includeCoinsPerHour",
    "include_cells_per_hour": "includeCellsPerHour",
    "include_dice_per_hour": "includeDicePerHour",
    "include_notes": "includeNotes",
    "include_screenshot": "includeScreenshot",
}


@dataclass
class UserSettings:
    scan_language: str = "English"
    timezone: str = "UTC"
    default_run_type: str = RunType.FARMING.value
    auto_detect_duplicates: bool = True
    confirm_before_submit: bool = True
    decimal_preference: str = "Period (.)"
    default_tracker: str = "Web"
    include_tier: bool = True
    include_wave: bool = True
    include_duration: bool = True
    include_coins: bool = True
    include_cells: bool = True
    include_dice: bool = True
    include_coins_per_hour: bool = True
    include_cells_per_hour: bool = True
    include_dice_per_hour: bool = True
    include_notes: bool = True
    include_screenshot: bool = False

    @property
    def decimal_separator(self) -> str:
        return "," if "," in self.decimal_preference else "."

    def to_dict(self) -> Dict[str, Any]:
        return {_SETTINGS_KEYS[name]: value for name, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UserSettings":
        settings = cls()
        if not data:
            return settings
        for name, key in _SETTINGS_KEYS.items():
            value = data.get(key, data.get(name))
            if value is None:
                continue
            default = getattr(settings, name)
            if isinstance(default, bool):
                value = value if isinstance(value, bool) else str(value).lower() in {"true", "1", "yes", "on"}
            else:
                value = str(value)
            setattr(settings, name, value)
        settings.default_run_type = RunType.parse(settings.default_run_type).value
        return settings


@dataclass
class RunHistory:
    last_run: Optional[RunRecord] = None
    runs: List[RunRecord] = field(default_factory=list)
    run_type_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def run_count(self) -> int:
        if self.run_type_counts:
            return sum(self.run_type_counts.values())
        return len(self.runs)

    def find(self, run_id: Optional[str]) -> Optional[RunRecord]:
        if not run_id:
            return None
        for run in self.runs:
            if run.run_id == run_id:
                return run
        return None


@dataclass
class Session:
    user_id: str
    username: str = ""
    flow_id: str = ""
    stage: Stage = Stage.INITIAL
    draft_run: RunRecord = field(default_factory=RunRecord)
    original_run: Optional[RunRecord] = None
    editing_run_id: Optional[str] = None
    is_duplicate_run: bool = False
    history: RunHistory = field(default_factory=RunHistory)
    settings: UserSettings = field(default_factory=UserSettings)
    screenshot: Optional[Screenshot] = None
    last_activity: float = 0.0
    entry_method: Optional[EntryMethod] = None
    field_index: int = 0
    field_values: Dict[str, str] = field(default_factory=dict)
    edit_fields: List[str] = field(default_factory=list)
    edit_index: int = 0
    edit_values: Dict[str, Any] = field(default_factory=dict)
    last_error: Optional[str] = None
    last_run_id: Optional[str] = None
    action_log: List[str] = field(default_factory=list)
    shared: bool = False
    prompt_token: int = 0
    close_callbacks: List[Callable[[], None]] = field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def reset_draft(self, draft: Optional[RunRecord] = None) -> None:
        self.draft_run = draft or RunRecord(type=self.settings.default_run_type)
        self.original_run = None
        self.editing_run_id = None
        self.is_duplicate_run = False
        self.screenshot = None
        self.entry_method = None
        self.field_index = 0
        self.field_values = {}
        self.edit_fields = []
        self.edit_index = 0
        self.edit_values = {}
        self.last_error = None
        self.shared = False
