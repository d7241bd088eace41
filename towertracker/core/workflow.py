import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .aliases import FIELD_LABELS, decimal_for_language
from .autocorrect import KillerNameCorrector
from .backend import BackendError, OcrService, RoleNotifier, RunBackend
from .duplicates import dedupe_runs, find_duplicate
from .extract import datetime_from_filename, extract_from_ocr_lines, parse_battle_report
from .models import (
    EntryMethod,
    RunHistory,
    RunRecord,
    RunType,
    Screenshot,
    Session,
    Stage,
    UserSettings,
)
from .notation import HourlyRates, calculate_hourly_rates, ordinal_suffix
from .runs import recent_runs
from .sanitise import (
    clean_field_value,
    format_date,
    format_time,
    merge_edits,
    normalize_incoming,
    prepare_for_submission,
    sanitize_for_upload,
)
from .sessions import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_MANUAL_FIELDS = [
    "type",
    "tier",
    "wave",
    "duration",
    "coins",
    "cells",
    "dice",
    "killed_by",
    "date",
    "time",
    "notes",
]
EDITABLE_FIELDS = list(DEFAULT_MANUAL_FIELDS)
DEFAULT_PROMPT_TIMEOUT = 300.0
RECENT_RUN_LIMIT = 10
SHARE_SETTING_NAMES = frozenset(
    item.name for item in dataclasses.fields(UserSettings) if item.name.startswith("include_")
)


class Action(str, Enum):
    OPEN_MENU = "open_menu"
    START_UPLOAD = "start_upload"
    START_PASTE = "start_paste"
    START_MANUAL = "start_manual"
    EDIT_LAST = "edit_last"
    REMOVE_LAST = "remove_last"
    VIEW_RUNS = "view_runs"
    ATTACH_SCREENSHOT = "attach_screenshot"
    PASTE_TEXT = "paste_text"
    SUBMIT_FIELD = "submit_field"
    SELECT_TYPE = "select_type"
    SET_NOTE = "set_note"
    SELECT_FIELDS = "select_fields"
    ACCEPT = "accept"
    EDIT = "edit"
    RETRY = "retry"
    SHARE = "share"
    EDIT_SUBMITTED = "edit_submitted"
    START_ANOTHER = "start_another"
    MAIN_MENU = "main_menu"
    BACK = "back"
    CLOSE = "close"
    CANCEL = "cancel"
    TIMEOUT = "timeout"


_ALWAYS = {Action.CANCEL, Action.TIMEOUT}

VALID_ACTIONS: Dict[Stage, FrozenSet[Action]] = {
    Stage.INITIAL: frozenset(
        {
            Action.OPEN_MENU,
            Action.START_UPLOAD,
            Action.START_PASTE,
            Action.START_MANUAL,
            Action.EDIT_LAST,
            Action.REMOVE_LAST,
            Action.VIEW_RUNS,
        }
        | _ALWAYS
    ),
    Stage.AWAITING_UPLOAD: frozenset({Action.ATTACH_SCREENSHOT, Action.BACK} | _ALWAYS),
    Stage.AWAITING_PASTE: frozenset({Action.PASTE_TEXT, Action.BACK} | _ALWAYS),
    Stage.MANUAL_ENTRY: frozenset({Action.SUBMIT_FIELD, Action.SELECT_TYPE, Action.BACK} | _ALWAYS),
    Stage.REVIEWING_DATA: frozenset(
        {Action.ACCEPT, Action.EDIT, Action.SELECT_TYPE, Action.SET_NOTE} | _ALWAYS
    ),
    Stage.EDITING_FIELDS: frozenset(
        {Action.SELECT_FIELDS, Action.SUBMIT_FIELD, Action.SELECT_TYPE, Action.BACK} | _ALWAYS
    ),
    Stage.SUBMITTING: frozenset({Action.RETRY, Action.EDIT, Action.MAIN_MENU} | _ALWAYS),
    Stage.POST_SUBMIT: frozenset(
        {
            Action.SHARE,
            Action.EDIT_SUBMITTED,
            Action.START_ANOTHER,
            Action.MAIN_MENU,
            Action.CLOSE,
        }
        | _ALWAYS
    ),
    Stage.CANCELLED: frozenset(),
    Stage.TIMED_OUT: frozenset(),
}


class PromptKind(str, Enum):
    MAIN_MENU = "main_menu"
    UPLOAD = "upload"
    PASTE = "paste"
    MANUAL_FIELD = "manual_field"
    REVIEW = "review"
    FIELD_SELECT = "field_select"
    EDIT_FIELD = "edit_field"
    SUBMIT_FAILED = "submit_failed"
    SUCCESS = "success"
    SHARE = "share"
    SETTINGS = "settings"
    SHARE_SETTINGS = "share_settings"
    RUN_LIST = "run_list"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    SESSION_LOST = "session_lost"
    ERROR = "error"


CLOSING_PROMPTS = frozenset({PromptKind.CANCELLED, PromptKind.TIMED_OUT, PromptKind.ERROR})


@dataclass
class FlowEvent:
    action: Action
    value: Any = None
    values: Sequence[str] = ()
    text: Optional[str] = None
    attachment: Optional[Screenshot] = None


@dataclass
class Prompt:
    """What the UI should show next and which actions it may offer."""

    kind: PromptKind
    title: str
    description: str = ""
    stage: Optional[Stage] = None
    actions: List[Action] = dataclasses.field(default_factory=list)
    run: Optional[RunRecord] = None
    field: Optional[str] = None
    current_value: Any = None
    options: List[str] = dataclasses.field(default_factory=list)
    step: Optional[Tuple[int, int]] = None
    is_duplicate: bool = False
    rates: Optional[HourlyRates] = None
    notice: Optional[str] = None
    changed_fields: List[str] = dataclasses.field(default_factory=list)
    settings: Optional[UserSettings] = None
    screenshot: Optional[Screenshot] = None
    history: Optional[RunHistory] = None
    runs: List[RunRecord] = dataclasses.field(default_factory=list)
    entry_method: Optional[str] = None

    @property
    def closes_flow(self) -> bool:
        return self.kind in CLOSING_PROMPTS


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    failed: int = 0


TimeoutCallback = Callable[[Session, Prompt], Awaitable[None]]


def actions_for(stage: Stage) -> List[Action]:
    valid = VALID_ACTIONS[stage]
    return [action for action in Action if action in valid and action is not Action.TIMEOUT]


class FlowMachine:
    """Drives one user's run-tracking flow from menu to submission.

    Every user event goes through ``handle``, which validates the action
    against ``VALID_ACTIONS`` for the session's stage and returns the next
    ``Prompt``. Events for one user are processed one at a time in arrival
    order; each returned prompt arms a timeout that ends the flow if the
    user does not answer in time.
    """

    def __init__(
        self,
        store: SessionStore,
        backend: RunBackend,
        ocr: Optional[OcrService] = None,
        notifier: Optional[RoleNotifier] = None,
        killer_corrector: Optional[KillerNameCorrector] = None,
        prompt_timeout: float = DEFAULT_PROMPT_TIMEOUT,
        manual_fields: Optional[List[str]] = None,
        now: Callable[[], datetime] = datetime.now,
        on_timeout: Optional[TimeoutCallback] = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.ocr = ocr
        self.notifier = notifier
        self.killer_corrector = killer_corrector or KillerNameCorrector()
        self.prompt_timeout = prompt_timeout
        self.manual_fields = list(manual_fields or DEFAULT_MANUAL_FIELDS)
        self.now = now
        self.on_timeout = on_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._background: Set[asyncio.Task] = set()
        self._stage_handlers = {
            Stage.INITIAL: self._on_initial,
            Stage.AWAITING_UPLOAD: self._on_awaiting_upload,
            Stage.AWAITING_PASTE: self._on_awaiting_paste,
            Stage.MANUAL_ENTRY: self._on_manual_entry,
            Stage.REVIEWING_DATA: self._on_reviewing_data,
            Stage.EDITING_FIELDS: self._on_editing_fields,
            Stage.SUBMITTING: self._on_submitting,
            Stage.POST_SUBMIT: self._on_post_submit,
        }

    # -- entry points ---------------------------------------------------

    def _lock(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    async def start(self, user_id, username: str = "", flow_id: str = "") -> Prompt:
        user_id = str(user_id)
        async with self._lock(user_id):
            existing = self.store.get(user_id)
            if existing is not None:
                logger.info("Replacing open flow %s for user %s", existing.flow_id, user_id)
                self.close(existing, Stage.CANCELLED)
            session = self.store.create(user_id, username)
            session.flow_id = flow_id
            session.settings = await self._load_settings(user_id)
            session.history = await self._load_history(session)
            session.reset_draft(self._new_draft(session))
            return self._arm(session, self._menu_prompt(session))

    def add_close_callback(self, user_id, callback: Callable[[], None]) -> None:
        session = self.store.get(str(user_id))
        if session is None or session.is_closed:
            callback()
            return
        session.close_callbacks.append(callback)

    async def handle(self, user_id, event: FlowEvent) -> Prompt:
        user_id = str(user_id)
        async with self._lock(user_id):
            session = self.store.get(user_id)
            if session is None or session.is_closed:
                logger.info("%s from user %s with no open session", event.action.value, user_id)
                return self._session_lost_prompt()

            self.store.touch(session)
            if event.action not in VALID_ACTIONS[session.stage]:
                logger.info(
                    "Ignoring %s for user %s in stage %s", event.action.value, user_id, session.stage.value
                )
                prompt = self._render(session)
                prompt.notice = "That option isn't available right now."
                return self._arm(session, prompt)

            if event.action is Action.CANCEL:
                return self.close(session, Stage.CANCELLED)
            if event.action is Action.TIMEOUT:
                return self.close(session, Stage.TIMED_OUT)

            prompt = await self._stage_handlers[session.stage](session, event)
            return self._arm(session, prompt)

    async def go_to_menu(self, user_id) -> Prompt:
        user_id = str(user_id)
        async with self._lock(user_id):
            session = self.store.get(user_id)
            if session is None or session.is_closed:
                return self._session_lost_prompt()
            self.store.touch(session)
            session.reset_draft(self._new_draft(session))
            session.stage = Stage.INITIAL
            return self._arm(session, self._menu_prompt(session))

    async def show_settings(self, user_id) -> Prompt:
        user_id = str(user_id)
        async with self._lock(user_id):
            session = self.store.get(user_id)
            if session is None or session.is_closed:
                return self._session_lost_prompt()
            self.store.touch(session)
            return self._arm(session, self._settings_prompt(session))

    async def show_share_settings(self, user_id) -> Prompt:
        user_id = str(user_id)
        async with self._lock(user_id):
            session = self.store.get(user_id)
            if session is None or session.is_closed:
                return self._session_lost_prompt()
            self.store.touch(session)
            return self._arm(session, self._share_settings_prompt(session))

    async def update_settings(self, user_id, **changes: Any) -> Prompt:
        """Save changed settings and show the page they were changed from.

        Changes made only to ``include_*`` flags come back on the share
        settings page; anything else on the main settings page.
        """
        user_id = str(user_id)
        async with self._lock(user_id):
            session = self.store.get(user_id)
            if session is None or session.is_closed:
                return self._session_lost_prompt()
            self.store.touch(session)

            known = {item.name for item in dataclasses.fields(UserSettings)}
            unknown = [name for name in changes if name not in known]
            if unknown:
                prompt = self._settings_prompt(session)
                prompt.notice = f"Unknown setting: {', '.join(sorted(unknown))}"
                return self._arm(session, prompt)

            if changes and all(name in SHARE_SETTING_NAMES for name in changes):
                page = self._share_settings_prompt
            else:
                page = self._settings_prompt

            updated = dataclasses.replace(session.settings, **changes)
            updated.default_run_type = RunType.parse(updated.default_run_type).value
            try:
                await self.backend.save_user_settings(user_id, updated)
            except BackendError as exc:
                logger.warning("Could not save settings for user %s: %s", user_id, exc)
                prompt = page(session)
                prompt.notice = f"Couldn't save your settings: {exc}"
                return self._arm(session, prompt)

            session.settings = updated
            prompt = page(session)
            prompt.notice = "Settings saved."
            return self._arm(session, prompt)

    async def abort(self, user_id, error: BaseException) -> Prompt:
        """End a flow whose handler failed unexpectedly."""
        user_id = str(user_id)
        async with self._lock(user_id):
            session = self.store.get(user_id)
            if session is not None:
                logger.error("Aborting flow for user %s after %r", user_id, error)
                self.close(session, Stage.CANCELLED)
        return Prompt(
            kind=PromptKind.ERROR,
            title="Something Went Wrong",
            description="The tracker ran into a problem and closed this session. Use /track to start again.",
        )

    async def expire(self, user_id, token: Optional[int] = None) -> Optional[Prompt]:
        user_id = str(user_id)
        async with self._lock(user_id):
            session = self.store.get(user_id)
            if session is None or session.is_closed:
                return None
            if token is not None and token != session.prompt_token:
                return None
            prompt = self.close(session, Stage.TIMED_OUT)
        if self.on_timeout is not None:
            await self.on_timeout(session, prompt)
        return prompt

    def close(self, session: Session, stage: Stage = Stage.CANCELLED) -> Prompt:
        """Finish a flow: drop the session, its timer and its listeners.

        Safe to call more than once; the first terminal stage wins.
        """
        if not session.is_closed:
            session.stage = stage
            logger.info("Flow for user %s ended as %s", session.user_id, stage.value)
        self._cancel_timer(session.user_id)
        if self.store.get(session.user_id) is session:
            self.store.delete(session.user_id)

        callbacks, session.close_callbacks = session.close_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Close callback failed for user %s", session.user_id)
        return self._terminal_prompt(session)

    def sweep(self, now: Optional[float] = None) -> List[Session]:
        expired = self.store.sweep(now)
        for session in expired:
            self.close(session, Stage.TIMED_OUT)
        for user_id in list(self._locks):
            if user_id not in self.store and not self._locks[user_id].locked():
                del self._locks[user_id]
        return expired

    async def import_runs(self, user_id, username: str, runs: Iterable[Mapping[str, Any]]) -> ImportResult:
        """Store a batch of runs, skipping any the user already tracked."""
        user_id = str(user_id)
        history = await self.backend.list_runs(user_id, username)
        unique, repeats = dedupe_runs(runs, history.runs)
        result = ImportResult(skipped=len(repeats))
        for record in unique:
            if find_duplicate(record, history.runs).is_duplicate:
                result.skipped += 1
                continue
            record.run_id = None
            payload = sanitize_for_upload(prepare_for_submission(record))
            try:
                await self.backend.insert_run(user_id, username, payload)
            except BackendError as exc:
                logger.warning("Import of a run failed for user %s: %s", user_id, exc)
                result.failed += 1
                continue
            result.imported += 1

        session = self.store.get(user_id)
        if session is not None and result.imported:
            await self._refresh_history(session)
        logger.info(
            "Imported %d run(s) for user %s, skipped %d, failed %d",
            result.imported,
            user_id,
            result.skipped,
            result.failed,
        )
        return result

    async def migrate_runs(self, user_id, username: str, source: RunBackend) -> ImportResult:
        """Copy every run a user has in ``source`` into this tracker."""
        history = await source.list_runs(str(user_id), username)
        logger.info("Migrating %d run(s) for user %s", len(history.runs), user_id)
        payloads = [prepare_for_submission(run) for run in history.runs]
        return await self.import_runs(user_id, username, payloads)

    # -- timers -----------------------------------------------------------

    def _arm(self, session: Session, prompt: Prompt) -> Prompt:
        if prompt.stage is None:
            prompt.stage = session.stage
        if session.is_closed or prompt.closes_flow:
            return prompt

        session.prompt_token += 1
        self._cancel_timer(session.user_id)
        if self.prompt_timeout and self.prompt_timeout > 0:
            loop = asyncio.get_running_loop()
            self._timers[session.user_id] = loop.call_later(
                self.prompt_timeout, self._timer_fired, session.user_id, session.prompt_token
            )
        return prompt

    def _cancel_timer(self, user_id: str) -> None:
        timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()

    def _timer_fired(self, user_id: str, token: int) -> None:
        self._timers.pop(user_id, None)
        self._spawn(self.expire(user_id, token))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background flow task failed", exc_info=task.exception())

    # -- stage handlers ---------------------------------------------------

    async def _on_initial(self, session: Session, event: FlowEvent) -> Prompt:
        action = event.action
        if action is Action.START_UPLOAD:
            session.reset_draft(self._new_draft(session))
            session.stage = Stage.AWAITING_UPLOAD
            return self._upload_prompt(session)
        if action is Action.START_PASTE:
            session.reset_draft(self._new_draft(session))
            session.stage = Stage.AWAITING_PASTE
            return self._paste_prompt(session)
        if action is Action.START_MANUAL:
            session.reset_draft(self._new_draft(session))
            session.stage = Stage.MANUAL_ENTRY
            return self._manual_prompt(session)
        if action is Action.EDIT_LAST:
            last = session.history.last_run
            if last is None or not last.run_id:
                prompt = self._menu_prompt(session)
                prompt.notice = "You don't have a tracked run to edit yet."
                return prompt
            session.reset_draft(last.copy())
            session.editing_run_id = last.run_id
            session.entry_method = EntryMethod.EDITED
            session.stage = Stage.EDITING_FIELDS
            return self._field_select_prompt(session)
        if action is Action.REMOVE_LAST:
            return await self._remove_last(session)
        if action is Action.VIEW_RUNS:
            return self._run_list_prompt(session)
        return self._menu_prompt(session)

    async def _on_awaiting_upload(self, session: Session, event: FlowEvent) -> Prompt:
        if event.action is Action.BACK:
            session.stage = Stage.INITIAL
            return self._menu_prompt(session)

        attachment = event.attachment
        if attachment is None or not attachment.data:
            return self._upload_prompt(session, "Attach a screenshot of your Battle Report.")
        if self.ocr is None:
            return self._upload_prompt(
                session, "Reading screenshots isn't available right now. Try pasting the Battle Report instead."
            )

        try:
            lines = await self.ocr.extract_lines(attachment.data, attachment.filename)
        except BackendError as exc:
            logger.warning("OCR failed for user %s: %s", session.user_id, exc)
            return self._upload_prompt(session, f"Couldn't read that screenshot: {exc}")

        raw = extract_from_ocr_lines(lines, session.settings.scan_language)
        if not raw:
            return self._upload_prompt(session, "No Battle Report values were found in that screenshot.")

        captured = datetime_from_filename(attachment.filename) or self.now()
        raw.setdefault("date", format_date(captured))
        raw.setdefault("time", format_time(captured))
        record = self._normalize(session, raw)
        record.killed_by = self.killer_corrector.correct(record.killed_by)
        session.screenshot = attachment
        session.entry_method = EntryMethod.EXTRACTED
        return await self._complete_collection(session, record)

    async def _on_awaiting_paste(self, session: Session, event: FlowEvent) -> Prompt:
        if event.action is Action.BACK:
            session.stage = Stage.INITIAL
            return self._menu_prompt(session)

        text = event.text if event.text is not None else event.value
        if not text or not str(text).strip():
            return self._paste_prompt(session, "Paste the text of your Battle Report.")

        raw = parse_battle_report(str(text), self._decimal(session))
        if not any(key in raw for key in ("tier", "wave", "totalCoins", "roundDuration")):
            return self._paste_prompt(session, "That doesn't look like a Battle Report. Copy it from the game and try again.")

        record = self._normalize(session, raw)
        record.killed_by = self.killer_corrector.correct(record.killed_by)
        session.entry_method = EntryMethod.PASTED
        return await self._complete_collection(session, record)

    async def _on_manual_entry(self, session: Session, event: FlowEvent) -> Prompt:
        if event.action is Action.BACK:
            if session.field_index == 0:
                return self.close(session, Stage.CANCELLED)
            session.field_index -= 1
            return self._manual_prompt(session)

        name = self.manual_fields[session.field_index]
        if event.action is Action.SELECT_TYPE and name != "type":
            session.draft_run.type = RunType.parse(event.value).value
            return self._manual_prompt(session)

        text = self._event_text(event)
        session.field_values[name] = text
        setattr(session.draft_run, name, self._clean(session, name, text, session.draft_run))
        session.field_index += 1
        if session.field_index < len(self.manual_fields):
            return self._manual_prompt(session)

        session.entry_method = EntryMethod.MANUAL
        return await self._complete_collection(session, session.draft_run)

    async def _on_reviewing_data(self, session: Session, event: FlowEvent) -> Prompt:
        action = event.action
        if action is Action.ACCEPT:
            return await self._submit(session)
        if action is Action.EDIT:
            session.stage = Stage.EDITING_FIELDS
            self._clear_edit(session)
            return self._field_select_prompt(session)
        if action is Action.SELECT_TYPE:
            session.draft_run.type = RunType.parse(event.value).value
        elif action is Action.SET_NOTE:
            session.draft_run.notes = clean_field_value("notes", self._event_text(event))
        return self._review_prompt(session)

    async def _on_editing_fields(self, session: Session, event: FlowEvent) -> Prompt:
        action = event.action
        if action is Action.SELECT_FIELDS:
            chosen = [name for name in event.values or () if name in EDITABLE_FIELDS]
            if not chosen:
                return self._field_select_prompt(session, "Pick at least one field to edit.")
            self._clear_edit(session)
            session.original_run = session.draft_run.copy()
            session.edit_fields = chosen
            return self._edit_field_prompt(session)

        if not session.edit_fields:
            if action is Action.BACK:
                session.stage = Stage.REVIEWING_DATA
                return self._review_prompt(session)
            return self._field_select_prompt(session, "Pick the fields you want to edit first.")

        if action is Action.BACK:
            if session.edit_index == 0:
                self._clear_edit(session)
                return self._field_select_prompt(session)
            session.edit_index -= 1
            return self._edit_field_prompt(session)

        name = session.edit_fields[session.edit_index]
        if action is Action.SELECT_TYPE and name != "type":
            return self._edit_field_prompt(session, "Enter a value for this field.")

        base = session.original_run or session.draft_run
        session.edit_values[name] = self._clean(session, name, self._event_text(event), base)
        session.edit_index += 1
        if session.edit_index < len(session.edit_fields):
            return self._edit_field_prompt(session)

        merged, changed = merge_edits(base, session.edit_values)
        session.draft_run = merged
        session.action_log.extend(f"Edited {FIELD_LABELS.get(name, name)}" for name in changed)
        self._clear_edit(session)
        prompt = await self._enter_review(session)
        prompt.changed_fields = changed
        return prompt

    async def _on_submitting(self, session: Session, event: FlowEvent) -> Prompt:
        if event.action is Action.RETRY:
            return await self._submit(session)
        if event.action is Action.EDIT:
            session.stage = Stage.EDITING_FIELDS
            self._clear_edit(session)
            return self._field_select_prompt(session)
        session.reset_draft(self._new_draft(session))
        session.stage = Stage.INITIAL
        return self._menu_prompt(session)

    async def _on_post_submit(self, session: Session, event: FlowEvent) -> Prompt:
        action = event.action
        if action is Action.SHARE:
            session.shared = True
            return self._share_prompt(session)
        if action is Action.EDIT_SUBMITTED:
            submitted = session.draft_run.copy()
            screenshot = session.screenshot
            session.reset_draft(submitted)
            session.screenshot = screenshot
            session.editing_run_id = session.last_run_id or submitted.run_id
            session.entry_method = EntryMethod.EDITED
            session.stage = Stage.EDITING_FIELDS
            return self._field_select_prompt(session)
        if action is Action.START_ANOTHER:
            session.reset_draft(self._new_draft(session))
            session.stage = Stage.AWAITING_UPLOAD
            return self._upload_prompt(session)
        if action is Action.CLOSE:
            return self.close(session, Stage.CANCELLED)
        session.reset_draft(self._new_draft(session))
        session.stage = Stage.INITIAL
        return self._menu_prompt(session)

    # -- shared steps -----------------------------------------------------

    async def _complete_collection(self, session: Session, record: RunRecord) -> Prompt:
        session.draft_run = record
        self._check_duplicate(session)
        return await self._enter_review(session)

    def _check_duplicate(self, session: Session) -> None:
        session.is_duplicate_run = False
        if session.editing_run_id or not session.settings.auto_detect_duplicates:
            return
        try:
            match = find_duplicate(session.draft_run, session.history.runs)
        except Exception:
            logger.exception("Duplicate check failed for user %s", session.user_id)
            return
        if match.is_duplicate:
            session.is_duplicate_run = True
            session.editing_run_id = match.matched_run_id

    async def _enter_review(self, session: Session) -> Prompt:
        session.stage = Stage.REVIEWING_DATA
        if not session.settings.confirm_before_submit:
            return await self._submit(session)
        return self._review_prompt(session)

    async def _submit(self, session: Session) -> Prompt:
        session.stage = Stage.SUBMITTING
        payload = sanitize_for_upload(prepare_for_submission(session.draft_run))
        updating = bool(session.editing_run_id)
        try:
            if updating:
                await self.backend.update_run(
                    session.user_id, session.username, session.editing_run_id, payload
                )
                run_id = session.editing_run_id
            else:
                run_id = await self.backend.insert_run(session.user_id, session.username, payload)
        except BackendError as exc:
            logger.warning("Submitting run failed for user %s: %s", session.user_id, exc)
            session.last_error = str(exc)
            return self._failure_prompt(session)

        session.last_error = None
        session.draft_run.run_id = run_id
        session.last_run_id = run_id
        if not await self._refresh_history(session):
            self._cache_run(session, session.draft_run)
        session.stage = Stage.POST_SUBMIT
        logger.info("%s run %s for user %s", "Updated" if updating else "Logged", run_id, session.user_id)
        self._notify(session)
        return self._success_prompt(session, updating)

    async def _remove_last(self, session: Session) -> Prompt:
        last = session.history.last_run
        if last is None or not last.run_id:
            prompt = self._menu_prompt(session)
            prompt.notice = "You don't have a tracked run to remove."
            return prompt
        try:
            await self.backend.delete_run(session.user_id, session.username, last.run_id)
        except BackendError as exc:
            logger.warning("Removing run %s failed for user %s: %s", last.run_id, session.user_id, exc)
            prompt = self._menu_prompt(session)
            prompt.notice = f"Couldn't remove your last run: {exc}"
            return prompt

        if not await self._refresh_history(session):
            self._forget_run(session, last.run_id)
        prompt = self._menu_prompt(session)
        prompt.notice = f"Removed your last run (Tier {last.tier}, Wave {last.wave})."
        return prompt

    async def _load_settings(self, user_id: str) -> UserSettings:
        try:
            return await self.backend.get_user_settings(user_id)
        except BackendError as exc:
            logger.warning("Using default settings for user %s: %s", user_id, exc)
            return UserSettings()

    async def _load_history(self, session: Session) -> RunHistory:
        try:
            return await self.backend.list_runs(session.user_id, session.username)
        except BackendError as exc:
            logger.warning("Could not load runs for user %s: %s", session.user_id, exc)
            return RunHistory()

    async def _refresh_history(self, session: Session) -> bool:
        try:
            session.history = await self.backend.list_runs(session.user_id, session.username)
        except BackendError as exc:
            logger.warning("Could not refresh runs for user %s: %s", session.user_id, exc)
            return False
        return True

    def _cache_run(self, session: Session, run: RunRecord) -> None:
        history = session.history
        stored = run.copy()
        for index, existing in enumerate(history.runs):
            if existing.run_id == stored.run_id:
                history.runs[index] = stored
                break
        else:
            history.runs.append(stored)
            run_type = RunType.parse(stored.type).value
            if history.run_type_counts:
                history.run_type_counts[run_type] = history.run_type_counts.get(run_type, 0) + 1
        history.last_run = stored

    def _forget_run(self, session: Session, run_id: str) -> None:
        history = session.history
        removed = history.find(run_id)
        history.runs = [run for run in history.runs if run.run_id != run_id]
        if removed is not None and history.run_type_counts:
            run_type = RunType.parse(removed.type).value
            if history.run_type_counts.get(run_type):
                history.run_type_counts[run_type] -= 1
        history.last_run = history.runs[-1] if history.runs else None

    def _notify(self, session: Session) -> None:
        if self.notifier is None:
            return
        self._spawn(self._notify_roles(session.user_id, session.username, session.history.run_count))

    async def _notify_roles(self, user_id: str, username: str, run_count: int) -> None:
        try:
            await self.notifier.run_count_changed(user_id, username, run_count)
        except Exception:
            logger.exception("Role update failed for user %s", user_id)

    # -- helpers ----------------------------------------------------------

    def _new_draft(self, session: Session) -> RunRecord:
        moment = self.now()
        return RunRecord(
            type=RunType.parse(session.settings.default_run_type).value,
            date=format_date(moment),
            time=format_time(moment),
        )

    def _decimal(self, session: Session) -> str:
        if session.settings.decimal_separator == ",":
            return ","
        return decimal_for_language(session.settings.scan_language)

    def _normalize(self, session: Session, raw: Dict[str, Any]) -> RunRecord:
        fallback = {"type": session.settings.default_run_type}
        try:
            return normalize_incoming(raw, fallback, now=self.now)
        except Exception:
            logger.exception("Normalizing run data failed for user %s", session.user_id)
            return self._new_draft(session)

    def _clean(self, session: Session, name: str, text: str, base: RunRecord) -> Any:
        if name in {"date", "time"} and not text:
            return getattr(base, name)
        return clean_field_value(name, text, session.settings.decimal_separator)

    @staticmethod
    def _entry_label(session: Session) -> Optional[str]:
        return session.entry_method.value if session.entry_method is not None else None

    @staticmethod
    def _event_text(event: FlowEvent) -> str:
        raw = event.value if event.value is not None else event.text
        return "" if raw is None else str(raw).strip()

    @staticmethod
    def _clear_edit(session: Session) -> None:
        session.original_run = None
        session.edit_fields = []
        session.edit_index = 0
        session.edit_values = {}

    def _rates(self, session: Session, run: RunRecord) -> HourlyRates:
        return calculate_hourly_rates(
            run.duration, run.coins, run.cells, run.dice, session.settings.decimal_separator
        )

    # -- prompts ----------------------------------------------------------

    def _render(self, session: Session) -> Prompt:
        stage = session.stage
        if stage is Stage.INITIAL:
            return self._menu_prompt(session)
        if stage is Stage.AWAITING_UPLOAD:
            return self._upload_prompt(session)
        if stage is Stage.AWAITING_PASTE:
            return self._paste_prompt(session)
        if stage is Stage.MANUAL_ENTRY:
            return self._manual_prompt(session)
        if stage is Stage.REVIEWING_DATA:
            return self._review_prompt(session)
        if stage is Stage.EDITING_FIELDS:
            if session.edit_fields:
                return self._edit_field_prompt(session)
            return self._field_select_prompt(session)
        if stage is Stage.SUBMITTING:
            return self._failure_prompt(session)
        if stage is Stage.POST_SUBMIT:
            return self._success_prompt(session, bool(session.editing_run_id))
        return self._terminal_prompt(session)

    def _prompt(self, session: Session, kind: PromptKind, title: str, description: str = "", **extra) -> Prompt:
        return Prompt(
            kind=kind,
            title=title,
            description=description,
            stage=session.stage,
            actions=actions_for(session.stage),
            settings=session.settings,
            **extra,
        )

    def _menu_prompt(self, session: Session) -> Prompt:
        history = session.history
        description = f"You have tracked {history.run_count} run(s)."
        if history.last_run is not None:
            last = history.last_run
            description += f" Last run: Tier {last.tier}, Wave {last.wave}, {last.duration}."
        return self._prompt(
            session,
            PromptKind.MAIN_MENU,
            "Tower Run Tracker",
            description,
            run=history.last_run,
            history=history,
        )

    def _upload_prompt(self, session: Session, notice: Optional[str] = None) -> Prompt:
        return self._prompt(
            session,
            PromptKind.UPLOAD,
            "Upload a Screenshot",
            "Send a screenshot of your Battle Report in this channel.",
            notice=notice,
        )

    def _paste_prompt(self, session: Session, notice: Optional[str] = None) -> Prompt:
        return self._prompt(
            session,
            PromptKind.PASTE,
            "Paste a Battle Report",
            "Copy the Battle Report from the game and paste it here.",
            notice=notice,
        )

    def _manual_prompt(self, session: Session) -> Prompt:
        name = self.manual_fields[session.field_index]
        label = FIELD_LABELS.get(name, name)
        return self._prompt(
            session,
            PromptKind.MANUAL_FIELD,
            f"Manual Entry: {label}",
            f"Enter the {label.lower()} for this run.",
            run=session.draft_run,
            field=name,
            current_value=session.field_values.get(name),
            options=[run_type.value for run_type in RunType] if name == "type" else [],
            step=(session.field_index + 1, len(self.manual_fields)),
        )

    def _review_prompt(self, session: Session) -> Prompt:
        run = session.draft_run
        description = "Check the details below before saving."
        if session.is_duplicate_run:
            description = "This looks like a run you already tracked. Saving will update it instead of adding a new one."
        elif session.editing_run_id:
            description = "Saving will update your existing run."
        return self._prompt(
            session,
            PromptKind.REVIEW,
            "Review Run Data",
            description,
            run=run,
            is_duplicate=session.is_duplicate_run,
            rates=self._rates(session, run),
            options=[run_type.value for run_type in RunType],
            screenshot=session.screenshot,
            entry_method=self._entry_label(session),
        )

    def _field_select_prompt(self, session: Session, notice: Optional[str] = None) -> Prompt:
        return self._prompt(
            session,
            PromptKind.FIELD_SELECT,
            "Edit Run",
            "Choose the fields you want to change.",
            run=session.draft_run,
            options=list(EDITABLE_FIELDS),
            notice=notice,
        )

    def _edit_field_prompt(self, session: Session, notice: Optional[str] = None) -> Prompt:
        name = session.edit_fields[session.edit_index]
        label = FIELD_LABELS.get(name, name)
        base = session.original_run or session.draft_run
        return self._prompt(
            session,
            PromptKind.EDIT_FIELD,
            f"Edit {label}",
            f"Enter the new {label.lower()}.",
            run=base,
            field=name,
            current_value=session.edit_values.get(name, getattr(base, name)),
            options=[run_type.value for run_type in RunType] if name == "type" else [],
            step=(session.edit_index + 1, len(session.edit_fields)),
            notice=notice,
        )

    def _failure_prompt(self, session: Session) -> Prompt:
        return self._prompt(
            session,
            PromptKind.SUBMIT_FAILED,
            "Couldn't Save Run",
            f"Your run was not saved: {session.last_error or 'unknown error'}. Your data is kept, so you can retry or edit it.",
            run=session.draft_run,
        )

    def _success_prompt(self, session: Session, updated: bool) -> Prompt:
        run = session.draft_run
        count = session.history.run_count
        if updated:
            description = "Your run has been updated."
        else:
            description = f"This is your {count}{ordinal_suffix(count)} tracked run."
        return self._prompt(
            session,
            PromptKind.SUCCESS,
            "Run Updated" if updated else "Run Logged",
            description,
            run=run,
            rates=self._rates(session, run),
            screenshot=session.screenshot,
            history=session.history,
            entry_method=self._entry_label(session),
        )

    def _share_prompt(self, session: Session) -> Prompt:
        run = session.draft_run
        return self._prompt(
            session,
            PromptKind.SHARE,
            f"{session.username or 'Player'}'s {run.type} Run",
            run.notes,
            run=run,
            rates=self._rates(session, run),
            screenshot=session.screenshot,
        )

    def _settings_prompt(self, session: Session) -> Prompt:
        return self._prompt(
            session,
            PromptKind.SETTINGS,
            "Tracker Settings",
            "Change how the tracker reads and saves your runs.",
        )

    def _share_settings_prompt(self, session: Session) -> Prompt:
        return self._prompt(
            session,
            PromptKind.SHARE_SETTINGS,
            "Share Settings",
            "Choose what your shared runs show.",
            options=sorted(SHARE_SETTING_NAMES),
        )

    def _run_list_prompt(self, session: Session) -> Prompt:
        history = session.history
        recent = recent_runs(history, RECENT_RUN_LIMIT)
        if recent:
            description = f"Your last {len(recent)} of {history.run_count} tracked run(s), newest first."
        else:
            description = "You haven't tracked any runs yet."
        prompt = self._prompt(
            session,
            PromptKind.RUN_LIST,
            "Recent Runs",
            description,
            runs=recent,
            history=history,
        )
        prompt.actions = [Action.OPEN_MENU, Action.CANCEL]
        return prompt

    def _terminal_prompt(self, session: Session) -> Prompt:
        if session.stage is Stage.TIMED_OUT:
            return Prompt(
                kind=PromptKind.TIMED_OUT,
                title="Tracker Timed Out",
                description="No response was received in time. Use /track to start again.",
                stage=Stage.TIMED_OUT,
            )
        return Prompt(
            kind=PromptKind.CANCELLED,
            title="Tracker Closed",
            description="Nothing else was saved. Use /track whenever you want to log a run.",
            stage=Stage.CANCELLED,
        )

    @staticmethod
    def _session_lost_prompt() -> Prompt:
        return Prompt(
            kind=PromptKind.SESSION_LOST,
            title="Session Expired",
            description="This tracker session is no longer active. Use /track to start over.",
        )
